"""Tests for envelope encoding, decoding and verification."""

import itertools
from dataclasses import replace

import pytest
from proseline_protocol.envelope import EnvelopeCodec, InnerEnvelope, OuterEnvelope
from proseline_protocol.errors import DecryptError, SignatureError, ValidationError
from proseline_protocol.schemas import KIND_CONTRACTS

from conftest import DIGEST_C


def flip_bit(text: str, position: int) -> str:
    """Flip the lowest bit of one byte of a hex field."""
    raw = bytearray(bytes.fromhex(text))
    raw[position % len(raw)] ^= 0x01
    return raw.hex()


class TestEncode:
    """Test envelope construction."""

    def test_split_envelope_fields(self, project):
        """Split envelopes expose only replication fields."""
        entry = project.entry("intro")
        outer = project.seal(entry)

        assert outer.version == 2
        assert outer.discovery_key == project.discovery_key
        assert outer.log_public_key == project.log_public_key
        assert outer.index == 0
        assert outer.log_signature is None
        assert set(outer.to_dict()) == {
            "version", "discoveryKey", "logPublicKey", "index", "nonce", "encryptedInnerEnvelope",
        }

    def test_flat_envelope_fields(self, flat_project):
        """Flat envelopes carry signatures and prior in clear."""
        entry = flat_project.entry("intro", index=1, prior=DIGEST_C)
        outer = flat_project.seal(entry)

        data = outer.to_dict()
        assert data["version"] == 1
        assert data["prior"] == DIGEST_C
        assert len(data["logSignature"]) == 128
        assert len(data["projectSignature"]) == 128
        assert set(data["entry"]) == {"ciphertext", "nonce"}

    def test_ciphertext_length(self, flat_project, crypto):
        """Ciphertext is the canonical entry plus the MAC."""
        entry = flat_project.entry("note")
        outer = flat_project.seal(entry)
        plaintext = flat_project.codec.canonical(entry)
        assert len(bytes.fromhex(outer.ciphertext)) == len(plaintext) + crypto.mac_bytes

    def test_supplied_nonce_is_used(self, project, crypto):
        """A caller-supplied nonce appears on the envelope."""
        nonce = crypto.nonce()
        outer = project.seal(project.entry("intro"), nonce=nonce)
        assert outer.nonce == nonce.hex()

    def test_fresh_nonce_per_envelope(self, project):
        """Envelopes of the same entry use different nonces."""
        entry = project.entry("intro")
        assert project.seal(entry).nonce != project.seal(entry).nonce

    def test_invalid_entry_rejected(self, project):
        """Entries are validated before signing."""
        with pytest.raises(ValidationError) as excinfo:
            project.seal(project.entry("intro", name=""))
        assert excinfo.value.field == "name"


class TestRoundtrip:
    """decode(encode(m)) == m for every kind and option."""

    @pytest.mark.parametrize(
        "kind,signatures_in_clear,with_client",
        list(itertools.product(
            [c.kind for c in KIND_CONTRACTS], [False, True], [False, True],
        )),
    )
    def test_roundtrip(self, project, flat_project, kind, signatures_in_clear, with_client):
        """Every kind survives both generations with and without a client key."""
        p = flat_project if signatures_in_clear else project
        entry = p.entry(kind, index=2, prior=DIGEST_C)
        client = p.client_keypair if with_client else None
        outer = p.seal(entry, client_keypair=client)

        inner = p.codec.decode(outer, p.read_key)

        assert inner.entry == entry
        assert (inner.client_signature is not None) == with_client
        p.codec.verify(
            inner,
            p.log_keypair.public_key,
            p.project_keypair.public_key,
            p.client_keypair.public_key if with_client else None,
        )

    @pytest.mark.parametrize("email,phone", list(itertools.product(
        [None, "kyle@example.com"], [None, "+15551234567"],
    )))
    def test_intro_optional_fields(self, project, email, phone):
        """Optional intro fields roundtrip present or absent."""
        fields = {}
        if email:
            fields["email"] = email
        if phone:
            fields["phone"] = phone
        entry = project.entry("intro", **fields)
        inner = project.codec.open(
            project.seal(entry), project.read_key, project.project_public_key,
        )
        assert inner.entry == entry

    def test_outer_dict_roundtrip(self, project, flat_project):
        """Outer envelopes survive to_dict and parse in both generations."""
        for p in (project, flat_project):
            outer = p.seal(p.entry("intro"))
            assert p.codec.parse(outer.to_dict()) == outer

    def test_inner_dict_roundtrip(self, project):
        """Inner envelopes survive to_dict and from_dict."""
        inner = project.codec.decode(project.seal(project.entry("intro")), project.read_key)
        assert InnerEnvelope.from_dict(inner.to_dict()) == inner


class TestDecode:
    """Test decryption failures."""

    @pytest.mark.parametrize("position", [0, 1, 17, -16, -1])
    def test_tampered_ciphertext(self, project, flat_project, position):
        """Flipping any ciphertext bit fails authentication."""
        for p in (project, flat_project):
            outer = p.seal(p.entry("intro"))
            tampered = replace(outer, ciphertext=flip_bit(outer.ciphertext, position))
            with pytest.raises(DecryptError):
                p.codec.decode(tampered, p.read_key)

    def test_wrong_read_key(self, project, crypto):
        """A different read key cannot decrypt."""
        outer = project.seal(project.entry("intro"))
        with pytest.raises(DecryptError):
            project.codec.decode(outer, crypto.encryption_key())

    def test_mismatched_nonce(self, project, crypto):
        """A different nonce cannot decrypt."""
        outer = project.seal(project.entry("intro"))
        with pytest.raises(DecryptError):
            project.codec.decode(replace(outer, nonce=crypto.nonce().hex()), project.read_key)

    def test_outer_index_must_match_entry(self, project):
        """Relabeling an envelope's index is detected."""
        outer = project.seal(project.entry("intro"))
        with pytest.raises(ValidationError) as excinfo:
            project.codec.decode(replace(outer, index=4), project.read_key)
        assert excinfo.value.field == "index"

    def test_outer_discovery_key_must_match_entry(self, project):
        """Moving an envelope to another project is detected."""
        outer = project.seal(project.entry("intro"))
        with pytest.raises(ValidationError) as excinfo:
            project.codec.decode(replace(outer, discovery_key="dd" * 32), project.read_key)
        assert excinfo.value.field == "discoveryKey"

    def test_flat_prior_must_match_entry(self, flat_project):
        """The clear prior copy must match the sealed entry."""
        outer = flat_project.seal(flat_project.entry("intro", index=1, prior=DIGEST_C))
        with pytest.raises(ValidationError) as excinfo:
            flat_project.codec.decode(replace(outer, prior="ee" * 32), flat_project.read_key)
        assert excinfo.value.field == "prior"


class TestVerify:
    """Test signature verification."""

    def test_wrong_project_key(self, project, crypto):
        """An entry not signed by the project key fails on project."""
        inner = project.codec.decode(project.seal(project.entry("intro")), project.read_key)
        with pytest.raises(SignatureError) as excinfo:
            project.codec.verify(
                inner, project.log_keypair.public_key, crypto.keypair().public_key,
            )
        assert excinfo.value.which == SignatureError.PROJECT

    def test_wrong_log_key(self, project, crypto):
        """An entry not signed by the log key fails on log."""
        outer = project.seal(project.entry("intro"))
        other_log = crypto.keypair().public_key.hex()
        with pytest.raises(SignatureError) as excinfo:
            project.codec.open(
                replace(outer, log_public_key=other_log),
                project.read_key,
                project.project_public_key,
            )
        assert excinfo.value.which == SignatureError.LOG

    def test_tampered_clear_signature(self, flat_project):
        """Flat envelope signatures are checked against the entry."""
        outer = flat_project.seal(flat_project.entry("intro"))
        tampered = replace(outer, log_signature=flip_bit(outer.log_signature, 3))
        with pytest.raises(SignatureError) as excinfo:
            flat_project.codec.open(
                tampered, flat_project.read_key, flat_project.project_public_key,
            )
        assert excinfo.value.which == SignatureError.LOG

    def test_missing_client_signature(self, project):
        """Supplying a client key requires a client signature."""
        inner = project.codec.decode(project.seal(project.entry("intro")), project.read_key)
        with pytest.raises(SignatureError, match="missing") as excinfo:
            project.codec.verify(
                inner,
                project.log_keypair.public_key,
                project.project_keypair.public_key,
                project.client_keypair.public_key,
            )
        assert excinfo.value.which == SignatureError.CLIENT

    def test_missing_log_signature_fails_closed(self, project):
        """An empty signature is an error, not a warning."""
        inner = project.codec.decode(project.seal(project.entry("intro")), project.read_key)
        with pytest.raises(SignatureError) as excinfo:
            project.codec.verify(
                replace(inner, log_signature=""),
                project.log_keypair.public_key,
                project.project_keypair.public_key,
            )
        assert excinfo.value.which == SignatureError.LOG

    def test_keys_accepted_as_text(self, project):
        """Public keys may be given encoded."""
        inner = project.codec.decode(project.seal(project.entry("intro")), project.read_key)
        project.codec.verify(inner, project.log_public_key, project.project_public_key)

    def test_entry_edit_breaks_signatures(self, project):
        """Signatures cover the whole entry."""
        inner = project.codec.decode(project.seal(project.entry("intro")), project.read_key)
        edited = replace(inner, entry={**inner.entry, "device": "phone"})
        with pytest.raises(SignatureError):
            project.codec.verify(edited, project.log_public_key, project.project_public_key)


class TestParse:
    """Test structural validation of outer envelopes."""

    def test_unversioned_envelope_is_flat(self, flat_project):
        """Envelopes without a version decode as version 1."""
        entry = flat_project.entry("intro")
        data = flat_project.seal(entry).to_dict()
        del data["version"]

        outer = flat_project.codec.parse(data)

        assert outer.version == 1
        inner = flat_project.codec.decode(outer, flat_project.read_key)
        assert inner.entry == entry

    def test_split_codec_reads_flat_envelopes(self, project, flat_project):
        """Both generations decode regardless of the encoding generation."""
        flat = flat_project.seal(flat_project.entry("intro"))
        codec = EnvelopeCodec(crypto=project.crypto)
        assert codec.decode(codec.parse(flat.to_dict()), flat_project.read_key).entry["name"]

    def test_unknown_version(self, project):
        """Unknown versions are rejected."""
        data = project.seal(project.entry("intro")).to_dict()
        data["version"] = 3
        with pytest.raises(ValidationError) as excinfo:
            project.codec.parse(data)
        assert excinfo.value.field == "version"

    def test_missing_field(self, project):
        """Outer envelope fields are required."""
        data = project.seal(project.entry("intro")).to_dict()
        del data["nonce"]
        with pytest.raises(ValidationError) as excinfo:
            project.codec.parse(data)
        assert excinfo.value.field == "nonce"

    def test_short_log_public_key(self, project):
        """Keys have exact lengths."""
        data = project.seal(project.entry("intro")).to_dict()
        data["logPublicKey"] = data["logPublicKey"][:-2]
        with pytest.raises(ValidationError) as excinfo:
            project.codec.parse(data)
        assert excinfo.value.field == "logPublicKey"

    def test_float_index(self, project):
        """Outer envelope indexes are JSON integers."""
        data = project.seal(project.entry("intro")).to_dict()
        data["index"] = 0.0
        with pytest.raises(ValidationError) as excinfo:
            project.codec.parse(data)
        assert excinfo.value.field == "index"

    def test_float_index_constructed(self, project):
        """Envelopes built in code reject float indexes too."""
        outer = project.seal(project.entry("intro"))
        with pytest.raises(ValidationError) as excinfo:
            replace(outer, index=0.0)
        assert excinfo.value.field == "index"

    def test_float_entry_index_not_sealed(self, project):
        """Entries with a float index are rejected before signing."""
        with pytest.raises(ValidationError) as excinfo:
            project.seal(project.entry("intro", index=0.0))
        assert excinfo.value.field == "index"

    def test_split_with_clear_signature(self, project):
        """Split envelopes cannot carry clear signatures."""
        outer = project.seal(project.entry("intro"))
        with pytest.raises(ValidationError, match="no clear signatures"):
            replace(outer, log_signature="00" * 64)

    def test_flat_requires_signatures(self):
        """Flat envelopes cannot omit signatures."""
        with pytest.raises(ValidationError) as excinfo:
            OuterEnvelope(
                discovery_key="aa" * 32,
                log_public_key="bb" * 32,
                index=0,
                nonce="cc" * 24,
                ciphertext="dd" * 20,
                version=1,
            )
        assert excinfo.value.field == "logSignature"


class TestDigests:
    """Test digests and discovery keys."""

    def test_digest_is_hash_of_canonical_entry(self, project, crypto):
        """Entry digests hash the canonical encoding."""
        entry = project.entry("intro")
        expected = crypto.hash(project.codec.canonical(entry)).hex()
        assert project.codec.digest(entry) == expected

    def test_digest_ignores_key_order(self, project):
        """Key order does not change the digest."""
        entry = project.entry("intro")
        reordered = dict(reversed(list(entry.items())))
        assert project.codec.digest(entry) == project.codec.digest(reordered)

    def test_discovery_key_is_one_way(self, project):
        """The discovery key is derived from, and differs from, the replication key."""
        assert project.discovery_key == project.codec.discovery_key(project.replication_key)
        assert project.discovery_key != project.replication_key.hex()

    def test_fingerprint_needs_no_read_key(self, project):
        """Fingerprints depend only on the outer envelope."""
        outer = project.seal(project.entry("intro"))
        assert project.codec.fingerprint(outer) == project.codec.fingerprint(
            project.codec.parse(outer.to_dict())
        )
