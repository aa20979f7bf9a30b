"""Envelope encoding, decoding and signature verification.

An envelope carries one signed entry, encrypted under the project read
key. Two generations share one data model and are told apart by the
outer `version` field:

- Version 2 (split): the outer envelope exposes only what replication
  needs (discoveryKey, logPublicKey, index, nonce). Entry and signatures
  are sealed together as the inner envelope.
- Version 1 (flat): signatures and prior travel in clear beside the
  encrypted entry. Outer objects without a version are version 1.

Signatures always cover the canonical encoding of the entry.
"""

from dataclasses import dataclass
from typing import Any, Optional, Union

from proseline_protocol.config import (
    FLAT_ENVELOPE_VERSION,
    SPLIT_ENVELOPE_VERSION,
    Config,
)
from proseline_protocol.crypto import (
    DEFAULT_CRYPTO,
    DEFAULT_ENCODER,
    CanonicalEncoder,
    CryptoProvider,
    KeyPair,
)
from proseline_protocol.errors import DecryptError, SignatureError, ValidationError
from proseline_protocol.primitives import (
    NONCE_BYTES,
    PUBLIC_KEY_BYTES,
    SIGNATURE_BYTES,
    decode_binary,
    encode_binary,
)
from proseline_protocol.schemas import (
    MessageRegistry,
    envelope_schema,
    inner_envelope_schema,
)


Key = Union[bytes, str]


@dataclass(frozen=True)
class InnerEnvelope:
    """A log entry with its signatures."""

    entry: dict
    log_signature: str
    project_signature: str
    client_signature: Optional[str] = None

    @property
    def index(self) -> int:
        return self.entry["index"]

    @property
    def prior(self) -> Optional[str]:
        return self.entry.get("prior")

    def to_dict(self) -> dict:
        data = {
            "entry": self.entry,
            "logSignature": self.log_signature,
            "projectSignature": self.project_signature,
        }
        if self.client_signature is not None:
            data["clientSignature"] = self.client_signature
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "InnerEnvelope":
        return cls(
            entry=data["entry"],
            log_signature=data["logSignature"],
            project_signature=data["projectSignature"],
            client_signature=data.get("clientSignature"),
        )


@dataclass(frozen=True)
class OuterEnvelope:
    """Transport-visible envelope.

    ciphertext holds the sealed inner envelope (version 2) or the sealed
    entry (version 1). The signature fields and prior are only set for
    version 1.
    """

    discovery_key: str
    log_public_key: str
    index: int
    nonce: str
    ciphertext: str
    version: int = SPLIT_ENVELOPE_VERSION
    log_signature: Optional[str] = None
    project_signature: Optional[str] = None
    client_signature: Optional[str] = None
    prior: Optional[str] = None

    def __post_init__(self):
        if self.version not in (FLAT_ENVELOPE_VERSION, SPLIT_ENVELOPE_VERSION):
            raise ValidationError("version", f"unknown envelope version {self.version!r}")
        if isinstance(self.index, bool) or not isinstance(self.index, int):
            raise ValidationError("index", f"must be an integer, got {self.index!r}")
        if self.index < 0:
            raise ValidationError("index", f"must be non-negative, got {self.index}")
        clear = (self.log_signature, self.project_signature, self.client_signature, self.prior)
        if self.version == SPLIT_ENVELOPE_VERSION and any(v is not None for v in clear):
            raise ValidationError("version", "split envelopes carry no clear signatures or prior")
        if self.version == FLAT_ENVELOPE_VERSION:
            if self.log_signature is None:
                raise ValidationError("logSignature", "required in flat envelopes")
            if self.project_signature is None:
                raise ValidationError("projectSignature", "required in flat envelopes")

    @property
    def signatures_in_clear(self) -> bool:
        return self.version == FLAT_ENVELOPE_VERSION

    def to_dict(self) -> dict:
        data = {
            "version": self.version,
            "discoveryKey": self.discovery_key,
            "logPublicKey": self.log_public_key,
            "index": self.index,
        }
        if self.version == SPLIT_ENVELOPE_VERSION:
            data["nonce"] = self.nonce
            data["encryptedInnerEnvelope"] = self.ciphertext
            return data

        data["logSignature"] = self.log_signature
        data["projectSignature"] = self.project_signature
        if self.client_signature is not None:
            data["clientSignature"] = self.client_signature
        if self.prior is not None:
            data["prior"] = self.prior
        data["entry"] = {"ciphertext": self.ciphertext, "nonce": self.nonce}
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "OuterEnvelope":
        version = data.get("version", FLAT_ENVELOPE_VERSION)
        if version == SPLIT_ENVELOPE_VERSION:
            return cls(
                discovery_key=data["discoveryKey"],
                log_public_key=data["logPublicKey"],
                index=data["index"],
                nonce=data["nonce"],
                ciphertext=data["encryptedInnerEnvelope"],
                version=version,
            )
        return cls(
            discovery_key=data["discoveryKey"],
            log_public_key=data["logPublicKey"],
            index=data["index"],
            nonce=data["entry"]["nonce"],
            ciphertext=data["entry"]["ciphertext"],
            version=version,
            log_signature=data["logSignature"],
            project_signature=data["projectSignature"],
            client_signature=data.get("clientSignature"),
            prior=data.get("prior"),
        )


class EnvelopeCodec:
    """Builds, opens and verifies envelopes for one deployment."""

    def __init__(
        self,
        config: Optional[Config] = None,
        crypto: Optional[CryptoProvider] = None,
        encoder: Optional[CanonicalEncoder] = None,
        registry: Optional[MessageRegistry] = None,
    ):
        self.config = config or Config()
        self.encoding = self.config.encoding
        self.crypto = crypto or DEFAULT_CRYPTO
        self.encoder = encoder or DEFAULT_ENCODER
        self.registry = registry or MessageRegistry(self.encoding)
        self.version = self.config.envelope_version
        self._outer_schemas = {
            version: envelope_schema(version, self.encoding)
            for version in (FLAT_ENVELOPE_VERSION, SPLIT_ENVELOPE_VERSION)
        }
        self._inner_schema = inner_envelope_schema(self.encoding)

    # =========================================================================
    # Encoding helpers
    # =========================================================================

    def _text(self, data: bytes) -> str:
        return encode_binary(data, self.encoding)

    def _bytes(self, value: Key, byte_length: Optional[int], field: str) -> bytes:
        if isinstance(value, bytes):
            if byte_length is not None and len(value) != byte_length:
                raise ValidationError(field, f"expected {byte_length} bytes, got {len(value)}")
            return value
        try:
            return decode_binary(value, self.encoding, byte_length)
        except ValueError as e:
            raise ValidationError(field, str(e)) from e

    def canonical(self, entry: dict) -> bytes:
        """Canonical bytes of an entry: the signing and hashing input."""
        return self.encoder.encode(entry)

    def digest(self, entry: dict) -> str:
        """Encoded digest of an entry, as referenced by prior and parents."""
        return self._text(self.crypto.hash(self.canonical(entry)))

    def fingerprint(self, outer: OuterEnvelope) -> str:
        """Encoded digest of an outer envelope, computable without the read key."""
        return self._text(self.crypto.hash(self.encoder.encode(outer.to_dict())))

    def discovery_key(self, replication_key: bytes) -> str:
        return self._text(self.crypto.discovery_key(replication_key))

    def parse(self, data: Any) -> OuterEnvelope:
        """Structurally validate and load an outer envelope dict."""
        if not isinstance(data, dict):
            raise ValidationError("(root)", "envelope must be an object")
        version = data.get("version", FLAT_ENVELOPE_VERSION)
        schema = self._outer_schemas.get(version) if isinstance(version, int) else None
        if schema is None:
            raise ValidationError("version", f"unknown envelope version {version!r}")
        self.registry.validator.check(schema, data)
        return OuterEnvelope.from_dict(data)

    # =========================================================================
    # Codec operations
    # =========================================================================

    def encode(
        self,
        message: dict,
        log_keypair: KeyPair,
        project_keypair: KeyPair,
        read_key: bytes,
        nonce: Optional[bytes] = None,
        client_keypair: Optional[KeyPair] = None,
    ) -> OuterEnvelope:
        """Sign and encrypt an entry.

        Args:
            message: Entry to send; validated before signing
            log_keypair: Key pair of the log the entry belongs to
            project_keypair: Project write key pair
            read_key: Project read key
            nonce: Nonce for the read key, fresh if not given; never reuse one
            client_keypair: Optional client key pair

        Returns:
            Outer envelope in the configured generation
        """
        self.registry.validate_entry(message)
        payload = self.canonical(message)

        log_signature = self._text(self.crypto.sign(payload, log_keypair.secret_key))
        project_signature = self._text(self.crypto.sign(payload, project_keypair.secret_key))
        client_signature = None
        if client_keypair is not None:
            client_signature = self._text(self.crypto.sign(payload, client_keypair.secret_key))

        if nonce is None:
            nonce = self.crypto.nonce()

        common = dict(
            discovery_key=message["discoveryKey"],
            log_public_key=self._text(log_keypair.public_key),
            index=message["index"],
            nonce=self._text(nonce),
        )

        if self.version == SPLIT_ENVELOPE_VERSION:
            inner = InnerEnvelope(
                entry=message,
                log_signature=log_signature,
                project_signature=project_signature,
                client_signature=client_signature,
            )
            sealed = self.crypto.encrypt(self.encoder.encode(inner.to_dict()), nonce, read_key)
            return OuterEnvelope(ciphertext=self._text(sealed), version=self.version, **common)

        sealed = self.crypto.encrypt(payload, nonce, read_key)
        return OuterEnvelope(
            ciphertext=self._text(sealed),
            version=self.version,
            log_signature=log_signature,
            project_signature=project_signature,
            client_signature=client_signature,
            prior=message.get("prior"),
            **common,
        )

    def decode(self, outer: OuterEnvelope, read_key: bytes) -> InnerEnvelope:
        """Decrypt an outer envelope.

        Raises:
            DecryptError: If AEAD authentication fails or the plaintext does
                not parse
            ValidationError: If the clear fields disagree with the sealed entry
        """
        nonce = self._bytes(outer.nonce, NONCE_BYTES, "nonce")
        ciphertext = self._bytes(outer.ciphertext, None, "ciphertext")
        plaintext = self.crypto.decrypt(ciphertext, nonce, read_key)

        try:
            value = self.encoder.decode(plaintext)
        except ValueError as e:
            raise DecryptError(f"Plaintext does not parse: {e}") from e

        if outer.version == SPLIT_ENVELOPE_VERSION:
            self.registry.validator.check(self._inner_schema, value)
            inner = InnerEnvelope.from_dict(value)
        else:
            if not isinstance(value, dict):
                raise ValidationError("entry", "sealed entry must be an object")
            inner = InnerEnvelope(
                entry=value,
                log_signature=outer.log_signature,
                project_signature=outer.project_signature,
                client_signature=outer.client_signature,
            )

        entry = inner.entry
        if entry.get("index") != outer.index:
            raise ValidationError(
                "index", f"envelope index {outer.index} != entry index {entry.get('index')!r}"
            )
        if entry.get("discoveryKey") != outer.discovery_key:
            raise ValidationError("discoveryKey", "envelope and entry discovery keys differ")
        if outer.version == FLAT_ENVELOPE_VERSION and outer.prior != entry.get("prior"):
            raise ValidationError("prior", "envelope and entry prior differ")
        return inner

    def _check_signature(
        self,
        payload: bytes,
        signature: Optional[str],
        public_key: Key,
        which: str,
    ) -> None:
        if not signature:
            raise SignatureError(which, "missing")
        try:
            signature_bytes = decode_binary(signature, self.encoding, SIGNATURE_BYTES)
        except ValueError:
            raise SignatureError(which, "malformed") from None
        try:
            key = self._bytes(public_key, PUBLIC_KEY_BYTES, f"{which}PublicKey")
        except ValidationError:
            raise SignatureError(which, "malformed public key") from None
        if not self.crypto.verify(payload, signature_bytes, key):
            raise SignatureError(which)

    def verify(
        self,
        inner: InnerEnvelope,
        log_public_key: Key,
        project_public_key: Key,
        client_public_key: Optional[Key] = None,
    ) -> None:
        """Check each signature over the canonical entry.

        The client signature is required only when a client key is given.

        Raises:
            SignatureError: Naming the first signature that is missing or bad
        """
        payload = self.canonical(inner.entry)
        self._check_signature(payload, inner.log_signature, log_public_key, SignatureError.LOG)
        self._check_signature(
            payload, inner.project_signature, project_public_key, SignatureError.PROJECT
        )
        if client_public_key is not None:
            self._check_signature(
                payload, inner.client_signature, client_public_key, SignatureError.CLIENT
            )

    def open(
        self,
        outer: OuterEnvelope,
        read_key: bytes,
        project_public_key: Key,
        client_public_key: Optional[Key] = None,
    ) -> InnerEnvelope:
        """Decode, validate the entry, and verify against the envelope's log key."""
        inner = self.decode(outer, read_key)
        self.registry.validate_entry(inner.entry)
        self.verify(inner, outer.log_public_key, project_public_key, client_public_key)
        return inner
