"""Invitation encoding and decoding.

An invitation hands another device the keys to a project:
- replication key: find and exchange the project's encrypted entries
- read key: decrypt entries
- write seed (optional): sign new entries as an author
- title (optional): human-readable project name

Each secret is sealed separately under the invitation encryption key
with its own nonce, so one corrupt field never hides the others.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from proseline_protocol.config import Config
from proseline_protocol.crypto import DEFAULT_CRYPTO, CryptoProvider
from proseline_protocol.errors import DecryptError, ValidationError
from proseline_protocol.primitives import (
    ENCRYPTION_KEY_BYTES,
    NONCE_BYTES,
    PUBLIC_KEY_BYTES,
    REPLICATION_KEY_BYTES,
    SIGNING_SEED_BYTES,
    decode_binary,
    encode_binary,
)
from proseline_protocol.schemas import JSONSchemaValidator, StructuralValidator, invitation_schema


@dataclass(frozen=True)
class SealedField:
    """AEAD ciphertext and the nonce it was sealed with."""
    ciphertext: str
    nonce: str


@dataclass(frozen=True)
class Invitation:
    """Encoded invitation. The replication key is either clear or sealed."""

    read_key: SealedField
    replication_key: Optional[str] = None
    sealed_replication_key: Optional[SealedField] = None
    project_public_key: Optional[str] = None
    write_seed: Optional[SealedField] = None
    title: Optional[SealedField] = None

    def __post_init__(self):
        if (self.replication_key is None) == (self.sealed_replication_key is None):
            raise ValidationError(
                "replicationKey", "exactly one of clear or sealed replication key is required"
            )

    def to_dict(self) -> dict:
        data = {}
        if self.replication_key is not None:
            data["replicationKey"] = self.replication_key
        if self.sealed_replication_key is not None:
            data["replicationKeyCiphertext"] = self.sealed_replication_key.ciphertext
            data["replicationKeyNonce"] = self.sealed_replication_key.nonce
        if self.project_public_key is not None:
            data["projectPublicKey"] = self.project_public_key
        data["readKeyCiphertext"] = self.read_key.ciphertext
        data["readKeyNonce"] = self.read_key.nonce
        if self.write_seed is not None:
            data["writeSeedCiphertext"] = self.write_seed.ciphertext
            data["writeSeedNonce"] = self.write_seed.nonce
        if self.title is not None:
            data["titleCiphertext"] = self.title.ciphertext
            data["titleNonce"] = self.title.nonce
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Invitation":
        def sealed(name: str) -> Optional[SealedField]:
            if f"{name}Ciphertext" not in data:
                return None
            return SealedField(data[f"{name}Ciphertext"], data[f"{name}Nonce"])

        return cls(
            read_key=sealed("readKey"),
            replication_key=data.get("replicationKey"),
            sealed_replication_key=sealed("replicationKey"),
            project_public_key=data.get("projectPublicKey"),
            write_seed=sealed("writeSeed"),
            title=sealed("title"),
        )


@dataclass
class OpenedInvitation:
    """Decrypted invitation. failures maps optional fields that did not open."""

    replication_key: bytes
    read_key: bytes
    write_seed: Optional[bytes] = None
    title: Optional[str] = None
    project_public_key: Optional[bytes] = None
    failures: Dict[str, DecryptError] = field(default_factory=dict)


class InvitationCodec:
    """Creates and opens invitations for one deployment."""

    def __init__(
        self,
        config: Optional[Config] = None,
        crypto: Optional[CryptoProvider] = None,
        validator: Optional[StructuralValidator] = None,
    ):
        self.config = config or Config()
        self.encoding = self.config.encoding
        self.crypto = crypto or DEFAULT_CRYPTO
        self.validator = validator or JSONSchemaValidator()
        self._schema = invitation_schema(self.encoding)

    def _seal(self, plaintext: bytes, key: bytes, used_nonces: set) -> SealedField:
        nonce = self.crypto.nonce()
        while nonce in used_nonces:
            nonce = self.crypto.nonce()  # pragma: no cover
        used_nonces.add(nonce)
        ciphertext = self.crypto.encrypt(plaintext, nonce, key)
        return SealedField(
            ciphertext=encode_binary(ciphertext, self.encoding),
            nonce=encode_binary(nonce, self.encoding),
        )

    def _unseal(self, sealed: SealedField, key: bytes, name: str) -> bytes:
        try:
            ciphertext = decode_binary(sealed.ciphertext, self.encoding)
            nonce = decode_binary(sealed.nonce, self.encoding, NONCE_BYTES)
        except ValueError as e:
            raise DecryptError(f"Malformed sealed field: {e}", field=name) from e
        try:
            return self.crypto.decrypt(ciphertext, nonce, key)
        except DecryptError as e:
            raise DecryptError(str(e), field=name) from e

    def create(
        self,
        replication_key: bytes,
        read_key: bytes,
        encryption_key: bytes,
        *,
        write_seed: Optional[bytes] = None,
        title: Optional[str] = None,
        project_public_key: Optional[bytes] = None,
    ) -> Invitation:
        """Seal project keys for another device.

        Args:
            replication_key: Project replication key
            read_key: Project read key
            encryption_key: Key shared with the invited device
            write_seed: Optional signing seed granting authorship
            title: Optional project title
            project_public_key: Optional project public key, sent in clear

        Returns:
            Invitation with one fresh nonce per sealed field
        """
        expected = {
            "replicationKey": (replication_key, REPLICATION_KEY_BYTES),
            "readKey": (read_key, ENCRYPTION_KEY_BYTES),
            "writeSeed": (write_seed, SIGNING_SEED_BYTES),
            "projectPublicKey": (project_public_key, PUBLIC_KEY_BYTES),
        }
        for name, (value, size) in expected.items():
            if value is not None and len(value) != size:
                raise ValidationError(name, f"expected {size} bytes, got {len(value)}")
        if title is not None and not title:
            raise ValidationError("title", "must not be empty")

        used_nonces = set()
        clear_replication_key = None
        sealed_replication_key = None
        if self.config.encrypt_replication_key:
            sealed_replication_key = self._seal(replication_key, encryption_key, used_nonces)
        else:
            clear_replication_key = encode_binary(replication_key, self.encoding)

        return Invitation(
            read_key=self._seal(read_key, encryption_key, used_nonces),
            replication_key=clear_replication_key,
            sealed_replication_key=sealed_replication_key,
            project_public_key=(
                encode_binary(project_public_key, self.encoding)
                if project_public_key is not None else None
            ),
            write_seed=(
                self._seal(write_seed, encryption_key, used_nonces)
                if write_seed is not None else None
            ),
            title=(
                self._seal(title.encode("utf-8"), encryption_key, used_nonces)
                if title is not None else None
            ),
        )

    def parse(self, data: Any) -> Invitation:
        """Structurally validate and load an invitation dict."""
        self.validator.check(self._schema, data)
        return Invitation.from_dict(data)

    def open(self, invitation: Invitation, encryption_key: bytes) -> OpenedInvitation:
        """Decrypt each field of an invitation independently.

        Raises:
            DecryptError: If the read key or a sealed replication key does
                not open; field names which one
        """
        if invitation.sealed_replication_key is not None:
            replication_key = self._unseal(
                invitation.sealed_replication_key, encryption_key, "replicationKey"
            )
        else:
            try:
                replication_key = decode_binary(
                    invitation.replication_key, self.encoding, REPLICATION_KEY_BYTES
                )
            except ValueError as e:
                raise ValidationError("replicationKey", str(e)) from e

        read_key = self._unseal(invitation.read_key, encryption_key, "readKey")
        opened = OpenedInvitation(replication_key=replication_key, read_key=read_key)

        if invitation.project_public_key is not None:
            try:
                opened.project_public_key = decode_binary(
                    invitation.project_public_key, self.encoding, PUBLIC_KEY_BYTES
                )
            except ValueError as e:
                raise ValidationError("projectPublicKey", str(e)) from e

        if invitation.write_seed is not None:
            try:
                opened.write_seed = self._unseal(invitation.write_seed, encryption_key, "writeSeed")
            except DecryptError as e:
                opened.failures["writeSeed"] = e

        if invitation.title is not None:
            try:
                opened.title = self._unseal(
                    invitation.title, encryption_key, "title"
                ).decode("utf-8")
            except DecryptError as e:
                opened.failures["title"] = e
            except UnicodeDecodeError as e:
                opened.failures["title"] = DecryptError(f"Title is not UTF-8: {e}", field="title")

        return opened


def create_invitation(
    replication_key: bytes,
    read_key: bytes,
    encryption_key: bytes,
    *,
    write_seed: Optional[bytes] = None,
    title: Optional[str] = None,
    project_public_key: Optional[bytes] = None,
    config: Optional[Config] = None,
    crypto: Optional[CryptoProvider] = None,
) -> Invitation:
    return InvitationCodec(config, crypto).create(
        replication_key,
        read_key,
        encryption_key,
        write_seed=write_seed,
        title=title,
        project_public_key=project_public_key,
    )


def open_invitation(
    invitation: Invitation,
    encryption_key: bytes,
    config: Optional[Config] = None,
    crypto: Optional[CryptoProvider] = None,
) -> OpenedInvitation:
    return InvitationCodec(config, crypto).open(invitation, encryption_key)
