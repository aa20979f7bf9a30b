"""Cryptographic capabilities consumed by the codecs.

The codecs never call a cryptographic library directly. They take a
CryptoProvider for signing, AEAD encryption and hashing, and a
CanonicalEncoder for the deterministic bytes that get signed and hashed.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import nacl.encoding
import nacl.exceptions
import nacl.hash
import nacl.secret
import nacl.signing
import nacl.utils

from proseline_protocol.errors import DecryptError
from proseline_protocol.primitives import (
    DIGEST_BYTES,
    ENCRYPTION_KEY_BYTES,
    MAC_BYTES,
    NONCE_BYTES,
    PUBLIC_KEY_BYTES,
    REPLICATION_KEY_BYTES,
    SIGNATURE_BYTES,
    SIGNING_SEED_BYTES,
)


@dataclass(frozen=True)
class KeyPair:
    """Signing key pair. secret_key is the 32-byte seed."""
    public_key: bytes
    secret_key: bytes

    def __repr__(self) -> str:
        return f"KeyPair(public_key={self.public_key.hex()!r})"


class CanonicalEncoder(ABC):
    """Deterministic serialization used as signing and hashing input."""

    @abstractmethod
    def encode(self, value: Any) -> bytes:
        """Serialize value to canonical bytes."""
        pass  # pragma: no cover

    @abstractmethod
    def decode(self, data: bytes) -> Any:
        """Parse canonical bytes back to a value."""
        pass  # pragma: no cover


class CanonicalJSON(CanonicalEncoder):
    """JSON with sorted keys and no insignificant whitespace."""

    def encode(self, value: Any) -> bytes:
        return json.dumps(
            value,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        ).encode("utf-8")

    def decode(self, data: bytes) -> Any:
        return json.loads(data.decode("utf-8"))


class CryptoProvider(ABC):
    """Signing, AEAD encryption and hashing primitives."""

    public_key_bytes = PUBLIC_KEY_BYTES
    signature_bytes = SIGNATURE_BYTES
    nonce_bytes = NONCE_BYTES
    digest_bytes = DIGEST_BYTES
    encryption_key_bytes = ENCRYPTION_KEY_BYTES
    mac_bytes = MAC_BYTES
    signing_seed_bytes = SIGNING_SEED_BYTES
    replication_key_bytes = REPLICATION_KEY_BYTES

    @abstractmethod
    def random(self, size: int) -> bytes:
        """Return size cryptographically random bytes."""
        pass  # pragma: no cover

    @abstractmethod
    def keypair(self, seed: bytes = None) -> KeyPair:
        """Generate a signing key pair, deterministically if seed is given."""
        pass  # pragma: no cover

    @abstractmethod
    def sign(self, message: bytes, secret_key: bytes) -> bytes:
        """Sign message, returning a detached signature."""
        pass  # pragma: no cover

    @abstractmethod
    def verify(self, message: bytes, signature: bytes, public_key: bytes) -> bool:
        """Check a detached signature."""
        pass  # pragma: no cover

    @abstractmethod
    def encrypt(self, plaintext: bytes, nonce: bytes, key: bytes) -> bytes:
        """AEAD-encrypt plaintext. Output is len(plaintext) + mac_bytes long."""
        pass  # pragma: no cover

    @abstractmethod
    def decrypt(self, ciphertext: bytes, nonce: bytes, key: bytes) -> bytes:
        """AEAD-decrypt ciphertext.

        Raises:
            DecryptError: If authentication fails
        """
        pass  # pragma: no cover

    @abstractmethod
    def hash(self, data: bytes) -> bytes:
        """Return a digest_bytes long digest of data."""
        pass  # pragma: no cover

    def nonce(self) -> bytes:
        return self.random(self.nonce_bytes)

    def encryption_key(self) -> bytes:
        return self.random(self.encryption_key_bytes)

    def replication_key(self) -> bytes:
        return self.random(self.replication_key_bytes)

    def discovery_key(self, replication_key: bytes) -> bytes:
        """One-way derivation of a replication key."""
        if len(replication_key) != self.replication_key_bytes:
            raise ValueError(
                f"Replication key must be {self.replication_key_bytes} bytes, "
                f"got {len(replication_key)}"
            )
        return self.hash(replication_key)


class SodiumCrypto(CryptoProvider):
    """libsodium primitives via PyNaCl.

    - Signatures: Ed25519
    - AEAD: XSalsa20-Poly1305 secretbox
    - Hash: BLAKE2b, 32-byte output
    """

    def random(self, size: int) -> bytes:
        return nacl.utils.random(size)

    def keypair(self, seed: bytes = None) -> KeyPair:
        if seed is None:
            signing_key = nacl.signing.SigningKey.generate()
        else:
            if len(seed) != self.signing_seed_bytes:
                raise ValueError(
                    f"Seed must be {self.signing_seed_bytes} bytes, got {len(seed)}"
                )
            signing_key = nacl.signing.SigningKey(seed)
        return KeyPair(
            public_key=signing_key.verify_key.encode(),
            secret_key=signing_key.encode(),
        )

    def sign(self, message: bytes, secret_key: bytes) -> bytes:
        return nacl.signing.SigningKey(secret_key).sign(message).signature

    def verify(self, message: bytes, signature: bytes, public_key: bytes) -> bool:
        try:
            nacl.signing.VerifyKey(public_key).verify(message, signature)
        except (nacl.exceptions.BadSignatureError, ValueError):
            return False
        return True

    def encrypt(self, plaintext: bytes, nonce: bytes, key: bytes) -> bytes:
        return nacl.secret.SecretBox(key).encrypt(plaintext, nonce).ciphertext

    def decrypt(self, ciphertext: bytes, nonce: bytes, key: bytes) -> bytes:
        try:
            return nacl.secret.SecretBox(key).decrypt(ciphertext, nonce)
        except nacl.exceptions.CryptoError as e:
            raise DecryptError(str(e) or "Decryption failed") from e

    def hash(self, data: bytes) -> bytes:
        return nacl.hash.blake2b(
            data,
            digest_size=self.digest_bytes,
            encoder=nacl.encoding.RawEncoder,
        )


DEFAULT_CRYPTO = SodiumCrypto()
DEFAULT_ENCODER = CanonicalJSON()
