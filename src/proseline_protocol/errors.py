"""Error taxonomy for entries, envelopes, chains and invitations.

Every error is local to one envelope or entry. Callers reject the single
item and continue, except for ChainCorruptionError, which marks a log
invalid until it is recovered by hand.
"""

from typing import Optional


class ProtocolError(Exception):
    """Base class for all protocol errors."""


class ValidationError(ProtocolError, ValueError):
    """A structure failed field validation."""

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"{field}: {reason}")


class UnknownKindError(ProtocolError, ValueError):
    """An entry carries an unrecognized type tag."""

    def __init__(self, kind):
        self.kind = kind
        super().__init__(f"Unknown entry kind: {kind!r}")


class DecryptError(ProtocolError):
    """AEAD authentication failed: tampered ciphertext or wrong key."""

    def __init__(self, message: str = "Decryption failed", field: Optional[str] = None):
        self.field = field
        if field:
            message = f"{field}: {message}"
        super().__init__(message)


class SignatureError(ProtocolError):
    """A named signature is missing or does not verify."""

    LOG = "log"
    PROJECT = "project"
    CLIENT = "client"

    def __init__(self, which: str, reason: str = "signature does not verify"):
        self.which = which
        self.reason = reason
        super().__init__(f"{which} signature: {reason}")


class ChainError(ProtocolError):
    """Base class for chain-integrity violations."""


class IndexGapError(ChainError):
    """Envelope index is not the next index of the log."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Expected index {expected}, got {actual}")


class LinkageError(ChainError):
    """Envelope prior does not match the digest of the chain head."""


class DuplicateIndexError(ChainError):
    """Envelope targets an index the log already holds."""

    def __init__(self, index: int, digest: str):
        self.index = index
        self.digest = digest
        super().__init__(f"Index {index} already accepted")


class ConflictError(ChainError):
    """A different entry was offered for an already filled index."""

    def __init__(self, index: int, accepted_digest: str, offered_digest: str):
        self.index = index
        self.accepted_digest = accepted_digest
        self.offered_digest = offered_digest
        super().__init__(
            f"Conflicting entry at index {index}: "
            f"accepted {accepted_digest}, offered {offered_digest}"
        )


class ChainCorruptionError(ChainError):
    """Chain state went backwards; the log needs manual recovery."""
