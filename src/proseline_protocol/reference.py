"""References point to log entries by log public key and index.

Peers exchange references to offer and request entries. A reference has
no payload.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class Reference:
    """Pointer to one entry of one log."""

    log_public_key: str
    index: int

    def __post_init__(self):
        if isinstance(self.index, bool) or not isinstance(self.index, int):
            raise ValueError(f"Index must be an integer, got {self.index!r}")
        if self.index < 0:
            raise ValueError(f"Index must be non-negative, got {self.index}")

    def to_dict(self) -> dict:
        return {"logPublicKey": self.log_public_key, "index": self.index}

    @classmethod
    def from_dict(cls, data: dict) -> "Reference":
        return cls(log_public_key=data["logPublicKey"], index=data["index"])


def make_reference(log_public_key: str, index: int) -> Reference:
    return Reference(log_public_key, index)
