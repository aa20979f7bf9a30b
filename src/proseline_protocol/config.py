"""Configuration loading and management."""

from dataclasses import dataclass
from pathlib import Path

try:
    import tomli
except ImportError:  # pragma: no cover
    import tomllib as tomli  # Python 3.11+

from proseline_protocol.primitives import Encoding


# Envelope generations
FLAT_ENVELOPE_VERSION = 1
SPLIT_ENVELOPE_VERSION = 2


@dataclass
class Config:
    """Protocol deployment settings."""

    # Binary fields serialize as hex or base64, one choice per deployment
    encoding: Encoding = Encoding.HEX

    # Flat envelopes carry signatures beside the ciphertext; split
    # envelopes seal them inside it
    signatures_in_clear: bool = False

    # Seal the replication key in invitations instead of sending it in clear
    encrypt_replication_key: bool = False

    # Out-of-order entries buffered per log before rejecting
    max_pending_entries: int = 1024

    log_level: str = "INFO"

    @property
    def envelope_version(self) -> int:
        """Envelope generation used for encoding."""
        if self.signatures_in_clear:
            return FLAT_ENVELOPE_VERSION
        return SPLIT_ENVELOPE_VERSION


DEFAULT_CONFIG = Config()


def load_config(path: Path) -> Config:
    """Load configuration from TOML file.

    Args:
        path: Path to config file

    Returns:
        Loaded configuration, merged with defaults
    """
    if not path.exists():
        return Config()

    with open(path, "rb") as f:
        data = tomli.load(f)

    encoding = data.get("encoding", {})
    envelope = data.get("envelope", {})
    invitation = data.get("invitation", {})
    chain = data.get("chain", {})
    logging_section = data.get("logging", {})

    max_pending = chain.get("max_pending_entries", 1024)
    if max_pending < 0:
        raise ValueError(f"max_pending_entries must be non-negative, got {max_pending}")

    return Config(
        encoding=Encoding(encoding.get("binary", "hex")),
        signatures_in_clear=envelope.get("signatures_in_clear", False),
        encrypt_replication_key=invitation.get("encrypt_replication_key", False),
        max_pending_entries=max_pending,
        log_level=logging_section.get("level", "INFO").upper(),
    )
