"""Shared fixtures: project keys, sample entries and signed logs."""

from datetime import datetime, timezone

import pytest

from proseline_protocol.config import Config
from proseline_protocol.crypto import SodiumCrypto
from proseline_protocol.envelope import EnvelopeCodec


TIMESTAMP = "2019-03-14T15:09:26.535Z"

DIGEST_A = "aa" * 32
DIGEST_B = "bb" * 32
DIGEST_C = "cc" * 32

# Kind-specific fields of one valid entry per kind
SAMPLE_FIELDS = {
    "draft": {
        "parents": [DIGEST_A],
        "text": {"type": "doc", "content": [{"type": "paragraph"}]},
    },
    "mark": {
        "identifier": "0a1b2c3d",
        "name": "final",
        "draft": DIGEST_A,
    },
    "note": {
        "draft": DIGEST_A,
        "range": {"start": 0, "end": 12},
        "text": "Strong opening.",
    },
    "reply": {
        "draft": DIGEST_A,
        "parent": DIGEST_B,
        "text": "Agreed.",
    },
    "correction": {
        "note": DIGEST_B,
        "text": "Strong opening line.",
    },
    "intro": {
        "name": "Kyle E. Mitchell",
        "device": "laptop",
    },
}


class Project:
    """Keys for one project and one log, with entry and envelope builders."""

    def __init__(self, config: Config = None, crypto=None):
        self.config = config or Config()
        self.crypto = crypto or SodiumCrypto()
        self.codec = EnvelopeCodec(self.config, self.crypto)
        self.replication_key = self.crypto.replication_key()
        self.discovery_key = self.codec.discovery_key(self.replication_key)
        self.read_key = self.crypto.encryption_key()
        self.project_keypair = self.crypto.keypair()
        self.log_keypair = self.crypto.keypair()
        self.client_keypair = self.crypto.keypair()

    @property
    def log_public_key(self) -> str:
        return self.codec._text(self.log_keypair.public_key)

    @property
    def project_public_key(self) -> str:
        return self.codec._text(self.project_keypair.public_key)

    def entry(self, kind: str, index: int = 0, prior: str = None, **fields) -> dict:
        entry = {
            "type": kind,
            "index": index,
            "discoveryKey": self.discovery_key,
            "timestamp": TIMESTAMP,
        }
        entry.update(SAMPLE_FIELDS[kind])
        if prior is not None:
            entry["prior"] = prior
        entry.update(fields)
        return entry

    def seal(self, entry: dict, log_keypair=None, **kwargs):
        return self.codec.encode(
            entry,
            log_keypair or self.log_keypair,
            self.project_keypair,
            self.read_key,
            **kwargs,
        )

    def log(self, length: int, log_keypair=None, kind: str = "intro"):
        """Entries and envelopes of a correctly linked log."""
        entries, envelopes = [], []
        prior = None
        for index in range(length):
            entry = self.entry(kind, index, prior)
            entries.append(entry)
            envelopes.append(self.seal(entry, log_keypair))
            prior = self.codec.digest(entry)
        return entries, envelopes


@pytest.fixture
def crypto():
    return SodiumCrypto()


@pytest.fixture
def project():
    return Project()


@pytest.fixture
def flat_project():
    return Project(Config(signatures_in_clear=True))


@pytest.fixture
def now():
    return datetime.now(timezone.utc).isoformat()
