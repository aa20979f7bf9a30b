"""Chain validation for append-only logs.

Each log moves Empty -> HasHead(index, digest) -> HasHead(...). An entry
is accepted only at head.index + 1 with prior equal to the head digest.

ChainValidator is pure: it judges one envelope against a head. LogChain
holds the per-log state (head, accepted digests, out-of-order buffer)
behind one lock, so a log has a single writer while different logs
proceed independently. ProjectReplica keeps one LogChain per log of a
project and tracks the draft DAG across them.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from proseline_protocol.envelope import EnvelopeCodec, Key, OuterEnvelope
from proseline_protocol.errors import (
    ChainCorruptionError,
    ConflictError,
    DuplicateIndexError,
    IndexGapError,
    LinkageError,
    ProtocolError,
    ValidationError,
)
from proseline_protocol.reference import Reference

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChainHead:
    """Index and digest of the most recently accepted entry."""
    index: int
    digest: str


@dataclass(frozen=True)
class Accepted:
    """An envelope the chain accepted. entry is None in forward-only mode."""
    head: ChainHead
    envelope: OuterEnvelope
    entry: Optional[dict] = None


@dataclass
class AcceptResult:
    """Outcome of offering an envelope that may arrive out of order."""
    buffered: bool
    accepted: List[Accepted] = field(default_factory=list)


def expected_index(head: Optional[ChainHead]) -> int:
    return 0 if head is None else head.index + 1


class ChainValidator:
    """Judges envelopes against a chain head.

    With a read key, envelopes are decrypted, validated and verified, and
    heads carry entry digests. Without one the validator is forward-only:
    it checks index continuity and uses envelope fingerprints as digests,
    which is all a replication-only peer can do.
    """

    def __init__(
        self,
        codec: EnvelopeCodec,
        read_key: Optional[bytes] = None,
        project_public_key: Optional[Key] = None,
        client_public_key: Optional[Key] = None,
    ):
        if read_key is not None and project_public_key is None:
            raise ValueError("A project public key is required to verify opened envelopes")
        self.codec = codec
        self.read_key = read_key
        self.project_public_key = project_public_key
        self.client_public_key = client_public_key

    @property
    def forward_only(self) -> bool:
        return self.read_key is None

    def _open(self, envelope: OuterEnvelope):
        if self.forward_only:
            return self.codec.fingerprint(envelope), None
        inner = self.codec.open(
            envelope,
            self.read_key,
            self.project_public_key,
            self.client_public_key,
        )
        return self.codec.digest(inner.entry), inner.entry

    def accept_next(self, envelope: OuterEnvelope, head: Optional[ChainHead]) -> Accepted:
        """Accept envelope as the successor of head.

        Raises:
            IndexGapError: If the envelope lies beyond the next index
            DuplicateIndexError: If the envelope targets a filled index;
                carries the offered digest for conflict checks
            LinkageError: If prior does not link to head
            DecryptError, SignatureError, ValidationError: From the codec
        """
        expected = expected_index(head)
        if envelope.index > expected:
            raise IndexGapError(expected, envelope.index)

        digest, entry = self._open(envelope)
        if envelope.index < expected:
            raise DuplicateIndexError(envelope.index, digest)

        if entry is not None:
            prior = entry.get("prior")
        elif envelope.signatures_in_clear:
            prior = envelope.prior
        else:
            prior = None

        if envelope.index == 0:
            if prior is not None:
                raise LinkageError("Entry at index 0 must not have a prior")
        elif entry is not None and prior != head.digest:
            raise LinkageError(
                f"Entry {envelope.index} prior {prior} does not match head digest {head.digest}"
            )

        return Accepted(ChainHead(envelope.index, digest), envelope, entry)


class LogChain:
    """State of one log: head, accepted digests and out-of-order buffer."""

    def __init__(self, log_public_key: str, validator: ChainValidator, max_pending: int = 1024):
        self.log_public_key = log_public_key
        self.validator = validator
        self.max_pending = max_pending
        self._lock = threading.Lock()
        self._head: Optional[ChainHead] = None
        self._digests: Dict[int, str] = {}
        self._pending: Dict[int, List[OuterEnvelope]] = {}
        self._highest_seen = -1
        self._invalid = False

    @property
    def head(self) -> Optional[ChainHead]:
        with self._lock:
            return self._head

    @property
    def invalid(self) -> bool:
        return self._invalid

    def digest_at(self, index: int) -> Optional[str]:
        with self._lock:
            return self._digests.get(index)

    def pending_indexes(self) -> List[int]:
        with self._lock:
            return sorted(self._pending)

    def _pending_count(self) -> int:
        return sum(len(candidates) for candidates in self._pending.values())

    def _check(self, envelope: OuterEnvelope) -> None:
        if self._invalid:
            raise ChainCorruptionError(f"Log {self.log_public_key} is marked invalid")
        if envelope.log_public_key != self.log_public_key:
            raise ValidationError(
                "logPublicKey",
                f"envelope belongs to log {envelope.log_public_key}, not {self.log_public_key}",
            )

    def _commit(self, head: ChainHead) -> None:
        if head.index <= self._highest_seen:
            self._invalid = True
            logger.error(
                "Log %s head moved from %d to %d; marking invalid",
                self.log_public_key, self._highest_seen, head.index,
            )
            raise ChainCorruptionError(
                f"Head index {head.index} is not above observed index {self._highest_seen}"
            )
        self._head = head
        self._digests[head.index] = head.digest
        self._highest_seen = head.index

    def _accept_locked(self, envelope: OuterEnvelope) -> Optional[Accepted]:
        try:
            accepted = self.validator.accept_next(envelope, self._head)
        except DuplicateIndexError as e:
            existing = self._digests.get(e.index)
            if existing is None or existing == e.digest:
                logger.debug("Log %s already holds index %d", self.log_public_key, e.index)
                return None
            raise ConflictError(e.index, existing, e.digest) from e
        self._commit(accepted.head)
        return accepted

    def _drain_locked(self) -> List[Accepted]:
        drained = []
        while True:
            candidates = self._pending.pop(expected_index(self._head), None)
            if not candidates:
                break
            for position, candidate in enumerate(candidates):
                try:
                    accepted = self._accept_locked(candidate)
                except ChainCorruptionError:
                    raise
                except ProtocolError as e:
                    logger.warning(
                        "Dropping buffered entry %d of log %s: %s",
                        candidate.index, self.log_public_key, e,
                    )
                    continue
                if accepted is not None:
                    drained.append(accepted)
                if len(candidates) > position + 1:
                    logger.warning(
                        "Discarding %d alternative entries at index %d of log %s",
                        len(candidates) - position - 1, candidate.index, self.log_public_key,
                    )
                break
            else:
                break
        return drained

    def accept_next(self, envelope: OuterEnvelope) -> ChainHead:
        """Append envelope at the next index and return the new head.

        Resubmitting an accepted envelope is a no-op. Buffered successors
        are drained once the envelope lands.

        Raises:
            ConflictError: If a different entry already fills the index
            IndexGapError, LinkageError: On chain violations
            ChainCorruptionError: If the log is marked invalid
        """
        with self._lock:
            self._check(envelope)
            if self._accept_locked(envelope) is not None:
                self._drain_locked()
            return self._head

    def accept_out_of_order(self, envelope: OuterEnvelope) -> AcceptResult:
        """Accept envelope, buffering it if its predecessor is missing.

        Returns:
            buffered=True if the envelope waits for a predecessor, else the
            envelopes accepted by this call in index order
        """
        with self._lock:
            self._check(envelope)
            expected = expected_index(self._head)
            if envelope.index > expected:
                candidates = self._pending.setdefault(envelope.index, [])
                if envelope not in candidates:
                    if self._pending_count() >= self.max_pending:
                        if not candidates:
                            del self._pending[envelope.index]
                        raise IndexGapError(expected, envelope.index)
                    candidates.append(envelope)
                    logger.debug(
                        "Buffered entry %d of log %s awaiting %d",
                        envelope.index, self.log_public_key, expected,
                    )
                return AcceptResult(buffered=True)

            accepted = self._accept_locked(envelope)
            if accepted is None:
                return AcceptResult(buffered=False)
            return AcceptResult(buffered=False, accepted=[accepted] + self._drain_locked())

    def restore(self, head: Optional[ChainHead]) -> None:
        """Load a head persisted by storage.

        Raises:
            ChainCorruptionError: If head is behind an index already observed,
                or at that index with a different digest;
                the log is marked invalid
        """
        with self._lock:
            index = -1 if head is None else head.index
            if index < self._highest_seen:
                self._invalid = True
                logger.error(
                    "Log %s restored head %d behind observed %d; marking invalid",
                    self.log_public_key, index, self._highest_seen,
                )
                raise ChainCorruptionError(
                    f"Restored head index {index} is behind observed index {self._highest_seen}"
                )
            if head is not None and head.index == self._highest_seen:
                observed = self._digests.get(head.index)
                if observed is not None and observed != head.digest:
                    self._invalid = True
                    logger.error(
                        "Log %s restored digest at index %d differs from observed; marking invalid",
                        self.log_public_key, head.index,
                    )
                    raise ChainCorruptionError(
                        f"Restored head at index {head.index} has digest {head.digest}, "
                        f"observed {observed}"
                    )
            if head is not None:
                self._head = head
                self._digests[head.index] = head.digest
                self._highest_seen = head.index
                for stale in [i for i in self._pending if i <= head.index]:
                    del self._pending[stale]

    def recover(self, head: Optional[ChainHead], digests: Optional[Dict[int, str]] = None) -> None:
        """Reset the log to a manually verified head, clearing the invalid mark."""
        with self._lock:
            self._head = head
            self._digests = dict(digests or {})
            if head is not None:
                self._digests[head.index] = head.digest
            self._pending.clear()
            self._highest_seen = -1 if head is None else head.index
            self._invalid = False
            logger.info("Log %s recovered at head %s", self.log_public_key, head)


class DraftGraph:
    """Parent links between drafts, across the logs of a project.

    A draft whose parents are not all known is pending, not rejected.
    It resolves once its last missing parent arrives.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._resolved = set()
        self._waiting: Dict[str, set] = {}
        self._dependents: Dict[str, set] = {}

    def _resolve_locked(self, digest: str) -> None:
        stack = [digest]
        while stack:
            current = stack.pop()
            if current in self._resolved:
                continue
            self._resolved.add(current)
            self._waiting.pop(current, None)
            for child in self._dependents.pop(current, ()):
                missing = self._waiting.get(child)
                if missing is None:
                    continue
                missing.discard(current)
                if not missing:
                    stack.append(child)

    def import_draft(self, digest: str) -> None:
        """Mark a draft from outside the project's logs as known."""
        with self._lock:
            self._resolve_locked(digest)

    def add(self, digest: str, parents: Iterable[str]) -> bool:
        """Record a draft. Returns True if it resolved."""
        with self._lock:
            if digest in self._resolved:
                return True
            missing = {parent for parent in parents if parent not in self._resolved}
            if not missing:
                self._resolve_locked(digest)
                return True
            self._waiting[digest] = missing
            for parent in missing:
                self._dependents.setdefault(parent, set()).add(digest)
            return False

    def is_known(self, digest: str) -> bool:
        with self._lock:
            return digest in self._resolved

    def is_pending(self, digest: str) -> bool:
        with self._lock:
            return digest in self._waiting

    def pending(self) -> Dict[str, frozenset]:
        """Pending drafts and the parents each still waits for."""
        with self._lock:
            return {digest: frozenset(missing) for digest, missing in self._waiting.items()}


class ProjectReplica:
    """Chain state for every log of one project."""

    def __init__(
        self,
        codec: EnvelopeCodec,
        read_key: Optional[bytes] = None,
        project_public_key: Optional[Key] = None,
        client_public_key: Optional[Key] = None,
        discovery_key: Optional[str] = None,
        max_pending: Optional[int] = None,
    ):
        self.codec = codec
        self.validator = ChainValidator(codec, read_key, project_public_key, client_public_key)
        self.discovery_key = discovery_key
        if max_pending is None:
            max_pending = codec.config.max_pending_entries
        self.max_pending = max_pending
        self.drafts = DraftGraph()
        self._chains: Dict[str, LogChain] = {}
        self._lock = threading.Lock()

    def chain(self, log_public_key: str) -> LogChain:
        with self._lock:
            chain = self._chains.get(log_public_key)
            if chain is None:
                chain = LogChain(log_public_key, self.validator, self.max_pending)
                self._chains[log_public_key] = chain
            return chain

    def accept(self, envelope: OuterEnvelope) -> AcceptResult:
        """Route envelope to its log and record any drafts it completes."""
        if self.discovery_key is not None and envelope.discovery_key != self.discovery_key:
            raise ValidationError("discoveryKey", "envelope belongs to another project")
        result = self.chain(envelope.log_public_key).accept_out_of_order(envelope)
        for accepted in result.accepted:
            if accepted.entry is not None and accepted.entry["type"] == "draft":
                self.drafts.add(accepted.head.digest, accepted.entry["parents"])
        return result

    def heads(self) -> Dict[str, Optional[ChainHead]]:
        with self._lock:
            chains = list(self._chains.values())
        return {chain.log_public_key: chain.head for chain in chains}

    def references(self) -> List[Reference]:
        """References to the head of each non-empty log, for offering to peers."""
        return [
            Reference(log_public_key, head.index)
            for log_public_key, head in sorted(self.heads().items())
            if head is not None
        ]
