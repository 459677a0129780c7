import uuid
import zlib
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from threading import Lock
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Set

from src.core.time.clock import Clock, SystemClock
from src.correlation.domain.identity_signature import (
    CorrelationResult,
    IdentitySignature,
    SignalKey,
    SignalType,
)
from src.ingestion.domain.normalized_activity import IdentitySignals, NormalizedActivity

_MAX_REDIRECTS = 64


@dataclass(frozen=True)
class CorrelationConfig:
    window_days: int = 30
    shards: int = 16
    weight_fingerprint: float = 0.9
    weight_ip: float = 0.6
    weight_handle: float = 0.5

    def weight(self, signal_type: SignalType) -> float:
        if signal_type == SignalType.FINGERPRINT:
            return self.weight_fingerprint
        if signal_type == SignalType.IP:
            return self.weight_ip
        return self.weight_handle


@dataclass
class _IndexEntry:
    signature_id: str
    last_seen_at: datetime


class _KeyShard:
    def __init__(self):
        self.lock = Lock()
        self.index: Dict[SignalKey, _IndexEntry] = {}


class _SignatureShard:
    def __init__(self):
        self.lock = Lock()
        self.heads: Dict[str, IdentitySignature] = {}
        self.history: Dict[str, List[IdentitySignature]] = {}


def signal_keys(signals: IdentitySignals) -> List[SignalKey]:
    keys = []
    if signals.fingerprint:
        keys.append(SignalKey(SignalType.FINGERPRINT, signals.fingerprint))
    if signals.ip_address:
        keys.append(SignalKey(SignalType.IP, signals.ip_address))
    if signals.handle:
        keys.append(SignalKey(SignalType.HANDLE, signals.handle))
    return keys


def combined_confidence(signal_types: Iterable[SignalType], config: CorrelationConfig) -> float:
    remaining = 1.0
    for signal_type in set(signal_types):
        remaining *= 1.0 - config.weight(signal_type)
    return min(1.0, max(0.0, 1.0 - remaining))


class IdentityCorrelator:
    """
    Clusters activities into IdentitySignatures using exact matches on weak
    identity signals inside a rolling window.

    Signal keys are striped over key shards; an activity holds the shards of its
    own keys for the whole lookup-merge-index cycle, so activities that share no
    signal never wait on each other. Signature heads live in their own shards and
    are committed with a compare-and-merge on version numbers.

    Two activities of the same actor that share no signal yet will create two
    signatures; they merge once a later activity links them.
    """

    def __init__(
        self,
        config: CorrelationConfig = CorrelationConfig(),
        clock: Optional[Clock] = None,
        on_version: Optional[Callable[[IdentitySignature], None]] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        self.config = config
        self.window = timedelta(days=max(1, int(config.window_days)))
        self.clock = clock or SystemClock()
        self.on_version = on_version
        self.id_factory = id_factory or (lambda: str(uuid.uuid4()))
        shard_count = max(1, int(config.shards))
        self._key_shards = [_KeyShard() for _ in range(shard_count)]
        self._sig_shards = [_SignatureShard() for _ in range(shard_count)]

    def correlate(self, activity: NormalizedActivity) -> CorrelationResult:
        keys = signal_keys(activity.signals)
        if not keys:
            return CorrelationResult(signature_id=None, resolved=False)

        observed_at = activity.occurred_at
        with self._holding(self._key_shards, {self._key_shard_index(k) for k in keys}):
            while True:
                attempt = self._attempt(keys, observed_at)
                if attempt is not None:
                    result, writes = attempt
                    break
            for key in keys:
                shard = self._key_shards[self._key_shard_index(key)]
                entry = shard.index.get(key)
                if entry is None or entry.signature_id != result.signature_id:
                    shard.index[key] = _IndexEntry(result.signature_id, observed_at)
                elif observed_at > entry.last_seen_at:
                    entry.last_seen_at = observed_at

        if self.on_version:
            for version in writes:
                self.on_version(version)
        return result

    def resolve(self, signature_id: str) -> Optional[IdentitySignature]:
        current = signature_id
        for _ in range(_MAX_REDIRECTS):
            shard = self._sig_shards[self._sig_shard_index(current)]
            with shard.lock:
                head = shard.heads.get(current)
            if head is None:
                return None
            if head.merged_into is None:
                return head
            current = head.merged_into
        return None

    def lineage(self, signature_id: str) -> Set[str]:
        head = self.resolve(signature_id)
        if head is None:
            return set()
        seen: Set[str] = set()
        pending = [head.signature_id]
        while pending:
            current = pending.pop()
            if current in seen:
                continue
            seen.add(current)
            for version in self.history(current):
                pending.extend(version.merged_from)
        return seen

    def history(self, signature_id: str) -> List[IdentitySignature]:
        shard = self._sig_shards[self._sig_shard_index(signature_id)]
        with shard.lock:
            return list(shard.history.get(signature_id, []))

    def heads(self) -> List[IdentitySignature]:
        out: List[IdentitySignature] = []
        for shard in self._sig_shards:
            with shard.lock:
                out.extend(s for s in shard.heads.values() if s.is_head)
        return out

    def restore(self, versions: Iterable[IdentitySignature]) -> int:
        """
        Rebuild the in-memory index from persisted signature versions.
        """
        restored = 0
        for version in sorted(versions, key=lambda v: (v.signature_id, v.version)):
            shard = self._sig_shards[self._sig_shard_index(version.signature_id)]
            with shard.lock:
                shard.history.setdefault(version.signature_id, []).append(version)
                shard.heads[version.signature_id] = version
            restored += 1
        for head in self.heads():
            for key in head.signals:
                shard = self._key_shards[self._key_shard_index(key)]
                with shard.lock:
                    entry = shard.index.get(key)
                    if entry is None or entry.last_seen_at < head.updated_at:
                        shard.index[key] = _IndexEntry(head.signature_id, head.updated_at)
        return restored

    def _attempt(self, keys: List[SignalKey], observed_at: datetime):
        cutoff = observed_at - self.window
        matched: Dict[str, IdentitySignature] = {}
        matched_types: Dict[str, Set[SignalType]] = {}
        best_priority: Dict[str, tuple] = {}
        for key in sorted(keys, key=lambda k: k.priority):
            entry = self._key_shards[self._key_shard_index(key)].index.get(key)
            if entry is None or entry.last_seen_at < cutoff:
                continue
            head = self.resolve(entry.signature_id)
            if head is None:
                continue
            matched[head.signature_id] = head
            matched_types.setdefault(head.signature_id, set()).add(key.signal_type)
            best_priority.setdefault(head.signature_id, key.priority)

        now = self.clock.now()
        if not matched:
            signature = IdentitySignature(
                signature_id=self.id_factory(),
                version=1,
                signals=frozenset(keys),
                matched_types=frozenset(),
                confidence=min(self.config.weight(k.signal_type) for k in keys),
                created_at=now,
                updated_at=now,
            )
            if not self._commit({}, [signature]):
                return None
            return CorrelationResult(signature.signature_id, True, signature, created=True), [signature]

        survivor = min(
            matched.values(),
            key=lambda s: (best_priority[s.signature_id], s.created_at, s.signature_id),
        )
        absorbed = [s for s in matched.values() if s.signature_id != survivor.signature_id]

        all_types: Set[SignalType] = set()
        for types in matched_types.values():
            all_types |= types
        signals = set(keys)
        for signature in matched.values():
            all_types |= signature.matched_types
            signals |= signature.signals
        confidence = max(
            [s.confidence for s in matched.values()] + [combined_confidence(all_types, self.config)]
        )

        unchanged = (
            not absorbed
            and frozenset(signals) == survivor.signals
            and frozenset(all_types) == survivor.matched_types
            and confidence == survivor.confidence
        )
        if unchanged:
            return CorrelationResult(survivor.signature_id, True, survivor), []

        merged = IdentitySignature(
            signature_id=survivor.signature_id,
            version=survivor.version + 1,
            signals=frozenset(signals),
            matched_types=frozenset(all_types),
            confidence=confidence,
            created_at=survivor.created_at,
            updated_at=now,
            merged_from=tuple(sorted(s.signature_id for s in absorbed)),
        )
        retired = [
            replace(s, version=s.version + 1, updated_at=now, merged_into=survivor.signature_id)
            for s in absorbed
        ]
        expected = {s.signature_id: s.version for s in matched.values()}
        writes = [merged] + retired
        if not self._commit(expected, writes):
            return None
        return CorrelationResult(merged.signature_id, True, merged, merged=True), writes

    def _commit(self, expected: Dict[str, int], writes: List[IdentitySignature]) -> bool:
        ids = set(expected) | {w.signature_id for w in writes}
        with self._holding(self._sig_shards, {self._sig_shard_index(i) for i in ids}):
            for signature_id, version in expected.items():
                head = self._sig_shards[self._sig_shard_index(signature_id)].heads.get(signature_id)
                if head is None or head.version != version:
                    return False
            for version in writes:
                shard = self._sig_shards[self._sig_shard_index(version.signature_id)]
                shard.heads[version.signature_id] = version
                shard.history.setdefault(version.signature_id, []).append(version)
        return True

    @contextmanager
    def _holding(self, shards, indexes: Set[int]) -> Iterator[None]:
        with ExitStack() as stack:
            for index in sorted(indexes):
                stack.enter_context(shards[index].lock)
            yield

    def _key_shard_index(self, key: SignalKey) -> int:
        return zlib.crc32(key.as_str().encode("utf-8")) % len(self._key_shards)

    def _sig_shard_index(self, signature_id: str) -> int:
        return zlib.crc32(signature_id.encode("utf-8")) % len(self._sig_shards)
