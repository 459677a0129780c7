import zlib
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from threading import Lock
from typing import Deque, Dict, List, Optional, Tuple

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from src.core.time.clock import Clock, SystemClock
from src.ingestion.domain.normalized_activity import NormalizedActivity


class Admission(Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class DeduplicatorConfig:
    window_seconds: int = 86400
    shards: int = 16


class Deduplicator(ABC):
    """
    Time-windowed seen-set over activity ids.
    admit() is an atomic check-and-set: two callers never both get ACCEPTED
    for the same id inside the window.
    """

    @abstractmethod
    def admit(self, activity: NormalizedActivity) -> Admission:
        pass

    @abstractmethod
    def release(self, activity_id: str) -> None:
        pass

    @abstractmethod
    def seen(self, activity_id: str) -> bool:
        pass

    @abstractmethod
    def purge_expired(self) -> int:
        pass


class _Shard:
    def __init__(self):
        self.lock = Lock()
        self.seen_at: Dict[str, datetime] = {}
        self.order: Deque[Tuple[datetime, str]] = deque()


class InMemoryDeduplicator(Deduplicator):
    def __init__(self, config: DeduplicatorConfig = DeduplicatorConfig(), clock: Optional[Clock] = None):
        self.config = config
        self.window = timedelta(seconds=max(1, int(config.window_seconds)))
        self.clock = clock or SystemClock()
        self._shards: List[_Shard] = [_Shard() for _ in range(max(1, int(config.shards)))]

    def admit(self, activity: NormalizedActivity) -> Admission:
        return self.admit_id(activity.activity_id)

    def admit_id(self, activity_id: str) -> Admission:
        now = self.clock.now()
        shard = self._shard_for(activity_id)
        with shard.lock:
            self._expire(shard, now)
            if activity_id in shard.seen_at:
                return Admission.DUPLICATE
            shard.seen_at[activity_id] = now
            shard.order.append((now, activity_id))
            return Admission.ACCEPTED

    def release(self, activity_id: str) -> None:
        shard = self._shard_for(activity_id)
        with shard.lock:
            shard.seen_at.pop(activity_id, None)

    def seen(self, activity_id: str) -> bool:
        now = self.clock.now()
        shard = self._shard_for(activity_id)
        with shard.lock:
            self._expire(shard, now)
            return activity_id in shard.seen_at

    def purge_expired(self) -> int:
        now = self.clock.now()
        purged = 0
        for shard in self._shards:
            with shard.lock:
                before = len(shard.seen_at)
                self._expire(shard, now)
                purged += before - len(shard.seen_at)
        return purged

    def size(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.seen_at)
        return total

    def _shard_for(self, activity_id: str) -> _Shard:
        return self._shards[zlib.crc32(activity_id.encode("utf-8")) % len(self._shards)]

    def _expire(self, shard: _Shard, now: datetime) -> None:
        cutoff = now - self.window
        while shard.order and shard.order[0][0] <= cutoff:
            admitted_at, activity_id = shard.order.popleft()
            # A released-then-readmitted id has a newer mark; keep it
            if shard.seen_at.get(activity_id) == admitted_at:
                del shard.seen_at[activity_id]


class PostgresDeduplicator(Deduplicator):
    def __init__(self, engine: Engine, config: DeduplicatorConfig = DeduplicatorConfig(), clock: Optional[Clock] = None):
        self.engine = engine
        self.config = config
        self.window = timedelta(seconds=max(1, int(config.window_seconds)))
        self.clock = clock or SystemClock()
        self.ensure_schema()

    @classmethod
    def from_dsn(cls, dsn: str, config: DeduplicatorConfig = DeduplicatorConfig()) -> "PostgresDeduplicator":
        engine = create_engine(dsn, pool_pre_ping=True, future=True)
        return cls(engine, config=config)

    def ensure_schema(self) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    CREATE TABLE IF NOT EXISTS activity_dedup (
                        activity_id TEXT PRIMARY KEY,
                        seen_at TIMESTAMPTZ NOT NULL
                    )
                    """
                )
            )
            conn.execute(
                text(
                    """
                    CREATE INDEX IF NOT EXISTS ix_activity_dedup_seen_at
                    ON activity_dedup (seen_at)
                    """
                )
            )

    def admit(self, activity: NormalizedActivity) -> Admission:
        now = self.clock.now()
        with self.engine.begin() as conn:
            result = conn.execute(
                text(
                    """
                    INSERT INTO activity_dedup (activity_id, seen_at)
                    VALUES (:activity_id, :seen_at)
                    ON CONFLICT (activity_id) DO UPDATE
                    SET seen_at = EXCLUDED.seen_at
                    WHERE activity_dedup.seen_at <= :cutoff
                    """
                ),
                {
                    "activity_id": activity.activity_id,
                    "seen_at": now,
                    "cutoff": now - self.window,
                },
            )
            return Admission.ACCEPTED if result.rowcount else Admission.DUPLICATE

    def release(self, activity_id: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                text("DELETE FROM activity_dedup WHERE activity_id=:activity_id"),
                {"activity_id": activity_id},
            )

    def seen(self, activity_id: str) -> bool:
        cutoff = self.clock.now() - self.window
        with self.engine.begin() as conn:
            row = conn.execute(
                text(
                    """
                    SELECT 1 FROM activity_dedup
                    WHERE activity_id=:activity_id AND seen_at > :cutoff
                    """
                ),
                {"activity_id": activity_id, "cutoff": cutoff},
            ).first()
            return row is not None

    def purge_expired(self) -> int:
        cutoff = self.clock.now() - self.window
        with self.engine.begin() as conn:
            result = conn.execute(
                text("DELETE FROM activity_dedup WHERE seen_at <= :cutoff"),
                {"cutoff": cutoff},
            )
            return int(result.rowcount or 0)
