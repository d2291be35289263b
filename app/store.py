"""In-memory session table with sliding and absolute expiry.

Keys are spread over a fixed number of shards, each guarded by its own lock,
so operations on different keys never contend on a store-wide lock. Every
scheduled expiry carries the record it was armed for (and, for the sliding
timer, the record's generation); a timer that fires after its record was
replaced or re-touched sees the mismatch and does nothing.
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Callable

from app.errors import KeyCollision, UnknownSession
from app.scheduling import Scheduler, TimerHandle

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileRef:
    display_name: str
    storage_handle: str
    uploaded_at: datetime


@dataclass
class SessionRecord:
    key: str
    owner_identity: str
    created_at: datetime
    last_touched_at: datetime
    file: FileRef | None = None
    generation: int = 0
    sliding_timer: TimerHandle | None = field(default=None, repr=False, compare=False)
    absolute_timer: TimerHandle | None = field(default=None, repr=False, compare=False)


EvictCallback = Callable[[str, FileRef | None], None]


class _Shard:
    __slots__ = ("lock", "records")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.records: dict[str, SessionRecord] = {}


class SessionStore:
    def __init__(
        self,
        scheduler: Scheduler,
        *,
        expire_delay: float,
        max_lifetime: float,
        shards: int = 16,
        on_evict: EvictCallback | None = None,
    ):
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self.scheduler = scheduler
        self.expire_delay = expire_delay
        self.max_lifetime = max_lifetime
        self.on_evict = on_evict
        self._shards = [_Shard() for _ in range(shards)]

    def _shard(self, key: str) -> _Shard:
        return self._shards[hash(key) % len(self._shards)]

    def __len__(self) -> int:
        return sum(len(shard.records) for shard in self._shards)

    def __contains__(self, key: str) -> bool:
        shard = self._shard(key)
        with shard.lock:
            return key in shard.records

    def insert(self, key: str, record: SessionRecord) -> None:
        """Add a new record and arm its absolute-lifetime timer.

        Raises ``KeyCollision`` if a live session already holds ``key``.
        """
        shard = self._shard(key)
        with shard.lock:
            if key in shard.records:
                raise KeyCollision(f"key {key} already in use")
            shard.records[key] = record
            record.absolute_timer = self.scheduler.call_later(
                self.max_lifetime, self._expire_absolute, key, record
            )

    def get(self, key: str) -> SessionRecord | None:
        """Return a point-in-time copy of the record, or None."""
        shard = self._shard(key)
        with shard.lock:
            record = shard.records.get(key)
            return replace(record) if record else None

    def touch(self, key: str) -> bool:
        """Refresh ``last_touched_at`` and re-arm the sliding timer.

        Returns False when the key is not live.
        """
        shard = self._shard(key)
        with shard.lock:
            record = shard.records.get(key)
            if record is None:
                return False
            now = self.scheduler.now()
            if now > record.last_touched_at:
                record.last_touched_at = now
            record.generation += 1
            if record.sliding_timer is not None:
                record.sliding_timer.cancel()
            record.sliding_timer = self.scheduler.call_later(
                self.expire_delay, self._expire_sliding, key, record, record.generation
            )
            return True

    def swap_file(self, key: str, new_file: FileRef | None) -> FileRef | None:
        """Replace the record's file, returning the one it held before."""
        shard = self._shard(key)
        with shard.lock:
            record = shard.records.get(key)
            if record is None:
                raise UnknownSession(f"Unknown key: {key}")
            previous, record.file = record.file, new_file
            return previous

    def remove(self, key: str) -> FileRef | None:
        """Drop the record and cancel its timers; returns the detached file.

        Removing an absent key is a no-op.
        """
        shard = self._shard(key)
        with shard.lock:
            record = shard.records.pop(key, None)
            if record is None:
                logger.debug("Tried to remove non-existing key %s", key)
                return None
            return self._detach(record)

    def clear(self) -> list[tuple[str, FileRef | None]]:
        removed = []
        for shard in self._shards:
            with shard.lock:
                records, shard.records = shard.records, {}
                for key, record in records.items():
                    removed.append((key, self._detach(record)))
        return removed

    @staticmethod
    def _detach(record: SessionRecord) -> FileRef | None:
        for timer in (record.sliding_timer, record.absolute_timer):
            if timer is not None:
                timer.cancel()
        record.sliding_timer = record.absolute_timer = None
        file, record.file = record.file, None
        return file

    def _expire_sliding(self, key: str, record: SessionRecord, generation: int) -> None:
        shard = self._shard(key)
        with shard.lock:
            if shard.records.get(key) is not record or record.generation != generation:
                logger.debug("Ignoring stale expiry timer for key %s", key)
                return
            del shard.records[key]
            file = self._detach(record)
        logger.info("Removing expired key %s", key)
        self._evicted(key, file)

    def _expire_absolute(self, key: str, record: SessionRecord) -> None:
        shard = self._shard(key)
        with shard.lock:
            if shard.records.get(key) is not record:
                logger.debug("Ignoring stale lifetime timer for key %s", key)
                return
            del shard.records[key]
            file = self._detach(record)
        logger.info("Removing key %s, max lifetime reached", key)
        self._evicted(key, file)

    def _evicted(self, key: str, file: FileRef | None) -> None:
        if self.on_evict is not None:
            self.on_evict(key, file)
