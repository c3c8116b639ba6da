"""
Per-actor rate limiting with pluggable counter stores.

Fixed 60-second windows per (actor, action class) key. The first call in a
window starts the counter, later calls increment it and are denied once the
count exceeds the limit. The counter store is injected so the in-process map
and a shared MongoDB counter are interchangeable without touching callers.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional
import asyncio
import logging
import time

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 60
CLEANUP_INTERVAL_SECONDS = 5 * 60


class CounterStore(ABC):
    """Counter backend interface."""

    @abstractmethod
    async def increment_and_check(self, key: str, window_seconds: float, limit: int) -> bool:
        """Count one hit for `key` and return True while the window's count is within `limit`."""


class InMemoryCounterStore(CounterStore):
    """
    Process-local counters.

    Approximate: each process keeps its own map, so a multi-instance
    deployment bounds actors per instance, not globally.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        cleanup_interval: float = CLEANUP_INTERVAL_SECONDS
    ):
        self._clock = clock
        self._cleanup_interval = cleanup_interval
        # key -> [count, reset_at]
        self._entries: Dict[str, List[float]] = {}
        self._last_cleanup = clock()
        self._lock = asyncio.Lock()

    async def increment_and_check(self, key: str, window_seconds: float, limit: int) -> bool:
        async with self._lock:
            now = self._clock()
            self._sweep(now)

            entry = self._entries.get(key)
            if entry is None or now > entry[1]:
                self._entries[key] = [1, now + window_seconds]
                return True

            entry[0] += 1
            return entry[0] <= limit

    def _sweep(self, now: float) -> None:
        if now - self._last_cleanup < self._cleanup_interval:
            return
        self._last_cleanup = now
        expired = [key for key, (_, reset_at) in self._entries.items() if now > reset_at]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"[RATE_LIMIT] Swept {len(expired)} idle counters")

    def __len__(self) -> int:
        return len(self._entries)


class MongoCounterStore(CounterStore):
    """
    Shared counters in the `rate_limits` collection.

    Increments are atomic findOneAndUpdate operations; a TTL index on
    `expires_at` lets MongoDB sweep idle counters.
    """

    def __init__(self, db: AsyncIOMotorDatabase, clock: Callable[[], datetime] = datetime.utcnow):
        self.collection = db.rate_limits
        self._clock = clock

    async def ensure_indexes(self) -> None:
        await self.collection.create_index(
            [("expires_at", 1)],
            expireAfterSeconds=0,
            name="ttl_rate_limit_expiry"
        )

    async def increment_and_check(self, key: str, window_seconds: float, limit: int) -> bool:
        now = self._clock()

        # Live window: count atomically
        entry = await self.collection.find_one_and_update(
            {"_id": key, "expires_at": {"$gt": now}},
            {"$inc": {"count": 1}},
            return_document=ReturnDocument.AFTER
        )
        if entry is not None:
            return entry["count"] <= limit

        # No live window: start one, replacing an expired counter if present
        window = {"count": 1, "expires_at": now + timedelta(seconds=window_seconds)}
        result = await self.collection.update_one(
            {"_id": key, "expires_at": {"$lte": now}},
            {"$set": window}
        )
        if result.matched_count:
            return True
        try:
            await self.collection.insert_one({"_id": key, **window})
            return True
        except DuplicateKeyError:
            # Another process opened the window first; count against it
            entry = await self.collection.find_one_and_update(
                {"_id": key},
                {"$inc": {"count": 1}},
                return_document=ReturnDocument.AFTER
            )
            return entry["count"] <= limit


class RateLimiter:
    """Bounds mutating operations per (actor, action class)."""

    def __init__(self, store: Optional[CounterStore] = None, window_seconds: float = DEFAULT_WINDOW_SECONDS):
        self.store = store or InMemoryCounterStore()
        self.window_seconds = window_seconds

    @staticmethod
    def key(actor_id: str, action_class: str) -> str:
        return f"{actor_id}:{action_class}"

    async def allow(self, actor_id: str, action_class: str, max_per_window: int) -> bool:
        allowed = await self.store.increment_and_check(
            self.key(actor_id, action_class), self.window_seconds, max_per_window
        )
        if not allowed:
            logger.warning(f"[RATE_LIMIT] Denied '{action_class}' for user:{actor_id}")
        return allowed
