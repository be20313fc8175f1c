import logging
import threading
import time
from collections import OrderedDict
from typing import Callable

from lanchat.constants import Constants

logger = logging.getLogger("__main__")


class RecentMessageCache:

    def __init__(self,
                 max_size: int = Constants.DEDUP_CAPACITY,
                 ttl_ms: int = Constants.DEDUP_TTL_MS,
                 clock: Callable[[], float] = time.monotonic):
        """
        Bounded, time-expiring set of message ids that have already been seen.
        Capacity and TTL are raised to their minimums if set lower.

        :param max_size: Soft limit on the number of ids held.
        :param ttl_ms: How long an id counts as a duplicate after first being seen.
        :param clock: Returns the current time in seconds, replaceable for tests.
        """
        self.max_size: int = max(Constants.DEDUP_MIN_CAPACITY, max_size)
        self.ttl_sec: float = max(Constants.DEDUP_MIN_TTL_MS, ttl_ms) / 1000
        self._clock = clock
        # id -> expiry time, in insertion order so the oldest entries come first.
        self._seen: OrderedDict[str, float] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)

    def __contains__(self, message_id: str) -> bool:
        with self._lock:
            expires_at = self._seen.get(message_id)
            return expires_at is not None and expires_at > self._clock()

    def is_duplicate_and_record(self, message_id: str | None) -> bool:
        """
        Returns True if the id was already seen within its TTL; otherwise records it and returns False.
        Missing or blank ids are never duplicates and are not recorded.
        :param message_id:
        :return:
        """
        if not message_id or not message_id.strip():
            return False

        with self._lock:
            now = self._clock()
            expires_at = self._seen.get(message_id)
            if expires_at is not None and expires_at > now:
                return True

            # An expired entry is replaced and moves to the young end.
            self._seen.pop(message_id, None)
            self._seen[message_id] = now + self.ttl_sec
            self._prune_if_needed(now)
            return False

    def purge_expired(self) -> int:
        """
        Removes every expired id, returning how many were removed.
        :return:
        """
        with self._lock:
            return self._purge_expired(self._clock())

    def _purge_expired(self, now: float) -> int:
        expired = [key for key, expires_at in self._seen.items() if expires_at <= now]
        for key in expired:
            del self._seen[key]
        return len(expired)

    def _prune_if_needed(self, now: float) -> None:
        if len(self._seen) <= self.max_size:
            return

        self._purge_expired(now)
        if len(self._seen) <= self.max_size:
            return

        target = int(self.max_size * Constants.DEDUP_EVICT_RATIO)
        evicted = 0
        while len(self._seen) > target:
            self._seen.popitem(last=False)
            evicted += 1
        logger.debug(f"[Dedup] Evicted {evicted} oldest ids, {len(self._seen)} left.")
