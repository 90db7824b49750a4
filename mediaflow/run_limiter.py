"""
Per-user cap on concurrently active workflow runs.

Two backends with the same API:
  - RunSlots:       in-process counter guarded by a threading.Lock
  - RedisRunSlots:  INCR/DECR on ``runslots:{user_id}`` so several worker
                    processes share the cap; falls back to the in-process
                    counter whenever Redis is unreachable
"""

import logging
import threading
from typing import Dict

from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

MAX_CONCURRENT_RUNS_PER_USER = 3
SLOT_TTL_SECONDS = 3600   # safety expiry if a worker dies holding slots


class RunSlots:
    def __init__(self, max_runs: int = MAX_CONCURRENT_RUNS_PER_USER):
        self.max_runs = max_runs
        self._lock = threading.Lock()
        self._active: Dict[str, int] = {}

    def acquire(self, user_id: str) -> bool:
        """Take a slot for the user; False when already at the cap."""
        with self._lock:
            current = self._active.get(user_id, 0)
            if current >= self.max_runs:
                return False
            self._active[user_id] = current + 1
            return True

    def release(self, user_id: str):
        with self._lock:
            remaining = self._active.get(user_id, 0) - 1
            if remaining > 0:
                self._active[user_id] = remaining
            else:
                self._active.pop(user_id, None)

    def active_runs(self, user_id: str) -> int:
        with self._lock:
            return self._active.get(user_id, 0)

    def total_active(self) -> int:
        with self._lock:
            return sum(self._active.values())


class RedisRunSlots(RunSlots):
    def __init__(self, redis_client, max_runs: int = MAX_CONCURRENT_RUNS_PER_USER):
        super().__init__(max_runs)
        self.redis = redis_client

    @staticmethod
    def _key(user_id: str) -> str:
        return f"runslots:{user_id}"

    def acquire(self, user_id: str) -> bool:
        key = self._key(user_id)
        try:
            pipe = self.redis.pipeline(transaction=True)
            pipe.incr(key)
            pipe.expire(key, SLOT_TTL_SECONDS)
            current = pipe.execute()[0]
            if current > self.max_runs:
                self.redis.decr(key)
                logger.warning(f"Run cap reached for user {user_id}: {current - 1}/{self.max_runs}")
                return False
            return True
        except RedisError as e:
            logger.warning(f"Redis unavailable for run slots, using in-memory fallback: {e}")
            return super().acquire(user_id)

    def release(self, user_id: str):
        key = self._key(user_id)
        try:
            if self.redis.decr(key) <= 0:
                self.redis.delete(key)
        except RedisError as e:
            logger.warning(f"Redis unavailable releasing run slot: {e}")
            super().release(user_id)

    def active_runs(self, user_id: str) -> int:
        try:
            value = self.redis.get(self._key(user_id))
            return int(value or 0)
        except RedisError:
            return super().active_runs(user_id)
