"""
Queue Service
=============
FIFO of build job ids. Entries carry no payload; workers resolve full
context by loading the deployment record.

Backends:
    - RedisBuildQueue     RPUSH / BLPOP / LLEN on a single list key.
                          BLPOP removes atomically, so at most one worker
                          ever receives a given id.
    - InMemoryBuildQueue  single-process fallback when REDIS_URL is unset.

There is no acknowledgement: an id popped by a worker that then crashes
is gone.
"""
import logging
import queue
from typing import Optional

import redis
from redis.exceptions import RedisError

from app.core.config import BUILD_QUEUE_KEY
from app.core.errors import InfrastructureError

logger = logging.getLogger(__name__)


class RedisBuildQueue:

    def __init__(self, client: redis.Redis, key: str = BUILD_QUEUE_KEY) -> None:
        self.client = client
        self.key = key

    @classmethod
    def from_url(cls, url: str, key: str = BUILD_QUEUE_KEY) -> "RedisBuildQueue":
        return cls(redis.Redis.from_url(url, decode_responses=True), key=key)

    def push(self, job_id: str) -> None:
        try:
            self.client.rpush(self.key, job_id)
        except RedisError as e:
            raise InfrastructureError(f"Failed to enqueue {job_id}: {e}") from e
        logger.info("Added to build queue: %s", job_id)

    def pop(self, timeout_seconds: float) -> Optional[str]:
        """Blocking pop. Returns None when the wait expires with no id."""
        try:
            item = self.client.blpop([self.key], timeout=timeout_seconds)
        except RedisError as e:
            raise InfrastructureError(f"Failed to read build queue: {e}") from e
        if item is None:
            return None
        _, job_id = item
        if isinstance(job_id, bytes):
            job_id = job_id.decode("utf-8")
        return job_id

    def size(self) -> int:
        try:
            return int(self.client.llen(self.key) or 0)
        except RedisError as e:
            raise InfrastructureError(f"Failed to read build queue size: {e}") from e


class InMemoryBuildQueue:
    """Thread-safe in-process queue with the same contract as RedisBuildQueue."""

    def __init__(self) -> None:
        self._queue: "queue.Queue[str]" = queue.Queue()

    def push(self, job_id: str) -> None:
        self._queue.put(job_id)
        logger.info("Added to build queue: %s", job_id)

    def pop(self, timeout_seconds: float) -> Optional[str]:
        try:
            return self._queue.get(timeout=timeout_seconds)
        except queue.Empty:
            return None

    def size(self) -> int:
        return self._queue.qsize()
