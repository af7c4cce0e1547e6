"""
Deployment Repository
=====================
Persistence of Deployment records.

    save(record)        - upsert by id
    find_by_id(id)      - record or None

Backends:
    - RedisDeploymentRepository     JSON document per record at
                                    ``deployment:<id>``.
    - InMemoryDeploymentRepository  dict of deep copies; single process.
"""
import logging
import threading
from typing import Optional

import redis
from pydantic import ValidationError
from redis.exceptions import RedisError

from app.core.config import DEPLOYMENT_KEY_PREFIX
from app.core.errors import InfrastructureError
from app.models.deployment import Deployment

logger = logging.getLogger(__name__)


class RedisDeploymentRepository:

    def __init__(self, client: redis.Redis, key_prefix: str = DEPLOYMENT_KEY_PREFIX) -> None:
        self.client = client
        self.key_prefix = key_prefix

    @classmethod
    def from_url(cls, url: str, key_prefix: str = DEPLOYMENT_KEY_PREFIX) -> "RedisDeploymentRepository":
        return cls(redis.Redis.from_url(url, decode_responses=True), key_prefix=key_prefix)

    def _key(self, deployment_id: str) -> str:
        return f"{self.key_prefix}{deployment_id}"

    def save(self, deployment: Deployment) -> None:
        try:
            self.client.set(self._key(deployment.id), deployment.model_dump_json())
        except RedisError as e:
            raise InfrastructureError(f"Failed to save deployment {deployment.id}: {e}") from e

    def find_by_id(self, deployment_id: str) -> Optional[Deployment]:
        try:
            raw = self.client.get(self._key(deployment_id))
        except RedisError as e:
            raise InfrastructureError(f"Failed to read deployment {deployment_id}: {e}") from e
        if raw is None:
            return None
        try:
            return Deployment.model_validate_json(raw)
        except ValidationError as e:
            raise InfrastructureError(f"Malformed deployment record {deployment_id}: {e}") from e


class InMemoryDeploymentRepository:

    def __init__(self) -> None:
        self._records: dict[str, Deployment] = {}
        self._lock = threading.Lock()

    def save(self, deployment: Deployment) -> None:
        with self._lock:
            self._records[deployment.id] = deployment.model_copy(deep=True)

    def find_by_id(self, deployment_id: str) -> Optional[Deployment]:
        with self._lock:
            record = self._records.get(deployment_id)
            return record.model_copy(deep=True) if record else None

    def __len__(self) -> int:
        return len(self._records)
