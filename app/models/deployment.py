"""
Deployment Model
================
Pydantic model for one deployment's build record.

The record is owned by the job repository; the build worker only mutates
it through the ``mark_*`` transitions below so that terminal status,
completion time and duration are always written together.

Fields:
    id                      - opaque job id (also the queue entry)
    status                  - DeploymentStatus
    deployment_url          - public URL the artifacts will be served from
    source_path             - storage key prefix of the uploaded source tree
    build_path              - storage key prefix of the built artifacts
    created_at / completed_at
    build_duration_seconds  - whole seconds; worker-measured elapsed time,
                              or completed_at - created_at when not supplied
    error_message           - bounded length, set only on failure
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from app.core.config import ERROR_MESSAGE_MAX_LENGTH


class DeploymentStatus(str, Enum):
    QUEUED = "QUEUED"
    UPLOADING = "UPLOADING"
    UPLOADED = "UPLOADED"
    BUILDING = "BUILDING"
    BUILD_SUCCESS = "BUILD_SUCCESS"
    BUILD_FAILED = "BUILD_FAILED"
    READY = "READY"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (DeploymentStatus.BUILD_SUCCESS, DeploymentStatus.BUILD_FAILED)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Deployment(BaseModel):
    id: str
    status: DeploymentStatus = DeploymentStatus.QUEUED
    deployment_url: str = ""
    source_path: str = ""
    build_path: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    build_duration_seconds: Optional[int] = None
    error_message: Optional[str] = None
    project_id: Optional[str] = None
    user_id: Optional[str] = None

    def _ensure_not_terminal(self) -> None:
        if self.status.is_terminal:
            raise ValueError(
                f"Deployment {self.id} already reached terminal status {self.status.value}"
            )

    def _finish(self, status: DeploymentStatus, duration_seconds: Optional[float],
                completed_at: Optional[datetime]) -> None:
        # Status, completion time and duration are only ever written together.
        self.status = status
        self.completed_at = completed_at or utcnow()
        if duration_seconds is None:
            duration_seconds = (self.completed_at - self.created_at).total_seconds()
        self.build_duration_seconds = max(0, int(duration_seconds))

    def mark_building(self) -> None:
        self._ensure_not_terminal()
        self.status = DeploymentStatus.BUILDING

    def mark_succeeded(self, build_path: str, duration_seconds: Optional[float] = None,
                       completed_at: Optional[datetime] = None) -> None:
        self._ensure_not_terminal()
        self.build_path = build_path
        self.error_message = None
        self._finish(DeploymentStatus.BUILD_SUCCESS, duration_seconds, completed_at)

    def mark_failed(self, message: str, duration_seconds: Optional[float] = None,
                    completed_at: Optional[datetime] = None) -> None:
        self._ensure_not_terminal()
        self.error_message = (message or "Build failed")[:ERROR_MESSAGE_MAX_LENGTH]
        self._finish(DeploymentStatus.BUILD_FAILED, duration_seconds, completed_at)
