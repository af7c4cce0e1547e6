"""
Deployment Service
==================
Producer side of the build queue.

Stores a source tree, records a QUEUED deployment pointing at it, then
enqueues the id. The record is saved before the push so a worker never
pops an id whose record does not exist yet.
"""
import logging
import re
import uuid
from typing import Optional

from app.core.config import DEPLOYMENT_DOMAIN, SOURCE_PREFIX
from app.models.deployment import Deployment, DeploymentStatus

logger = logging.getLogger(__name__)

# Ids become storage keys and workspace directory names
_DEPLOYMENT_ID_RE = re.compile(r"[A-Za-z0-9_-]{1,64}")


def is_valid_deployment_id(value) -> bool:
    return isinstance(value, str) and _DEPLOYMENT_ID_RE.fullmatch(value) is not None


def new_deployment_id() -> str:
    return uuid.uuid4().hex[:8]


def deployment_url(deployment_id: str) -> str:
    return f"https://{deployment_id}.{DEPLOYMENT_DOMAIN}"


def source_key(deployment_id: str) -> str:
    return f"{SOURCE_PREFIX}/{deployment_id}"


def enqueue_deployment(queue, repository, source_path: str,
                       deployment_id: Optional[str] = None,
                       project_id: Optional[str] = None,
                       user_id: Optional[str] = None) -> Deployment:
    """Record a QUEUED deployment for an already-stored source prefix and enqueue it."""
    deployment_id = deployment_id or new_deployment_id()
    if not is_valid_deployment_id(deployment_id):
        raise ValueError(f"Invalid deployment id: {deployment_id!r}")
    deployment = Deployment(
        id=deployment_id,
        status=DeploymentStatus.QUEUED,
        deployment_url=deployment_url(deployment_id),
        source_path=source_path,
        project_id=project_id,
        user_id=user_id,
    )
    repository.save(deployment)
    queue.push(deployment_id)
    logger.info("[%s] Added to build queue (source=%s)", deployment_id, source_path)
    return deployment


def submit_deployment(queue, repository, storage, local_source: str,
                      deployment_id: Optional[str] = None,
                      project_id: Optional[str] = None,
                      user_id: Optional[str] = None) -> Deployment:
    """Upload ``local_source`` under ``raw/<id>`` and enqueue a build for it."""
    deployment_id = deployment_id or new_deployment_id()
    if not is_valid_deployment_id(deployment_id):
        raise ValueError(f"Invalid deployment id: {deployment_id!r}")
    prefix = source_key(deployment_id)
    logger.info("[%s] Uploading source from %s...", deployment_id, local_source)
    storage.upload_directory(local_source, prefix)
    return enqueue_deployment(
        queue, repository, prefix,
        deployment_id=deployment_id, project_id=project_id, user_id=user_id,
    )
