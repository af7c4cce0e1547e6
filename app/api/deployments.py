"""
Deployment Endpoints
====================
POST /deployments          - enqueue a build for a source tree already in storage
GET  /deployments/{id}     - current record

Source acquisition (cloning, uploading) happens upstream; this router only
accepts a storage prefix that must already hold the tree.
"""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, field_validator

from app.core.errors import InfrastructureError
from app.models.deployment import Deployment
from app.services.deployment_service import enqueue_deployment, is_valid_deployment_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/deployments", tags=["Deployments"])


class EnqueueRequest(BaseModel):
    source_path: str
    deployment_id: Optional[str] = None
    project_id: Optional[str] = None
    user_id: Optional[str] = None

    @field_validator("deployment_id")
    @classmethod
    def validate_id(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not is_valid_deployment_id(v):
            raise ValueError("deployment_id must be 1-64 characters of [A-Za-z0-9_-]")
        return v

    @field_validator("source_path")
    @classmethod
    def validate_source_path(cls, v: str) -> str:
        v = v.strip().strip("/")
        if not v or ".." in v.split("/"):
            raise ValueError("source_path must be a non-empty storage prefix")
        return v


class DeploymentResponse(BaseModel):
    id: str
    status: str
    deployment_url: str
    build_path: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    build_duration_seconds: Optional[int] = None
    error_message: Optional[str] = None

    @classmethod
    def from_record(cls, d: Deployment) -> "DeploymentResponse":
        return cls(
            id=d.id,
            status=d.status.value,
            deployment_url=d.deployment_url,
            build_path=d.build_path,
            created_at=d.created_at,
            completed_at=d.completed_at,
            build_duration_seconds=d.build_duration_seconds,
            error_message=d.error_message,
        )


@router.post("", response_model=DeploymentResponse, status_code=202)
async def create_deployment(body: EnqueueRequest, request: Request):
    state = request.app.state
    if body.deployment_id and state.repository.find_by_id(body.deployment_id) is not None:
        raise HTTPException(status_code=409, detail="Deployment already exists")
    try:
        deployment = enqueue_deployment(
            state.queue, state.repository, body.source_path,
            deployment_id=body.deployment_id,
            project_id=body.project_id,
            user_id=body.user_id,
        )
    except InfrastructureError as e:
        logger.error("Enqueue failed: %s", e)
        raise HTTPException(status_code=503, detail=str(e))
    return DeploymentResponse.from_record(deployment)


@router.get("/{deployment_id}", response_model=DeploymentResponse)
async def get_deployment(deployment_id: str, request: Request):
    deployment = request.app.state.repository.find_by_id(deployment_id)
    if deployment is None:
        raise HTTPException(status_code=404, detail="Deployment not found")
    return DeploymentResponse.from_record(deployment)
