"""
GET /status
Reports build queue depth and whether the worker loop is alive.
"""
import logging

from fastapi import APIRouter, Request

from app.core.errors import InfrastructureError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/status")
async def get_status(request: Request):
    queue = request.app.state.queue
    worker = request.app.state.worker
    try:
        queue_size = queue.size()
    except InfrastructureError as e:
        logger.error("Queue size unavailable: %s", e)
        queue_size = None
    return {
        "worker_running": bool(worker is not None and worker.is_running),
        "queue_size": queue_size,
    }
