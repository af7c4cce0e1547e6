import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware

from app.api.deployments import router as deployments_router
from app.api.status import router as status_router
from app.core.config import REDIS_URL, START_WORKER, STORAGE_ROOT
from app.executor.build_executor import SandboxBuildExecutor
from app.security.validator import SecurityValidator
from app.services.deployment_repository import InMemoryDeploymentRepository, RedisDeploymentRepository
from app.services.queue_service import InMemoryBuildQueue, RedisBuildQueue
from app.services.storage_service import LocalObjectStorage
from app.utils.logging_config import setup_logging
from app.worker.build_worker import BuildWorker

setup_logging(level=logging.INFO)
logger = logging.getLogger("main")


def create_worker() -> BuildWorker:
    """Wire the worker's collaborators from configuration."""
    if REDIS_URL:
        queue = RedisBuildQueue.from_url(REDIS_URL)
        repository = RedisDeploymentRepository.from_url(REDIS_URL)
    else:
        logger.warning("REDIS_URL not set, using in-memory queue and repository")
        queue = InMemoryBuildQueue()
        repository = InMemoryDeploymentRepository()

    return BuildWorker(
        queue=queue,
        repository=repository,
        storage=LocalObjectStorage(STORAGE_ROOT),
        validator=SecurityValidator(),
        executor=SandboxBuildExecutor(),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    worker = create_worker()
    app.state.worker = worker
    app.state.queue = worker.queue
    app.state.repository = worker.repository
    if START_WORKER:
        worker.start()
    try:
        yield
    finally:
        worker.stop(timeout=10)


app = FastAPI(title="Secure Build Service", lifespan=lifespan)


# ---------------------------------------------------------------------------
# Logging Middleware
# ---------------------------------------------------------------------------
class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(f"Request failed: {request.method} {request.url.path} - Error: {str(e)}")
            raise
        process_time = (time.time() - start_time) * 1000
        logger.info(
            f"{request.method} {request.url.path} - "
            f"Status: {response.status_code} - "
            f"Time: {process_time:.2f}ms"
        )
        return response


app.add_middleware(LoggingMiddleware)


@app.get("/health")
async def health_check():
    return {"status": "ok"}


app.include_router(status_router, tags=["Worker"])
app.include_router(deployments_router)

if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8000)
