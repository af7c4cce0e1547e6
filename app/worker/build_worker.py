"""
Build Worker
============
Single logical consumer of the build queue.

Each iteration:
    1. Blocking-pop one job id (bounded wait; an empty wait is not an error).
    2. Load the deployment record. Malformed id or missing record → log
       and drop the job.
    3. Download the source tree into a private temp workspace.
    4. Mark BUILDING.
    5. Security validation. Violation → BUILD_FAILED, no build, no upload.
    6. Detect the framework from manifest markers.
    7. Sandbox build. Any failure → BUILD_FAILED.
    8. Upload the build output under ``built/<job id>`` → BUILD_SUCCESS.
    9. Remove the temp workspace, whatever happened above.

FAULT TOLERANCE:
    No job's error may stop the loop. Every error raised after the record
    is loaded ends in a persisted BUILD_FAILED with the elapsed duration.
    Terminal records are never revisited.

Collaborators (queue, repository, storage, validator, executor) are passed
in explicitly; the worker holds no global state.
"""
import logging
import os
import shutil
import threading
import time
from typing import Callable, Optional

from app.core.config import BUILD_OUTPUT_PREFIX, QUEUE_POP_TIMEOUT_SECONDS, WORKSPACE_ROOT
from app.core.errors import BuildFailure, BuildPipelineError, SecurityViolation
from app.executor.project_detector import detect_framework
from app.models.deployment import Deployment
from app.services.deployment_service import is_valid_deployment_id

logger = logging.getLogger(__name__)

# Pause after an iteration-level error (e.g. queue backend unreachable)
_ERROR_BACKOFF_SECONDS = 1.0

# Trailing build output appended to failure messages
_FAILURE_OUTPUT_TAIL_CHARS = 1000


def build_output_key(job_id: str) -> str:
    return f"{BUILD_OUTPUT_PREFIX}/{job_id}"


def describe_failure(exc: Exception) -> str:
    """Human-readable failure message persisted on the record."""
    if isinstance(exc, BuildPipelineError):
        message = str(exc)
    else:
        message = f"Unexpected error: {type(exc).__name__}: {exc}"
    if isinstance(exc, BuildFailure) and exc.output:
        message = f"{message}\n{exc.output[-_FAILURE_OUTPUT_TAIL_CHARS:]}"
    return message


class BuildWorker:
    """
    Queue-driven build loop.

    Usage:
        worker = BuildWorker(queue, repository, storage, validator, executor)
        worker.start()      # daemon thread "secure-build-worker"
        ...
        worker.stop()
    """

    def __init__(self, queue, repository, storage, validator, executor,
                 workspace_root: str = WORKSPACE_ROOT,
                 pop_timeout_seconds: float = QUEUE_POP_TIMEOUT_SECONDS,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self.queue = queue
        self.repository = repository
        self.storage = storage
        self.validator = validator
        self.executor = executor
        self.workspace_root = workspace_root
        self.pop_timeout_seconds = pop_timeout_seconds
        self._clock = clock
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self.run_forever, name="secure-build-worker", daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Request shutdown; the loop exits after the current dequeue or job."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)

    def run_forever(self) -> None:
        logger.info("Secure build worker started")
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception as e:
                logger.error("Build worker error: %s", e, exc_info=True)
                self._stop_event.wait(_ERROR_BACKOFF_SECONDS)
        logger.info("Secure build worker stopped")

    def run_once(self) -> Optional[str]:
        """Dequeue and process at most one job. Returns its id, or None on an empty wait."""
        job_id = self.queue.pop(self.pop_timeout_seconds)
        if job_id is None:
            return None
        logger.info("[%s] Processing build", job_id)
        self.process_job(job_id)
        return job_id

    # ------------------------------------------------------------------
    # One job
    # ------------------------------------------------------------------
    def workspace_for(self, job_id: str) -> str:
        if not is_valid_deployment_id(job_id):
            raise ValueError(f"Invalid job id: {job_id!r}")
        return os.path.join(self.workspace_root, f"build-{job_id}")

    def process_job(self, job_id: str) -> Optional[Deployment]:
        """
        Run one job end to end.

        Returns
        -------
        Deployment | None
            The record in its final state, or None if the job was dropped.
        """
        if not is_valid_deployment_id(job_id):
            logger.error("Invalid job id %r, dropping job", job_id)
            return None

        start_time = self._clock()
        workspace = self.workspace_for(job_id)
        deployment: Optional[Deployment] = None

        try:
            deployment = self.repository.find_by_id(job_id)
            if deployment is None:
                logger.error("[%s] Deployment not found, dropping job", job_id)
                return None
            if deployment.status.is_terminal:
                logger.warning("[%s] Deployment already %s, skipping",
                               job_id, deployment.status.value)
                return deployment

            logger.info("[%s] Downloading source code...", job_id)
            self.storage.download_directory(deployment.source_path, workspace)

            deployment.mark_building()
            self.repository.save(deployment)

            logger.info("[%s] Running security validation...", job_id)
            self.validator.validate(workspace)

            framework = detect_framework(workspace)
            logger.info("[%s] Detected framework: %s", job_id, framework.value)

            logger.info("[%s] Building in isolated container...", job_id)
            result = self.executor.build(workspace, framework, job_id=job_id)

            build_key = build_output_key(job_id)
            logger.info("[%s] Uploading built files from %s...", job_id, result.output_directory)
            self.storage.upload_directory(result.output_directory, build_key)

            duration = self._clock() - start_time
            deployment.mark_succeeded(build_key, duration_seconds=duration)
            self.repository.save(deployment)
            logger.info("[%s] Build completed in %ds", job_id, deployment.build_duration_seconds)
            return deployment

        except SecurityViolation as e:
            logger.error("[%s] Security validation failed: %s", job_id, e)
            return self._record_failure(job_id, e, start_time)
        except Exception as e:
            logger.error("[%s] Build failed: %s", job_id, e, exc_info=True)
            return self._record_failure(job_id, e, start_time)
        finally:
            self._cleanup_workspace(job_id, workspace)

    def _record_failure(self, job_id: str, exc: Exception, start_time: float) -> Optional[Deployment]:
        # Re-read the persisted record: the in-memory copy may hold an unsaved transition.
        try:
            deployment = self.repository.find_by_id(job_id)
        except Exception as e:
            logger.error("[%s] Could not load deployment to record failure: %s", job_id, e)
            return None
        if deployment is None:
            logger.error("[%s] Deployment not found, failure not recorded", job_id)
            return None
        if deployment.status.is_terminal:
            logger.warning("[%s] Deployment already %s, failure not recorded",
                           job_id, deployment.status.value)
            return deployment

        deployment.mark_failed(describe_failure(exc), duration_seconds=self._clock() - start_time)
        try:
            self.repository.save(deployment)
        except Exception as e:
            logger.error("[%s] Could not persist BUILD_FAILED: %s", job_id, e)
        return deployment

    @staticmethod
    def _cleanup_workspace(job_id: str, workspace: str) -> None:
        if not os.path.exists(workspace):
            return
        try:
            shutil.rmtree(workspace)
        except OSError as e:
            logger.warning("[%s] Failed to cleanup temp directory %s: %s", job_id, workspace, e)
