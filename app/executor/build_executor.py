"""
Build Executor
==============
Builds one untrusted source tree inside an ephemeral, resource-capped
Docker container.

LIFECYCLE (linear, one container per build):
    CREATED → STARTED → DEPENDENCIES_INSTALLED → NETWORK_DETACHED → BUILT → TORN_DOWN

    1. CREATED     source bind-mounted rw at /project, 1 GiB memory with no
                   swap headroom, one CPU core (quota = period), all
                   capabilities dropped, no-new-privileges, DNS disabled,
                   bridged network.
    2. STARTED
    3. DEPENDENCIES_INSTALLED   install command, network attached.
    4. NETWORK_DETACHED         forced disconnect, best-effort.
    5. BUILT                    build command, network detached.
    6. TORN_DOWN   stop (grace period) then force-remove with volumes.
                   Runs on EVERY exit path; its own errors are logged and
                   swallowed so they never replace the original failure.

TIMEOUTS:
    Each phase command runs on a separate thread and is waited on with a
    bound. On expiry the execution is cancelled and BuildTimeout is raised;
    teardown still runs. Timeouts are per phase, so the worst case for one
    build is the sum of both phase bounds.
    The abandoned phase thread is non-daemon and stays blocked on the exec
    stream until teardown kills the container. If both stop and remove fail
    it never ends and holds up interpreter exit; teardown logs that case at
    CRITICAL so the container can be removed by hand.

BOUNDARY RULES:
    - Executor never touches job records or storage.
    - Executor never decides the framework; it is handed a hint.
"""
import logging
import os
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Optional

from app.core.config import (
    BUILD_CPU_PERIOD,
    BUILD_CPU_QUOTA,
    BUILD_IMAGE,
    BUILD_MEMORY_LIMIT_BYTES,
    BUILD_NETWORK,
    BUILD_WORKDIR,
    PHASE_TIMEOUT_SECONDS,
    STOP_GRACE_SECONDS,
)
from app.core.errors import BuildFailure, BuildTimeout
from app.executor.command_resolver import Framework, ResolvedCommands, resolve_commands, resolve_output_directory
from app.executor.container_runtime import DockerRuntime

logger = logging.getLogger(__name__)

# Lines containing any of these are echoed to the operational log
LOG_MARKERS: tuple[str, ...] = ("error", "Error", "ERROR", "warn", "Warn", "WARN", "success", "Success")


# ---------------------------------------------------------------------------
# Sandbox configuration + session
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class SandboxSpec:
    """Container constraints applied at creation time."""
    image: str = BUILD_IMAGE
    working_dir: str = BUILD_WORKDIR
    network: str = BUILD_NETWORK
    memory_limit_bytes: int = BUILD_MEMORY_LIMIT_BYTES
    cpu_period: int = BUILD_CPU_PERIOD
    cpu_quota: int = BUILD_CPU_QUOTA
    phase_timeout_seconds: float = PHASE_TIMEOUT_SECONDS
    stop_grace_seconds: int = STOP_GRACE_SECONDS
    environment: tuple[str, ...] = ("NODE_ENV=production", "CI=true")
    # 0.0.0.0 as the only resolver disables lookups inside the container
    dns: tuple[str, ...] = ("0.0.0.0",)


class SessionState(str, Enum):
    CREATED = "CREATED"
    STARTED = "STARTED"
    DEPENDENCIES_INSTALLED = "DEPENDENCIES_INSTALLED"
    NETWORK_DETACHED = "NETWORK_DETACHED"
    BUILT = "BUILT"
    TORN_DOWN = "TORN_DOWN"


class NetworkState(str, Enum):
    ATTACHED = "attached"
    DETACHED = "detached"


@dataclass
class SandboxSession:
    """Ephemeral state of one build's container. Never outlives ``build()``."""
    container_id: str
    name: str
    spec: SandboxSpec
    state: SessionState = SessionState.CREATED
    network_state: NetworkState = NetworkState.ATTACHED


@dataclass
class BuildResult:
    framework: Framework
    commands: ResolvedCommands
    output_directory: str
    container_name: str = ""
    phase_logs: dict[str, str] = field(default_factory=dict)
    duration_seconds: float = 0.0


# ---------------------------------------------------------------------------
# Log Excerpt Helper
# ---------------------------------------------------------------------------
_EXCERPT_HEAD_LINES = 30
_EXCERPT_TAIL_LINES = 30


def create_log_excerpt(full_log: str,
                       head: int = _EXCERPT_HEAD_LINES,
                       tail: int = _EXCERPT_TAIL_LINES) -> str:
    """
    Create an abbreviated log showing the first and last N lines.

    If the log is short enough, returns it as-is.
    """
    lines = full_log.splitlines()
    total = len(lines)

    if total <= head + tail:
        return full_log

    head_lines = lines[:head]
    tail_lines = lines[-tail:] if tail else []
    omitted = total - head - tail

    return "\n".join(
        head_lines
        + [f"\n... ({omitted} lines omitted) ...\n"]
        + tail_lines
    )


def make_container_name(job_id: Optional[str] = None) -> str:
    """``build-<job id or ms timestamp>-<random suffix>``."""
    stem = job_id or str(int(time.time() * 1000))
    return f"build-{stem}-{uuid.uuid4().hex[:8]}"


# ---------------------------------------------------------------------------
# Scoped sandbox acquisition
# ---------------------------------------------------------------------------
def teardown_session(runtime: DockerRuntime, session: SandboxSession) -> None:
    """Stop then force-remove the container. Never raises."""
    stopped = False
    try:
        runtime.stop(session.container_id, session.spec.stop_grace_seconds)
        stopped = True
    except Exception as e:
        # Container may already be stopped
        logger.debug("Stop failed for %s: %s", session.name, e)

    try:
        runtime.remove(session.container_id, force=True, volumes=True)
        logger.info("Container cleaned up: %s", session.name)
    except Exception as e:
        logger.error("Failed to cleanup container %s: %s", session.name, e)
        if not stopped:
            logger.critical(
                "Container %s (%s) could not be stopped or removed; it may still be running "
                "and any phase thread attached to it will not exit",
                session.name, session.container_id,
            )

    session.state = SessionState.TORN_DOWN


@contextmanager
def sandbox_session(runtime: DockerRuntime, source_root: str,
                    spec: SandboxSpec, name: str) -> Iterator[SandboxSession]:
    """
    Create a locked-down container for ``source_root`` and guarantee its
    teardown when the block exits, however it exits.
    """
    container_id = runtime.create(
        image=spec.image,
        name=name,
        working_dir=spec.working_dir,
        binds={source_root: {"bind": spec.working_dir, "mode": "rw"}},
        environment=list(spec.environment),
        dns=list(spec.dns),
        network_mode=spec.network,
        mem_limit=spec.memory_limit_bytes,
        memswap_limit=spec.memory_limit_bytes,
        cpu_period=spec.cpu_period,
        cpu_quota=spec.cpu_quota,
        cap_drop=["ALL"],
        security_opt=["no-new-privileges"],
        labels={"role": "build-sandbox"},
    )
    session = SandboxSession(container_id=container_id, name=name, spec=spec)
    logger.info(
        "Created sandbox %s | image=%s | mem=%d | cpu=%d/%d",
        name, spec.image, spec.memory_limit_bytes, spec.cpu_quota, spec.cpu_period,
    )
    try:
        yield session
    finally:
        teardown_session(runtime, session)


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------
class SandboxBuildExecutor:

    def __init__(self, runtime: Optional[DockerRuntime] = None,
                 spec: Optional[SandboxSpec] = None) -> None:
        self.runtime = runtime or DockerRuntime()
        self.spec = spec or SandboxSpec()

    def build(self, source_root: str, framework_hint, job_id: Optional[str] = None) -> BuildResult:
        """
        Build ``source_root`` for ``framework_hint`` in a fresh sandbox.

        Returns
        -------
        BuildResult
            On success, with the resolved output directory.

        Raises
        ------
        BuildFailure
            A phase command exited non-zero.
        BuildTimeout
            A phase command exceeded ``spec.phase_timeout_seconds``.
        InfrastructureError
            The container runtime failed.
        """
        source_root = os.path.abspath(source_root)
        commands = resolve_commands(framework_hint)
        result = BuildResult(
            framework=commands.framework,
            commands=commands,
            output_directory=resolve_output_directory(source_root, commands.framework),
            container_name=make_container_name(job_id),
        )
        start_time = time.monotonic()

        logger.info("Creating secure build container for %s (%s)...",
                    source_root, commands.framework.value)

        with sandbox_session(self.runtime, source_root, self.spec, result.container_name) as session:
            self.runtime.start(session.container_id)
            session.state = SessionState.STARTED
            logger.info("Container started: %s", session.name)

            logger.info("Installing dependencies (network enabled)...")
            result.phase_logs["install"] = self.run_phase(session, "install", commands.install_command)
            session.state = SessionState.DEPENDENCIES_INSTALLED

            logger.info("Disabling network access...")
            self.detach_network(session)
            session.state = SessionState.NETWORK_DETACHED

            logger.info("Building project (network disabled)...")
            result.phase_logs["build"] = self.run_phase(session, "build", commands.build_command)
            session.state = SessionState.BUILT

        result.duration_seconds = round(time.monotonic() - start_time, 3)
        logger.info("Build completed successfully in %.2fs | output=%s",
                    result.duration_seconds, result.output_directory)
        return result

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------
    def detach_network(self, session: SandboxSession) -> None:
        """Force-disconnect the sandbox network. Failures are logged, not raised."""
        try:
            self.runtime.disconnect_network(session.container_id, session.spec.network, force=True)
            session.network_state = NetworkState.DETACHED
            logger.info("Network access disabled for container: %s", session.name)
        except Exception as e:
            logger.warning(
                "Failed to disable network (container may already be disconnected): %s", e,
            )

    def run_phase(self, session: SandboxSession, phase: str, command: str) -> str:
        """
        Execute ``command`` under the phase timeout.

        The execution runs on its own thread; on timeout it is cancelled and
        BuildTimeout raised while the calling thread carries on to teardown.
        """
        timeout = session.spec.phase_timeout_seconds
        cancelled = threading.Event()
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"{session.name}-{phase}")
        future = pool.submit(self._exec_command, session, phase, command, cancelled)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            cancelled.set()
            future.cancel()
            logger.error("Build timeout in %s phase after %ss - killing container", phase, timeout)
            raise BuildTimeout(phase=phase, command=command, timeout_seconds=timeout)
        finally:
            pool.shutdown(wait=False)

    def _exec_command(self, session: SandboxSession, phase: str, command: str,
                      cancelled: threading.Event) -> str:
        exec_id, chunks = self.runtime.exec_stream(session.container_id, command)

        output: list[str] = []
        for chunk in chunks:
            if cancelled.is_set():
                break
            output.append(chunk)
            for line in chunk.splitlines():
                if any(marker in line for marker in LOG_MARKERS):
                    logger.info("[%s] %s", phase, line.strip())

        full_output = "".join(output)
        if cancelled.is_set():
            return full_output

        exit_code = self.runtime.exec_exit_code(exec_id)
        if exit_code is not None and exit_code != 0:
            logger.error("Command failed with output:\n%s", create_log_excerpt(full_output))
            raise BuildFailure(
                f"Build command failed in {phase} phase (exit {exit_code}): {command}",
                command=command,
                output=create_log_excerpt(full_output),
                exit_code=exit_code,
                phase=phase,
            )
        return full_output
