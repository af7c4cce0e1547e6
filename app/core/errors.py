"""
Errors
======
Exception taxonomy for the build pipeline.

    BuildPipelineError
    ├── SecurityViolation        - pre-flight screen rejected the source tree
    │   └── SizeExceeded         - aggregate or per-file size ceiling hit
    ├── BuildFailure             - a phase command exited non-zero
    ├── BuildTimeout             - a phase command exceeded its bound
    └── InfrastructureError      - runtime / storage / queue unreachable or malformed
        └── ObjectNotFound       - storage key absent

The worker converts every one of these into a BUILD_FAILED record.
"""
from typing import Optional


class BuildPipelineError(Exception):
    """Base class for every error the worker knows how to persist."""


class SecurityViolation(BuildPipelineError):
    pass


class SizeExceeded(SecurityViolation):
    def __init__(self, message: str, size_bytes: int, limit_bytes: int,
                 path: Optional[str] = None) -> None:
        super().__init__(message)
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes
        self.path = path


class BuildFailure(BuildPipelineError):
    """
    A phase command finished with a non-zero exit code.

    ``output`` holds the (possibly shortened) combined stdout/stderr.
    """

    def __init__(self, message: str, command: str = "", output: str = "",
                 exit_code: Optional[int] = None, phase: str = "") -> None:
        super().__init__(message)
        self.command = command
        self.output = output
        self.exit_code = exit_code
        self.phase = phase


class BuildTimeout(BuildPipelineError):
    def __init__(self, phase: str, command: str, timeout_seconds: float) -> None:
        super().__init__(
            f"Build exceeded the time limit of {timeout_seconds:g}s "
            f"during {phase} phase (command: {command})"
        )
        self.phase = phase
        self.command = command
        self.timeout_seconds = timeout_seconds


class InfrastructureError(BuildPipelineError):
    pass


class ObjectNotFound(InfrastructureError):
    def __init__(self, key: str) -> None:
        super().__init__(f"Object not found: {key}")
        self.key = key
