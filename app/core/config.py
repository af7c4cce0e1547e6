"""
Configuration
=============
Loads environment variables from .env file using python-dotenv.

Environment Variables:
    REDIS_URL                 - Queue + job repository backend. Empty = in-memory.
    BUILD_QUEUE_KEY           - Redis list holding queued job ids (default: build_queue)
    DEPLOYMENT_KEY_PREFIX     - Redis key prefix for job records (default: deployment:)
    STORAGE_ROOT              - Root directory of the local object store
    WORKSPACE_ROOT            - Parent directory for per-job temp workspaces
    BUILD_IMAGE               - Sandbox base image (default: node:18-alpine)
    PHASE_TIMEOUT_SECONDS     - Bound for each of the install/build phases (default: 300)
    START_WORKER              - Start the consumer loop with the API process (default: true)

Sandbox Limits Philosophy:
    Every build gets its own container with 1 GiB of memory (no swap
    headroom), one full CPU core, no Linux capabilities and no privilege
    escalation. Network is attached only for the dependency install phase.

Timeout Philosophy:
    Timeouts are per phase, not per build. Worst-case wall time for one
    build is install timeout + build timeout.
"""
import logging
import os
import tempfile

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid integer for %s=%r, using default %d", name, raw, default)
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


_MIB = 1024 * 1024

# Backends
REDIS_URL = os.getenv("REDIS_URL", "")
BUILD_QUEUE_KEY = os.getenv("BUILD_QUEUE_KEY", "build_queue")
DEPLOYMENT_KEY_PREFIX = os.getenv("DEPLOYMENT_KEY_PREFIX", "deployment:")
STORAGE_ROOT = os.getenv("STORAGE_ROOT", os.path.join(os.getcwd(), "storage"))
WORKSPACE_ROOT = os.getenv("WORKSPACE_ROOT", tempfile.gettempdir())

# Storage key layout
SOURCE_PREFIX = os.getenv("SOURCE_PREFIX", "raw")
BUILD_OUTPUT_PREFIX = os.getenv("BUILD_OUTPUT_PREFIX", "built")
DEPLOYMENT_DOMAIN = os.getenv("DEPLOYMENT_DOMAIN", "deploy.localhost")

# Sandbox container
BUILD_IMAGE = os.getenv("BUILD_IMAGE", "node:18-alpine")
BUILD_WORKDIR = os.getenv("BUILD_WORKDIR", "/project")
BUILD_NETWORK = os.getenv("BUILD_NETWORK", "bridge")
BUILD_MEMORY_LIMIT_BYTES = _int_env("BUILD_MEMORY_LIMIT_BYTES", 1024 * _MIB)
BUILD_CPU_PERIOD = _int_env("BUILD_CPU_PERIOD", 100_000)
BUILD_CPU_QUOTA = _int_env("BUILD_CPU_QUOTA", 100_000)

# Timeouts (seconds)
PHASE_TIMEOUT_SECONDS = _int_env("PHASE_TIMEOUT_SECONDS", 300)
STOP_GRACE_SECONDS = _int_env("STOP_GRACE_SECONDS", 5)
QUEUE_POP_TIMEOUT_SECONDS = _int_env("QUEUE_POP_TIMEOUT_SECONDS", 5)

# Pre-flight security screen
MAX_TOTAL_SIZE_BYTES = _int_env("MAX_TOTAL_SIZE_BYTES", 500 * _MIB)
MAX_FILE_SIZE_BYTES = _int_env("MAX_FILE_SIZE_BYTES", 100 * _MIB)

# Job records
ERROR_MESSAGE_MAX_LENGTH = _int_env("ERROR_MESSAGE_MAX_LENGTH", 2000)

# Process host
START_WORKER = _bool_env("START_WORKER", True)
