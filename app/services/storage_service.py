"""
Storage Service
===============
Object storage for source trees and build artifacts.

Keys are ``/``-separated, e.g. ``raw/<job id>/src/index.js`` or
``built/<job id>/index.html``. Directory operations work on key prefixes.

LocalObjectStorage maps keys onto files below a root directory. It is the
backend for single-host deployments and for tests.

Operations:
    upload_directory(local_path, prefix)    - recursive, skips .git/ and node_modules/
    download_directory(prefix, local_path)  - recreates relative paths
    file_exists(key)
    download_file(key)                      - raises ObjectNotFound when absent
"""
import logging
import os
import shutil

from app.core.config import STORAGE_ROOT
from app.core.errors import InfrastructureError, ObjectNotFound

logger = logging.getLogger(__name__)

SKIPPED_DIRS: frozenset[str] = frozenset({".git", "node_modules"})


class LocalObjectStorage:

    def __init__(self, root: str = STORAGE_ROOT) -> None:
        self.root = os.path.abspath(root)

    def _path_for(self, key: str) -> str:
        parts = [p for p in key.strip("/").split("/") if p]
        if not parts or any(p in (".", "..") for p in parts):
            raise InfrastructureError(f"Invalid storage key: {key!r}")
        return os.path.join(self.root, *parts)

    def upload_directory(self, local_path: str, prefix: str) -> int:
        """Upload every file under ``local_path``. Returns the number of objects written."""
        if not os.path.isdir(local_path):
            raise InfrastructureError(f"Upload source is not a directory: {local_path}")

        count = 0
        for root, dirs, files in os.walk(local_path):
            dirs[:] = [d for d in dirs if d not in SKIPPED_DIRS]
            for fname in files:
                src = os.path.join(root, fname)
                rel = os.path.relpath(src, local_path).replace(os.sep, "/")
                key = f"{prefix.rstrip('/')}/{rel}"
                dest = self._path_for(key)
                logger.debug("Uploading: %s -> %s", rel, key)
                try:
                    os.makedirs(os.path.dirname(dest), exist_ok=True)
                    shutil.copyfile(src, dest)
                except OSError as e:
                    raise InfrastructureError(f"Failed to upload {key}: {e}") from e
                count += 1
        logger.info("Uploaded %d object(s) to %s", count, prefix)
        return count

    def download_directory(self, prefix: str, local_path: str) -> int:
        """Download every object under ``prefix`` into ``local_path``."""
        os.makedirs(local_path, exist_ok=True)
        base = self._path_for(prefix)
        if not os.path.isdir(base):
            raise ObjectNotFound(prefix)

        count = 0
        for root, _, files in os.walk(base):
            for fname in files:
                src = os.path.join(root, fname)
                rel = os.path.relpath(src, base)
                dest = os.path.join(local_path, rel)
                logger.debug("Downloading: %s/%s", prefix, rel.replace(os.sep, "/"))
                try:
                    os.makedirs(os.path.dirname(dest), exist_ok=True)
                    shutil.copyfile(src, dest)
                except OSError as e:
                    raise InfrastructureError(f"Failed to download {prefix}/{rel}: {e}") from e
                count += 1
        logger.info("Downloaded %d object(s) from %s", count, prefix)
        return count

    def file_exists(self, key: str) -> bool:
        return os.path.isfile(self._path_for(key))

    def download_file(self, key: str) -> bytes:
        path = self._path_for(key)
        if not os.path.isfile(path):
            logger.error("File not found: %s", key)
            raise ObjectNotFound(key)
        try:
            with open(path, "rb") as f:
                return f.read()
        except OSError as e:
            raise InfrastructureError(f"Failed to download {key}: {e}") from e
