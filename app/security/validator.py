"""
Security Validator
==================
Static pre-flight screen of an untrusted source tree, run before any
container is created.

Two checks:
    1. Size ceilings (ENFORCED)
       - Aggregate tree size, excluding node_modules/ and .git/, must not
         exceed MAX_TOTAL_SIZE_BYTES.
       - No single file may exceed MAX_FILE_SIZE_BYTES. Hitting this stops
         the walk immediately.
       Either violation raises SizeExceeded.

    2. Suspicious-content scan (ADVISORY ONLY)
       - Text files with a recognised extension are searched for a fixed set
         of substrings (process spawning, destructive shell commands,
         network fetches, secret-file paths, environment introspection).
       - Matches are logged and reported. They NEVER fail validation.
       - Binary / unrecognised files are not scanned but still count
         toward the size ceilings.
       - Only regular files are read. Device nodes, FIFOs and dangling
         links are skipped.

Symlinks are sized by their target, so a link cannot smuggle an
oversized file past the ceilings.

The validator never mutates the source tree.
"""
import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

from app.core.config import MAX_FILE_SIZE_BYTES, MAX_TOTAL_SIZE_BYTES
from app.core.errors import SizeExceeded

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Subtrees excluded from both size accounting and scanning
# ---------------------------------------------------------------------------
EXCLUDED_DIRS: frozenset[str] = frozenset({"node_modules", ".git"})

# ---------------------------------------------------------------------------
# Advisory patterns
# ---------------------------------------------------------------------------
SUSPICIOUS_PATTERNS: tuple[str, ...] = (
    "eval(",
    "exec(",
    "child_process",
    "rm -rf",
    "curl",
    "wget",
    "/etc/passwd",
    "process.env",
)

# Script, markup, style, shell and structured-data extensions
TEXT_EXTENSIONS: frozenset[str] = frozenset({
    ".js", ".ts", ".jsx", ".tsx",
    ".json", ".html",
    ".css", ".sh",
})


@dataclass(frozen=True)
class SuspiciousMatch:
    path: str       # relative to the source root, forward slashes
    pattern: str


@dataclass
class ValidationReport:
    """
    Outcome of a passed validation.

    Fields
    ------
    total_size_bytes : int
        Size of the tree excluding EXCLUDED_DIRS.
    files_scanned : int
        Number of text files searched for suspicious patterns.
    findings : list[SuspiciousMatch]
        Advisory matches. Informational only.
    """
    total_size_bytes: int = 0
    files_scanned: int = 0
    findings: List[SuspiciousMatch] = field(default_factory=list)


def is_text_file(name: str) -> bool:
    return os.path.splitext(name.lower())[1] in TEXT_EXTENSIONS


class SecurityValidator:

    def __init__(self,
                 max_total_size: int = MAX_TOTAL_SIZE_BYTES,
                 max_file_size: int = MAX_FILE_SIZE_BYTES,
                 patterns: tuple[str, ...] = SUSPICIOUS_PATTERNS) -> None:
        self.max_total_size = max_total_size
        self.max_file_size = max_file_size
        self.patterns = patterns

    def validate(self, source_root: str) -> ValidationReport:
        """
        Screen ``source_root``.

        Returns
        -------
        ValidationReport
            On success. Suspicious matches are included but do not fail.

        Raises
        ------
        SizeExceeded
            Aggregate or per-file ceiling exceeded.
        """
        report = ValidationReport()
        report.total_size_bytes = self.calculate_tree_size(source_root)

        self._scan_tree(source_root, report)

        if report.findings:
            logger.warning(
                "Security scan found %d suspicious pattern(s) in %s (advisory, build continues)",
                len(report.findings), source_root,
            )
        logger.info(
            "Security validation passed | root=%s | size=%d bytes | scanned=%d files",
            source_root, report.total_size_bytes, report.files_scanned,
        )
        return report

    # ------------------------------------------------------------------
    # Size ceilings
    # ------------------------------------------------------------------
    def calculate_tree_size(self, source_root: str) -> int:
        """Sum file sizes recursively, enforcing both ceilings as it goes."""
        total = 0
        for root, dirs, files in os.walk(source_root):
            dirs[:] = sorted(d for d in dirs if d not in EXCLUDED_DIRS)
            for fname in sorted(files):
                path = os.path.join(root, fname)
                try:
                    size = os.stat(path).st_size
                except OSError:
                    logger.warning("Could not stat file: %s", path)
                    continue

                if size > self.max_file_size:
                    raise SizeExceeded(
                        f"File too large: {os.path.relpath(path, source_root)} "
                        f"({size} bytes, max: {self.max_file_size})",
                        size_bytes=size,
                        limit_bytes=self.max_file_size,
                        path=path,
                    )

                total += size
                if total > self.max_total_size:
                    raise SizeExceeded(
                        f"Project size exceeds limit: more than {total} bytes "
                        f"(max: {self.max_total_size})",
                        size_bytes=total,
                        limit_bytes=self.max_total_size,
                    )
        return total

    # ------------------------------------------------------------------
    # Advisory content scan
    # ------------------------------------------------------------------
    def _scan_tree(self, source_root: str, report: ValidationReport) -> None:
        for root, dirs, files in os.walk(source_root):
            dirs[:] = sorted(d for d in dirs if d not in EXCLUDED_DIRS)
            for fname in sorted(files):
                if not is_text_file(fname):
                    continue
                path = os.path.join(root, fname)
                if not os.path.isfile(path):
                    logger.warning("Skipping non-regular file: %s", path)
                    continue
                matches = self.scan_file(path)
                if matches is None:
                    continue
                report.files_scanned += 1
                rel = os.path.relpath(path, source_root).replace(os.sep, "/")
                for pattern in matches:
                    logger.warning("Suspicious pattern '%s' found in: %s", pattern, rel)
                    report.findings.append(SuspiciousMatch(path=rel, pattern=pattern))

    def scan_file(self, path: str) -> Optional[List[str]]:
        """Return the patterns present in ``path``, or None if unreadable."""
        try:
            with open(path, "r", encoding="utf-8", errors="replace") as f:
                content = f.read()
        except OSError:
            logger.warning("Could not scan file: %s", path)
            return None
        return [p for p in self.patterns if p in content]
