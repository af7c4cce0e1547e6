"""
Project Detector
================
Detects the framework of a source tree from its manifest markers.

Detection is best-effort and deterministic: the same tree always yields the
same framework. Only the tree root is inspected.

Rules (first match wins):
    1. package.json present → inspect dependencies + devDependencies
       (next, @angular/core, vue, vite, react in that order).
       A manifest with none of them, or one that cannot be parsed,
       is treated as REACT.
    2. requirements.txt / setup.py present → PYTHON
    3. Otherwise → STATIC
"""
import json
import logging
import os

from app.executor.command_resolver import Framework

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# package.json dependency → Framework (ordered by priority)
# ---------------------------------------------------------------------------
# Order matters: Next and Vite projects usually also depend on react/vue.
DEPENDENCY_SIGNALS: list[tuple[str, Framework]] = [
    ("next",          Framework.NEXT),
    ("@angular/core", Framework.ANGULAR),
    ("vue",           Framework.VUE),
    ("vite",          Framework.VITE),
    ("react",         Framework.REACT),
]

PYTHON_MARKERS: tuple[str, ...] = ("requirements.txt", "setup.py")


def _read_dependencies(package_json: str) -> set[str]:
    try:
        with open(package_json, "r", encoding="utf-8") as f:
            manifest = json.load(f)
    except (OSError, ValueError) as exc:
        logger.warning("Could not parse %s: %s", package_json, exc)
        return set()
    if not isinstance(manifest, dict):
        return set()

    names: set[str] = set()
    for section in ("dependencies", "devDependencies"):
        deps = manifest.get(section)
        if isinstance(deps, dict):
            names.update(deps.keys())
    return names


def detect_framework(source_root: str) -> Framework:
    """
    Classify the source tree at ``source_root``.

    Returns
    -------
    Framework
        Never None; unresolved trees are STATIC.
    """
    if not os.path.isdir(source_root):
        return Framework.STATIC

    package_json = os.path.join(source_root, "package.json")
    if os.path.isfile(package_json):
        deps = _read_dependencies(package_json)
        for dep, framework in DEPENDENCY_SIGNALS:
            if dep in deps:
                return framework
        return Framework.REACT

    for marker in PYTHON_MARKERS:
        if os.path.isfile(os.path.join(source_root, marker)):
            return Framework.PYTHON

    return Framework.STATIC
