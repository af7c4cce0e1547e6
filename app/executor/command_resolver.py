"""
Command Resolver
================
Maps a framework to its install command, build command and build output
location.

The mapping is a closed table keyed by the ``Framework`` enum: adding a
framework means adding an enum member and a table row, nothing else.
Resolver never executes commands. It only returns strings.

Deterministic: same framework → same commands, always.

Known gap: the sandbox image is fixed (node), so the PYTHON row runs its
pip/setup.py commands in an image without a Python toolchain, and its
output location is the source root itself. The row is kept as-is.
"""
import os
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Framework(str, Enum):
    REACT = "react"
    VUE = "vue"
    ANGULAR = "angular"
    VITE = "vite"
    NEXT = "next"
    PYTHON = "python"
    STATIC = "static"

    @classmethod
    def from_hint(cls, hint: Optional[str]) -> "Framework":
        """Case-insensitive lookup. Unmatched hints map to STATIC (default row)."""
        if isinstance(hint, Framework):
            return hint
        if not hint:
            return cls.STATIC
        try:
            return cls(hint.strip().lower())
        except ValueError:
            return cls.STATIC


@dataclass(frozen=True)
class ResolvedCommands:
    """
    Immutable container for one framework's build recipe.

    Fields
    ------
    install_command : str
        Runs with network attached.
    build_command : str
        Runs with network detached.
    output_subdir : str
        Build output location relative to the source root ("" = root).
    framework : Framework
        The framework these commands were resolved for.
    """
    install_command: str
    build_command: str
    output_subdir: str
    framework: Framework


_NPM_INSTALL = "npm ci --production=false"
_NPM_BUILD = "npm run build"

# ---------------------------------------------------------------------------
# Command mapping: Framework → ResolvedCommands
# ---------------------------------------------------------------------------
_COMMAND_MAP: dict[Framework, ResolvedCommands] = {
    Framework.REACT: ResolvedCommands(_NPM_INSTALL, _NPM_BUILD, "dist", Framework.REACT),
    Framework.VUE: ResolvedCommands(_NPM_INSTALL, _NPM_BUILD, "dist", Framework.VUE),
    Framework.ANGULAR: ResolvedCommands(_NPM_INSTALL, _NPM_BUILD, "dist", Framework.ANGULAR),
    Framework.VITE: ResolvedCommands(_NPM_INSTALL, _NPM_BUILD, "dist", Framework.VITE),
    Framework.NEXT: ResolvedCommands(
        install_command=_NPM_INSTALL,
        # Static assets are moved into the standalone bundle so it is self-contained
        build_command=f"{_NPM_BUILD} && mv .next/static .next/standalone/",
        output_subdir=".next/standalone",
        framework=Framework.NEXT,
    ),
    Framework.PYTHON: ResolvedCommands(
        install_command="pip install -r requirements.txt",
        build_command="python setup.py build",
        output_subdir="",
        framework=Framework.PYTHON,
    ),
}

# Default row: unrecognised hints and STATIC
_FALLBACK = ResolvedCommands(_NPM_INSTALL, _NPM_BUILD, "", Framework.STATIC)


def resolve_commands(framework) -> ResolvedCommands:
    """
    Look up the build recipe for a framework or raw framework hint.

    Parameters
    ----------
    framework : Framework | str | None
        Anything ``Framework.from_hint`` accepts.

    Returns
    -------
    ResolvedCommands
    """
    return _COMMAND_MAP.get(Framework.from_hint(framework), _FALLBACK)


def resolve_output_directory(source_root: str, framework) -> str:
    """Absolute path of the build output for ``framework`` under ``source_root``."""
    subdir = resolve_commands(framework).output_subdir
    if not subdir:
        return source_root
    return os.path.join(source_root, *subdir.split("/"))


def get_supported_frameworks() -> list[str]:
    """Return all framework hints that have a dedicated table row."""
    return sorted(f.value for f in _COMMAND_MAP)
