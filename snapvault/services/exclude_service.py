"""Exclusion rules for the scan walk, in ``.gitignore`` pattern syntax."""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING

import pathspec

from snapvault.exceptions import ScanConfigError

if TYPE_CHECKING:
    from collections.abc import Iterable

COMMON_EXCLUDES = [
    ".snapvault/",
    ".git/",
    "node_modules/",
    ".venv/",
    "__pycache__/",
    "*.iso",
    "*.vdi",
    ".DS_Store",
    "Thumbs.db",
]

WINDOWS_EXCLUDES = [
    "AppData/",
    "Windows/",
    "ProgramData/",
    "Program Files/",
    "Program Files (x86)/",
    "System Volume Information/",
    "$Recycle.Bin/",
    "hiberfil.sys",
    "pagefile.sys",
    "swapfile.sys",
    "ntuser.dat*",
]

# System directories are anchored at the scan root: they are only
# meaningful when a whole filesystem is being backed up.
LINUX_EXCLUDES = [
    "/proc/",
    "/sys/",
    "/dev/",
    "/run/",
    "/tmp/",
    "/var/tmp/",
    "/var/cache/",
    ".cache/",
    "**/.local/share/Trash/",
]


def default_excludes(platform: str | None = None) -> list[str]:
    """Return the default exclusion patterns for a platform (``sys.platform`` style)."""
    platform = platform or sys.platform
    if platform.startswith("win"):
        return COMMON_EXCLUDES + WINDOWS_EXCLUDES
    if platform.startswith("linux"):
        return COMMON_EXCLUDES + LINUX_EXCLUDES
    return list(COMMON_EXCLUDES)


def compile_patterns(patterns: Iterable[str], *, ignore_case: bool = False) -> pathspec.PathSpec:
    """Compile gitignore-style patterns; later patterns (``!`` negations) win.

    Raises ScanConfigError for an empty or malformed pattern.
    """
    lines = list(patterns)
    for pattern in lines:
        if not pattern.strip():
            raise ScanConfigError("Invalid exclude pattern: empty")
    if ignore_case:
        lines = [line.lower() for line in lines]
    try:
        return pathspec.PathSpec.from_lines("gitwildmatch", lines)
    except ValueError as exc:
        raise ScanConfigError(f"Invalid exclude pattern: {exc}") from exc


class ExcludeMatcher:
    """Ordered exclusion patterns plus directories that are always skipped."""

    def __init__(
        self,
        globs: Iterable[str],
        excluded_dirs: Iterable[str] = (),
        *,
        ignore_case: bool | None = None,
    ) -> None:
        if ignore_case is None:
            ignore_case = sys.platform.startswith("win")
        self.globs = list(globs)
        self.ignore_case = ignore_case
        self._spec = compile_patterns(self.globs, ignore_case=ignore_case)
        self._dirs = tuple(d.strip("/") for d in excluded_dirs if d.strip("/"))

    @classmethod
    def from_settings(
        cls,
        extra_globs: Iterable[str],
        use_defaults: bool = True,
        excluded_dirs: Iterable[str] = (),
    ) -> ExcludeMatcher:
        globs = default_excludes() if use_defaults else []
        return cls([*globs, *extra_globs], excluded_dirs)

    def matches(self, path_rel: str, *, is_dir: bool = False) -> bool:
        """Return True if a ``/``-separated relative path is excluded.

        Directory-only patterns (``build/``) match a directory itself only
        when ``is_dir`` is set; they always match everything below it.
        """
        path_rel = path_rel.strip("/")
        if not path_rel:
            return False
        for excluded in self._dirs:
            if path_rel == excluded or path_rel.startswith(excluded + "/"):
                return True
        candidate = path_rel.lower() if self.ignore_case else path_rel
        if self._spec.match_file(candidate):
            return True
        return is_dir and self._spec.match_file(candidate + "/")
