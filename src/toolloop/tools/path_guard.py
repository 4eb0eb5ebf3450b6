"""Path validation gate consulted by every tool that touches the workspace filesystem."""

import logging
from functools import lru_cache
from pathlib import Path
from typing import (
    Iterable,
    Tuple,
)

from toolloop.config import settings
from toolloop.core.errors import PathAccessDenied

logger = logging.getLogger(__name__)


class PathGuard:
    """
    Resolve tool-supplied paths against a workspace root.

    Paths are interpreted relative to *root* (a leading ``/`` is ignored, ``/`` alone means the
    root itself).  Anything that escapes the root, or lies under one of the *protected*
    prefixes, is rejected.  Prefix matching is case-insensitive and works on whole path
    components.
    """

    def __init__(self, root: str | Path, protected: Iterable[str] = ()) -> None:
        self.root = Path(root).resolve()
        cleaned = (p.replace("\\", "/").strip().strip("/") for p in protected)
        self.protected: Tuple[Path, ...] = tuple((self.root / p).resolve() for p in cleaned if p)

    def contains(self, path: Path) -> bool:
        """True when *path*, with symlinks resolved, lies inside the workspace root."""
        full = path.resolve()
        return full == self.root or self.root in full.parents

    def is_protected(self, path: Path) -> bool:
        candidate = path.as_posix().lower()
        for prefix in self.protected:
            protected = prefix.as_posix().lower()
            if candidate == protected or candidate.startswith(protected.rstrip("/") + "/"):
                return True
        return False

    def resolve(
        self, relative_path: str | None, *, must_exist: bool = True, expect_directory: bool = False
    ) -> Path:
        """
        Validate *relative_path* and return its absolute form.

        Raises
        ------
        PathAccessDenied
            If the path leaves the workspace or is inside a protected directory.
        FileNotFoundError
            If *must_exist* is set and no file (or directory) exists there.
        """
        cleaned = (relative_path or "").replace("\\", "/").strip().lstrip("/")
        full = (self.root / cleaned).resolve()

        if not self.contains(full):
            logger.error("Access denied: '%s' resolves outside the workspace", relative_path)
            raise PathAccessDenied(f"The path '{relative_path}' is outside the workspace.")
        if self.is_protected(full):
            logger.error("Access denied: '%s' is within a protected directory", relative_path)
            raise PathAccessDenied(
                f"Access denied: the path '{relative_path}' is within a protected directory."
            )

        if must_exist:
            exists = full.is_dir() if expect_directory else full.is_file()
            if not exists:
                what = "Directory" if expect_directory else "File"
                raise FileNotFoundError(f"{what} not found at '{relative_path}'.")
        return full

    def relative(self, full_path: Path) -> str:
        """Workspace-relative POSIX form of *full_path*."""
        rel = full_path.resolve().relative_to(self.root).as_posix()
        return rel if rel != "." else "/"


@lru_cache(maxsize=1)
def get_path_guard() -> PathGuard:
    """Guard for the configured workspace; call ``cache_clear()`` after changing settings."""
    return PathGuard(settings.WORKSPACE_ROOT, settings.PROTECTED_DIRECTORIES)
