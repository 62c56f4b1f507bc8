"""Utility functions for errand."""

import os
import re
import tempfile
from datetime import datetime
from pathlib import Path

_data_path: Path | None = None


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, creating it if necessary."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def set_data_path(path: Path | None) -> None:
    """Override the data directory (tests and sandboxed runs)."""
    global _data_path
    _data_path = path


def get_data_path() -> Path:
    """Get the errand data directory (~/.errand by default)."""
    if _data_path is not None:
        return ensure_dir(_data_path)
    return ensure_dir(Path.home() / ".errand")


def get_workspace_path(workspace: str | None = None) -> Path:
    """
    Get the workspace path.

    Args:
        workspace: Optional workspace path. Defaults to ~/.errand/workspace.

    Returns:
        Expanded and ensured workspace path.
    """
    if workspace:
        path = Path(workspace).expanduser()
    else:
        path = get_data_path() / "workspace"
    return ensure_dir(path)


def get_sessions_path() -> Path:
    """Get the sessions storage directory."""
    return ensure_dir(get_data_path() / "sessions")


def today_date() -> str:
    """Get today's date in YYYY-MM-DD format."""
    return datetime.now().strftime("%Y-%m-%d")


_UNSAFE_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def safe_filename(name: str) -> str:
    """Convert a string to a safe filename."""
    return _UNSAFE_CHARS.sub("_", name).strip()


def atomic_write_text(path: Path, content: str) -> None:
    """Write text to ``path`` atomically.

    The data goes to a temp file in the same directory, is fsynced, and then
    replaces the target with ``os.replace``. Readers see either the old file or
    the new one, never a partial write. Raises OSError on failure; the target
    is left untouched in that case.
    """
    ensure_dir(path.parent)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise
