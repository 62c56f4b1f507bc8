"""Workspace confinement for file and process tools."""

import os
import re
from pathlib import Path
from urllib.parse import unquote

from loguru import logger

from errand.errors import SandboxViolation

# Destructive shell patterns refused regardless of paths
DEFAULT_DENY_PATTERNS = [
    r"\brm\s+-[rf]{1,2}\b",  # rm -r, rm -rf, rm -fr
    r"\bdel\s+/[fq]\b",  # del /f, del /q
    r"\brmdir\s+/s\b",  # rmdir /s
    r"\b(format|mkfs|diskpart)\b",  # disk operations
    r"\bdd\s+if=",  # dd
    r">\s*/dev/sd",  # write to disk
    r"\b(shutdown|reboot|poweroff)\b",  # system power
    r":\(\)\s*\{.*\};\s*:",  # fork bomb
]

_ABS_POSIX_PATH = re.compile(r"(?:^|[\s|>'\"=;&()<`])(/[^\s\"'|;&<>]+)")
_HOME_PATH = re.compile(r"(?:^|[\s|>'\"=;&()<`])(~[^\s\"'|;&<>]*)")
_ABS_WIN_PATH = re.compile(r"[A-Za-z]:\\[^\s\"'|;&<>]+")
# ".." as a whole path component, delimited by shell syntax or a separator
_TRAVERSAL = re.compile(r"(?:^|[\s;&|()<>='\"`/\\])\.\.(?:$|[\s;&|()<>'\"`/\\])")


class Sandbox:
    """
    Resolves paths against a workspace root and refuses anything outside it.

    Every check happens before the caller performs any I/O. Symlinks are
    resolved, so a link inside the workspace that points outside is refused
    too.
    """

    def __init__(self, root: Path, deny_patterns: list[str] | None = None):
        self.root = Path(root).expanduser().resolve()
        self.deny_patterns = deny_patterns if deny_patterns is not None else DEFAULT_DENY_PATTERNS

    def contains(self, path: Path) -> bool:
        try:
            path.relative_to(self.root)
            return True
        except ValueError:
            return False

    def resolve(self, path: str, base: Path | None = None) -> Path:
        """
        Resolve ``path`` to an absolute path inside the workspace.

        Relative paths are taken relative to ``base`` (default: the root).
        Raises SandboxViolation when the resolved path escapes the root.
        """
        if not isinstance(path, str) or not path.strip():
            raise SandboxViolation(str(path), str(self.root), "Path must be a non-empty string")
        if "\x00" in path:
            raise SandboxViolation(path, str(self.root), "Path contains a NUL byte")

        # Percent-encoded traversal ("%2e%2e/") must not slip past the check.
        decoded = unquote(path)
        if decoded != path and ".." in Path(decoded).parts:
            raise SandboxViolation(path, str(self.root), f"Encoded traversal in path {path}")

        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = (base or self.root) / candidate

        # strict=False resolves symlinks of existing ancestors and normalizes "..".
        resolved = candidate.resolve(strict=False)
        if not self.contains(resolved):
            logger.warning("Sandbox: refused {} (resolves to {})", path, resolved)
            raise SandboxViolation(path, str(self.root))
        return resolved

    def check_command(self, command: str, cwd: Path | None = None) -> None:
        """Refuse shell commands that are destructive or reach outside the root."""
        lower = command.strip().lower()
        for pattern in self.deny_patterns:
            if re.search(pattern, lower):
                raise SandboxViolation(
                    command, str(self.root), "Command blocked by safety guard (dangerous pattern detected)"
                )

        if _TRAVERSAL.search(command):
            raise SandboxViolation(command, str(self.root), "Command blocked by safety guard (path traversal detected)")

        base = cwd or self.root
        for raw in _ABS_POSIX_PATH.findall(command) + _HOME_PATH.findall(command) + _ABS_WIN_PATH.findall(command):
            target = Path(os.path.expanduser(raw.strip())).resolve(strict=False)
            if not target.is_absolute():
                target = (base / target).resolve(strict=False)
            if not self.contains(target):
                raise SandboxViolation(
                    raw, str(self.root), f"Command blocked by safety guard (path outside workspace: {raw})"
                )
