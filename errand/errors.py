"""Error taxonomy shared by every errand component.

Tool errors are non-fatal: the registry turns them into ToolResult values
that the agent loop feeds back to the provider. Provider, store and bus
errors are exceptions; the agent loop catches them at the request boundary
and answers with a single error reply.
"""

from __future__ import annotations


class ErrandError(Exception):
    """Base class for all errand errors."""

    kind: str = "Error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.kind

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "message": self.message}


# ── Tool registry / sandbox ───────────────────────────────────


class ToolError(ErrandError):
    """A tool call could not produce output. Never fatal to the agent loop."""

    kind = "ToolError"


class ValidationError(ToolError):
    """Unknown tool, or arguments that do not match the tool's schema."""

    kind = "ValidationError"


class ToolTimeoutError(ToolError):
    """Tool execution exceeded its time bound."""

    kind = "TimeoutError"


class SandboxViolation(ToolError):
    """A path or command resolves outside the workspace root."""

    kind = "SandboxViolation"

    def __init__(self, path: str, root: str = "", reason: str = ""):
        detail = reason or f"Path {path} is outside workspace {root}"
        super().__init__(detail)
        self.path = path
        self.root = root


class ToolExecutionError(ToolError):
    """The executor itself failed (I/O error, bad exit, HTTP failure)."""

    kind = "ExecutionError"


# ── Provider gateway ──────────────────────────────────────────


class ProviderError(ErrandError):
    """Reasoning backend failure."""

    kind = "ProviderError"


class TransientProviderError(ProviderError):
    """Network error, timeout, rate limit or 5xx. Worth retrying."""

    kind = "TransientProviderError"

    def __init__(self, message: str = "", retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class TerminalProviderError(ProviderError):
    """Authentication or configuration problem. Retrying will not help."""

    kind = "TerminalProviderError"


# ── Bus ───────────────────────────────────────────────────────


class BusError(ErrandError):
    kind = "BusError"


class BusOverflow(BusError):
    """The per-session queue is full."""

    kind = "BusOverflow"

    def __init__(self, session_id: str, capacity: int):
        super().__init__(f"Queue for session {session_id} is full ({capacity} pending)")
        self.session_id = session_id
        self.capacity = capacity


# ── Session store ─────────────────────────────────────────────


class StoreError(ErrandError):
    kind = "StoreError"


class SessionNotFound(StoreError):
    kind = "NotFound"

    def __init__(self, key: str):
        super().__init__(f"Session not found: {key}")
        self.key = key


class LockTimeout(StoreError):
    kind = "LockTimeout"

    def __init__(self, key: str, timeout: float):
        super().__init__(f"Timed out after {timeout}s waiting for session lock: {key}")
        self.key = key
        self.timeout = timeout


class StoreIOFailure(StoreError):
    """Persisting a session failed; the append was not applied."""

    kind = "StoreIOFailure"


# ── Scheduler ─────────────────────────────────────────────────


class SchedulerJobError(ErrandError):
    """A fired job failed downstream. Reported; the schedule continues."""

    kind = "SchedulerJobError"

    def __init__(self, job_id: str, message: str):
        super().__init__(f"Job {job_id} failed: {message}")
        self.job_id = job_id
