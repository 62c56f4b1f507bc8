"""Cron tool for scheduling reminders and tasks."""

from typing import Any

from errand.agent.tools.base import Tool, ToolContext, current_tool_context
from errand.cron.service import CronService
from errand.cron.types import CronSchedule
from errand.errors import ValidationError


class CronTool(Tool):
    """Tool to schedule reminders and recurring tasks."""

    def __init__(self, cron_service: CronService):
        self._cron = cron_service

    @property
    def name(self) -> str:
        return "cron"

    @property
    def description(self) -> str:
        return "Schedule reminders and recurring tasks. Actions: add, list, remove."

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "action": {
                    "type": "string",
                    "enum": ["add", "list", "remove"],
                    "description": "Action to perform",
                },
                "message": {"type": "string", "description": "Reminder message (for add)"},
                "every_seconds": {
                    "type": "integer",
                    "minimum": 1,
                    "description": "Interval in seconds (for recurring tasks)",
                },
                "cron_expr": {
                    "type": "string",
                    "description": "Cron expression like '0 9 * * *' (for scheduled tasks)",
                },
                "tz": {"type": "string", "description": "IANA timezone for cron_expr, e.g. 'Europe/Berlin'"},
                "at_ms": {"type": "integer", "description": "Unix time in ms for a one-time reminder"},
                "job_id": {"type": "string", "description": "Job ID (for remove)"},
            },
            "required": ["action"],
        }

    async def execute(
        self,
        action: str,
        message: str = "",
        every_seconds: int | None = None,
        cron_expr: str | None = None,
        tz: str | None = None,
        at_ms: int | None = None,
        job_id: str | None = None,
        **kwargs: Any,
    ) -> str:
        if action == "add":
            return self._add_job(message, every_seconds, cron_expr, tz, at_ms)
        if action == "list":
            return self._list_jobs()
        if action == "remove":
            return self._remove_job(job_id)
        raise ValidationError(f"Unknown action: {action}")

    def _add_job(
        self,
        message: str,
        every_seconds: int | None,
        cron_expr: str | None,
        tz: str | None,
        at_ms: int | None,
    ) -> str:
        if not message:
            raise ValidationError("message is required for add")
        ctx = _require_context()

        if every_seconds:
            schedule = CronSchedule(kind="every", every_ms=every_seconds * 1000)
        elif cron_expr:
            schedule = CronSchedule(kind="cron", expr=cron_expr, tz=tz)
        elif at_ms:
            schedule = CronSchedule(kind="at", at_ms=at_ms)
        else:
            raise ValidationError("either every_seconds, cron_expr or at_ms is required")

        try:
            job = self._cron.add_job(
                name=message[:30],
                schedule=schedule,
                message=message,
                session_id=ctx.session_id,
                deliver=True,
                channel=ctx.channel,
                to=ctx.chat_id,
                delete_after_run=schedule.kind == "at",
            )
        except ValueError as e:
            raise ValidationError(str(e)) from e
        return f"Created job '{job.name}' (id: {job.id})"

    def _list_jobs(self) -> str:
        session_id = _require_context().session_id
        jobs = [j for j in self._cron.list_jobs() if j.payload.session_id == session_id]
        if not jobs:
            return "No scheduled jobs."
        lines = [f"- {j.name} (id: {j.id}, {j.schedule.describe()})" for j in jobs]
        return "Scheduled jobs:\n" + "\n".join(lines)

    def _remove_job(self, job_id: str | None) -> str:
        if not job_id:
            raise ValidationError("job_id is required for remove")
        session_id = _require_context().session_id
        job = self._cron.get_job(job_id)
        # Jobs of other sessions are reported as missing
        if job is not None and job.payload.session_id == session_id and self._cron.remove_job(job_id):
            return f"Removed job {job_id}"
        return f"Job {job_id} not found"


def _require_context() -> ToolContext:
    ctx = current_tool_context.get()
    if ctx is None:
        raise ValidationError("no session context (channel/chat_id)")
    return ctx
