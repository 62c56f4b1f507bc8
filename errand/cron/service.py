"""Cron service for scheduling agent tasks."""

import asyncio
import heapq
import json
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter
from loguru import logger

from errand.bus.events import InboundMessage, MessageKind
from errand.bus.queue import MessageBus
from errand.cron.types import CronJob, CronJobState, CronPayload, CronSchedule, CronStore
from errand.errors import ErrandError, SchedulerJobError
from errand.utils.helpers import atomic_write_text


def _now_ms() -> int:
    return int(time.time() * 1000)


def compute_next_run(schedule: CronSchedule, now_ms: int) -> int | None:
    """Compute the next run time in ms strictly after ``now_ms`` (None: never)."""
    if schedule.kind == "at":
        return schedule.at_ms if schedule.at_ms and schedule.at_ms > now_ms else None

    if schedule.kind == "every":
        if not schedule.every_ms or schedule.every_ms <= 0:
            return None
        return now_ms + schedule.every_ms

    if schedule.kind == "cron" and schedule.expr:
        tzinfo = ZoneInfo(schedule.tz) if schedule.tz else datetime.now().astimezone().tzinfo
        base = datetime.fromtimestamp(now_ms / 1000, tz=tzinfo)
        nxt = croniter(schedule.expr, base).get_next(datetime)
        return int(nxt.timestamp() * 1000)

    return None


def _validate_schedule(schedule: CronSchedule) -> None:
    if schedule.kind == "at" and not schedule.at_ms:
        raise ValueError("'at' schedule requires at_ms")
    if schedule.kind == "every" and (not schedule.every_ms or schedule.every_ms <= 0):
        raise ValueError("'every' schedule requires a positive every_ms")
    if schedule.kind == "cron":
        if not schedule.expr or not croniter.is_valid(schedule.expr):
            raise ValueError(f"Invalid cron expression: {schedule.expr!r}")
        if schedule.tz:
            try:
                ZoneInfo(schedule.tz)
            except (ZoneInfoNotFoundError, ValueError) as e:
                raise ValueError(f"Unknown timezone: {schedule.tz}") from e
    if schedule.kind not in ("at", "every", "cron"):
        raise ValueError(f"Unknown schedule kind: {schedule.kind}")


JobHandler = Callable[[CronJob], Awaitable[Any]]


class CronService:
    """
    Service for managing and executing scheduled jobs.

    Jobs sit in a min-heap keyed by ``(next_run_at_ms, id)``. One dispatch
    task sleeps until the earliest deadline (or until a change wakes it),
    fires every due job, then re-inserts it with a strictly later deadline.
    Heap entries made stale by edits are skipped when popped.
    """

    def __init__(
        self,
        store_path: Path,
        bus: MessageBus | None = None,
        on_job: JobHandler | None = None,
        clock: Callable[[], int] = _now_ms,
    ):
        self.store_path = Path(store_path)
        self.bus = bus
        self.on_job = on_job
        self._clock = clock
        self._store: CronStore | None = None
        self._heap: list[tuple[int, str]] = []
        self._wake = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._running = False

    # ── Persistence ───────────────────────────────────────────

    def _load_store(self) -> CronStore:
        """Load jobs from disk."""
        if self._store is not None:
            return self._store

        self._store = CronStore()
        if self.store_path.exists():
            try:
                data = json.loads(self.store_path.read_text(encoding="utf-8"))
                self._store.jobs = [self._job_from_dict(j) for j in data.get("jobs", [])]
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning("Failed to load cron store {}: {}", self.store_path, e)
                self._store.jobs = []
        self._rebuild_heap()
        return self._store

    @staticmethod
    def _job_from_dict(j: dict[str, Any]) -> CronJob:
        schedule = j["schedule"]
        payload = j.get("payload", {})
        state = j.get("state", {})
        return CronJob(
            id=j["id"],
            name=j.get("name", j["id"]),
            enabled=j.get("enabled", True),
            schedule=CronSchedule(
                kind=schedule["kind"],
                at_ms=schedule.get("atMs"),
                every_ms=schedule.get("everyMs"),
                expr=schedule.get("expr"),
                tz=schedule.get("tz"),
            ),
            payload=CronPayload(
                message=payload.get("message", ""),
                session_id=payload.get("sessionId"),
                deliver=payload.get("deliver", False),
                channel=payload.get("channel"),
                to=payload.get("to"),
            ),
            state=CronJobState(
                next_run_at_ms=state.get("nextRunAtMs"),
                last_run_at_ms=state.get("lastRunAtMs"),
                last_status=state.get("lastStatus"),
                last_error=state.get("lastError"),
                run_count=state.get("runCount", 0),
            ),
            created_at_ms=j.get("createdAtMs", 0),
            updated_at_ms=j.get("updatedAtMs", 0),
            delete_after_run=j.get("deleteAfterRun", False),
        )

    @staticmethod
    def _job_to_dict(j: CronJob) -> dict[str, Any]:
        return {
            "id": j.id,
            "name": j.name,
            "enabled": j.enabled,
            "schedule": {
                "kind": j.schedule.kind,
                "atMs": j.schedule.at_ms,
                "everyMs": j.schedule.every_ms,
                "expr": j.schedule.expr,
                "tz": j.schedule.tz,
            },
            "payload": {
                "message": j.payload.message,
                "sessionId": j.payload.session_id,
                "deliver": j.payload.deliver,
                "channel": j.payload.channel,
                "to": j.payload.to,
            },
            "state": {
                "nextRunAtMs": j.state.next_run_at_ms,
                "lastRunAtMs": j.state.last_run_at_ms,
                "lastStatus": j.state.last_status,
                "lastError": j.state.last_error,
                "runCount": j.state.run_count,
            },
            "createdAtMs": j.created_at_ms,
            "updatedAtMs": j.updated_at_ms,
            "deleteAfterRun": j.delete_after_run,
        }

    def _save_store(self) -> None:
        """Save jobs to disk."""
        if self._store is None:
            return
        data = {"version": self._store.version, "jobs": [self._job_to_dict(j) for j in self._store.jobs]}
        try:
            atomic_write_text(self.store_path, json.dumps(data, indent=2))
        except OSError as e:
            logger.error("Failed to save cron store {}: {}", self.store_path, e)

    # ── Heap ──────────────────────────────────────────────────

    def _rebuild_heap(self) -> None:
        self._heap = [
            (j.state.next_run_at_ms, j.id)
            for j in (self._store.jobs if self._store else [])
            if j.enabled and j.state.next_run_at_ms is not None
        ]
        heapq.heapify(self._heap)

    def _schedule(self, job: CronJob) -> None:
        if job.enabled and job.state.next_run_at_ms is not None:
            heapq.heappush(self._heap, (job.state.next_run_at_ms, job.id))
        self._wake.set()

    def _find(self, job_id: str) -> CronJob | None:
        return next((j for j in self._load_store().jobs if j.id == job_id), None)

    def _is_current(self, entry: tuple[int, str]) -> CronJob | None:
        """The job an entry refers to, or None if the entry is stale."""
        at_ms, job_id = entry
        job = self._find(job_id)
        if job is None or not job.enabled or job.state.next_run_at_ms != at_ms:
            return None
        return job

    def _next_delay(self) -> float | None:
        """Seconds until the earliest live deadline, None if nothing is scheduled."""
        while self._heap and self._is_current(self._heap[0]) is None:
            heapq.heappop(self._heap)
        if not self._heap:
            return None
        return max(0.0, (self._heap[0][0] - self._clock()) / 1000)

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        """Start the cron service."""
        self._running = True
        store = self._load_store()
        now = self._clock()
        # Deadlines missed while stopped stay in place and fire once on the first tick
        for job in store.jobs:
            if job.enabled and job.state.next_run_at_ms is None:
                job.state.next_run_at_ms = compute_next_run(job.schedule, now)
        self._save_store()
        self._rebuild_heap()
        self._task = asyncio.create_task(self._run())
        logger.info("Cron service started with {} jobs", len(store.jobs))

    def stop(self) -> None:
        """Stop the cron service."""
        self._running = False
        if self._task:
            self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        while self._running:
            self._wake.clear()
            delay = self._next_delay()
            try:
                if delay is None:
                    await self._wake.wait()
                elif delay > 0:
                    await asyncio.wait_for(self._wake.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Cron dispatch failed")

    async def tick(self) -> int:
        """Fire every job due at or before now. Returns the number fired."""
        now = self._clock()
        fired = 0
        while self._heap and self._heap[0][0] <= now:
            entry = heapq.heappop(self._heap)
            job = self._is_current(entry)
            if job is None:
                continue
            await self._execute_job(job, occurrence_ms=entry[0])
            fired += 1
        if fired:
            self._save_store()
        return fired

    async def _execute_job(self, job: CronJob, occurrence_ms: int | None = None) -> None:
        """Fire one job, record the outcome and reschedule it."""
        start_ms = self._clock()
        logger.info("Cron: executing job '{}' ({})", job.name, job.id)

        try:
            await self._fire(job)
            job.state.last_status = "ok"
            job.state.last_error = None
        except asyncio.CancelledError:
            raise
        except Exception as e:
            err = e if isinstance(e, SchedulerJobError) else SchedulerJobError(job.id, str(e))
            job.state.last_status = "error"
            job.state.last_error = err.message
            logger.error("Cron: {}", err.message)

        job.state.last_run_at_ms = start_ms
        job.state.run_count += 1
        job.updated_at_ms = self._clock()

        if job.schedule.kind == "at":
            if job.delete_after_run:
                self._load_store().jobs.remove(job)
            else:
                job.enabled = False
                job.state.next_run_at_ms = None
            return

        # Never schedule at or before the occurrence just fired
        floor = max(self._clock(), occurrence_ms or 0)
        nxt = compute_next_run(job.schedule, floor)
        if nxt is not None and nxt <= floor:
            nxt = floor + 1
        job.state.next_run_at_ms = nxt
        self._schedule(job)

    async def _fire(self, job: CronJob) -> None:
        if self.on_job is not None:
            await self.on_job(job)
            return
        if self.bus is None:
            raise SchedulerJobError(job.id, "no bus or handler configured")

        msg = InboundMessage(
            channel="cron",
            sender_id="cron",
            chat_id=job.id,
            content=job.payload.message,
            kind=MessageKind.SCHEDULED_TRIGGER,
            session_id=job.payload.session_id or f"cron:{job.id}",
            metadata={
                "job_id": job.id,
                "job_name": job.name,
                "deliver": job.payload.deliver,
                "deliver_channel": job.payload.channel,
                "deliver_to": job.payload.to,
            },
        )
        try:
            await self.bus.publish(msg)
        except ErrandError as e:
            raise SchedulerJobError(job.id, e.message) from e

    def record_outcome(self, job_id: str, error: str | None = None) -> None:
        """Record how downstream processing of a fired job went. The schedule is untouched."""
        job = self._find(job_id)
        if job is None:
            return
        job.state.last_status = "error" if error else "ok"
        job.state.last_error = error
        if error:
            logger.warning("Cron job {} failed downstream: {}", job_id, error)
        self._save_store()

    # ── Public API ────────────────────────────────────────────

    def list_jobs(self, include_disabled: bool = False) -> list[CronJob]:
        """List all jobs."""
        jobs = self._load_store().jobs if include_disabled else [j for j in self._load_store().jobs if j.enabled]
        return sorted(jobs, key=lambda j: j.state.next_run_at_ms or float("inf"))

    def get_job(self, job_id: str) -> CronJob | None:
        return self._find(job_id)

    def add_job(
        self,
        name: str,
        schedule: CronSchedule,
        message: str,
        session_id: str | None = None,
        deliver: bool = False,
        channel: str | None = None,
        to: str | None = None,
        delete_after_run: bool = False,
    ) -> CronJob:
        """Add a new job. Raises ValueError for an invalid schedule."""
        _validate_schedule(schedule)
        store = self._load_store()
        now = self._clock()

        job = CronJob(
            id=str(uuid.uuid4())[:8],
            name=name,
            enabled=True,
            schedule=schedule,
            payload=CronPayload(
                message=message,
                session_id=session_id,
                deliver=deliver,
                channel=channel,
                to=to,
            ),
            state=CronJobState(next_run_at_ms=compute_next_run(schedule, now)),
            created_at_ms=now,
            updated_at_ms=now,
            delete_after_run=delete_after_run,
        )

        store.jobs.append(job)
        self._save_store()
        self._schedule(job)
        logger.info("Cron: added job '{}' ({}) {}", name, job.id, schedule.describe())
        return job

    def remove_job(self, job_id: str) -> bool:
        """Remove a job by ID."""
        store = self._load_store()
        before = len(store.jobs)
        store.jobs = [j for j in store.jobs if j.id != job_id]
        removed = len(store.jobs) < before

        if removed:
            self._save_store()
            self._wake.set()
            logger.info("Cron: removed job {}", job_id)
        return removed

    def enable_job(self, job_id: str, enabled: bool = True) -> CronJob | None:
        """Enable or disable a job."""
        job = self._find(job_id)
        if job is None:
            return None
        job.enabled = enabled
        job.updated_at_ms = self._clock()
        if enabled:
            job.state.next_run_at_ms = compute_next_run(job.schedule, self._clock())
        else:
            job.state.next_run_at_ms = None
        self._save_store()
        self._schedule(job)
        return job

    async def run_job(self, job_id: str, force: bool = False) -> bool:
        """Manually run a job now."""
        job = self._find(job_id)
        if job is None or (not job.enabled and not force):
            return False
        await self._execute_job(job)
        self._save_store()
        return True

    def status(self) -> dict[str, Any]:
        """Get service status."""
        store = self._load_store()
        upcoming = [j.state.next_run_at_ms for j in store.jobs if j.enabled and j.state.next_run_at_ms]
        return {
            "enabled": self._running,
            "jobs": len(store.jobs),
            "next_wake_at_ms": min(upcoming) if upcoming else None,
        }
