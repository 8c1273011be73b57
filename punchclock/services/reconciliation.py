from __future__ import annotations

import asyncio
from collections.abc import Callable
from contextlib import suppress
from dataclasses import asdict, dataclass, field
from datetime import datetime, time, timedelta
import logging
import threading
from typing import Any

from punchclock.audit import AuditRecord, AuditSink, record_audit
from punchclock.clock import Clock
from punchclock.config import EngineConfig
from punchclock.models import AuditAction, AuditActorType, PunchSource, PunchType
from punchclock.services.anomalies import AnomalyDetector, OpenPunchCensus
from punchclock.services.locks import UserLockRegistry
from punchclock.services.notifications import NotificationSender, notify_best_effort
from punchclock.services.punch_store import PunchStore
from punchclock.services.timezones import (
    bounds_for_local_day,
    END_OF_DAY_OFFSET,
    load_timezone,
    normalize_ts,
    resolve_timezone,
    to_local,
)

logger = logging.getLogger("punchclock.scheduler")

AUTO_CLOSE_NOTE = "Auto-closed by system at end of day (missed punch out)"
ORPHAN_CLEANUP_WEEKDAY = 6
ORPHAN_CLEANUP_TIME = time(1, 0)

JOB_AUTO_CLOSE = "auto_close_open_punches"
JOB_REMINDERS = "send_punch_out_reminders"
JOB_HEALTH_CHECK = "run_health_check"
JOB_ORPHAN_CLEANUP = "cleanup_orphaned_punches"


@dataclass(slots=True)
class AutoCloseResult:
    closed_count: int = 0
    notifications_sent: int = 0
    failed_user_ids: list[int] = field(default_factory=list)
    stopped: bool = False


@dataclass(slots=True)
class ReminderResult:
    reminders_sent: int = 0
    already_reminded: int = 0
    failed_user_ids: list[int] = field(default_factory=list)
    stopped: bool = False


@dataclass(slots=True)
class HealthCheckResult:
    open_punch_count: int = 0
    orphaned_punch_count: int = 0
    odd_punch_user_count: int = 0
    alerts: list[str] = field(default_factory=list)
    failed_user_ids: list[int] = field(default_factory=list)


@dataclass(slots=True)
class OrphanCleanupResult:
    orphan_count: int = 0
    annotated_count: int = 0
    failed_user_ids: list[int] = field(default_factory=list)
    stopped: bool = False


def next_interval_run(after: datetime, seconds: int) -> datetime:
    return normalize_ts(after) + timedelta(seconds=seconds)


def next_hourly_run(after: datetime) -> datetime:
    current = normalize_ts(after).replace(minute=0, second=0, microsecond=0)
    return current + timedelta(hours=1)


def next_daily_run(after: datetime, at: time, tz_name: str) -> datetime:
    local_after = to_local(after, tz_name)
    candidate = datetime.combine(local_after.date(), at, tzinfo=load_timezone(tz_name))
    if candidate <= local_after:
        candidate = datetime.combine(local_after.date() + timedelta(days=1), at, tzinfo=load_timezone(tz_name))
    return normalize_ts(candidate)


def next_weekly_run(after: datetime, weekday: int, at: time, tz_name: str) -> datetime:
    local_after = to_local(after, tz_name)
    days_ahead = (weekday - local_after.weekday()) % 7
    candidate_day = local_after.date() + timedelta(days=days_ahead)
    candidate = datetime.combine(candidate_day, at, tzinfo=load_timezone(tz_name))
    if candidate <= local_after:
        candidate = datetime.combine(candidate_day + timedelta(days=7), at, tzinfo=load_timezone(tz_name))
    return normalize_ts(candidate)


@dataclass(slots=True)
class ScheduledJob:
    name: str
    run: Callable[[], Any]
    next_run_after: Callable[[datetime], datetime]
    next_run_at: datetime | None = None
    last_run_at: datetime | None = None
    last_result: Any | None = None
    last_error: str | None = None

    def status(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "next_run_at": self.next_run_at,
            "last_run_at": self.last_run_at,
            "last_result": asdict(self.last_result) if self.last_result is not None else None,
            "last_error": self.last_error,
        }


class ReconciliationScheduler:
    """Background reconciliation jobs.

    Each job can be called directly and is safe to re-run. One user's
    failure is logged with the user id and excluded from the counts; the
    rest of the fleet is still processed. ``start``/``stop`` drive the jobs
    from an asyncio loop in the process that owns the scheduler.
    """

    def __init__(
        self,
        store: PunchStore,
        notifier: NotificationSender,
        audit_sink: AuditSink,
        clock: Clock,
        config: EngineConfig,
        *,
        locks: UserLockRegistry | None = None,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._audit_sink = audit_sink
        self._clock = clock
        self._config = config
        self._locks = locks or UserLockRegistry()
        self._detector = AnomalyDetector(store, clock, config, locks=self._locks, audit_sink=audit_sink)
        self._reminded_punch_ids: dict[int, int] = {}
        self._shutdown = threading.Event()
        self._stop_event: asyncio.Event | None = None
        self._task: asyncio.Task[None] | None = None

        default_tz = config.default_timezone
        self.jobs: dict[str, ScheduledJob] = {
            JOB_AUTO_CLOSE: ScheduledJob(
                JOB_AUTO_CLOSE,
                self.auto_close_open_punches,
                lambda after: next_interval_run(after, config.scheduler_tick_seconds),
            ),
            JOB_REMINDERS: ScheduledJob(
                JOB_REMINDERS,
                self.send_punch_out_reminders,
                lambda after: next_daily_run(after, config.punch_out_reminder_time, default_tz),
            ),
            JOB_HEALTH_CHECK: ScheduledJob(
                JOB_HEALTH_CHECK,
                self.run_health_check,
                next_hourly_run,
            ),
            JOB_ORPHAN_CLEANUP: ScheduledJob(
                JOB_ORPHAN_CLEANUP,
                self.cleanup_orphaned_punches,
                lambda after: next_weekly_run(after, ORPHAN_CLEANUP_WEEKDAY, ORPHAN_CLEANUP_TIME, default_tz),
            ),
        }
        if not config.auto_close_enabled:
            del self.jobs[JOB_AUTO_CLOSE]

    def should_stop(self) -> bool:
        return self._shutdown.is_set()

    def _active_users(self) -> list[Any]:
        return self._store.list_active_users()

    def auto_close_open_punches(self) -> AutoCloseResult:
        """Close sessions left open past the local end of day.

        For each user, yesterday (local) is always checked and today is
        checked once the local clock reaches ``auto_close_local_time``. The
        OUT punch is placed one minute before the next local midnight, never
        before the IN it closes.
        """
        now_utc = normalize_ts(self._clock.now())
        result = AutoCloseResult()
        for user in self._active_users():
            if self.should_stop():
                result.stopped = True
                logger.info("auto_close_stopped", extra={"closed_count": result.closed_count})
                break
            try:
                closures = self._auto_close_user(user, now_utc)
            except Exception:
                result.failed_user_ids.append(user.id)
                logger.exception("auto_close_user_failed", extra={"user_id": user.id})
                continue

            for in_time, out_time in closures:
                result.closed_count += 1
                if notify_best_effort(
                    "missed_punch_out_alert",
                    self._notifier.send_missed_punch_out_alert,
                    user,
                    in_time,
                    out_time,
                    user_id=user.id,
                ):
                    result.notifications_sent += 1

        logger.info(
            "auto_close_complete",
            extra={
                "closed_count": result.closed_count,
                "notifications_sent": result.notifications_sent,
                "failed_user_ids": result.failed_user_ids,
            },
        )
        return result

    def _auto_close_user(self, user: Any, now_utc: datetime) -> list[tuple[datetime, datetime]]:
        tz_name = resolve_timezone(user, self._config)
        local_now = to_local(now_utc, tz_name)
        candidate_days = [local_now.date() - timedelta(days=1)]
        if local_now.time() >= self._config.auto_close_local_time:
            candidate_days.append(local_now.date())

        closures: list[tuple[datetime, datetime]] = []
        with self._locks.hold(user.id):
            for local_day in candidate_days:
                start_utc, end_utc = bounds_for_local_day(local_day, tz_name)
                punches = self._store.find_punches_in_range(user.id, start_utc, end_utc)
                if not punches or punches[-1].punch_type != PunchType.IN:
                    continue
                last_in = punches[-1]
                in_time = normalize_ts(last_in.punch_time)
                close_at = end_utc + END_OF_DAY_OFFSET - timedelta(minutes=1)
                close_at = max(min(close_at, now_utc), in_time)

                auto_punch = self._store.insert_punch(
                    user_id=user.id,
                    punch_type=PunchType.OUT,
                    punch_time=close_at,
                    source=PunchSource.SYSTEM,
                    notes=AUTO_CLOSE_NOTE,
                )
                logger.info(
                    "auto_close_punch_created",
                    extra={
                        "user_id": user.id,
                        "in_punch_id": last_in.id,
                        "out_punch_id": auto_punch.id,
                        "local_day": local_day.isoformat(),
                        "timezone": tz_name,
                    },
                )
                record_audit(
                    self._audit_sink,
                    AuditRecord(
                        action=AuditAction.PUNCH_AUTO_CLOSE,
                        actor_type=AuditActorType.SYSTEM,
                        performed_by=None,
                        target_user=user.id,
                        resource_id=auto_punch.id,
                        new_state=auto_punch.to_state() if hasattr(auto_punch, "to_state") else None,
                        description=AUTO_CLOSE_NOTE,
                    ),
                    required=False,
                )
                closures.append((in_time, normalize_ts(auto_punch.punch_time)))
        return closures

    def send_punch_out_reminders(self) -> ReminderResult:
        result = ReminderResult()
        users = self._active_users()
        users_by_id = {user.id: user for user in users}
        census = self._detector.find_open_punches(users, should_stop=self.should_stop)
        result.failed_user_ids.extend(census.failed_user_ids)
        if not self.should_stop():
            self._prune_reminded(census)
        min_open = timedelta(hours=self._config.reminder_min_open_hours)

        for entry in census.entries:
            if self.should_stop():
                result.stopped = True
                break
            if entry.open_duration < min_open:
                continue
            if entry.punch_id is not None and entry.punch_id in self._reminded_punch_ids:
                result.already_reminded += 1
                continue
            sent = notify_best_effort(
                "punch_out_reminder",
                self._notifier.send_reminder,
                users_by_id[entry.user_id],
                entry.punch_in_time,
                user_id=entry.user_id,
            )
            if sent:
                result.reminders_sent += 1
                if entry.punch_id is not None:
                    self._reminded_punch_ids[entry.punch_id] = entry.user_id

        logger.info(
            "punch_out_reminders_complete",
            extra={
                "reminders_sent": result.reminders_sent,
                "already_reminded": result.already_reminded,
                "failed_user_ids": result.failed_user_ids,
            },
        )
        return result

    def _prune_reminded(self, census: OpenPunchCensus) -> None:
        """Forget punches that are no longer open; users whose scan failed keep theirs."""
        open_ids = {entry.punch_id for entry in census.entries}
        failed = set(census.failed_user_ids)
        self._reminded_punch_ids = {
            punch_id: user_id
            for punch_id, user_id in self._reminded_punch_ids.items()
            if punch_id in open_ids or user_id in failed
        }

    def run_health_check(self) -> HealthCheckResult:
        report = self._detector.build_health_report(self._active_users())
        result = HealthCheckResult(
            open_punch_count=report.open_punch_count,
            orphaned_punch_count=report.orphaned_punch_count,
            odd_punch_user_count=report.odd_punch_user_count,
            failed_user_ids=list(report.failed_user_ids),
        )
        if report.open_punch_count > self._config.health_open_punch_threshold:
            result.alerts.append("OPEN_PUNCH_THRESHOLD_EXCEEDED")
            logger.warning(
                "health_open_punch_threshold_exceeded",
                extra={
                    "open_punch_count": report.open_punch_count,
                    "threshold": self._config.health_open_punch_threshold,
                },
            )
        if report.orphaned_punch_count > self._config.health_orphaned_punch_threshold:
            result.alerts.append("ORPHANED_PUNCH_THRESHOLD_EXCEEDED")
            logger.warning(
                "health_orphaned_punch_threshold_exceeded",
                extra={
                    "orphaned_punch_count": report.orphaned_punch_count,
                    "threshold": self._config.health_orphaned_punch_threshold,
                },
            )
        logger.info("health_check_complete", extra=asdict(result))
        return result

    def cleanup_orphaned_punches(self) -> OrphanCleanupResult:
        scan = self._detector.scan_orphaned_punches(
            self._active_users(),
            dry_run=False,
            should_stop=self.should_stop,
        )
        return OrphanCleanupResult(
            orphan_count=len(scan.orphans),
            annotated_count=scan.annotated_count,
            failed_user_ids=list(scan.failed_user_ids),
            stopped=self.should_stop(),
        )

    def _execute(self, job: ScheduledJob) -> Any:
        started_at = normalize_ts(self._clock.now())
        job.last_run_at = started_at
        job.next_run_at = job.next_run_after(started_at)
        try:
            result = job.run()
        except Exception as exc:
            job.last_error = f"{type(exc).__name__}: {exc}"
            logger.exception("scheduler_job_failed", extra={"job": job.name})
            return None
        job.last_result = result
        job.last_error = None
        return result

    def run_job(self, name: str) -> Any:
        """Run one job now. Failures are logged and reported by ``job_status``."""
        return self._execute(self.jobs[name])

    def run_due_jobs(self, now: datetime | None = None) -> list[str]:
        now_utc = normalize_ts(now or self._clock.now())
        ran: list[str] = []
        for job in self.jobs.values():
            if self.should_stop():
                break
            if job.next_run_at is None:
                job.next_run_at = job.next_run_after(now_utc)
                continue
            if job.next_run_at > now_utc:
                continue
            self._execute(job)
            ran.append(job.name)
        return ran

    def job_status(self) -> list[dict[str, Any]]:
        return [job.status() for job in self.jobs.values()]

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _loop(self, stop_event: asyncio.Event) -> None:
        interval_seconds = self._config.scheduler_tick_seconds
        while not stop_event.is_set():
            try:
                ran = await asyncio.to_thread(self.run_due_jobs)
            except Exception:
                logger.exception("scheduler_tick_failed")
            else:
                if ran:
                    logger.info("scheduler_tick", extra={"jobs": ran})

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                continue

    def start(self) -> None:
        if self.running:
            return
        now_utc = normalize_ts(self._clock.now())
        for job in self.jobs.values():
            job.next_run_at = job.next_run_after(now_utc)
        self._shutdown.clear()
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(self._stop_event))
        logger.info(
            "scheduler_started",
            extra={
                "interval_seconds": self._config.scheduler_tick_seconds,
                "jobs": [job.name for job in self.jobs.values()],
            },
        )

    async def stop(self) -> None:
        self._shutdown.set()
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
        self._stop_event = None
        self._task = None
        logger.info("scheduler_stopped")
