from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import enum
import logging
from typing import Any

from punchclock.audit import AuditRecord, AuditSink, record_audit
from punchclock.clock import Clock
from punchclock.config import EngineConfig
from punchclock.models import AuditAction, AuditActorType, PunchType
from punchclock.services.locks import UserLockRegistry
from punchclock.services.punch_store import PunchStore
from punchclock.services.timezones import (
    bounds_for_local_day,
    day_bounds_utc,
    normalize_ts,
    resolve_timezone,
    to_local,
)

logger = logging.getLogger("punchclock.anomalies")

LONG_OPEN_PUNCH_HOURS = 12
SHORT_SESSION_MINUTES = 30
MULTIPLE_SESSIONS_THRESHOLD = 3
ORPHAN_NOTE_PREFIX = "[SYSTEM] Orphaned"


class AnomalyType(str, enum.Enum):
    ODD_PUNCH_COUNT = "ODD_PUNCH_COUNT"
    LONG_OPEN_PUNCH = "LONG_OPEN_PUNCH"
    SHORT_SESSION = "SHORT_SESSION"
    MULTIPLE_SESSIONS = "MULTIPLE_SESSIONS"


class Severity(str, enum.Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class Anomaly:
    type: AnomalyType
    severity: Severity
    message: str
    description: str
    punch_ids: tuple[int, ...] = ()
    punch_time: datetime | None = None


@dataclass(frozen=True, slots=True)
class OpenPunch:
    user_id: int
    user_name: str
    email: str
    punch_id: int | None
    punch_in_time: datetime
    open_duration: timedelta
    timezone: str

    @property
    def hours_since_in(self) -> float:
        return round(self.open_duration.total_seconds() / 3600, 1)


@dataclass(frozen=True, slots=True)
class OrphanedPunch:
    punch_id: int
    user_id: int
    user_name: str
    punch_type: PunchType
    punch_time: datetime
    expected: PunchType

    @property
    def reason(self) -> str:
        return f"Expected {self.expected.value} but got {self.punch_type.value}"

    @property
    def note(self) -> str:
        return f"{ORPHAN_NOTE_PREFIX} {self.punch_type.value} punch - {self.reason}"


@dataclass(frozen=True, slots=True)
class OddPunchCount:
    user_id: int
    user_name: str
    email: str
    punch_count: int


@dataclass(slots=True)
class OpenPunchCensus:
    entries: list[OpenPunch] = field(default_factory=list)
    failed_user_ids: list[int] = field(default_factory=list)


@dataclass(slots=True)
class OrphanScanResult:
    dry_run: bool
    orphans: list[OrphanedPunch] = field(default_factory=list)
    annotated_count: int = 0
    failed_user_ids: list[int] = field(default_factory=list)

    @property
    def flagged_ids(self) -> list[int]:
        return [item.punch_id for item in self.orphans]


@dataclass(frozen=True, slots=True)
class HealthReport:
    generated_at: datetime
    open_punches: list[OpenPunch]
    orphaned_punches: list[OrphanedPunch]
    odd_punch_counts: list[OddPunchCount]
    failed_user_ids: list[int]

    @property
    def open_punch_count(self) -> int:
        return len(self.open_punches)

    @property
    def orphaned_punch_count(self) -> int:
        return len(self.orphaned_punches)

    @property
    def odd_punch_user_count(self) -> int:
        return len(self.odd_punch_counts)


def _whole_minutes(later: datetime, earlier: datetime) -> int:
    return int((normalize_ts(later) - normalize_ts(earlier)).total_seconds() // 60)


def detect_punch_issues(punches: Sequence[Any], *, now: datetime, tz_name: str) -> list[Anomaly]:
    """Issues in one local day's ascending punches."""
    issues: list[Anomaly] = []
    count = len(punches)

    if count % 2 == 1:
        issues.append(
            Anomaly(
                type=AnomalyType.ODD_PUNCH_COUNT,
                severity=Severity.WARNING,
                message=f"You have {count} punches today (odd number)",
                description="You may have forgotten to punch IN or OUT",
            )
        )

    if punches and punches[-1].punch_type == PunchType.IN:
        last_in = punches[-1]
        hours_since_in = (normalize_ts(now) - normalize_ts(last_in.punch_time)).total_seconds() / 3600
        if hours_since_in > LONG_OPEN_PUNCH_HOURS:
            issues.append(
                Anomaly(
                    type=AnomalyType.LONG_OPEN_PUNCH,
                    severity=Severity.ERROR,
                    message=f"Punch has been open for {round(hours_since_in)} hours",
                    description="Please punch OUT or contact your manager",
                    punch_ids=(last_in.id,) if last_in.id is not None else (),
                    punch_time=normalize_ts(last_in.punch_time),
                )
            )

    for current, following in zip(punches, punches[1:]):
        if current.punch_type != PunchType.IN or following.punch_type != PunchType.OUT:
            continue
        duration = _whole_minutes(following.punch_time, current.punch_time)
        if duration < SHORT_SESSION_MINUTES:
            start_local = to_local(current.punch_time, tz_name).strftime("%I:%M %p")
            end_local = to_local(following.punch_time, tz_name).strftime("%I:%M %p")
            issues.append(
                Anomaly(
                    type=AnomalyType.SHORT_SESSION,
                    severity=Severity.INFO,
                    message=f"Very short work session detected ({duration} minutes)",
                    description=f"Session from {start_local} to {end_local}",
                    punch_ids=tuple(item.id for item in (current, following) if item.id is not None),
                    punch_time=normalize_ts(current.punch_time),
                )
            )

    pair_count = count // 2
    if pair_count > MULTIPLE_SESSIONS_THRESHOLD:
        issues.append(
            Anomaly(
                type=AnomalyType.MULTIPLE_SESSIONS,
                severity=Severity.INFO,
                message=f"You have {pair_count} work sessions today",
                description="Multiple punch in/out cycles detected",
            )
        )

    return issues


def find_orphans(punches: Sequence[Any], *, user_id: int, user_name: str) -> list[OrphanedPunch]:
    """Flag punches that break IN/OUT alternation.

    After a mismatch the expectation follows the punch actually seen, so one
    bad punch does not flag everything after it.
    """
    orphans: list[OrphanedPunch] = []
    expected = PunchType.IN
    for punch in punches:
        if punch.punch_type != expected:
            orphans.append(
                OrphanedPunch(
                    punch_id=punch.id,
                    user_id=user_id,
                    user_name=user_name,
                    punch_type=punch.punch_type,
                    punch_time=normalize_ts(punch.punch_time),
                    expected=expected,
                )
            )
        expected = punch.punch_type.opposite
    return orphans


def append_orphan_note(existing: str | None, note: str) -> str | None:
    """Return the notes text with ``note`` appended, or None if already present."""
    current = (existing or "").strip()
    if note in current:
        return None
    return f"{current}\n{note}" if current else note


class AnomalyDetector:
    def __init__(
        self,
        store: PunchStore,
        clock: Clock,
        config: EngineConfig,
        *,
        locks: UserLockRegistry | None = None,
        audit_sink: AuditSink | None = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self._config = config
        self._locks = locks or UserLockRegistry()
        self._audit_sink = audit_sink

    def _today_punches(self, user: Any, now_utc: datetime) -> tuple[str, list[Any]]:
        tz_name = resolve_timezone(user, self._config)
        start_utc, end_utc = day_bounds_utc(tz_name, now_utc)
        return tz_name, self._store.find_punches_in_range(user.id, start_utc, end_utc)

    def detect_issues(self, user: Any) -> list[Anomaly]:
        now_utc = normalize_ts(self._clock.now())
        tz_name, punches = self._today_punches(user, now_utc)
        return detect_punch_issues(punches, now=now_utc, tz_name=tz_name)

    def _each_user(
        self,
        users: Sequence[Any],
        event: str,
        handler: Callable[[Any], None],
        failed_user_ids: list[int],
        should_stop: Callable[[], bool] | None = None,
    ) -> None:
        for user in users:
            if should_stop is not None and should_stop():
                logger.info("anomaly_scan_stopped", extra={"scan": event})
                return
            try:
                handler(user)
            except Exception:
                failed_user_ids.append(user.id)
                logger.exception("anomaly_scan_user_failed", extra={"scan": event, "user_id": user.id})

    def find_open_punches(
        self,
        users: Sequence[Any],
        *,
        should_stop: Callable[[], bool] | None = None,
    ) -> OpenPunchCensus:
        now_utc = normalize_ts(self._clock.now())
        census = OpenPunchCensus()

        def _check(user: Any) -> None:
            tz_name, punches = self._today_punches(user, now_utc)
            if not punches or punches[-1].punch_type != PunchType.IN:
                return
            last_in = punches[-1]
            census.entries.append(
                OpenPunch(
                    user_id=user.id,
                    user_name=user.name,
                    email=user.email,
                    punch_id=last_in.id,
                    punch_in_time=normalize_ts(last_in.punch_time),
                    open_duration=now_utc - normalize_ts(last_in.punch_time),
                    timezone=tz_name,
                )
            )

        self._each_user(users, "open_punches", _check, census.failed_user_ids, should_stop)
        return census

    def find_odd_punch_counts(self, users: Sequence[Any], failed_user_ids: list[int]) -> list[OddPunchCount]:
        now_utc = normalize_ts(self._clock.now())
        entries: list[OddPunchCount] = []

        def _check(user: Any) -> None:
            _, punches = self._today_punches(user, now_utc)
            if len(punches) % 2 == 1:
                entries.append(
                    OddPunchCount(user_id=user.id, user_name=user.name, email=user.email, punch_count=len(punches))
                )

        self._each_user(users, "odd_punch_count", _check, failed_user_ids)
        return entries

    def _scan_window(self, user: Any, now_utc: datetime) -> tuple[datetime, datetime]:
        tz_name = resolve_timezone(user, self._config)
        today = to_local(now_utc, tz_name).date()
        start_utc, _ = bounds_for_local_day(today - timedelta(days=self._config.orphan_scan_days), tz_name)
        _, end_utc = bounds_for_local_day(today, tz_name)
        return start_utc, end_utc

    def scan_orphaned_punches(
        self,
        users: Sequence[Any],
        *,
        dry_run: bool = True,
        should_stop: Callable[[], bool] | None = None,
    ) -> OrphanScanResult:
        """Walk each user's punches over the scan window looking for broken alternation.

        With ``dry_run`` off, flagged punches get a ``[SYSTEM] Orphaned ...``
        line appended to their notes. Existing notes are kept and a punch that
        already carries the line is left alone.
        """
        now_utc = normalize_ts(self._clock.now())
        result = OrphanScanResult(dry_run=dry_run)

        def _scan(user: Any) -> None:
            start_utc, end_utc = self._scan_window(user, now_utc)
            if dry_run:
                punches = self._store.find_punches_in_range(user.id, start_utc, end_utc)
                result.orphans.extend(find_orphans(punches, user_id=user.id, user_name=user.name))
                return
            with self._locks.hold(user.id):
                punches = self._store.find_punches_in_range(user.id, start_utc, end_utc)
                orphans = find_orphans(punches, user_id=user.id, user_name=user.name)
                by_id = {punch.id: punch for punch in punches}
                for orphan in orphans:
                    self._annotate(by_id[orphan.punch_id], orphan, result)
                result.orphans.extend(orphans)

        self._each_user(users, "orphaned_punches", _scan, result.failed_user_ids, should_stop)
        logger.info(
            "orphan_scan_complete",
            extra={
                "dry_run": dry_run,
                "orphan_count": len(result.orphans),
                "annotated_count": result.annotated_count,
                "failed_user_ids": result.failed_user_ids,
            },
        )
        return result

    def _annotate(self, punch: Any, orphan: OrphanedPunch, result: OrphanScanResult) -> None:
        notes = append_orphan_note(punch.notes, orphan.note)
        if notes is None:
            return
        previous_state = punch.to_state() if hasattr(punch, "to_state") else None
        updated = self._store.update_punch_fields(orphan.punch_id, {"notes": notes})
        result.annotated_count += 1
        if self._audit_sink is not None:
            record_audit(
                self._audit_sink,
                AuditRecord(
                    action=AuditAction.PUNCH_ORPHAN_FLAG,
                    actor_type=AuditActorType.SYSTEM,
                    performed_by=None,
                    target_user=orphan.user_id,
                    resource_id=orphan.punch_id,
                    previous_state=previous_state,
                    new_state=updated.to_state() if hasattr(updated, "to_state") else None,
                    description=orphan.note,
                ),
                required=False,
            )

    def build_health_report(self, users: Sequence[Any]) -> HealthReport:
        census = self.find_open_punches(users)
        orphan_scan = self.scan_orphaned_punches(users, dry_run=True)
        failed_user_ids = list(census.failed_user_ids)
        for user_id in orphan_scan.failed_user_ids:
            if user_id not in failed_user_ids:
                failed_user_ids.append(user_id)
        odd_failures: list[int] = []
        odd_counts = self.find_odd_punch_counts(users, odd_failures)
        for user_id in odd_failures:
            if user_id not in failed_user_ids:
                failed_user_ids.append(user_id)
        return HealthReport(
            generated_at=normalize_ts(self._clock.now()),
            open_punches=census.entries,
            orphaned_punches=orphan_scan.orphans,
            odd_punch_counts=odd_counts,
            failed_user_ids=failed_user_ids,
        )
