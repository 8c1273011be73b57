from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
import logging
import math
from typing import Any

from punchclock.audit import AuditRecord, AuditSink, record_audit, record_change_not_applied
from punchclock.clock import Clock
from punchclock.config import EngineConfig, resolve_work_profile
from punchclock.errors import AuthorizationError, DoublePunchError, NotFoundError, ValidationError
from punchclock.models import AuditAction, AuditActorType, PunchSource, PunchType
from punchclock.services.anomalies import Anomaly, AnomalyDetector
from punchclock.services.dashboard import DailySnapshot, DashboardService
from punchclock.services.locks import UserLockRegistry
from punchclock.services.notifications import NotificationSender, PunchInfo, notify_best_effort
from punchclock.services.punch_store import PunchStore
from punchclock.services.punch_validator import (
    LateArrivalWarning,
    PunchValidator,
    PunchWarning,
    WarningKind,
)
from punchclock.services.time_engine import next_punch_type
from punchclock.services.timezones import bounds_for_local_day, normalize_ts, resolve_timezone, to_local

logger = logging.getLogger("punchclock.punches")

MAX_HISTORY_PAGE_SIZE = 200


@dataclass(frozen=True, slots=True)
class PunchOutcome:
    punch: Any
    snapshot: DailySnapshot
    warnings: list[PunchWarning]
    issues: list[Anomaly]

    @property
    def warning_messages(self) -> list[str]:
        return [item.message for item in self.warnings]


@dataclass(frozen=True, slots=True)
class HistoryEntry:
    id: int
    punch_type: PunchType
    time_utc: datetime
    time_local: str
    source: PunchSource
    edited: bool
    edited_by: int | None
    edit_reason: str | None
    notes: str | None


@dataclass(frozen=True, slots=True)
class PunchHistoryPage:
    total: int
    page: int
    limit: int
    punches: list[HistoryEntry]

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


def _is_admin(actor: Any) -> bool:
    return bool(getattr(actor, "is_admin", False))


def _require_reason(reason: str | None, *, code: str, message: str) -> str:
    normalized = (reason or "").strip()
    if not normalized:
        raise ValidationError(message, code=code)
    return normalized


def _state_with(state: dict[str, Any], **changes: Any) -> dict[str, Any]:
    merged = dict(state)
    for key, value in changes.items():
        if isinstance(value, datetime):
            value = normalize_ts(value).isoformat()
        elif isinstance(value, PunchType):
            value = value.value
        merged[key] = value
    return merged


class PunchService:
    """Interactive punch operations.

    Every read-validate-write sequence for a user runs under that user's
    lock from :class:`UserLockRegistry`, shared with the reconciliation jobs.
    """

    def __init__(
        self,
        store: PunchStore,
        clock: Clock,
        config: EngineConfig,
        *,
        locks: UserLockRegistry,
        notifier: NotificationSender,
        audit_sink: AuditSink,
    ) -> None:
        self._store = store
        self._clock = clock
        self._config = config
        self._locks = locks
        self._notifier = notifier
        self._audit_sink = audit_sink
        self._validator = PunchValidator(config)
        self.dashboard = DashboardService(store, clock, config)
        self.detector = AnomalyDetector(store, clock, config, locks=locks, audit_sink=audit_sink)

    def _load_user(self, user_id: int) -> Any:
        user = self._store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found.", code="USER_NOT_FOUND")
        return user

    def _load_punch(self, punch_id: int) -> Any:
        punch = self._store.get_punch(punch_id)
        if punch is None:
            raise NotFoundError("Punch not found.", code="PUNCH_NOT_FOUND")
        return punch

    def _reject_future(self, punch_time: datetime, now_utc: datetime) -> None:
        if normalize_ts(punch_time) > now_utc:
            raise ValidationError("Cannot create punch for future time.", code="FUTURE_PUNCH")

    def submit_punch(
        self,
        user: Any,
        *,
        punch_type: PunchType | None = None,
        source: PunchSource = PunchSource.MANUAL,
        notes: str | None = None,
    ) -> PunchOutcome:
        if not getattr(user, "is_active", True):
            raise AuthorizationError("User account is inactive.", code="USER_INACTIVE")
        profile = resolve_work_profile(user, self._config)

        with self._locks.hold(user.id):
            now_utc = normalize_ts(self._clock.now())
            today_punches = self.dashboard.today_punches(user, profile, now=now_utc)
            resolved_type = punch_type or next_punch_type(today_punches)
            validation = self._validator.validate(
                profile=profile,
                punch_type=resolved_type,
                punch_time=now_utc,
                today_punches=today_punches,
                last_punch=self._store.find_last_punch(user.id),
            )
            if validation.is_double_punch:
                logger.info(
                    "punch_rejected_double",
                    extra={"user_id": user.id, "retry_after_seconds": validation.double_punch_retry_after},
                )
                raise DoublePunchError(
                    validation.errors[0],
                    retry_after_seconds=validation.double_punch_retry_after or 0,
                )
            if not validation.valid:
                logger.info(
                    "punch_rejected_sequence",
                    extra={"user_id": user.id, "punch_type": resolved_type.value, "errors": validation.errors},
                )
                raise ValidationError(validation.errors[0], code="INVALID_SEQUENCE", errors=validation.errors)

            final_notes = (notes or "").strip()
            late = validation.first(WarningKind.LATE_ARRIVAL)
            if isinstance(late, LateArrivalWarning):
                late_note = f"Late by {late.minutes_late} minutes"
                final_notes = f"{final_notes} | {late_note}" if final_notes else late_note

            punch = self._store.insert_punch(
                user_id=user.id,
                punch_type=resolved_type,
                punch_time=now_utc,
                source=source,
                notes=final_notes or None,
            )

        logger.info(
            "punch_created",
            extra={
                "user_id": user.id,
                "punch_id": punch.id,
                "punch_type": resolved_type.value,
                "source": source.value,
                "warnings": validation.warnings,
            },
        )

        if validation.first(WarningKind.NON_WORKING_DAY) is not None:
            notify_best_effort(
                "weekend_warning",
                self._notifier.send_weekend_warning,
                user,
                PunchInfo(punch_type=resolved_type.value, punch_time=now_utc, timezone=profile.timezone),
                user_id=user.id,
            )

        return PunchOutcome(
            punch=punch,
            snapshot=self.dashboard.get_daily_snapshot(user),
            warnings=list(validation.details),
            issues=self.detector.detect_issues(user),
        )

    def create_manual_punch(
        self,
        user_id: int,
        *,
        punch_type: PunchType,
        punch_time: datetime,
        performed_by: Any,
        notes: str | None = None,
        reason: str | None = None,
    ) -> Any:
        """Record a back-dated punch without sequence validation.

        Admin-created punches are audited before the insert; a failed audit
        write aborts the operation. A failed insert after the audit is
        followed by a ``PUNCH_CHANGE_NOT_APPLIED`` record.
        """
        is_owner = performed_by.id == user_id
        if not is_owner and not _is_admin(performed_by):
            raise AuthorizationError("Not authorized to create punches for this user.")
        self._load_user(user_id)
        self._reject_future(punch_time, normalize_ts(self._clock.now()))
        source = PunchSource.MANUAL if is_owner else PunchSource.ADMIN

        with self._locks.hold(user_id):
            audit_entry = None
            if source == PunchSource.ADMIN:
                audit_entry = AuditRecord(
                    action=AuditAction.PUNCH_CREATE,
                    actor_type=AuditActorType.ADMIN,
                    performed_by=performed_by.id,
                    target_user=user_id,
                    new_state={
                        "user_id": user_id,
                        "punch_type": punch_type.value,
                        "punch_time": normalize_ts(punch_time).isoformat(),
                        "source": source.value,
                        "notes": notes,
                    },
                    description=(reason or "").strip() or "Manual punch created by admin",
                )
                record_audit(self._audit_sink, audit_entry, required=True)
            try:
                punch = self._store.insert_punch(
                    user_id=user_id,
                    punch_type=punch_type,
                    punch_time=punch_time,
                    source=source,
                    notes=notes,
                )
            except Exception as exc:
                if audit_entry is not None:
                    record_change_not_applied(self._audit_sink, audit_entry, exc)
                raise

        logger.info(
            "manual_punch_created",
            extra={
                "user_id": user_id,
                "punch_id": punch.id,
                "performed_by": performed_by.id,
                "source": source.value,
            },
        )
        return punch

    def edit_punch(
        self,
        punch_id: int,
        *,
        performed_by: Any,
        edit_reason: str | None,
        punch_time: datetime | None = None,
        punch_type: PunchType | None = None,
    ) -> Any:
        reason = _require_reason(edit_reason, code="EDIT_REASON_REQUIRED", message="Edit reason is required.")
        if punch_time is None and punch_type is None:
            raise ValidationError("Provide a new punch time or punch type.", code="EMPTY_EDIT")

        punch = self._load_punch(punch_id)
        if not _is_admin(performed_by) and punch.user_id != performed_by.id:
            raise AuthorizationError("Not authorized to edit this punch.")
        now_utc = normalize_ts(self._clock.now())
        if punch_time is not None:
            self._reject_future(punch_time, now_utc)

        with self._locks.hold(punch.user_id):
            punch = self._load_punch(punch_id)
            fields: dict[str, Any] = {
                "edited": True,
                "edited_by": performed_by.id,
                "edited_at": now_utc,
                "edit_reason": reason,
            }
            if punch_time is not None:
                fields["punch_time"] = normalize_ts(punch_time)
            if punch_type is not None:
                fields["punch_type"] = punch_type

            previous_state = punch.to_state()
            snapshot_changes: dict[str, Any] = {}
            if punch.original_punch_time is None:
                snapshot_changes["original_punch_time"] = punch.punch_time
            if punch.original_punch_type is None:
                snapshot_changes["original_punch_type"] = punch.punch_type
            new_state = _state_with(
                previous_state,
                **{key: value for key, value in fields.items() if key != "edited_at"},
                **snapshot_changes,
            )
            audit_entry = AuditRecord(
                action=AuditAction.PUNCH_EDIT,
                actor_type=AuditActorType.ADMIN if _is_admin(performed_by) else AuditActorType.USER,
                performed_by=performed_by.id,
                target_user=punch.user_id,
                resource_id=punch.id,
                previous_state=previous_state,
                new_state=new_state,
                description=reason,
            )
            record_audit(self._audit_sink, audit_entry, required=True)
            try:
                updated = self._store.update_punch_fields(punch_id, fields)
            except Exception as exc:
                record_change_not_applied(self._audit_sink, audit_entry, exc)
                raise

        logger.info(
            "punch_edited",
            extra={"punch_id": punch_id, "user_id": updated.user_id, "performed_by": performed_by.id},
        )
        return updated

    def delete_punch(self, punch_id: int, *, performed_by: Any, reason: str | None) -> None:
        if not _is_admin(performed_by):
            raise AuthorizationError("Only admins can delete punches.")
        normalized_reason = _require_reason(reason, code="DELETE_REASON_REQUIRED", message="Delete reason is required.")
        punch = self._load_punch(punch_id)

        with self._locks.hold(punch.user_id):
            punch = self._load_punch(punch_id)
            audit_entry = AuditRecord(
                action=AuditAction.PUNCH_DELETE,
                actor_type=AuditActorType.ADMIN,
                performed_by=performed_by.id,
                target_user=punch.user_id,
                resource_id=punch.id,
                previous_state=punch.to_state(),
                description=normalized_reason,
            )
            record_audit(self._audit_sink, audit_entry, required=True)
            try:
                self._store.delete_punch(punch_id)
            except Exception as exc:
                record_change_not_applied(self._audit_sink, audit_entry, exc)
                raise

        logger.info(
            "punch_deleted",
            extra={"punch_id": punch_id, "user_id": punch.user_id, "performed_by": performed_by.id},
        )

    def get_punch_history(
        self,
        user: Any,
        *,
        start_date: date | None = None,
        end_date: date | None = None,
        page: int = 1,
        limit: int = 50,
    ) -> PunchHistoryPage:
        if page < 1:
            raise ValidationError("page must be at least 1.", code="INVALID_PAGINATION")
        if limit < 1 or limit > MAX_HISTORY_PAGE_SIZE:
            raise ValidationError(
                f"limit must be between 1 and {MAX_HISTORY_PAGE_SIZE}.",
                code="INVALID_PAGINATION",
            )
        if start_date is not None and end_date is not None and start_date > end_date:
            raise ValidationError("start_date must not be after end_date.", code="INVALID_DATE_RANGE")

        tz_name = resolve_timezone(user, self._config)
        start_utc = bounds_for_local_day(start_date, tz_name)[0] if start_date is not None else None
        end_utc = bounds_for_local_day(end_date, tz_name)[1] if end_date is not None else None
        total, rows = self._store.find_punch_history(
            user.id,
            start_utc=start_utc,
            end_utc=end_utc,
            offset=(page - 1) * limit,
            limit=limit,
        )
        return PunchHistoryPage(
            total=total,
            page=page,
            limit=limit,
            punches=[
                HistoryEntry(
                    id=row.id,
                    punch_type=row.punch_type,
                    time_utc=normalize_ts(row.punch_time),
                    time_local=to_local(row.punch_time, tz_name).strftime("%Y-%m-%d %I:%M %p"),
                    source=row.source,
                    edited=bool(row.edited),
                    edited_by=row.edited_by,
                    edit_reason=row.edit_reason,
                    notes=row.notes,
                )
                for row in rows
            ],
        )
