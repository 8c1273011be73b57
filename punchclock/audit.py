from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Protocol

from sqlalchemy.orm import Session

from punchclock.models import AuditAction, AuditActorType, AuditLog

logger = logging.getLogger("punchclock.audit")


@dataclass(frozen=True, slots=True)
class AuditRecord:
    action: AuditAction
    actor_type: AuditActorType
    performed_by: int | None
    target_user: int | None
    description: str | None
    resource_id: int | None = None
    previous_state: dict[str, Any] | None = None
    new_state: dict[str, Any] | None = None
    ts_utc: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AuditSink(Protocol):
    def record(self, entry: AuditRecord) -> None: ...


class SqlAlchemyAuditSink:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def record(self, entry: AuditRecord) -> None:
        with self._session_factory() as session:
            session.add(
                AuditLog(
                    ts_utc=entry.ts_utc,
                    action=entry.action,
                    actor_type=entry.actor_type,
                    performed_by=entry.performed_by,
                    target_user_id=entry.target_user,
                    resource_id=entry.resource_id,
                    previous_state=entry.previous_state,
                    new_state=entry.new_state,
                    description=entry.description,
                )
            )
            try:
                session.commit()
            except Exception:
                session.rollback()
                raise


def record_audit(sink: AuditSink, entry: AuditRecord, *, required: bool) -> bool:
    """Write ``entry`` to ``sink``.

    Required writes (edits, deletes) propagate failures so the caller can
    abort the mutation. Optional writes are logged and swallowed.
    """
    try:
        sink.record(entry)
    except Exception:
        logger.exception(
            "audit_log_write_failed",
            extra={
                "action": entry.action.value,
                "actor_type": entry.actor_type.value,
                "performed_by": entry.performed_by,
                "target_user": entry.target_user,
                "resource_id": entry.resource_id,
                "required": required,
            },
        )
        if required:
            raise
        return False

    logger.info(
        "audit_event",
        extra={
            "action": entry.action.value,
            "actor_type": entry.actor_type.value,
            "performed_by": entry.performed_by,
            "target_user": entry.target_user,
            "resource_id": entry.resource_id,
            "description": entry.description,
        },
    )
    return True


def record_change_not_applied(sink: AuditSink, entry: AuditRecord, exc: BaseException) -> bool:
    """Follow a required ``entry`` whose store mutation then failed."""
    return record_audit(
        sink,
        replace(
            entry,
            action=AuditAction.PUNCH_CHANGE_NOT_APPLIED,
            new_state=None,
            description=f"{entry.action.value} not applied: {type(exc).__name__}",
            ts_utc=datetime.now(timezone.utc),
        ),
        required=False,
    )
