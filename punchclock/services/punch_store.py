from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from punchclock.errors import NotFoundError
from punchclock.models import PunchLog, PunchSource, PunchType, User
from punchclock.services.timezones import normalize_ts

EDITABLE_PUNCH_FIELDS = frozenset(
    {
        "punch_time",
        "punch_type",
        "notes",
        "edited",
        "edited_by",
        "edited_at",
        "edit_reason",
    }
)


class PunchStore(Protocol):
    def get_user(self, user_id: int) -> User | None: ...

    def list_active_users(self) -> list[User]: ...

    def get_punch(self, punch_id: int) -> PunchLog | None: ...

    def find_punches_in_range(self, user_id: int, start_utc: datetime, end_utc: datetime) -> list[PunchLog]: ...

    def find_last_punch(self, user_id: int) -> PunchLog | None: ...

    def insert_punch(
        self,
        *,
        user_id: int,
        punch_type: PunchType,
        punch_time: datetime,
        source: PunchSource,
        notes: str | None = None,
    ) -> PunchLog: ...

    def update_punch_fields(self, punch_id: int, fields: Mapping[str, Any]) -> PunchLog: ...

    def delete_punch(self, punch_id: int) -> None: ...

    def find_punch_history(
        self,
        user_id: int,
        *,
        start_utc: datetime | None,
        end_utc: datetime | None,
        offset: int,
        limit: int,
    ) -> tuple[int, list[PunchLog]]: ...


def apply_punch_fields(punch: PunchLog, fields: Mapping[str, Any]) -> PunchLog:
    """Apply an edit to ``punch`` in place.

    The first change of time or type snapshots the pre-edit values into
    ``original_punch_time`` / ``original_punch_type``; later edits leave the
    snapshot alone.
    """
    unknown = set(fields) - EDITABLE_PUNCH_FIELDS
    if unknown:
        raise ValueError(f"Punch fields are not editable: {sorted(unknown)}")

    if "punch_time" in fields or "punch_type" in fields:
        if punch.original_punch_time is None:
            punch.original_punch_time = punch.punch_time
        if punch.original_punch_type is None:
            punch.original_punch_type = punch.punch_type

    for key, value in fields.items():
        if key == "punch_time" and value is not None:
            value = normalize_ts(value)
        setattr(punch, key, value)
    return punch


def build_punch(
    *,
    user_id: int,
    punch_type: PunchType,
    punch_time: datetime,
    source: PunchSource,
    notes: str | None = None,
) -> PunchLog:
    return PunchLog(
        user_id=user_id,
        punch_type=punch_type,
        punch_time=normalize_ts(punch_time),
        source=source,
        edited=False,
        edited_by=None,
        edited_at=None,
        edit_reason=None,
        original_punch_time=None,
        original_punch_type=None,
        notes=notes,
    )


class SqlAlchemyPunchStore:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def get_user(self, user_id: int) -> User | None:
        with self._session_factory() as session:
            return session.get(User, user_id)

    def list_active_users(self) -> list[User]:
        with self._session_factory() as session:
            return list(
                session.scalars(
                    select(User).where(User.is_active.is_(True)).order_by(User.id.asc())
                ).all()
            )

    def get_punch(self, punch_id: int) -> PunchLog | None:
        with self._session_factory() as session:
            return session.get(PunchLog, punch_id)

    def find_punches_in_range(self, user_id: int, start_utc: datetime, end_utc: datetime) -> list[PunchLog]:
        with self._session_factory() as session:
            return list(
                session.scalars(
                    select(PunchLog)
                    .where(
                        PunchLog.user_id == user_id,
                        PunchLog.punch_time >= normalize_ts(start_utc),
                        PunchLog.punch_time <= normalize_ts(end_utc),
                    )
                    .order_by(PunchLog.punch_time.asc(), PunchLog.id.asc())
                ).all()
            )

    def find_last_punch(self, user_id: int) -> PunchLog | None:
        with self._session_factory() as session:
            return session.scalar(
                select(PunchLog)
                .where(PunchLog.user_id == user_id)
                .order_by(PunchLog.punch_time.desc(), PunchLog.id.desc())
                .limit(1)
            )

    def insert_punch(
        self,
        *,
        user_id: int,
        punch_type: PunchType,
        punch_time: datetime,
        source: PunchSource,
        notes: str | None = None,
    ) -> PunchLog:
        punch = build_punch(
            user_id=user_id,
            punch_type=punch_type,
            punch_time=punch_time,
            source=source,
            notes=notes,
        )
        with self._session_factory() as session:
            session.add(punch)
            session.commit()
            session.refresh(punch)
        return punch

    def update_punch_fields(self, punch_id: int, fields: Mapping[str, Any]) -> PunchLog:
        with self._session_factory() as session:
            punch = session.get(PunchLog, punch_id)
            if punch is None:
                raise NotFoundError("Punch not found.", code="PUNCH_NOT_FOUND")
            apply_punch_fields(punch, fields)
            session.commit()
            session.refresh(punch)
            return punch

    def delete_punch(self, punch_id: int) -> None:
        with self._session_factory() as session:
            punch = session.get(PunchLog, punch_id)
            if punch is None:
                raise NotFoundError("Punch not found.", code="PUNCH_NOT_FOUND")
            session.delete(punch)
            session.commit()

    def find_punch_history(
        self,
        user_id: int,
        *,
        start_utc: datetime | None,
        end_utc: datetime | None,
        offset: int,
        limit: int,
    ) -> tuple[int, list[PunchLog]]:
        conditions = [PunchLog.user_id == user_id]
        if start_utc is not None:
            conditions.append(PunchLog.punch_time >= normalize_ts(start_utc))
        if end_utc is not None:
            conditions.append(PunchLog.punch_time <= normalize_ts(end_utc))

        with self._session_factory() as session:
            total = session.scalar(select(func.count(PunchLog.id)).where(*conditions)) or 0
            rows = list(
                session.scalars(
                    select(PunchLog)
                    .where(*conditions)
                    .order_by(PunchLog.punch_time.desc(), PunchLog.id.desc())
                    .offset(max(0, offset))
                    .limit(max(1, limit))
                ).all()
            )
        return int(total), rows
