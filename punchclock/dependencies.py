from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from fastapi import Depends, Request

from punchclock.audit import AuditSink, SqlAlchemyAuditSink
from punchclock.clock import Clock, SystemClock
from punchclock.config import EngineConfig, build_engine_config
from punchclock.db import SessionLocal
from punchclock.errors import ApiError, AuthorizationError
from punchclock.services.locks import UserLockRegistry
from punchclock.services.notifications import EmailNotificationSender, NotificationSender
from punchclock.services.punch_store import PunchStore, SqlAlchemyPunchStore
from punchclock.services.punches import PunchService
from punchclock.services.reconciliation import ReconciliationScheduler
from punchclock.settings import get_settings

USER_ID_HEADER = "X-User-Id"


@dataclass
class ServiceContainer:
    config: EngineConfig
    store: PunchStore
    audit_sink: AuditSink
    notifier: NotificationSender
    clock: Clock
    locks: UserLockRegistry
    punches: PunchService
    scheduler: ReconciliationScheduler


def build_container(
    *,
    config: EngineConfig,
    store: PunchStore,
    audit_sink: AuditSink,
    notifier: NotificationSender,
    clock: Clock,
) -> ServiceContainer:
    locks = UserLockRegistry()
    return ServiceContainer(
        config=config,
        store=store,
        audit_sink=audit_sink,
        notifier=notifier,
        clock=clock,
        locks=locks,
        punches=PunchService(
            store,
            clock,
            config,
            locks=locks,
            notifier=notifier,
            audit_sink=audit_sink,
        ),
        scheduler=ReconciliationScheduler(store, notifier, audit_sink, clock, config, locks=locks),
    )


@lru_cache
def get_container() -> ServiceContainer:
    settings = get_settings()
    config = build_engine_config(settings)
    return build_container(
        config=config,
        store=SqlAlchemyPunchStore(SessionLocal),
        audit_sink=SqlAlchemyAuditSink(SessionLocal),
        notifier=EmailNotificationSender(settings, default_timezone=config.default_timezone),
        clock=SystemClock(),
    )


def get_current_user(request: Request, container: ServiceContainer = Depends(get_container)) -> Any:
    raw_user_id = (request.headers.get(USER_ID_HEADER) or "").strip()
    if not raw_user_id.isdigit():
        raise ApiError(status_code=401, code="UNAUTHENTICATED", message="Missing or invalid user id header.")
    user = container.store.get_user(int(raw_user_id))
    if user is None:
        raise ApiError(status_code=401, code="UNAUTHENTICATED", message="Unknown user.")
    if not user.is_active:
        raise AuthorizationError("User account is inactive.", code="USER_INACTIVE")
    request.state.actor = "admin" if user.is_admin else "user"
    request.state.actor_id = str(user.id)
    return user


def require_admin(user: Any = Depends(get_current_user)) -> Any:
    if not user.is_admin:
        raise AuthorizationError("Admin role required.")
    return user
