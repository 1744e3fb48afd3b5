from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from signflow.core.config import settings
from signflow.core.logging_setup import logger
from signflow.db import session as session_module
from signflow.models.audit import AuditEvent
from signflow.services.context import ActorContext
from signflow.services.outbox import BackgroundQueue


@dataclass
class AuditRecord:
    event_type: str
    request_id: UUID | None = None
    signer_id: UUID | None = None
    actor: ActorContext | None = None
    details: dict[str, Any] = field(default_factory=dict)


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(item) for item in value]
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


class AuditWriter:
    """Best-effort, append-only audit trail.

    ``record`` only enqueues; rows are written by the queue worker on their own
    session so a slow or failing audit store never delays or breaks the signing
    path.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] | None = None,
        *,
        synchronous: bool = False,
    ) -> None:
        self.session_factory = session_factory or session_module.new_session
        self.queue: BackgroundQueue[AuditRecord] = BackgroundQueue("audit", self._write, synchronous=synchronous)

    def start(self) -> None:
        self.queue.start()

    def stop(self) -> None:
        self.queue.stop()

    def flush(self) -> None:
        self.queue.drain()

    def record(
        self,
        event_type: str,
        *,
        request_id: UUID | None = None,
        signer_id: UUID | None = None,
        actor: ActorContext | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.queue.submit(
            AuditRecord(
                event_type=event_type,
                request_id=request_id,
                signer_id=signer_id,
                actor=actor,
                details=_jsonable(details or {}),
            )
        )

    @retry(
        reraise=True,
        stop=stop_after_attempt(max(settings.store_retry_attempts, 1)),
        wait=wait_exponential(multiplier=settings.store_retry_wait_seconds, max=2.0),
        retry=retry_if_exception_type(OperationalError),
    )
    def _write(self, record: AuditRecord) -> None:
        actor = record.actor or ActorContext()
        event = AuditEvent(
            request_id=record.request_id,
            signer_id=record.signer_id,
            event_type=record.event_type,
            actor_id=actor.actor_id,
            ip_address=actor.ip_address,
            user_agent=actor.user_agent,
            details=record.details,
        )
        with self.session_factory() as session:
            session.add(event)
            session.commit()
        logger.debug("Audit %s request=%s signer=%s", record.event_type, record.request_id, record.signer_id)


class AuditService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_events(
        self,
        request_id: Optional[UUID] = None,
        signer_id: Optional[UUID] = None,
        event_type: Optional[str] = None,
        start_at: Optional[datetime] = None,
        end_at: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> tuple[list[AuditEvent], int]:
        query = select(AuditEvent)
        if request_id:
            query = query.where(AuditEvent.request_id == request_id)
        if signer_id:
            query = query.where(AuditEvent.signer_id == signer_id)
        if event_type:
            query = query.where(AuditEvent.event_type == event_type)
        if start_at:
            query = query.where(AuditEvent.created_at >= start_at)
        if end_at:
            query = query.where(AuditEvent.created_at <= end_at)

        total = self.session.exec(select(func.count()).select_from(query.subquery())).one()

        items = self.session.exec(
            query.order_by(AuditEvent.created_at.asc(), AuditEvent.id)
            .offset((page - 1) * page_size)
            .limit(page_size)
        ).all()
        return list(items), total

    def get_event(self, event_id: UUID) -> AuditEvent | None:
        return self.session.get(AuditEvent, event_id)
