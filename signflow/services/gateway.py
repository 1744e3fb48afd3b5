"""Persistence gateway for the signing workflow.

All reads return fresh rows (``populate_existing``) and every mutation of shared
state goes through a conditional ``UPDATE ... WHERE`` whose row count tells the
caller whether it won. Nothing here keeps tallies or status in memory between
calls.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterator, Sequence
from uuid import UUID

from sqlalchemy import func, or_, update
from sqlalchemy.exc import DBAPIError
from sqlmodel import Session, select

from signflow.core.errors import NotFound, TransientStoreError
from signflow.core.logging_setup import logger
from signflow.models.base import utcnow
from signflow.models.signing import (
    ACTIVE_REQUEST_STATUSES,
    OPEN_SIGNER_STATUSES,
    SIGNABLE_REQUEST_STATUSES,
    PlacedField,
    RequestStatus,
    SignatureRequest,
    Signer,
    SignerStatus,
    SigningPolicy,
)
from signflow.models.verification import VerifiedSession

_TRANSIENT_SQLSTATES = {"40001", "40P01"}


def is_transient_error(exc: DBAPIError) -> bool:
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _TRANSIENT_SQLSTATES:
        return True
    message = str(orig or exc).lower()
    return "database is locked" in message or "deadlock detected" in message


@dataclass
class RequestFilter:
    status: RequestStatus | None = None
    policy: SigningPolicy | None = None
    initiator_id: str | None = None
    signer_email: str | None = None


class SigningGateway:
    def __init__(self, session: Session) -> None:
        self.session = session
        self._after_commit: list[Callable[[], None]] | None = None

    # Unit of work ----------------------------------------------------------
    @contextmanager
    def transaction(self) -> Iterator[SigningGateway]:
        if self._after_commit is not None:
            yield self
            return
        self._after_commit = []
        try:
            yield self
            self.session.commit()
        except DBAPIError as exc:
            self.session.rollback()
            self._after_commit = None
            if is_transient_error(exc):
                logger.warning("Transient store failure, operation will be retried: %s", exc.orig)
                raise TransientStoreError("The store is busy, try again later") from exc
            raise
        except BaseException:
            self.session.rollback()
            self._after_commit = None
            raise
        callbacks, self._after_commit = self._after_commit, None
        for callback in callbacks:
            try:
                callback()
            except Exception:  # the transaction is already committed
                logger.exception("After-commit callback %r failed", callback)

    def on_commit(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` once the current transaction commits (immediately when none is open)."""
        if self._after_commit is None:
            callback()
            return
        self._after_commit.append(callback)

    @property
    def in_transaction(self) -> bool:
        return self._after_commit is not None

    def _execute(self, statement) -> int:  # type: ignore[no-untyped-def]
        result = self.session.exec(statement.execution_options(synchronize_session=False))
        return result.rowcount

    # Reads -----------------------------------------------------------------
    def get_request(self, request_id: UUID) -> SignatureRequest | None:
        return self.session.get(SignatureRequest, request_id, populate_existing=True)

    def require_request(self, request_id: UUID) -> SignatureRequest:
        request = self.get_request(request_id)
        if request is None:
            raise NotFound("Signature request", request_id)
        return request

    def get_signer(self, signer_id: UUID) -> Signer | None:
        return self.session.get(Signer, signer_id, populate_existing=True)

    def require_signer(self, signer_id: UUID) -> Signer:
        signer = self.get_signer(signer_id)
        if signer is None:
            raise NotFound("Signer", signer_id)
        return signer

    def list_signers(self, request_id: UUID) -> list[Signer]:
        statement = (
            select(Signer)
            .where(Signer.request_id == request_id)
            .order_by(Signer.signing_order, Signer.created_at)
            .execution_options(populate_existing=True)
        )
        return list(self.session.exec(statement).all())

    def list_fields(self, request_id: UUID) -> list[PlacedField]:
        statement = (
            select(PlacedField)
            .where(PlacedField.request_id == request_id)
            .order_by(PlacedField.page, PlacedField.name)
            .execution_options(populate_existing=True)
        )
        return list(self.session.exec(statement).all())

    def list_requests(
        self,
        filters: RequestFilter,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[SignatureRequest], int]:
        query = select(SignatureRequest)
        if filters.status:
            query = query.where(SignatureRequest.status == filters.status)
        if filters.policy:
            query = query.where(SignatureRequest.policy == filters.policy)
        if filters.initiator_id:
            query = query.where(SignatureRequest.initiator_id == filters.initiator_id)
        if filters.signer_email:
            signer_match = select(Signer.id).where(
                Signer.request_id == SignatureRequest.id,
                func.lower(Signer.email) == filters.signer_email.strip().lower(),
            )
            query = query.where(signer_match.exists())

        total = self.session.exec(select(func.count()).select_from(query.subquery())).one()
        items = self.session.exec(
            query.order_by(SignatureRequest.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .execution_options(populate_existing=True)
        ).all()
        return list(items), total

    def find_expired_requests(self, now: datetime, limit: int) -> list[UUID]:
        statement = (
            select(SignatureRequest.id)
            .where(SignatureRequest.status.in_(ACTIVE_REQUEST_STATUSES))
            .where(SignatureRequest.expires_at.is_not(None))
            .where(SignatureRequest.expires_at <= now)
            .order_by(SignatureRequest.expires_at)
            .limit(limit)
        )
        return list(self.session.exec(statement).all())

    def find_expiring_requests(self, now: datetime, threshold_hours: int, limit: int) -> list[UUID]:
        horizon = now + timedelta(hours=threshold_hours)
        statement = (
            select(SignatureRequest.id)
            .where(SignatureRequest.status.in_(ACTIVE_REQUEST_STATUSES))
            .where(SignatureRequest.expires_at > now)
            .where(SignatureRequest.expires_at <= horizon)
            .where(
                or_(
                    SignatureRequest.warning_threshold_hours.is_(None),
                    SignatureRequest.warning_threshold_hours > threshold_hours,
                )
            )
            .order_by(SignatureRequest.expires_at)
            .limit(limit)
        )
        return list(self.session.exec(statement).all())

    def find_reminder_candidates(self, now: datetime, min_interval: timedelta, max_count: int, limit: int) -> list[UUID]:
        cutoff = now - min_interval
        due_signer = (
            select(Signer.id)
            .where(Signer.request_id == SignatureRequest.id)
            .where(Signer.status.in_(OPEN_SIGNER_STATUSES))
            .where(Signer.reminder_count < max_count)
            .where(or_(Signer.last_reminded_at.is_(None), Signer.last_reminded_at <= cutoff))
        )
        statement = (
            select(SignatureRequest.id)
            .where(SignatureRequest.status.in_(SIGNABLE_REQUEST_STATUSES))
            .where(SignatureRequest.sent_at <= cutoff)
            .where(or_(SignatureRequest.expires_at.is_(None), SignatureRequest.expires_at > now))
            .where(due_signer.exists())
            .order_by(SignatureRequest.sent_at)
            .limit(limit)
        )
        return list(self.session.exec(statement).all())

    def find_unfinalized_requests(self, limit: int) -> list[UUID]:
        statement = (
            select(SignatureRequest.id)
            .where(SignatureRequest.status == RequestStatus.COMPLETED)
            .where(SignatureRequest.artifact_ref.is_(None))
            .order_by(SignatureRequest.completed_at)
            .limit(limit)
        )
        return list(self.session.exec(statement).all())

    def find_verified_session(self, token_hash: str) -> VerifiedSession | None:
        statement = (
            select(VerifiedSession)
            .where(VerifiedSession.token_hash == token_hash)
            .execution_options(populate_existing=True)
        )
        return self.session.exec(statement).first()

    # Inserts ---------------------------------------------------------------
    def add_request_bundle(
        self,
        request: SignatureRequest,
        signers: Sequence[Signer],
        fields: Sequence[PlacedField],
    ) -> None:
        self.session.add(request)
        self.session.flush()
        self.session.add_all(list(signers))
        self.session.flush()
        self.session.add_all(list(fields))
        self.session.flush()

    def add_verified_session(self, verified: VerifiedSession) -> None:
        self.session.add(verified)
        self.session.flush()

    # Conditional updates ---------------------------------------------------
    def update_request_guarded(
        self,
        request_id: UUID,
        values: dict[str, Any],
        *,
        statuses: Sequence[RequestStatus] | None = None,
        version: int | None = None,
        extra_where: Sequence[Any] = (),
    ) -> bool:
        statement = update(SignatureRequest).where(SignatureRequest.id == request_id)
        if statuses is not None:
            statement = statement.where(SignatureRequest.status.in_(list(statuses)))
        if version is not None:
            statement = statement.where(SignatureRequest.version == version)
        for clause in extra_where:
            statement = statement.where(clause)
        statement = statement.values(
            **values,
            version=SignatureRequest.version + 1,
            updated_at=utcnow(),
        )
        return self._execute(statement) == 1

    def mark_signer_viewed(self, signer_id: UUID, now: datetime) -> bool:
        first_view = (
            update(Signer)
            .where(Signer.id == signer_id)
            .where(Signer.viewed_at.is_(None))
            .values(viewed_at=now, updated_at=now)
        )
        if self._execute(first_view) != 1:
            return False
        promote = (
            update(Signer)
            .where(Signer.id == signer_id)
            .where(Signer.status == SignerStatus.PENDING)
            .values(status=SignerStatus.VIEWED)
        )
        self._execute(promote)
        return True

    def mark_signer_signed(
        self,
        signer: Signer,
        *,
        payload: dict[str, Any],
        now: datetime,
        ip: str | None,
        user_agent: str | None,
        enforce_order: bool,
    ) -> bool:
        statement = (
            update(Signer)
            .where(Signer.id == signer.id)
            .where(Signer.status.in_(OPEN_SIGNER_STATUSES))
        )
        if enforce_order:
            earlier = Signer.__table__.alias("earlier")
            blocking = select(earlier.c.id).where(
                earlier.c.request_id == signer.request_id,
                earlier.c.signing_order < signer.signing_order,
                earlier.c.status != SignerStatus.SIGNED.value,
            )
            statement = statement.where(~blocking.exists())
        statement = statement.values(
            status=SignerStatus.SIGNED,
            signed_at=now,
            payload=payload,
            signer_ip=ip,
            signer_user_agent=user_agent,
            updated_at=now,
        )
        return self._execute(statement) == 1

    def mark_signer_declined(
        self,
        signer_id: UUID,
        *,
        reason: str | None,
        now: datetime,
        ip: str | None,
        user_agent: str | None,
    ) -> bool:
        statement = (
            update(Signer)
            .where(Signer.id == signer_id)
            .where(Signer.status.in_(OPEN_SIGNER_STATUSES))
            .values(
                status=SignerStatus.DECLINED,
                declined_at=now,
                declined_reason=reason,
                signer_ip=ip,
                signer_user_agent=user_agent,
                updated_at=now,
            )
        )
        return self._execute(statement) == 1

    def claim_reminder(
        self,
        signer_id: UUID,
        *,
        now: datetime,
        min_interval: timedelta,
        max_count: int,
    ) -> bool:
        statement = (
            update(Signer)
            .where(Signer.id == signer_id)
            .where(Signer.status.in_(OPEN_SIGNER_STATUSES))
            .where(Signer.reminder_count < max_count)
            .where(or_(Signer.last_reminded_at.is_(None), Signer.last_reminded_at <= now - min_interval))
            .values(
                reminder_count=Signer.reminder_count + 1,
                last_reminded_at=now,
                updated_at=now,
            )
        )
        return self._execute(statement) == 1

    def consume_verified_session(self, session_id: UUID, now: datetime) -> bool:
        statement = (
            update(VerifiedSession)
            .where(VerifiedSession.id == session_id)
            .where(VerifiedSession.consumed_at.is_(None))
            .where(VerifiedSession.expires_at > now)
            .values(consumed_at=now, updated_at=now)
        )
        return self._execute(statement) == 1

    def store_artifact(self, request_id: UUID, *, ref: str, sha256: str, now: datetime) -> bool:
        return self.update_request_guarded(
            request_id,
            {
                "artifact_ref": ref,
                "artifact_sha256": sha256,
                "finalized_at": now,
                "finalization_error": None,
                "finalization_attempts": SignatureRequest.finalization_attempts + 1,
            },
            statuses=(RequestStatus.COMPLETED,),
            extra_where=(SignatureRequest.artifact_ref.is_(None),),
        )

    def record_finalization_failure(self, request_id: UUID, error: str) -> bool:
        return self.update_request_guarded(
            request_id,
            {
                "finalization_error": error[:2000],
                "finalization_attempts": SignatureRequest.finalization_attempts + 1,
            },
            statuses=(RequestStatus.COMPLETED,),
            extra_where=(SignatureRequest.artifact_ref.is_(None),),
        )

    def claim_expiration_warning(self, request_id: UUID, *, threshold_hours: int, now: datetime) -> bool:
        return self.update_request_guarded(
            request_id,
            {"warning_sent_at": now, "warning_threshold_hours": threshold_hours},
            statuses=ACTIVE_REQUEST_STATUSES,
            extra_where=(
                SignatureRequest.expires_at > now,
                or_(
                    SignatureRequest.warning_threshold_hours.is_(None),
                    SignatureRequest.warning_threshold_hours > threshold_hours,
                ),
            ),
        )
