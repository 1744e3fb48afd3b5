from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Sequence
from uuid import UUID

from signflow.core.config import settings
from signflow.core.errors import Conflict, SigningError, TransientStoreError, ValidationError
from signflow.core.logging_setup import logger
from signflow.core.retry import transient_retry
from signflow.models.base import utcnow
from signflow.models.signing import (
    ACTIVE_REQUEST_STATUSES,
    OPEN_SIGNER_STATUSES,
    NotificationChannel,
    PlacedField,
    RequestStatus,
    SignatureRequest,
    Signer,
    SignerStatus,
    SigningPolicy,
)
from signflow.schemas.signing import SignatureRequestCreate
from signflow.services.audit import AuditWriter
from signflow.services.context import SYSTEM_ACTOR, ActorContext
from signflow.services.counter import CompletionCounter, TallyResult
from signflow.services.finalization import FinalizationEngine
from signflow.services.gateway import RequestFilter, SigningGateway
from signflow.services.guards import ensure_signable, terminal_error
from signflow.services.notification import NotificationSender, Recipient
from signflow.services.verification import new_code_secret


@dataclass
class RequestDetail:
    request: SignatureRequest
    signers: list[Signer]
    fields: list[PlacedField]


def actionable_signers(request: SignatureRequest, signers: Sequence[Signer]) -> list[Signer]:
    """Signers who may act right now under the request's ordering policy."""
    open_signers = [signer for signer in signers if signer.current_status in OPEN_SIGNER_STATUSES]
    if request.policy == SigningPolicy.PARALLEL:
        return open_signers
    unsigned = [signer for signer in signers if signer.current_status != SignerStatus.SIGNED]
    if not unsigned:
        return []
    next_order = min(signer.signing_order for signer in unsigned)
    return [signer for signer in open_signers if signer.signing_order == next_order]


def _format_deadline(value: datetime | None) -> str | None:
    return value.strftime("%Y-%m-%d %H:%M UTC") if value else None


class RequestLifecycleManager:
    def __init__(
        self,
        gateway: SigningGateway,
        counter: CompletionCounter,
        *,
        audit: AuditWriter,
        notifier: NotificationSender,
        finalizer: FinalizationEngine | None = None,
    ) -> None:
        self.gateway = gateway
        self.counter = counter
        self.audit = audit
        self.notifier = notifier
        self.finalizer = finalizer

    # Creation --------------------------------------------------------------
    def validate_create(self, payload: SignatureRequestCreate) -> list[str]:
        errors: list[str] = []
        if not payload.title.strip():
            errors.append("title must not be blank")
        if not payload.document_ref.strip():
            errors.append("document_ref must not be blank")
        if not payload.signers:
            errors.append("at least one signer is required")
        if len(payload.signers) > settings.max_signers_per_request:
            errors.append(f"at most {settings.max_signers_per_request} signers are allowed")

        seen_emails: set[str] = set()
        for index, signer in enumerate(payload.signers):
            email = str(signer.email).lower()
            if email in seen_emails:
                errors.append(f"signers[{index}]: duplicate email {email}")
            seen_emails.add(email)
            if signer.notification_channel == NotificationChannel.SMS and not signer.phone_number:
                errors.append(f"signers[{index}]: phone_number is required for the sms channel")

        seen_fields: set[str] = set()
        for index, field in enumerate(payload.fields):
            name = field.name.strip()
            if name in seen_fields:
                errors.append(f"fields[{index}]: duplicate field name {name!r}")
            seen_fields.add(name)
            if str(field.signer_email).lower() not in seen_emails:
                errors.append(f"fields[{index}]: unknown signer {field.signer_email}")
            if field.x + field.width > 1.0 or field.y + field.height > 1.0:
                errors.append(f"fields[{index}]: field {name!r} does not fit on the page")

        if payload.never_expires and payload.expires_in_days is not None:
            errors.append("expires_in_days cannot be combined with never_expires")
        if payload.expires_in_days is not None and not (
            settings.min_expiration_days <= payload.expires_in_days <= settings.max_expiration_days
        ):
            errors.append(
                f"expires_in_days must be between {settings.min_expiration_days} "
                f"and {settings.max_expiration_days}"
            )
        return errors

    @transient_retry
    def create(self, payload: SignatureRequestCreate, initiator: ActorContext) -> RequestDetail:
        errors = self.validate_create(payload)
        if errors:
            raise ValidationError(errors)

        now = utcnow()
        days = payload.expires_in_days or settings.default_expiration_days
        sequential = payload.policy == SigningPolicy.SEQUENTIAL
        request = SignatureRequest(
            document_ref=payload.document_ref.strip(),
            title=payload.title.strip(),
            message=payload.message,
            policy=payload.policy,
            status=RequestStatus.PENDING if payload.send else RequestStatus.DRAFT,
            initiator_id=initiator.actor_id or "anonymous",
            initiator_email=str(payload.initiator_email) if payload.initiator_email else None,
            requires_code=payload.requires_code,
            total_signers=len(payload.signers),
            expires_at=None if payload.never_expires else now + timedelta(days=days),
            sent_at=now if payload.send else None,
        )
        signers: list[Signer] = []
        for position, item in enumerate(payload.signers, start=1):
            needs_code = payload.requires_code or item.requires_code
            signers.append(
                Signer(
                    request_id=request.id,
                    email=str(item.email).lower(),
                    name=item.name,
                    signing_order=position if sequential else 1,
                    requires_code=item.requires_code,
                    code_secret=new_code_secret() if needs_code else None,
                    notification_channel=item.notification_channel,
                    phone_number=item.phone_number,
                )
            )
        signer_by_email = {signer.email: signer for signer in signers}
        fields = [
            PlacedField(
                request_id=request.id,
                signer_id=signer_by_email[str(item.signer_email).lower()].id,
                name=item.name.strip(),
                field_type=item.field_type,
                page=item.page,
                x=item.x,
                y=item.y,
                width=item.width,
                height=item.height,
                label=item.label,
                required=item.required,
            )
            for item in payload.fields
        ]

        request_id = request.id
        with self.gateway.transaction():
            self.gateway.add_request_bundle(request, signers, fields)
            self.gateway.on_commit(
                lambda: self.audit.record(
                    "created",
                    request_id=request_id,
                    actor=initiator,
                    details={
                        "policy": payload.policy,
                        "signers": len(signers),
                        "fields": len(fields),
                        "sent": payload.send,
                    },
                )
            )
            if payload.send:
                self.gateway.on_commit(partial(self._after_send, request_id, initiator))
        return self.get(request_id)

    @transient_retry
    def send(self, request_id: UUID, actor: ActorContext) -> SignatureRequest:
        with self.gateway.transaction():
            sent = self.gateway.update_request_guarded(
                request_id,
                {"status": RequestStatus.PENDING, "sent_at": utcnow()},
                statuses=(RequestStatus.DRAFT,),
            )
            if not sent:
                request = self.gateway.require_request(request_id)
                if request.current_status.is_terminal:
                    raise terminal_error(request)
                raise Conflict(
                    "Signature request was already sent",
                    {"request_id": str(request_id), "status": request.current_status.value},
                )
            self.gateway.on_commit(partial(self._after_send, request_id, actor))
        return self.gateway.require_request(request_id)

    def _after_send(self, request_id: UUID, actor: ActorContext) -> None:
        self.audit.record("sent", request_id=request_id, actor=actor)
        self._notify_actionable(request_id, "signature_requested")

    # Queries ---------------------------------------------------------------
    def get(self, request_id: UUID) -> RequestDetail:
        request = self.gateway.require_request(request_id)
        return RequestDetail(
            request=request,
            signers=self.gateway.list_signers(request_id),
            fields=self.gateway.list_fields(request_id),
        )

    def list(
        self,
        filters: RequestFilter | None = None,
        page: int = 1,
        page_size: int | None = None,
    ) -> tuple[list[SignatureRequest], int]:
        page = max(page, 1)
        page_size = min(max(page_size or settings.default_page_size, 1), settings.max_page_size)
        return self.gateway.list_requests(filters or RequestFilter(), page, page_size)

    # Terminal transitions --------------------------------------------------
    @transient_retry
    def cancel(self, request_id: UUID, actor: ActorContext) -> SignatureRequest:
        with self.gateway.transaction():
            cancelled = self.gateway.update_request_guarded(
                request_id,
                {"status": RequestStatus.CANCELLED, "cancelled_at": utcnow()},
                statuses=ACTIVE_REQUEST_STATUSES,
            )
            if not cancelled:
                request = self.gateway.require_request(request_id)
                if request.current_status == RequestStatus.CANCELLED:
                    return request
                raise terminal_error(request)
            self.gateway.on_commit(partial(self._after_terminal, request_id, "cancelled", actor))
        return self.gateway.require_request(request_id)

    @transient_retry
    def expire(self, request_id: UUID, now: datetime | None = None) -> bool:
        now = now or utcnow()
        with self.gateway.transaction():
            expired = self.gateway.update_request_guarded(
                request_id,
                {"status": RequestStatus.EXPIRED, "expired_at": now},
                statuses=ACTIVE_REQUEST_STATUSES,
                extra_where=(SignatureRequest.expires_at <= now,),
            )
            if expired:
                self.gateway.on_commit(partial(self._after_terminal, request_id, "expired", SYSTEM_ACTOR))
        if not expired:
            logger.info("Request %s was not expired: it changed state or deadline first", request_id)
        return expired

    def _after_terminal(self, request_id: UUID, outcome: str, actor: ActorContext) -> None:
        request = self.gateway.require_request(request_id)
        self.audit.record(
            outcome,
            request_id=request_id,
            actor=actor,
            details={"signed_count": request.signed_count, "total_signers": request.total_signers},
        )
        signers = self.gateway.list_signers(request_id)
        recipients = [Recipient.for_signer(s) for s in signers if s.current_status in OPEN_SIGNER_STATUSES]
        recipients.extend(self._initiator_recipients(request))
        self.notifier.send(f"request_{outcome}", recipients, self.notification_context(request))

    # Signer callbacks ------------------------------------------------------
    def on_signer_viewed(self, request_id: UUID) -> TallyResult:
        return self.counter.increment_viewed_count(request_id)

    def on_signer_completed(
        self,
        request_id: UUID,
        *,
        signer_id: UUID | None = None,
        actor: ActorContext | None = None,
    ) -> TallyResult:
        """Count a signature inside the caller's transaction and schedule what follows it."""
        tally = self.counter.increment_signed_count(request_id)
        if tally.just_completed:
            logger.info("Request %s completed by signer %s", request_id, signer_id)
            self.gateway.on_commit(partial(self._handle_completion, request_id, tally))
        else:
            self.gateway.on_commit(partial(self._notify_next, request_id))
        return tally

    def on_signer_declined(
        self,
        request_id: UUID,
        *,
        signer_id: UUID | None = None,
        reason: str | None = None,
        actor: ActorContext | None = None,
    ) -> TallyResult:
        tally = self.counter.increment_declined_count(request_id)
        self.gateway.on_commit(partial(self._after_decline, request_id, signer_id, reason, actor))
        return tally

    def _handle_completion(self, request_id: UUID, tally: TallyResult) -> None:
        request = self.gateway.require_request(request_id)
        self.audit.record(
            "completed",
            request_id=request_id,
            details={"signed_count": tally.signed_count, "total_signers": tally.total_signers},
        )
        signers = self.gateway.list_signers(request_id)
        recipients = [Recipient.for_signer(signer) for signer in signers]
        recipients.extend(self._initiator_recipients(request))
        self.notifier.send("request_completed", recipients, self.notification_context(request))

        if self.finalizer is None:
            return
        try:
            self.finalizer.finalize(request_id)
        except SigningError as exc:
            logger.warning(
                "Request %s completed but finalization failed (%s); it will be retried",
                request_id,
                exc.message,
            )

    def _notify_next(self, request_id: UUID) -> None:
        request = self.gateway.require_request(request_id)
        if request.policy != SigningPolicy.SEQUENTIAL or request.current_status.is_terminal:
            return
        self._notify_actionable(request_id, "signature_requested", request=request)

    def _after_decline(
        self,
        request_id: UUID,
        signer_id: UUID | None,
        reason: str | None,
        actor: ActorContext | None,
    ) -> None:
        request = self.gateway.require_request(request_id)
        self.audit.record(
            "request_declined",
            request_id=request_id,
            signer_id=signer_id,
            actor=actor,
            details={"reason": reason},
        )
        signers = self.gateway.list_signers(request_id)
        declined_by = next((signer.name for signer in signers if signer.id == signer_id), None)
        recipients = [Recipient.for_signer(s) for s in signers if s.id != signer_id]
        recipients.extend(self._initiator_recipients(request))
        self.notifier.send(
            "request_declined",
            recipients,
            {**self.notification_context(request), "declined_by": declined_by, "reason": reason},
        )

    # Deadline and reminders ------------------------------------------------
    @transient_retry
    def extend_expiration(self, request_id: UUID, days: int, actor: ActorContext) -> SignatureRequest:
        request = self.gateway.require_request(request_id)
        if request.current_status.is_terminal:
            raise terminal_error(request)
        if days < 1:
            raise ValidationError(["days must be at least 1"])
        if request.expires_at is None:
            raise ValidationError(["request has no deadline to extend"], "Request never expires")

        now = utcnow()
        base = max(request.expires_at, now)
        new_expires_at = base + timedelta(days=days)
        if new_expires_at - request.created_at > timedelta(days=settings.max_expiration_days):
            raise ValidationError(
                [f"total lifetime cannot exceed {settings.max_expiration_days} days"],
                "Expiration cannot be extended that far",
            )

        previous = request.expires_at
        with self.gateway.transaction():
            extended = self.gateway.update_request_guarded(
                request_id,
                {"expires_at": new_expires_at, "warning_sent_at": None, "warning_threshold_hours": None},
                statuses=ACTIVE_REQUEST_STATUSES,
                version=request.version,
            )
            if not extended:
                current = self.gateway.require_request(request_id)
                if current.current_status.is_terminal:
                    raise terminal_error(current)
                raise TransientStoreError("Request changed concurrently, try again", {"request_id": str(request_id)})
            self.gateway.on_commit(
                lambda: self.audit.record(
                    "expiration_extended",
                    request_id=request_id,
                    actor=actor,
                    details={"previous": previous, "expires_at": new_expires_at, "days": days},
                )
            )
        return self.gateway.require_request(request_id)

    @transient_retry
    def remind(self, request_id: UUID, actor: ActorContext, now: datetime | None = None) -> list[Signer]:
        now = now or utcnow()
        request = self.gateway.require_request(request_id)
        ensure_signable(request)
        candidates = actionable_signers(request, self.gateway.list_signers(request_id))

        reminded_ids: list[UUID] = []
        with self.gateway.transaction():
            for signer in candidates:
                if self.gateway.claim_reminder(
                    signer.id,
                    now=now,
                    min_interval=timedelta(hours=settings.reminder_min_interval_hours),
                    max_count=settings.reminder_max_per_signer,
                ):
                    reminded_ids.append(signer.id)
            if reminded_ids:
                self.gateway.on_commit(partial(self._after_remind, request_id, list(reminded_ids), actor))
        return [self.gateway.require_signer(signer_id) for signer_id in reminded_ids]

    def _after_remind(self, request_id: UUID, signer_ids: list[UUID], actor: ActorContext) -> None:
        request = self.gateway.require_request(request_id)
        signers = [self.gateway.require_signer(signer_id) for signer_id in signer_ids]
        for signer in signers:
            self.audit.record(
                "reminder_sent",
                request_id=request_id,
                signer_id=signer.id,
                actor=actor,
                details={"reminder_count": signer.reminder_count},
            )
        recipients = [Recipient.for_signer(signer) for signer in signers]
        self.notifier.send("reminder", recipients, self.notification_context(request))

    # Helpers ---------------------------------------------------------------
    def _notify_actionable(self, request_id: UUID, event: str, request: SignatureRequest | None = None) -> None:
        request = request or self.gateway.require_request(request_id)
        signers = actionable_signers(request, self.gateway.list_signers(request_id))
        if signers:
            recipients = [Recipient.for_signer(signer) for signer in signers]
            self.notifier.send(event, recipients, self.notification_context(request))

    def _initiator_recipients(self, request: SignatureRequest) -> list[Recipient]:
        if not request.initiator_email:
            return []
        return [Recipient(name=None, email=request.initiator_email)]

    def notification_context(self, request: SignatureRequest) -> dict[str, Any]:
        return {
            "request_id": str(request.id),
            "title": request.title,
            "message": request.message,
            "expires_at": _format_deadline(request.expires_at),
        }
