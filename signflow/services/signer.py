from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING
from uuid import UUID

from signflow.core.errors import AlreadyFinal, Conflict, OrderViolation, ValidationError
from signflow.core.logging_setup import logger
from signflow.core.retry import transient_retry
from signflow.models.base import utcnow
from signflow.models.signing import PlacedField, SignatureRequest, Signer, SignerStatus, SigningPolicy
from signflow.schemas.signing import SignaturePayload
from signflow.services.audit import AuditWriter
from signflow.services.context import ActorContext
from signflow.services.counter import TallyResult
from signflow.services.gateway import SigningGateway
from signflow.services.guards import ensure_signable, ensure_signer_open
from signflow.services.renderer import decode_image_data

if TYPE_CHECKING:
    from signflow.services.lifecycle import RequestLifecycleManager


@dataclass(frozen=True)
class SignerOutcome:
    signer: Signer
    tally: TallyResult | None = None

    @property
    def just_completed(self) -> bool:
        return bool(self.tally and self.tally.just_completed)


class SignerService:
    """Signer state machine: view, sign and decline."""

    def __init__(
        self,
        gateway: SigningGateway,
        lifecycle: RequestLifecycleManager,
        audit: AuditWriter,
    ) -> None:
        self.gateway = gateway
        self.lifecycle = lifecycle
        self.audit = audit

    def _load(self, signer_id: UUID) -> tuple[SignatureRequest, Signer]:
        signer = self.gateway.require_signer(signer_id)
        request = self.gateway.require_request(signer.request_id)
        return request, signer

    @transient_retry
    def record_view(self, signer_id: UUID, actor: ActorContext | None = None) -> SignerOutcome:
        request, signer = self._load(signer_id)
        ensure_signable(request)
        if signer.viewed_at is not None:
            return SignerOutcome(signer=signer)

        request_id = request.id
        with self.gateway.transaction():
            if not self.gateway.mark_signer_viewed(signer_id, utcnow()):
                # Another view of the same signer got there first.
                return SignerOutcome(signer=self.gateway.require_signer(signer_id))
            self.gateway.on_commit(
                lambda: self.audit.record("viewed", request_id=request_id, signer_id=signer_id, actor=actor)
            )
            tally = self.lifecycle.on_signer_viewed(request_id)
        return SignerOutcome(signer=self.gateway.require_signer(signer_id), tally=tally)

    @transient_retry
    def record_sign(
        self,
        signer_id: UUID,
        payload: SignaturePayload,
        actor: ActorContext | None = None,
    ) -> SignerOutcome:
        actor = actor or ActorContext()
        request, signer = self._load(signer_id)
        ensure_signable(request)
        ensure_signer_open(signer)

        own_fields = [field for field in self.gateway.list_fields(request.id) if field.signer_id == signer.id]
        self._validate_payload(payload, own_fields)

        enforce_order = request.policy == SigningPolicy.SEQUENTIAL
        if enforce_order:
            self._check_predecessors(request, signer)

        request_id = request.id
        stored_payload = payload.model_dump()
        with self.gateway.transaction():
            signed = self.gateway.mark_signer_signed(
                signer,
                payload=stored_payload,
                now=utcnow(),
                ip=actor.ip_address,
                user_agent=actor.user_agent,
                enforce_order=enforce_order,
            )
            if not signed:
                raise self._classify_rejection(signer_id, ordered=enforce_order)
            self.gateway.on_commit(
                lambda: self.audit.record(
                    "signed",
                    request_id=request_id,
                    signer_id=signer_id,
                    actor=actor,
                    details={"method": payload.method, "fields": sorted(payload.field_values)},
                )
            )
            tally = self.lifecycle.on_signer_completed(request_id, signer_id=signer_id, actor=actor)
        return SignerOutcome(signer=self.gateway.require_signer(signer_id), tally=tally)

    @transient_retry
    def record_decline(
        self,
        signer_id: UUID,
        reason: str | None = None,
        actor: ActorContext | None = None,
    ) -> SignerOutcome:
        actor = actor or ActorContext()
        request, signer = self._load(signer_id)
        ensure_signable(request)
        ensure_signer_open(signer)

        request_id = request.id
        reason = reason.strip() if reason else None
        with self.gateway.transaction():
            declined = self.gateway.mark_signer_declined(
                signer_id,
                reason=reason,
                now=utcnow(),
                ip=actor.ip_address,
                user_agent=actor.user_agent,
            )
            if not declined:
                raise self._classify_rejection(signer_id, ordered=False)
            self.gateway.on_commit(
                lambda: self.audit.record(
                    "declined",
                    request_id=request_id,
                    signer_id=signer_id,
                    actor=actor,
                    details={"reason": reason},
                )
            )
            tally = self.lifecycle.on_signer_declined(request_id, signer_id=signer_id, reason=reason, actor=actor)
        return SignerOutcome(signer=self.gateway.require_signer(signer_id), tally=tally)

    def _validate_payload(self, payload: SignaturePayload, own_fields: list[PlacedField]) -> None:
        errors: list[str] = []
        if not (payload.image_data or "").strip() and not (payload.typed_name or "").strip():
            errors.append("payload requires image_data or typed_name")
        for key, value in (("image_data", payload.image_data), ("initials_data", payload.initials_data)):
            if value:
                try:
                    decode_image_data(value)
                except ValueError as exc:
                    errors.append(f"{key}: {exc}")
        own_names = {field.name for field in own_fields}
        for name in sorted(payload.field_values):
            if name not in own_names:
                errors.append(f"field_values: {name!r} is not a field of this signer")
        if errors:
            raise ValidationError(errors, "Invalid signature payload")

    def _check_predecessors(self, request: SignatureRequest, signer: Signer) -> None:
        pending = [
            other
            for other in self.gateway.list_signers(request.id)
            if other.signing_order < signer.signing_order and other.current_status != SignerStatus.SIGNED
        ]
        if pending:
            raise OrderViolation(
                "Earlier signers have not signed yet",
                {
                    "signer_id": str(signer.id),
                    "waiting_for": [str(other.id) for other in pending],
                },
            )

    def _classify_rejection(self, signer_id: UUID, *, ordered: bool) -> Conflict:
        current = self.gateway.require_signer(signer_id)
        status = current.current_status
        if status.is_final:
            return AlreadyFinal(f"Signer already {status.value}", {"signer_id": str(signer_id), "status": status.value})
        if ordered:
            logger.info("Signer %s lost an ordering race", signer_id)
            return OrderViolation("Earlier signers have not signed yet", {"signer_id": str(signer_id)})
        return Conflict("Signer changed concurrently", {"signer_id": str(signer_id)})
