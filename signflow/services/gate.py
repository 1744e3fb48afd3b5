from __future__ import annotations

from datetime import datetime
from uuid import UUID

from signflow.core.errors import CodeExpired, CodeInvalid, CodeRequired
from signflow.core.retry import transient_retry
from signflow.models.base import utcnow
from signflow.models.signing import Signer
from signflow.schemas.signing import SignaturePayload
from signflow.services.audit import AuditWriter
from signflow.services.context import ActorContext
from signflow.services.gateway import SigningGateway
from signflow.services.guards import ensure_signable, ensure_signer_open
from signflow.services.signer import SignerOutcome, SignerService
from signflow.services.verification import hash_token, requires_code


class SigningGate:
    """Checks the single-use verification token before a signature is recorded."""

    def __init__(self, gateway: SigningGateway, signers: SignerService, audit: AuditWriter) -> None:
        self.gateway = gateway
        self.signers = signers
        self.audit = audit

    def sign(
        self,
        signer_id: UUID,
        payload: SignaturePayload,
        token: str | None = None,
        actor: ActorContext | None = None,
    ) -> SignerOutcome:
        signer = self.gateway.require_signer(signer_id)
        request = self.gateway.require_request(signer.request_id)
        # Fail fast before looking at the token.
        ensure_signable(request)
        ensure_signer_open(signer)

        if not requires_code(request, signer):
            return self.signers.record_sign(signer_id, payload, actor)
        try:
            return self._sign_with_token(signer, payload, token, actor)
        except (CodeRequired, CodeInvalid, CodeExpired) as exc:
            self.audit.record(
                "sign_rejected",
                request_id=request.id,
                signer_id=signer.id,
                actor=actor,
                details={"reason": exc.code},
            )
            raise

    @transient_retry
    def _sign_with_token(
        self,
        signer: Signer,
        payload: SignaturePayload,
        token: str | None,
        actor: ActorContext | None,
    ) -> SignerOutcome:
        if not token:
            raise CodeRequired("A verified signing code is required", {"signer_id": str(signer.id)})
        verified = self.gateway.find_verified_session(hash_token(token))
        if verified is None or verified.signer_id != signer.id or verified.consumed_at is not None:
            raise CodeInvalid("Signing token is invalid", {"signer_id": str(signer.id)})

        now = utcnow()
        if verified.expires_at <= now:
            raise CodeExpired("Signing token has expired", {"signer_id": str(signer.id)})

        session_id = verified.id
        # The token is spent only if the signature commits with it.
        with self.gateway.transaction():
            if not self.gateway.consume_verified_session(session_id, now):
                raise self._used_token_error(signer, token, now)
            return self.signers.record_sign(signer.id, payload, actor)

    def _used_token_error(self, signer: Signer, token: str, now: datetime) -> CodeInvalid | CodeExpired:
        # Used by a concurrent request, or expired between the read and the update.
        current = self.gateway.find_verified_session(hash_token(token))
        if current is not None and current.consumed_at is None and current.expires_at <= now:
            return CodeExpired("Signing token has expired", {"signer_id": str(signer.id)})
        return CodeInvalid("Signing token was already used", {"signer_id": str(signer.id)})
