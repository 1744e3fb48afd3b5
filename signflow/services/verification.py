from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol
from uuid import UUID

import pyotp

from signflow.core.config import settings
from signflow.core.errors import Conflict
from signflow.core.retry import transient_retry
from signflow.models.base import utcnow
from signflow.models.signing import SignatureRequest, Signer
from signflow.models.verification import VerifiedSession
from signflow.services.audit import AuditWriter
from signflow.services.context import ActorContext
from signflow.services.gateway import SigningGateway
from signflow.services.guards import ensure_signable, ensure_signer_open
from signflow.services.notification import NotificationSender, Recipient


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def new_code_secret() -> str:
    return pyotp.random_base32()


def requires_code(request: SignatureRequest, signer: Signer) -> bool:
    return bool(request.requires_code or signer.requires_code)


@dataclass(frozen=True)
class VerificationResult:
    valid: bool
    token_ref: str | None = None
    expires_at: datetime | None = None


class CodeVerifier(Protocol):
    def verify(self, signer_id: UUID, code: str, actor: ActorContext | None = None) -> VerificationResult:
        ...


class TotpCodeVerifier:
    """Time-based one-time codes (pyotp) exchanged for single-use signing tokens."""

    def __init__(self, gateway: SigningGateway, notifier: NotificationSender, audit: AuditWriter) -> None:
        self.gateway = gateway
        self.notifier = notifier
        self.audit = audit

    def _totp(self, signer: Signer) -> pyotp.TOTP:
        return pyotp.TOTP(
            signer.code_secret,
            interval=settings.signing_code_interval_seconds,
            issuer=settings.code_issuer,
            name=signer.email,
        )

    def _load(self, signer_id: UUID) -> tuple[SignatureRequest, Signer]:
        signer = self.gateway.require_signer(signer_id)
        request = self.gateway.require_request(signer.request_id)
        ensure_signable(request)
        ensure_signer_open(signer)
        if not requires_code(request, signer) or not signer.code_secret:
            raise Conflict("Signer does not use signing codes", {"signer_id": str(signer_id)})
        return request, signer

    def send_code(self, signer_id: UUID, actor: ActorContext | None = None) -> None:
        request, signer = self._load(signer_id)
        code = self._totp(signer).now()
        self.notifier.send(
            "signing_code",
            [Recipient.for_signer(signer)],
            {
                "request_id": str(request.id),
                "title": request.title,
                "code": code,
                "valid_minutes": max(settings.signing_code_interval_seconds // 60, 1),
            },
        )
        self.audit.record(
            "code_sent",
            request_id=request.id,
            signer_id=signer.id,
            actor=actor,
            details={"channel": signer.notification_channel},
        )

    @transient_retry
    def verify(self, signer_id: UUID, code: str, actor: ActorContext | None = None) -> VerificationResult:
        request, signer = self._load(signer_id)
        if not self._totp(signer).verify(code, valid_window=settings.signing_code_valid_window):
            self.audit.record("code_rejected", request_id=request.id, signer_id=signer.id, actor=actor)
            return VerificationResult(valid=False)

        request_id, signer_pk = request.id, signer.id
        token = secrets.token_urlsafe(32)
        expires_at = utcnow() + timedelta(minutes=settings.verified_session_ttl_minutes)
        with self.gateway.transaction():
            self.gateway.add_verified_session(
                VerifiedSession(signer_id=signer_pk, token_hash=hash_token(token), expires_at=expires_at)
            )
            self.gateway.on_commit(
                lambda: self.audit.record(
                    "code_verified",
                    request_id=request_id,
                    signer_id=signer_pk,
                    actor=actor,
                    details={"expires_at": expires_at},
                )
            )
        return VerificationResult(valid=True, token_ref=token, expires_at=expires_at)
