from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Header, status

from signflow.api.deps import ActorDep, ServicesDep
from signflow.core.errors import CodeInvalid
from signflow.schemas.common import ERROR_RESPONSES
from signflow.schemas.signing import (
    DeclineBody,
    SignaturePayload,
    SignerActionRead,
    SignerRead,
    SignRequestBody,
    TallyRead,
    VerificationRead,
    VerifyCodeBody,
)
from signflow.services.signer import SignerOutcome

router = APIRouter(prefix="/signers", tags=["signers"], responses=ERROR_RESPONSES)


def _outcome(outcome: SignerOutcome) -> SignerActionRead:
    tally = None
    if outcome.tally is not None:
        tally = TallyRead(
            request_id=outcome.tally.request_id,
            status=outcome.tally.status,
            total_signers=outcome.tally.total_signers,
            viewed_count=outcome.tally.viewed_count,
            signed_count=outcome.tally.signed_count,
            declined_count=outcome.tally.declined_count,
            version=outcome.tally.version,
            just_completed=outcome.tally.just_completed,
        )
    return SignerActionRead(signer=SignerRead.model_validate(outcome.signer), tally=tally)


@router.post("/{signer_id}/view", response_model=SignerActionRead)
def record_view(signer_id: UUID, services: ServicesDep, actor: ActorDep) -> SignerActionRead:
    return _outcome(services.signers.record_view(signer_id, actor))


@router.post("/{signer_id}/code", status_code=status.HTTP_202_ACCEPTED)
def send_code(signer_id: UUID, services: ServicesDep, actor: ActorDep) -> dict[str, str]:
    services.verifier.send_code(signer_id, actor)
    return {"status": "sent"}


@router.post("/{signer_id}/verify", response_model=VerificationRead)
def verify_code(
    signer_id: UUID,
    payload: VerifyCodeBody,
    services: ServicesDep,
    actor: ActorDep,
) -> VerificationRead:
    result = services.verifier.verify(signer_id, payload.code, actor)
    if not result.valid:
        raise CodeInvalid("Signing code is invalid", {"signer_id": str(signer_id)})
    return VerificationRead(valid=True, token=result.token_ref, expires_at=result.expires_at)


@router.post("/{signer_id}/sign", response_model=SignerActionRead)
def record_sign(
    signer_id: UUID,
    payload: SignRequestBody,
    services: ServicesDep,
    actor: ActorDep,
    x_signing_token: Annotated[Optional[str], Header()] = None,
) -> SignerActionRead:
    token = x_signing_token or payload.token
    signature = SignaturePayload.model_validate(payload.model_dump(exclude={"token"}))
    return _outcome(services.gate.sign(signer_id, signature, token, actor))


@router.post("/{signer_id}/decline", response_model=SignerActionRead)
def record_decline(
    signer_id: UUID,
    services: ServicesDep,
    actor: ActorDep,
    payload: Optional[DeclineBody] = None,
) -> SignerActionRead:
    reason = payload.reason if payload else None
    return _outcome(services.signers.record_decline(signer_id, reason, actor))
