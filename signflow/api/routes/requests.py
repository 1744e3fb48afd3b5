from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Query, status

from signflow.api.deps import ActorDep, ServicesDep
from signflow.core.config import settings
from signflow.models.signing import RequestStatus, SigningPolicy
from signflow.schemas.audit import AuditEventList, AuditEventRead
from signflow.schemas.common import ERROR_RESPONSES
from signflow.schemas.signing import (
    ArtifactRead,
    ExtendExpirationBody,
    PlacedFieldRead,
    ReminderRead,
    SignatureRequestCreate,
    SignatureRequestDetail,
    SignatureRequestList,
    SignatureRequestRead,
    SignerRead,
)
from signflow.services.gateway import RequestFilter
from signflow.services.lifecycle import RequestDetail

router = APIRouter(prefix="/requests", tags=["requests"], responses=ERROR_RESPONSES)


def _detail(detail: RequestDetail) -> SignatureRequestDetail:
    base = SignatureRequestRead.model_validate(detail.request)
    return SignatureRequestDetail(
        **base.model_dump(),
        signers=[SignerRead.model_validate(signer) for signer in detail.signers],
        fields=[PlacedFieldRead.model_validate(field) for field in detail.fields],
    )


@router.post("", response_model=SignatureRequestDetail, status_code=status.HTTP_201_CREATED)
def create_request(payload: SignatureRequestCreate, services: ServicesDep, actor: ActorDep) -> SignatureRequestDetail:
    return _detail(services.lifecycle.create(payload, actor))


@router.get("", response_model=SignatureRequestList)
def list_requests(
    services: ServicesDep,
    status_filter: Optional[RequestStatus] = Query(default=None, alias="status"),
    policy: Optional[SigningPolicy] = None,
    initiator_id: Optional[str] = None,
    signer_email: Optional[str] = None,
    page: int = 1,
    page_size: Optional[int] = None,
) -> SignatureRequestList:
    filters = RequestFilter(
        status=status_filter,
        policy=policy,
        initiator_id=initiator_id,
        signer_email=signer_email,
    )
    page = max(page, 1)
    page_size = min(max(page_size or settings.default_page_size, 1), settings.max_page_size)
    items, total = services.lifecycle.list(filters, page=page, page_size=page_size)
    return SignatureRequestList(
        items=[SignatureRequestRead.model_validate(item) for item in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/{request_id}", response_model=SignatureRequestDetail)
def get_request(request_id: UUID, services: ServicesDep) -> SignatureRequestDetail:
    return _detail(services.lifecycle.get(request_id))


@router.post("/{request_id}/send", response_model=SignatureRequestRead)
def send_request(request_id: UUID, services: ServicesDep, actor: ActorDep) -> SignatureRequestRead:
    return SignatureRequestRead.model_validate(services.lifecycle.send(request_id, actor))


@router.post("/{request_id}/cancel", response_model=SignatureRequestRead)
def cancel_request(request_id: UUID, services: ServicesDep, actor: ActorDep) -> SignatureRequestRead:
    return SignatureRequestRead.model_validate(services.lifecycle.cancel(request_id, actor))


@router.post("/{request_id}/extend", response_model=SignatureRequestRead)
def extend_expiration(
    request_id: UUID,
    payload: ExtendExpirationBody,
    services: ServicesDep,
    actor: ActorDep,
) -> SignatureRequestRead:
    request = services.lifecycle.extend_expiration(request_id, payload.days, actor)
    return SignatureRequestRead.model_validate(request)


@router.post("/{request_id}/remind", response_model=ReminderRead)
def remind_signers(request_id: UUID, services: ServicesDep, actor: ActorDep) -> ReminderRead:
    reminded = services.lifecycle.remind(request_id, actor)
    return ReminderRead(reminded=[signer.id for signer in reminded])


@router.post("/{request_id}/finalize", response_model=ArtifactRead)
def finalize_request(request_id: UUID, services: ServicesDep) -> ArtifactRead:
    artifact = services.finalizer.finalize(request_id)
    return ArtifactRead(
        request_id=artifact.request_id,
        artifact_ref=artifact.artifact_ref,
        sha256=artifact.sha256,
        size=artifact.size,
    )


@router.get("/{request_id}/audit", response_model=AuditEventList)
def list_audit_events(
    request_id: UUID,
    services: ServicesDep,
    event_type: Optional[str] = None,
    start_at: Optional[datetime] = None,
    end_at: Optional[datetime] = None,
    page: int = 1,
    page_size: int = 50,
) -> AuditEventList:
    services.gateway.require_request(request_id)
    items, total = services.audit_log.list_events(
        request_id=request_id,
        event_type=event_type,
        start_at=start_at,
        end_at=end_at,
        page=max(page, 1),
        page_size=min(max(page_size, 1), 500),
    )
    return AuditEventList(
        items=[AuditEventRead.model_validate(item) for item in items],
        total=total,
        page=page,
        page_size=page_size,
    )
