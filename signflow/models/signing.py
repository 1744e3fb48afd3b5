from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

import sqlalchemy as sa
from sqlalchemy import JSON, UniqueConstraint
from sqlmodel import Field

from signflow.core.errors import Conflict
from signflow.models.base import TimestampedModel, UUIDModel


def _enum_type(enum_cls: type[Enum], length: int = 16) -> sa.Enum:
    # Persist the enum values ("in_progress"), not the member names.
    return sa.Enum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=lambda members: [member.value for member in members],
    )


class SigningPolicy(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class RequestStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    DECLINED = "declined"

    @property
    def is_terminal(self) -> bool:
        return not REQUEST_TRANSITIONS[self]

    def can_transition_to(self, target: RequestStatus) -> bool:
        return target in REQUEST_TRANSITIONS[self]

    def ensure_transition(self, target: RequestStatus) -> None:
        if not self.can_transition_to(target):
            raise Conflict(
                f"Request cannot move from {self.value} to {target.value}",
                {"from": self.value, "to": target.value},
            )


class SignerStatus(str, Enum):
    PENDING = "pending"
    VIEWED = "viewed"
    SIGNED = "signed"
    DECLINED = "declined"

    @property
    def is_final(self) -> bool:
        return not SIGNER_TRANSITIONS[self]

    def can_transition_to(self, target: SignerStatus) -> bool:
        return target in SIGNER_TRANSITIONS[self]

    def ensure_transition(self, target: SignerStatus) -> None:
        if not self.can_transition_to(target):
            raise Conflict(
                f"Signer cannot move from {self.value} to {target.value}",
                {"from": self.value, "to": target.value},
            )


REQUEST_TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    RequestStatus.DRAFT: frozenset({RequestStatus.PENDING, RequestStatus.CANCELLED, RequestStatus.EXPIRED}),
    RequestStatus.PENDING: frozenset(
        {
            RequestStatus.IN_PROGRESS,
            RequestStatus.COMPLETED,
            RequestStatus.CANCELLED,
            RequestStatus.EXPIRED,
            RequestStatus.DECLINED,
        }
    ),
    RequestStatus.IN_PROGRESS: frozenset(
        {
            RequestStatus.COMPLETED,
            RequestStatus.CANCELLED,
            RequestStatus.EXPIRED,
            RequestStatus.DECLINED,
        }
    ),
    RequestStatus.COMPLETED: frozenset(),
    RequestStatus.EXPIRED: frozenset(),
    RequestStatus.CANCELLED: frozenset(),
    RequestStatus.DECLINED: frozenset(),
}

SIGNER_TRANSITIONS: dict[SignerStatus, frozenset[SignerStatus]] = {
    SignerStatus.PENDING: frozenset({SignerStatus.VIEWED, SignerStatus.SIGNED, SignerStatus.DECLINED}),
    SignerStatus.VIEWED: frozenset({SignerStatus.SIGNED, SignerStatus.DECLINED}),
    SignerStatus.SIGNED: frozenset(),
    SignerStatus.DECLINED: frozenset(),
}

ACTIVE_REQUEST_STATUSES: tuple[RequestStatus, ...] = tuple(
    status for status, targets in REQUEST_TRANSITIONS.items() if targets
)
TERMINAL_REQUEST_STATUSES: tuple[RequestStatus, ...] = tuple(
    status for status, targets in REQUEST_TRANSITIONS.items() if not targets
)
# Statuses from which signers may act (a draft has not been sent yet).
SIGNABLE_REQUEST_STATUSES: tuple[RequestStatus, ...] = (RequestStatus.PENDING, RequestStatus.IN_PROGRESS)
OPEN_SIGNER_STATUSES: tuple[SignerStatus, ...] = (SignerStatus.PENDING, SignerStatus.VIEWED)


class FieldType(str, Enum):
    SIGNATURE = "signature"
    INITIALS = "initials"
    TEXT = "text"
    DATE = "date"
    CHECKBOX = "checkbox"


class NotificationChannel(str, Enum):
    EMAIL = "email"
    SMS = "sms"


class SignatureRequest(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "signature_requests"

    document_ref: str = Field(max_length=512)
    title: str = Field(max_length=255)
    message: str | None = Field(default=None)
    policy: SigningPolicy = Field(default=SigningPolicy.SEQUENTIAL, sa_type=_enum_type(SigningPolicy))
    status: RequestStatus = Field(default=RequestStatus.DRAFT, sa_type=_enum_type(RequestStatus), index=True)
    initiator_id: str = Field(max_length=128, index=True)
    initiator_email: str | None = Field(default=None, max_length=320)
    requires_code: bool = Field(default=False)

    total_signers: int = Field(default=0)
    viewed_count: int = Field(default=0)
    signed_count: int = Field(default=0)
    declined_count: int = Field(default=0)
    version: int = Field(default=1)

    expires_at: Optional[datetime] = Field(default=None, index=True)
    sent_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)
    cancelled_at: Optional[datetime] = Field(default=None)
    declined_at: Optional[datetime] = Field(default=None)
    expired_at: Optional[datetime] = Field(default=None)

    artifact_ref: str | None = Field(default=None, max_length=1024)
    artifact_sha256: str | None = Field(default=None, max_length=64)
    finalized_at: Optional[datetime] = Field(default=None)
    finalization_attempts: int = Field(default=0)
    finalization_error: str | None = Field(default=None)

    warning_sent_at: Optional[datetime] = Field(default=None)
    warning_threshold_hours: int | None = Field(default=None)

    @property
    def current_status(self) -> RequestStatus:
        return RequestStatus(self.status)


class Signer(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "signers"
    __table_args__ = (UniqueConstraint("request_id", "email", name="uq_signers_request_email"),)

    request_id: UUID = Field(foreign_key="signature_requests.id", index=True)
    email: str = Field(max_length=320)
    name: str = Field(max_length=128)
    signing_order: int = Field(default=1, ge=1)
    status: SignerStatus = Field(default=SignerStatus.PENDING, sa_type=_enum_type(SignerStatus))
    viewed_at: Optional[datetime] = Field(default=None)
    signed_at: Optional[datetime] = Field(default=None)
    declined_at: Optional[datetime] = Field(default=None)
    declined_reason: str | None = Field(default=None)
    payload: dict | None = Field(default=None, sa_type=JSON)
    signer_ip: str | None = Field(default=None, max_length=64)
    signer_user_agent: str | None = Field(default=None)

    requires_code: bool = Field(default=False)
    code_secret: str | None = Field(default=None, max_length=64)
    notification_channel: NotificationChannel = Field(
        default=NotificationChannel.EMAIL,
        sa_type=_enum_type(NotificationChannel, length=8),
    )
    phone_number: str | None = Field(default=None, max_length=32)
    reminder_count: int = Field(default=0)
    last_reminded_at: Optional[datetime] = Field(default=None)

    @property
    def current_status(self) -> SignerStatus:
        return SignerStatus(self.status)


class PlacedField(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "placed_fields"
    __table_args__ = (UniqueConstraint("request_id", "name", name="uq_placed_fields_request_name"),)

    request_id: UUID = Field(foreign_key="signature_requests.id", index=True)
    signer_id: UUID = Field(foreign_key="signers.id", index=True)
    name: str = Field(max_length=128)
    field_type: FieldType = Field(default=FieldType.SIGNATURE, sa_type=_enum_type(FieldType))
    page: int = Field(default=1, ge=1)
    x: float = Field(default=0.0, ge=0.0, le=1.0)
    y: float = Field(default=0.0, ge=0.0, le=1.0)
    width: float = Field(default=0.2, gt=0.0, le=1.0)
    height: float = Field(default=0.05, gt=0.0, le=1.0)
    label: str | None = Field(default=None, max_length=128)
    required: bool = Field(default=True)
