from datetime import datetime
from typing import Any, List
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, field_validator

from signflow.models.signing import (
    FieldType,
    NotificationChannel,
    RequestStatus,
    SignerStatus,
    SigningPolicy,
)
from signflow.schemas.common import IDModel, Timestamped


class SignerCreate(BaseModel):
    email: EmailStr
    name: str = Field(min_length=1, max_length=128)
    requires_code: bool = False
    notification_channel: NotificationChannel = NotificationChannel.EMAIL
    phone_number: str | None = Field(default=None, max_length=32)

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        return value.strip()


class FieldCreate(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    field_type: FieldType = FieldType.SIGNATURE
    signer_email: EmailStr
    page: int = Field(default=1, ge=1)
    x: float = Field(default=0.0, ge=0.0, le=1.0)
    y: float = Field(default=0.0, ge=0.0, le=1.0)
    width: float = Field(default=0.2, gt=0.0, le=1.0)
    height: float = Field(default=0.05, gt=0.0, le=1.0)
    label: str | None = Field(default=None, max_length=128)
    required: bool = True


class SignatureRequestCreate(BaseModel):
    document_ref: str = Field(min_length=1, max_length=512)
    title: str = Field(min_length=1, max_length=255)
    message: str | None = None
    policy: SigningPolicy = SigningPolicy.SEQUENTIAL
    expires_in_days: int | None = None
    never_expires: bool = False
    requires_code: bool = False
    initiator_email: EmailStr | None = None
    signers: list[SignerCreate] = Field(default_factory=list)
    fields: list[FieldCreate] = Field(default_factory=list)
    send: bool = True


class SignaturePayload(BaseModel):
    """What a signer submits when signing."""

    image_data: str | None = None
    initials_data: str | None = None
    typed_name: str | None = Field(default=None, max_length=128)
    method: str = Field(default="drawn", max_length=32)
    field_values: dict[str, Any] = Field(default_factory=dict)


class SignRequestBody(SignaturePayload):
    token: str | None = None


class DeclineBody(BaseModel):
    reason: str | None = Field(default=None, max_length=1000)


class VerifyCodeBody(BaseModel):
    code: str = Field(min_length=4, max_length=12)

    @field_validator("code")
    @classmethod
    def strip_code(cls, value: str) -> str:
        return value.strip()


class ExtendExpirationBody(BaseModel):
    days: int


class SignerRead(IDModel, Timestamped):
    request_id: UUID
    email: str
    name: str
    signing_order: int
    status: SignerStatus
    viewed_at: datetime | None
    signed_at: datetime | None
    declined_at: datetime | None
    declined_reason: str | None
    requires_code: bool
    notification_channel: NotificationChannel
    reminder_count: int
    last_reminded_at: datetime | None


class PlacedFieldRead(IDModel):
    request_id: UUID
    signer_id: UUID
    name: str
    field_type: FieldType
    page: int
    x: float
    y: float
    width: float
    height: float
    label: str | None
    required: bool


class SignatureRequestRead(IDModel, Timestamped):
    document_ref: str
    title: str
    message: str | None
    policy: SigningPolicy
    status: RequestStatus
    initiator_id: str
    initiator_email: str | None
    requires_code: bool
    total_signers: int
    viewed_count: int
    signed_count: int
    declined_count: int
    version: int
    expires_at: datetime | None
    sent_at: datetime | None
    completed_at: datetime | None
    cancelled_at: datetime | None
    declined_at: datetime | None
    expired_at: datetime | None
    artifact_ref: str | None
    artifact_sha256: str | None
    finalized_at: datetime | None
    finalization_attempts: int
    finalization_error: str | None


class SignatureRequestDetail(SignatureRequestRead):
    signers: List[SignerRead]
    fields: List[PlacedFieldRead]


class SignatureRequestList(BaseModel):
    items: List[SignatureRequestRead]
    total: int
    page: int
    page_size: int


class TallyRead(BaseModel):
    request_id: UUID
    status: RequestStatus
    total_signers: int
    viewed_count: int
    signed_count: int
    declined_count: int
    version: int
    just_completed: bool


class SignerActionRead(BaseModel):
    signer: SignerRead
    tally: TallyRead | None = None


class VerificationRead(BaseModel):
    valid: bool
    token: str | None = None
    expires_at: datetime | None = None


class ReminderRead(BaseModel):
    reminded: List[UUID]


class ArtifactRead(BaseModel):
    request_id: UUID
    artifact_ref: str
    sha256: str
    size: int | None = None


class SweepRead(BaseModel):
    checked: int
    expired: int
    warnings_sent: int
    reminders_sent: int
    finalized: int
    errors: int
