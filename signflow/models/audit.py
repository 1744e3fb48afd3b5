from __future__ import annotations

from uuid import UUID

from sqlalchemy import JSON
from sqlmodel import Field

from signflow.models.base import TimestampedModel, UUIDModel


class AuditEvent(UUIDModel, TimestampedModel, table=True):
    __tablename__ = "audit_events"

    # No foreign keys: audit rows are written by a separate worker and must
    # never be rejected because of the state of the workflow tables.
    request_id: UUID | None = Field(default=None, index=True)
    signer_id: UUID | None = Field(default=None, index=True)
    event_type: str = Field(index=True, max_length=64)
    actor_id: str | None = Field(default=None, max_length=128)
    ip_address: str | None = Field(default=None, max_length=64)
    user_agent: str | None = Field(default=None)
    details: dict | None = Field(default_factory=dict, sa_type=JSON)
