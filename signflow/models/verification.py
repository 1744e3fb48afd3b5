from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlmodel import Field

from signflow.models.base import TimestampedModel, UUIDModel


class VerifiedSession(UUIDModel, TimestampedModel, table=True):
    """Single-use token handed out after a successful one-time-code check."""

    __tablename__ = "verified_sessions"

    signer_id: UUID = Field(foreign_key="signers.id", index=True)
    token_hash: str = Field(max_length=64, index=True, unique=True)
    expires_at: datetime
    consumed_at: Optional[datetime] = Field(default=None)
