from datetime import datetime
from typing import Any, List
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class AuditEventRead(BaseModel):
    id: UUID
    created_at: datetime
    event_type: str
    request_id: UUID | None
    signer_id: UUID | None
    actor_id: str | None
    ip_address: str | None
    user_agent: str | None
    details: dict[str, Any] | None

    model_config = ConfigDict(from_attributes=True)


class AuditEventList(BaseModel):
    items: List[AuditEventRead]
    total: int
    page: int
    page_size: int
