from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class ActorContext:
    """Who performed an action, as seen by the HTTP layer."""

    actor_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None

    def as_details(self) -> dict[str, Any]:
        return {"actor_id": self.actor_id, "ip_address": self.ip_address, "user_agent": self.user_agent}


SYSTEM_ACTOR = ActorContext(actor_id="system")
