from datetime import datetime
from typing import Optional

from fastapi import APIRouter

from signflow.api.deps import ServicesDep
from signflow.schemas.signing import SweepRead

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("/check-expirations", response_model=SweepRead)
def check_expirations(services: ServicesDep, now: Optional[datetime] = None) -> SweepRead:
    result = services.sweeper.check_expirations(now)
    return SweepRead(
        checked=result.checked,
        expired=result.expired,
        warnings_sent=result.warnings_sent,
        reminders_sent=result.reminders_sent,
        finalized=result.finalized,
        errors=result.errors,
    )
