"""Atomic completion accounting.

Each increment is one ``UPDATE`` guarded by the row version and a non-terminal
status. A zero row count means another writer got there first; the row is read
again and the update retried. Tallies only ever grow.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable
from uuid import UUID

from signflow.core.config import settings
from signflow.core.errors import Conflict, InternalError, TransientStoreError
from signflow.core.logging_setup import logger
from signflow.models.base import utcnow
from signflow.models.signing import SIGNABLE_REQUEST_STATUSES, RequestStatus, SignatureRequest
from signflow.services.gateway import SigningGateway
from signflow.services.guards import ensure_signable


@dataclass(frozen=True)
class TallyResult:
    request_id: UUID
    status: RequestStatus
    total_signers: int
    viewed_count: int
    signed_count: int
    declined_count: int
    version: int
    just_completed: bool = False


# (values for the UPDATE, resulting status, tally deltas)
_Plan = tuple[dict[str, Any], RequestStatus, dict[str, int]]


class CompletionCounter:
    def __init__(self, gateway: SigningGateway, max_attempts: int | None = None) -> None:
        self.gateway = gateway
        self.max_attempts = max(max_attempts or settings.counter_max_attempts, 1)

    def increment_signed_count(
        self,
        request_id: UUID,
        expected_prior_status: RequestStatus | Iterable[RequestStatus] | None = None,
    ) -> TallyResult:
        def plan(request: SignatureRequest) -> _Plan:
            if request.signed_count >= request.total_signers:
                raise InternalError(
                    "Signed tally already reached the number of signers",
                    {"request_id": str(request.id), "signed_count": request.signed_count},
                )
            completes = request.signed_count + 1 == request.total_signers
            values: dict[str, Any] = {"signed_count": SignatureRequest.signed_count + 1}
            if completes:
                target = RequestStatus.COMPLETED
                values["completed_at"] = utcnow()
            else:
                target = RequestStatus.IN_PROGRESS
            values["status"] = target
            return values, target, {"signed_count": 1}

        return self._apply(request_id, "signed", plan, expected_prior_status)

    def increment_viewed_count(self, request_id: UUID) -> TallyResult:
        def plan(request: SignatureRequest) -> _Plan:
            if request.viewed_count >= request.total_signers:
                raise InternalError(
                    "Viewed tally already reached the number of signers",
                    {"request_id": str(request.id), "viewed_count": request.viewed_count},
                )
            values: dict[str, Any] = {"viewed_count": SignatureRequest.viewed_count + 1}
            target = request.current_status
            if target == RequestStatus.PENDING:
                target = RequestStatus.IN_PROGRESS
                values["status"] = target
            return values, target, {"viewed_count": 1}

        return self._apply(request_id, "viewed", plan)

    def increment_declined_count(self, request_id: UUID) -> TallyResult:
        def plan(request: SignatureRequest) -> _Plan:
            values: dict[str, Any] = {
                "declined_count": SignatureRequest.declined_count + 1,
                "status": RequestStatus.DECLINED,
                "declined_at": utcnow(),
            }
            return values, RequestStatus.DECLINED, {"declined_count": 1}

        return self._apply(request_id, "declined", plan)

    def _apply(
        self,
        request_id: UUID,
        tally: str,
        plan: Callable[[SignatureRequest], _Plan],
        expected_prior_status: RequestStatus | Iterable[RequestStatus] | None = None,
    ) -> TallyResult:
        expected = _as_status_set(expected_prior_status)
        for attempt in range(1, self.max_attempts + 1):
            request = self.gateway.require_request(request_id)
            ensure_signable(request)
            current = request.current_status
            if expected and current not in expected:
                raise Conflict(
                    f"Request is {current.value}, expected one of {sorted(s.value for s in expected)}",
                    {"request_id": str(request_id), "status": current.value},
                )

            values, target, deltas = plan(request)
            if target != current:
                current.ensure_transition(target)

            if self.gateway.update_request_guarded(
                request_id,
                values,
                statuses=SIGNABLE_REQUEST_STATUSES,
                version=request.version,
            ):
                return TallyResult(
                    request_id=request_id,
                    status=target,
                    total_signers=request.total_signers,
                    viewed_count=request.viewed_count + deltas.get("viewed_count", 0),
                    signed_count=request.signed_count + deltas.get("signed_count", 0),
                    declined_count=request.declined_count + deltas.get("declined_count", 0),
                    version=request.version + 1,
                    just_completed=target == RequestStatus.COMPLETED,
                )
            logger.debug(
                "Version race on %s tally for request %s (attempt %s/%s)",
                tally,
                request_id,
                attempt,
                self.max_attempts,
            )

        logger.warning("Gave up incrementing %s tally for request %s", tally, request_id)
        raise TransientStoreError(
            "Request is under heavy contention, try again",
            {"request_id": str(request_id), "tally": tally},
        )


def _as_status_set(value: RequestStatus | Iterable[RequestStatus] | None) -> frozenset[RequestStatus]:
    if value is None:
        return frozenset()
    if isinstance(value, RequestStatus):
        return frozenset({value})
    return frozenset(value)
