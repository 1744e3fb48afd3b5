from __future__ import annotations

from signflow.core.errors import (
    AlreadyFinal,
    Conflict,
    RequestCancelled,
    RequestDeclined,
    RequestExpired,
)
from signflow.models.signing import SIGNABLE_REQUEST_STATUSES, RequestStatus, SignatureRequest, Signer

_TERMINAL_ERRORS = {
    RequestStatus.EXPIRED: RequestExpired,
    RequestStatus.CANCELLED: RequestCancelled,
    RequestStatus.DECLINED: RequestDeclined,
}


def terminal_error(request: SignatureRequest) -> Conflict:
    status = request.current_status
    details = {"request_id": str(request.id), "status": status.value}
    if status == RequestStatus.COMPLETED:
        return AlreadyFinal("Signature request is already completed", details)
    error_cls = _TERMINAL_ERRORS.get(status, Conflict)
    return error_cls(f"Signature request is {status.value}", details)


def ensure_signable(request: SignatureRequest) -> None:
    """Signers may only act on a request that was sent and is not terminal."""
    status = request.current_status
    if status.is_terminal:
        raise terminal_error(request)
    if status not in SIGNABLE_REQUEST_STATUSES:
        raise Conflict(
            "Signature request has not been sent yet",
            {"request_id": str(request.id), "status": status.value},
        )


def ensure_signer_open(signer: Signer) -> None:
    status = signer.current_status
    if status.is_final:
        raise AlreadyFinal(
            f"Signer already {status.value}",
            {"signer_id": str(signer.id), "status": status.value},
        )
