"""Error taxonomy of the signing workflow.

Every failure that reaches a client is one of the classes below. The HTTP layer
maps them through ``status_code``/``code``; anything else is treated as an
internal error and never shown verbatim.
"""

from __future__ import annotations

from typing import Any, Iterable


class SigningError(Exception):
    code = "signing_error"
    status_code = 400

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = details or {}

    def to_response(self) -> dict[str, Any]:
        return {"error": {"code": self.code, "message": self.message, "details": self.details}}


class ValidationError(SigningError):
    code = "validation_error"
    status_code = 422

    def __init__(self, errors: Iterable[str], message: str = "Invalid input") -> None:
        self.errors = list(errors)
        super().__init__(message, {"errors": self.errors})


class NotFound(SigningError):
    code = "not_found"
    status_code = 404

    def __init__(self, entity: str, entity_id: Any) -> None:
        super().__init__(f"{entity} not found", {"entity": entity, "id": str(entity_id)})


class Conflict(SigningError):
    code = "conflict"
    status_code = 409


class AlreadyFinal(Conflict):
    code = "already_final"


class OrderViolation(Conflict):
    code = "order_violation"


class RequestTerminal(Conflict):
    code = "request_terminal"


class RequestExpired(RequestTerminal):
    code = "request_expired"


class RequestCancelled(RequestTerminal):
    code = "request_cancelled"


class RequestDeclined(RequestTerminal):
    code = "request_declined"


class CodeError(SigningError):
    code = "code_error"
    status_code = 403


class CodeRequired(CodeError):
    code = "code_required"
    status_code = 401


class CodeInvalid(CodeError):
    code = "code_invalid"


class CodeExpired(CodeError):
    code = "code_expired"


class TransientStoreError(SigningError):
    code = "store_unavailable"
    status_code = 503


class InternalError(SigningError):
    code = "internal_error"
    status_code = 500

    def to_response(self) -> dict[str, Any]:
        return {"error": {"code": self.code, "message": "Internal error", "details": {}}}
