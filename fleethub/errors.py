"""
Error taxonomy for the work-order core.

Expected business-rule failures travel as ``Rejected`` values; only the
collaborator failures (authentication, persistence) are raised.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict

from fastapi import HTTPException


class ErrorKind(str, Enum):
    authentication_failure = "authentication_failure"
    authorization_denied = "authorization_denied"
    validation_failure = "validation_failure"
    invalid_transition = "invalid_transition"
    not_found = "not_found"
    persistence_failure = "persistence_failure"


HTTP_STATUS = {
    ErrorKind.authentication_failure: 401,
    ErrorKind.authorization_denied: 403,
    ErrorKind.validation_failure: 422,
    ErrorKind.invalid_transition: 409,
    ErrorKind.not_found: 404,
    ErrorKind.persistence_failure: 503,
}


@dataclass(frozen=True)
class Rejected:
    kind: ErrorKind
    reason: str
    detail: Dict[str, Any] = field(default_factory=dict)

    @property
    def status_code(self) -> int:
        return HTTP_STATUS[self.kind]

    def as_dict(self) -> Dict[str, Any]:
        return {"error": self.kind.value, "reason": self.reason, **self.detail}

    def to_http(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.as_dict())


class AuthenticationFailure(Exception):
    """Missing, expired or unusable bearer credential."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class PersistenceFailure(Exception):
    """The entity store could not apply a write. Retryable by the caller."""

    def __init__(self, reason: str, detail: str = ""):
        super().__init__(f"{reason}: {detail}" if detail else reason)
        self.reason = reason
        self.detail = detail

    def as_rejection(self) -> Rejected:
        return Rejected(ErrorKind.persistence_failure, self.reason)


def denied(reason: str, **detail) -> Rejected:
    return Rejected(ErrorKind.authorization_denied, reason, detail)


def invalid(field_name: str, reason: str, **detail) -> Rejected:
    return Rejected(ErrorKind.validation_failure, reason, {"field": field_name, **detail})


def not_found(entity: str, entity_id) -> Rejected:
    return Rejected(ErrorKind.not_found, f"{entity}-not-found", {"entity": entity, "id": str(entity_id)})


def invalid_transition(current, requested, reason: str = "invalid-transition") -> Rejected:
    return Rejected(
        ErrorKind.invalid_transition,
        reason,
        {"current_status": _value(current), "requested_status": _value(requested)},
    )


def _value(v):
    return getattr(v, "value", v)
