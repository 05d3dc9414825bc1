# casedispatch/core/errors.py
"""
Typed domain errors for case dispatch.

The taxonomy is closed: every failure the core reports carries one of the
``ErrorCode`` values.  The transport layer maps ``DispatchError`` subtypes
to HTTP responses without embedding business logic in route handlers.

"No providers" is not an error: auto-assignment returns ``None``
when nobody is eligible.
"""
from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    INVALID_INPUT = "INVALID_INPUT"
    FORBIDDEN = "FORBIDDEN"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    ALREADY_DECLINED = "ALREADY_DECLINED"
    INVALID_STATE = "INVALID_STATE"
    INVALID_STATUS = "INVALID_STATUS"
    INTERNAL = "INTERNAL"


class DispatchError(Exception):
    """Base class for all case dispatch errors."""

    code: ErrorCode = ErrorCode.INTERNAL
    status_code: int = 500

    def __init__(self, detail: str = "Internal error"):
        self.detail = detail
        super().__init__(detail)

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code.value, "message": self.detail}


class InvalidInputError(DispatchError):
    """Missing or malformed fields (400). Never retried."""

    code = ErrorCode.INVALID_INPUT
    status_code = 400


class ForbiddenError(DispatchError):
    """Business-rule violation such as self-assignment (403)."""

    code = ErrorCode.FORBIDDEN
    status_code = 403


class CaseNotFoundError(DispatchError):
    """Case absent (404)."""

    code = ErrorCode.NOT_FOUND
    status_code = 404

    def __init__(self, case_id: str):
        self.case_id = case_id
        super().__init__(f"Case {case_id} not found")


class AlreadyAssignedError(DispatchError):
    """Conditioned update lost: the case is no longer pending (409)."""

    code = ErrorCode.CONFLICT
    status_code = 409

    def __init__(self, case_id: str, detail: str | None = None):
        self.case_id = case_id
        super().__init__(detail or f"Case {case_id} is already assigned")


class AlreadyDeclinedError(DispatchError):
    """Duplicate decline for the same (case, provider) (409)."""

    code = ErrorCode.ALREADY_DECLINED
    status_code = 409

    def __init__(self, case_id: str, provider_id: str):
        self.case_id = case_id
        self.provider_id = provider_id
        super().__init__("You have already declined this case")


class InvalidStateError(DispatchError):
    """Transition not valid from the case's current status (409)."""

    code = ErrorCode.INVALID_STATE
    status_code = 409


class InvalidStatusError(DispatchError):
    """Status value outside the whitelist (400)."""

    code = ErrorCode.INVALID_STATUS
    status_code = 400


class InternalError(DispatchError):
    """Persistence or infrastructure failure (500). Detail stays server-side."""

    code = ErrorCode.INTERNAL
    status_code = 500
