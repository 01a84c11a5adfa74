"""Kubernetes API errors and the predicates the installers rely on."""

from __future__ import annotations

import enum
from typing import Optional

OBJECT_IS_BEING_DELETED_ERROR_MSG = "object is being deleted"
FIELD_IMMUTABLE_ERROR_MSG = "field is immutable"


class StatusReason(str, enum.Enum):
    """Machine-readable reason carried by an API status error."""

    UNKNOWN = ""
    UNAUTHORIZED = "Unauthorized"
    FORBIDDEN = "Forbidden"
    NOT_FOUND = "NotFound"
    ALREADY_EXISTS = "AlreadyExists"
    CONFLICT = "Conflict"
    GONE = "Gone"
    INVALID = "Invalid"
    SERVER_TIMEOUT = "ServerTimeout"
    TIMEOUT = "Timeout"
    TOO_MANY_REQUESTS = "TooManyRequests"
    BAD_REQUEST = "BadRequest"
    METHOD_NOT_ALLOWED = "MethodNotAllowed"
    INTERNAL_ERROR = "InternalError"


class KubeApiError(Exception):
    """An error returned by the Kubernetes API server."""

    def __init__(self, reason: StatusReason, message: str = "") -> None:
        super().__init__(message)
        self.reason = StatusReason(reason)
        self.message = message

    def __str__(self) -> str:
        return self.message


def _api_error(err: Optional[BaseException]) -> Optional[KubeApiError]:
    """Find the API error in an exception or in the chain of its causes."""
    seen = set()
    while err is not None and id(err) not in seen:
        if isinstance(err, KubeApiError):
            return err
        seen.add(id(err))
        err = err.__cause__ or err.__context__
    return None


def _message_contains(err: BaseException, api_err: KubeApiError, text: str) -> bool:
    return text in str(err) or text in api_err.message


def is_immutable_error(err: Optional[BaseException]) -> bool:
    """True if the error is an Invalid error about an immutable field."""
    api_err = _api_error(err)
    if api_err is None or api_err.reason is not StatusReason.INVALID:
        return False
    return _message_contains(err, api_err, FIELD_IMMUTABLE_ERROR_MSG)


def is_already_exists(err: Optional[BaseException]) -> bool:
    """True if the error is AlreadyExists and the resource is not terminating."""
    api_err = _api_error(err)
    if api_err is None or api_err.reason is not StatusReason.ALREADY_EXISTS:
        return False
    return not _message_contains(err, api_err, OBJECT_IS_BEING_DELETED_ERROR_MSG)


def is_not_found(err: Optional[BaseException]) -> bool:
    """True if the error is a NotFound API error."""
    api_err = _api_error(err)
    return api_err is not None and api_err.reason is StatusReason.NOT_FOUND