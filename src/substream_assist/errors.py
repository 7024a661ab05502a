"""Error taxonomy for Substream Assist.

Every failure raised by the services is an AssistError carrying the HTTP
status the API layer should return and a machine-readable reason that is
also written to the action log and audit trail.
"""

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Machine-readable failure reasons."""

    PERMISSION_DENIED = "permission_denied"
    APPROVAL_REQUIRED = "approval_required"
    UNSUPPORTED_TYPE = "unsupported_type"
    INVALID_STATUS = "invalid_status"
    INVALID_PAYLOAD = "invalid_payload"
    INVALID_PATCH = "invalid_patch"
    NO_SUBSCRIPTIONS = "no_subscriptions"
    NO_RECOMMENDATIONS = "no_recommendations"
    PROPOSAL_NOT_FOUND = "proposal_not_found"
    PATCH_NOT_FOUND = "patch_not_found"
    SUBSCRIPTION_NOT_FOUND = "subscription_not_found"
    STALE_SUBSCRIPTION_CATEGORY = "stale_subscription_category"
    BACKEND_ERROR = "backend_error"
    BACKEND_TIMEOUT = "backend_timeout"
    BACKEND_INVALID_OUTPUT = "backend_invalid_output"
    TRANSACTION_FAILED = "transaction_failed"


class AssistError(Exception):
    """Base class for all service errors."""

    status_code: int = 500
    default_code: ErrorCode = ErrorCode.TRANSACTION_FAILED

    def __init__(
        self,
        message: str,
        error_code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code
        self.details = details or {}

    @property
    def reason(self) -> str:
        return self.error_code.value

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"message": self.message, "reason": self.reason}
        if self.details:
            body["details"] = self.details
        return body


class PermissionDeniedError(AssistError):
    """AI assistance is disabled for the caller."""

    status_code = 403
    default_code = ErrorCode.PERMISSION_DENIED

    def __init__(self, message: str = "AI assistance disabled") -> None:
        super().__init__(message)


class ValidationError(AssistError):
    """The request cannot be honoured as given. Nothing was mutated."""

    status_code = 400
    default_code = ErrorCode.INVALID_PAYLOAD


class NotFoundError(AssistError):
    """A proposal, patch, or subscription is missing or owned by someone else."""

    status_code = 404
    default_code = ErrorCode.PROPOSAL_NOT_FOUND


class ConflictError(AssistError):
    """Live data no longer matches what the proposal expected."""

    status_code = 409
    default_code = ErrorCode.STALE_SUBSCRIPTION_CATEGORY


class BackendError(AssistError):
    """The recommendation backend failed, timed out, or returned malformed output."""

    status_code = 500
    default_code = ErrorCode.BACKEND_ERROR


class InfrastructureError(AssistError):
    """A store or transaction failure after preconditions passed."""

    status_code = 500
    default_code = ErrorCode.TRANSACTION_FAILED
