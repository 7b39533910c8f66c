"""Error taxonomy for Flowgate.

Every failure that crosses the facade is a ``FlowgateError`` subclass. Each
carries a stable ``code`` and a ``category`` telling the caller what to do
about it:

    retry                 transient upstream fault, safe to try again
    fix_connection        stored credential or endpoint is wrong
    upgrade_plan          the tenant's tier does not include the capability
    not_available         permanent, expected limitation (e.g. Zapier control)
    insufficient_credits  balance cannot cover the operation
    invalid_request       caller supplied bad input
    unauthorized          principal may not act on this tenant / resource
    conflict              another write is in flight on the same resource

Transport exceptions (httpx) never escape the gateway; they are mapped to
one of the upstream errors below.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    RETRY = "retry"
    FIX_CONNECTION = "fix_connection"
    UPGRADE_PLAN = "upgrade_plan"
    NOT_AVAILABLE = "not_available"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    INVALID_REQUEST = "invalid_request"
    UNAUTHORIZED = "unauthorized"
    CONFLICT = "conflict"


class FlowgateError(Exception):
    """Base class for all typed Flowgate failures."""

    code: str = "flowgate_error"
    category: ErrorCategory = ErrorCategory.INVALID_REQUEST
    retryable: bool = False

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "code": self.code,
            "category": self.category.value,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            payload["details"] = self.details
        return payload


# ─────────────────────────────────────────────────────────────────────────────
# Authorization and validation
# ─────────────────────────────────────────────────────────────────────────────

class Unauthorized(FlowgateError):
    code = "unauthorized"
    category = ErrorCategory.UNAUTHORIZED


class PlanUpgradeRequired(FlowgateError):
    code = "plan_upgrade_required"
    category = ErrorCategory.UPGRADE_PLAN

    def __init__(self, message: str, *, capability: str, tier: str, required_tier: str | None) -> None:
        super().__init__(message, capability=capability, tier=tier, required_tier=required_tier)
        self.capability = capability
        self.tier = tier
        self.required_tier = required_tier


class ConnectionNotFound(FlowgateError):
    code = "connection_not_found"
    category = ErrorCategory.FIX_CONNECTION


class AccountNotFound(FlowgateError):
    code = "account_not_found"
    category = ErrorCategory.INVALID_REQUEST


class InvalidRequest(FlowgateError):
    code = "invalid_request"
    category = ErrorCategory.INVALID_REQUEST


class InsufficientCredits(FlowgateError):
    code = "insufficient_credits"
    category = ErrorCategory.INSUFFICIENT_CREDITS

    def __init__(self, *, required: int, regular: int, bonus: int) -> None:
        super().__init__(
            f"Insufficient credits: need {required}, have {regular + bonus} "
            f"({regular} regular + {bonus} bonus)",
            required=required,
            regular=regular,
            bonus=bonus,
        )
        self.required = required
        self.regular = regular
        self.bonus = bonus


class ConcurrentModification(FlowgateError):
    code = "concurrent_modification"
    category = ErrorCategory.CONFLICT
    retryable = True


class UnsupportedOperation(FlowgateError):
    """Permanent platform limitation. Render as "not available", never retry."""

    code = "unsupported_operation"
    category = ErrorCategory.NOT_AVAILABLE


# ─────────────────────────────────────────────────────────────────────────────
# Upstream failures
# ─────────────────────────────────────────────────────────────────────────────

class UpstreamError(FlowgateError):
    """Base for failures raised while talking to an automation platform.

    ``request_sent`` is False only when the platform provably never received
    the request (connect failure, 429 throttle). Writes may be retried only
    in that case.
    """

    code = "upstream_error"
    category = ErrorCategory.RETRY

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        request_sent: bool = True,
        **details: Any,
    ) -> None:
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, **details)
        self.status_code = status_code
        self.request_sent = request_sent


class UpstreamUnreachable(UpstreamError):
    code = "upstream_unreachable"
    category = ErrorCategory.RETRY
    retryable = True


class UpstreamTimeout(UpstreamError):
    code = "upstream_timeout"
    category = ErrorCategory.RETRY
    retryable = True


class UpstreamAuthFailed(UpstreamError):
    code = "upstream_auth_failed"
    category = ErrorCategory.FIX_CONNECTION


class UpstreamMalformedResponse(UpstreamError):
    code = "upstream_malformed_response"
    category = ErrorCategory.RETRY


class UpstreamRejected(UpstreamError):
    code = "upstream_rejected"
    category = ErrorCategory.INVALID_REQUEST


class WorkflowNotFound(UpstreamError):
    code = "workflow_not_found"
    category = ErrorCategory.INVALID_REQUEST
