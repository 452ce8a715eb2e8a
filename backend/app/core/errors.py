"""Machine-readable errors for the funding and payout subsystem.

Every error carries a stable ``code`` that callers map to user-facing copy,
a human readable ``message``, the HTTP status it renders with and, where the
UI needs to route the user somewhere, an ``action`` hint
(``onboard`` / ``refresh_onboarding``).

All errors derive from ``FundingError``; ``app.main`` registers a single
exception handler that renders them via ``to_dict()``.
"""
from typing import Any, Dict, Optional


ACTION_ONBOARD = "onboard"
ACTION_REFRESH_ONBOARDING = "refresh_onboarding"


class FundingError(Exception):
    """Base error with a stable code, message, HTTP status and optional action"""

    code = "InternalError"
    status_code = 500
    default_message = "Internal server error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        action: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)
        self.action = action
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"errorCode": self.code, "message": self.message}
        if self.action:
            body["action"] = self.action
        if self.details:
            body["details"] = self.details
        return body

    def __repr__(self):
        return f"<{type(self).__name__}(code={self.code!r}, message={self.message!r})>"


# --- validation ---

class ValidationFailed(FundingError):
    code = "ValidationError"
    status_code = 400
    default_message = "Invalid request"


class InvalidAmount(ValidationFailed):
    code = "InvalidAmount"
    default_message = "Amount must be a positive integer number of cents"


# --- authorization ---

class Unauthorized(FundingError):
    code = "Unauthorized"
    status_code = 401
    default_message = "Not authenticated. Please log in."


class Forbidden(FundingError):
    code = "Forbidden"
    status_code = 403
    default_message = "You do not have permission to access this resource"


# --- not found ---

class ItemNotFound(FundingError):
    code = "ItemNotFound"
    status_code = 404
    default_message = "Item not found"


class FulfillmentNotFound(FundingError):
    code = "FulfillmentNotFound"
    status_code = 404
    default_message = "Fulfillment not found"


# --- state conflicts ---

class AlreadyFulfilled(FundingError):
    code = "AlreadyFulfilled"
    status_code = 409
    default_message = "Item has already been fulfilled"


class InsufficientFunding(FundingError):
    code = "InsufficientFunding"
    status_code = 402
    default_message = "Item not fully funded"

    def __init__(self, current: int, required: int, message: Optional[str] = None):
        super().__init__(
            message,
            details={
                "current": current,
                "required": required,
                "remaining": max(0, required - current),
            },
        )
        self.current = current
        self.required = required
        self.remaining = max(0, required - current)


class FulfillmentInProgress(FundingError):
    code = "FulfillmentInProgress"
    status_code = 409
    default_message = "Fulfillment already in progress for this item"


class DuplicateIdempotencyKey(FundingError):
    """A fulfillment already exists under this key; the request was already accepted"""

    code = "DuplicateIdempotencyKey"
    status_code = 409
    default_message = "Duplicate request detected (same idempotency key)"

    def __init__(self, fulfillment_id: int, message: Optional[str] = None):
        super().__init__(message, details={"fulfillmentId": fulfillment_id})
        self.fulfillment_id = fulfillment_id


class InvalidTransition(FundingError):
    code = "InvalidTransition"
    status_code = 409
    default_message = "Fulfillment cannot move to the requested status"


# --- external dependency ---

class PayoutSetupRequired(FundingError):
    code = "PayoutSetupRequired"
    status_code = 402
    default_message = "Please connect your bank account first"

    def __init__(self, message: Optional[str] = None, action: str = ACTION_ONBOARD):
        super().__init__(message, action=action)


class PayoutAccountInvalid(FundingError):
    code = "PayoutAccountInvalid"
    status_code = 402
    default_message = "Connected account is invalid or deleted"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message, action=ACTION_ONBOARD)


class TransferRejected(FundingError):
    code = "TransferRejected"
    status_code = 500
    default_message = "Failed to initiate bank transfer. Please try again."

    def __init__(self, provider_code: str, provider_message: str, message: Optional[str] = None):
        super().__init__(message, details={"providerCode": provider_code, "providerMessage": provider_message})
        self.provider_code = provider_code
        self.provider_message = provider_message


class TransferOutcomeUnknown(FundingError):
    """The provider call did not return; the fulfillment stays pending for reconciliation"""

    code = "TransferOutcomeUnknown"
    status_code = 500
    default_message = "Transfer status could not be confirmed. Retry with the same request."


class InternalError(FundingError):
    pass
