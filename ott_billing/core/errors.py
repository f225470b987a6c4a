"""Error taxonomy for the billing core.

HTTP-facing errors subclass ``HTTPException`` so FastAPI renders them directly.
``ReconciliationConflict`` and ``WriteConflict`` never leave the service layer.
"""
from __future__ import annotations

from typing import Dict, Optional

from fastapi import HTTPException


class BillingError(HTTPException):
    status_code = 500
    default_detail = "Billing error"

    def __init__(self, detail: Optional[str] = None, *, headers: Optional[Dict[str, str]] = None) -> None:
        super().__init__(self.status_code, detail or self.default_detail, headers=headers)


class ValidationError(BillingError):
    status_code = 400
    default_detail = "Invalid request"


class AuthenticationError(BillingError):
    status_code = 401
    default_detail = "Not authenticated"


class NotFoundError(BillingError):
    status_code = 404
    default_detail = "Not found"


class GatewaySignatureError(BillingError):
    status_code = 400
    default_detail = "Webhook signature verification failed"


class GatewayUnavailableError(BillingError):
    status_code = 503
    default_detail = "Payment gateway unavailable, retry later"

    def __init__(self, detail: Optional[str] = None, *, retry_after: int = 5) -> None:
        super().__init__(detail, headers={"Retry-After": str(retry_after)})


class GatewayNotConfiguredError(BillingError):
    status_code = 501
    default_detail = "Payment gateway is not configured"


class ReconciliationConflict(Exception):
    """Incoming event is older than stored state; discarded as a no-op."""

    def __init__(self, subscription_id: str, incoming_period_end: int, stored_period_end: int) -> None:
        super().__init__(
            f"stale event for {subscription_id}: period_end {incoming_period_end} < {stored_period_end}"
        )
        self.subscription_id = subscription_id
        self.incoming_period_end = incoming_period_end
        self.stored_period_end = stored_period_end


class WriteConflict(Exception):
    """Optimistic version check failed; caller should re-read and retry."""


class ConflictError(BillingError):
    status_code = 409
    default_detail = "Conflicting update, retry"
