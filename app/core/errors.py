import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class SubscriptionError(Exception):
    """Base for every domain error raised by the billing core."""

    status_code = 400
    code = "subscription_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload = {"detail": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


# Input was invalid: show the error, do not retry.
class ValidationError(SubscriptionError):
    code = "validation_error"


class PlanNotFoundError(ValidationError):
    status_code = 404
    code = "plan_not_found"


class PlanNotFreeError(ValidationError):
    code = "plan_not_free"


class InvalidDowngradeError(ValidationError):
    code = "invalid_downgrade"


class InvalidPlanChangeError(ValidationError):
    code = "invalid_plan_change"


class UnsupportedGatewayError(ValidationError):
    code = "unsupported_gateway"


class NoActiveSubscriptionError(ValidationError):
    status_code = 404
    code = "no_active_subscription"


class FeatureNotFoundError(ValidationError):
    status_code = 404
    code = "feature_not_found"


# Payment failed: stop and tell the user.
class PaymentVerificationError(SubscriptionError):
    status_code = 402
    code = "payment_verification_failed"


# A dependency is unavailable: the caller may retry.
class DependencyUnavailableError(SubscriptionError):
    status_code = 503
    code = "dependency_unavailable"


# Data needs manual reconciliation.
class IntegrityViolationError(SubscriptionError):
    status_code = 409
    code = "integrity_violation"


class SubscriptionIntegrityError(IntegrityViolationError):
    code = "multiple_active_subscriptions"


class IllegalTransitionError(IntegrityViolationError):
    code = "illegal_transition"


class FeatureAccessDenied(SubscriptionError):
    status_code = 403
    code = "feature_access_denied"


def register_exception_handlers(app: FastAPI):
    @app.exception_handler(SubscriptionError)
    async def subscription_error_handler(request: Request, exc: SubscriptionError):
        if isinstance(exc, IntegrityViolationError):
            logger.error(f"Integrity violation on {request.url}: {exc.message} {exc.details}")
        else:
            logger.info(f"{exc.code} on {request.url}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.url}: {str(exc)}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )
