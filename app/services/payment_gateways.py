"""
Payment gateway adapters.

The lifecycle engine only needs two capabilities from a provider: verify a
payment signature and cancel a remote recurring subscription. Providers are
registered by name and looked up through ``get_gateway``.
"""
import hashlib
import hmac
import logging
from typing import Any, Callable, Dict, Optional

import requests

from app.core.config import settings
from app.core.errors import DependencyUnavailableError, UnsupportedGatewayError

logger = logging.getLogger(__name__)

NO_BILLING_CYCLE_MARKER = "no billing cycle is going on"


class GatewayError(DependencyUnavailableError):
    code = "gateway_error"

    def __init__(self, message: str, status_code: Optional[int] = None, payload: Any = None):
        super().__init__(message, details={"gateway_status": status_code} if status_code else None)
        self.gateway_status = status_code
        self.payload = payload

    @property
    def is_no_billing_cycle(self) -> bool:
        return NO_BILLING_CYCLE_MARKER in str(self.payload or self.message).lower()


class PaymentGateway:
    name = ""

    def verify_payment(
        self,
        payment_id: str,
        signature: Optional[str] = None,
        gateway_subscription_id: Optional[str] = None,
    ) -> bool:
        raise NotImplementedError

    def cancel_subscription(self, reference: str, cancel_at_cycle_end: bool = False) -> Dict[str, Any]:
        raise NotImplementedError


class RazorpayGateway(PaymentGateway):
    name = "RAZORPAY"

    def __init__(
        self,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        api_base: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.key_id = key_id if key_id is not None else settings.RAZORPAY_KEY_ID
        self.key_secret = key_secret if key_secret is not None else settings.RAZORPAY_KEY_SECRET
        self.api_base = (api_base or settings.RAZORPAY_API_BASE).rstrip("/")
        self.timeout = timeout or settings.RAZORPAY_TIMEOUT_SECONDS

    def verify_payment(
        self,
        payment_id: str,
        signature: Optional[str] = None,
        gateway_subscription_id: Optional[str] = None,
    ) -> bool:
        if not signature:
            logger.warning(f"No signature provided for Razorpay payment {payment_id}")
            return False
        if not self.key_secret:
            logger.error("Razorpay key secret not configured; cannot verify payments")
            return False

        if gateway_subscription_id:
            signed_payload = f"{payment_id}|{gateway_subscription_id}"
        else:
            signed_payload = payment_id

        expected = hmac.new(
            self.key_secret.encode("utf-8"),
            signed_payload.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        is_valid = hmac.compare_digest(expected, signature)
        if not is_valid:
            logger.warning(f"Razorpay signature mismatch for payment {payment_id}")
        return is_valid

    def cancel_subscription(self, reference: str, cancel_at_cycle_end: bool = False) -> Dict[str, Any]:
        logger.info(f"Cancelling Razorpay subscription {reference} (cancel_at_cycle_end={cancel_at_cycle_end})")
        return self._request(
            "POST",
            f"/subscriptions/{reference}/cancel",
            json_payload={"cancel_at_cycle_end": 1 if cancel_at_cycle_end else 0},
        )

    def _request(self, method: str, path: str, json_payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.key_id or not self.key_secret:
            raise GatewayError("Razorpay credentials not configured")

        url = f"{self.api_base}/{path.lstrip('/')}"
        try:
            resp = requests.request(
                method=method.upper(),
                url=url,
                auth=(self.key_id, self.key_secret),
                json=json_payload,
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            raise GatewayError(f"Razorpay request timed out after {self.timeout}s: {exc}")
        except requests.RequestException as exc:
            raise GatewayError(f"Failed to contact Razorpay: {exc}")

        try:
            payload = resp.json() if resp.content else {}
        except ValueError:
            payload = {"raw": resp.text}

        if resp.status_code >= 400:
            error = payload.get("error", {}) if isinstance(payload, dict) else {}
            description = error.get("description") if isinstance(error, dict) else None
            raise GatewayError(
                f"Razorpay request failed: {resp.status_code} {description or ''}".strip(),
                status_code=resp.status_code,
                payload=description or payload,
            )
        return payload if isinstance(payload, dict) else {"data": payload}


_registry: Dict[str, Callable[[], PaymentGateway]] = {}


def register_gateway(name: str, factory: Callable[[], PaymentGateway]) -> None:
    _registry[name.upper()] = factory


def get_gateway(name: str) -> PaymentGateway:
    factory = _registry.get((name or "").upper())
    if factory is None:
        raise UnsupportedGatewayError(f"Unsupported payment gateway: {name}")
    return factory()


def is_registered(name: str) -> bool:
    return (name or "").upper() in _registry


register_gateway(RazorpayGateway.name, RazorpayGateway)
