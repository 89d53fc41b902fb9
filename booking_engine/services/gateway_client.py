"""
HTTP client for the payment gateway's order API.

Every call is a single attempt bounded by ``gateway_timeout_seconds``;
retrying is left to reconciliation.
"""

import enum
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from ..config import get_settings
from ..schemas.payment import parse_amount
from ..utils.exceptions import PaymentServiceError

logger = logging.getLogger(__name__)


SUCCESS_STATUSES = frozenset({"SUCCESS", "PAID", "PAYMENT_SUCCESS", "COMPLETED", "SUCCESSFUL"})
FAILURE_STATUSES = frozenset({"FAILED", "FAILURE", "CANCELLED", "CANCELED", "PAYMENT_FAILED", "USER_DROPPED"})
CLOSED_STATUSES = frozenset({"EXPIRED", "TERMINATED"})


class PaymentOutcome(str, enum.Enum):
    """What a gateway status means for the booking."""
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CLOSED = "CLOSED"
    PENDING = "PENDING"


def classify_payment_status(*statuses: Optional[str]) -> PaymentOutcome:
    """Interpret order/payment status strings, success taking precedence."""
    normalized = {str(status).strip().upper() for status in statuses if status}
    if normalized & SUCCESS_STATUSES:
        return PaymentOutcome.SUCCESS
    if normalized & FAILURE_STATUSES:
        return PaymentOutcome.FAILED
    if normalized & CLOSED_STATUSES:
        return PaymentOutcome.CLOSED
    return PaymentOutcome.PENDING


def optional_str(value: Any) -> Optional[str]:
    return str(value) if value else None


@dataclass
class GatewayOrder:
    """Order state as reported by the gateway."""
    order_id: str
    order_status: Optional[str]
    amount: Optional[Decimal]
    payment_session_id: Optional[str] = None
    payment_status: Optional[str] = None

    @property
    def outcome(self) -> PaymentOutcome:
        return classify_payment_status(self.order_status, self.payment_status)

    @classmethod
    def from_response(cls, data: Dict[str, Any], fallback_order_id: str) -> "GatewayOrder":
        return cls(
            order_id=str(data.get("order_id") or fallback_order_id),
            order_status=optional_str(data.get("order_status")),
            amount=parse_amount(data.get("order_amount")),
            payment_session_id=optional_str(data.get("payment_session_id")),
            payment_status=optional_str(data.get("payment_status")),
        )


class PaymentGatewayClient:
    """Thin async client over the gateway's ``/orders`` resource."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = get_settings()
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        if not self.settings.gateway_app_id or not self.settings.gateway_secret_key:
            raise PaymentServiceError("Payment gateway credentials are not configured")
        return {
            "x-client-id": self.settings.gateway_app_id,
            "x-client-secret": self.settings.gateway_secret_key,
            "x-api-version": self.settings.gateway_api_version,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _request(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.settings.gateway_base_url.rstrip('/')}{path}"
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.gateway_timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.request(method, url, headers=self._headers(), json=json)
        except httpx.TimeoutException as e:
            logger.warning(f"Gateway {method} {path} timed out")
            raise PaymentServiceError("Gateway request timed out") from e
        except httpx.HTTPError as e:
            logger.warning(f"Gateway {method} {path} failed: {e}")
            raise PaymentServiceError(f"Gateway request failed: {e.__class__.__name__}") from e

        if response.status_code >= 400:
            logger.warning(f"Gateway {method} {path} answered {response.status_code}")
            raise PaymentServiceError(
                f"Gateway answered {response.status_code}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise PaymentServiceError("Gateway returned an undecodable body") from e
        if not isinstance(body, dict):
            raise PaymentServiceError("Gateway returned an unexpected body")
        return body

    async def create_order(
        self,
        order_id: str,
        amount: Decimal,
        customer_id: str,
        customer_email: Optional[str] = None,
        customer_name: Optional[str] = None,
        customer_phone: Optional[str] = None,
        return_url: Optional[str] = None,
    ) -> GatewayOrder:
        """Create a gateway order and return its payment session."""
        customer_details = {"customer_id": customer_id}
        if customer_email:
            customer_details["customer_email"] = customer_email
        if customer_name:
            customer_details["customer_name"] = customer_name
        if customer_phone:
            customer_details["customer_phone"] = customer_phone

        payload: Dict[str, Any] = {
            "order_id": order_id,
            "order_amount": float(amount),
            "order_currency": self.settings.gateway_currency,
            "customer_details": customer_details,
        }
        if return_url:
            payload["order_meta"] = {"return_url": return_url}

        data = await self._request("POST", "/orders", json=payload)
        order = GatewayOrder.from_response(data, order_id)
        logger.info(f"Gateway order {order.order_id} created")
        return order

    async def get_order(self, order_id: str) -> GatewayOrder:
        """Look up the current state of an order."""
        data = await self._request("GET", f"/orders/{order_id}")
        return GatewayOrder.from_response(data, order_id)
