"""
Schemas for payment sessions, gateway callbacks and reconciliation.
"""

from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from ..models.booking import BookingStatus, PaymentStatus


class PaymentSessionRequest(BaseModel):
    customer_phone: Optional[str] = Field(None, max_length=20)


class PaymentSessionResponse(BaseModel):
    booking_id: UUID
    order_id: str
    payment_session_id: Optional[str] = None
    order_status: Optional[str] = None


class ManualConfirmationResponse(BaseModel):
    """Outcome of a user-triggered gateway status check."""

    ok: bool
    booking_id: UUID
    booking_status: BookingStatus
    payment_status: PaymentStatus
    ticket_id: Optional[str] = None
    message: str


class ReconciliationItem(BaseModel):
    booking_id: UUID
    order_id: Optional[str] = None
    gateway_status: Optional[str] = None
    booking_status: BookingStatus
    updated: bool = False


class ReconciliationResponse(BaseModel):
    checked: int
    updated: int
    results: List[ReconciliationItem] = []


class GatewayNotification(BaseModel):
    """The fields of a gateway callback the pipeline acts on.

    Gateways send either a flat body or one nested under ``data.order`` and
    ``data.payment``; both are accepted.
    """

    order_id: str
    order_status: Optional[str] = None
    payment_status: Optional[str] = None
    amount: Optional[Decimal] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> Optional["GatewayNotification"]:
        """Extract the notification, or None when no order id is present."""
        if not isinstance(payload, dict):
            return None

        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        order = data.get("order") if isinstance(data.get("order"), dict) else {}
        payment = data.get("payment") if isinstance(data.get("payment"), dict) else {}

        order_id = payload.get("order_id") or order.get("order_id")
        if not order_id:
            return None

        order_status = payload.get("order_status") or order.get("order_status")
        payment_status = payload.get("payment_status") or payment.get("payment_status")
        raw_amount = payload.get("order_amount")
        if raw_amount is None:
            raw_amount = order.get("order_amount")
        if raw_amount is None:
            raw_amount = payment.get("payment_amount")

        return cls(
            order_id=str(order_id),
            order_status=str(order_status) if order_status else None,
            payment_status=str(payment_status) if payment_status else None,
            amount=parse_amount(raw_amount),
        )


def parse_amount(value: Any) -> Optional[Decimal]:
    """Parse a gateway amount into cents precision; None when absent or garbled."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        return None
