"""
FastAPI routes for gateway callbacks and payment reconciliation.
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..schemas.common import ERROR_RESPONSES
from ..schemas.payment import ReconciliationResponse
from ..services.gateway_client import PaymentGatewayClient
from ..services.payment_service import PaymentService
from ..tasks.dispatch import BookingSideEffects
from ..utils.auth import CallerIdentity
from ..utils.dependencies import get_current_caller, get_gateway_client, get_side_effects
from ..utils.webhook_signature import SIGNATURE_HEADER, TIMESTAMP_HEADER

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/webhook", response_class=PlainTextResponse, responses=ERROR_RESPONSES)
async def payment_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGatewayClient = Depends(get_gateway_client),
    side_effects: BookingSideEffects = Depends(get_side_effects),
):
    """
    Receive a payment notification from the gateway.

    The signature covers the exact bytes sent, so the body is read raw.
    Once the request is authenticated and parsed the answer is always 200;
    processing problems are logged and left to reconciliation.
    """
    raw_body = await request.body()
    payment_service = PaymentService(db, gateway=gateway, side_effects=side_effects)
    outcome = await payment_service.handle_gateway_callback(
        raw_body,
        request.headers.get(TIMESTAMP_HEADER),
        request.headers.get(SIGNATURE_HEADER),
    )
    logger.debug(f"Webhook outcome: {outcome.value}")
    return PlainTextResponse("OK", status_code=200)


@router.post("/reconcile", response_model=ReconciliationResponse, responses=ERROR_RESPONSES)
async def reconcile_payments(
    caller: CallerIdentity = Depends(get_current_caller),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGatewayClient = Depends(get_gateway_client),
    side_effects: BookingSideEffects = Depends(get_side_effects),
):
    """Re-check every booking of the caller that is still waiting on the gateway."""
    payment_service = PaymentService(db, gateway=gateway, side_effects=side_effects)
    report = await payment_service.reconcile_user_bookings(caller)
    return ReconciliationResponse(
        checked=report.checked,
        updated=report.updated,
        results=report.results,
    )
