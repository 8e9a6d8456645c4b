"""
Webhooks router for PayPlus payment confirmations.

Verifies the HMAC signature over the raw body and hands the confirmation
to the pending-payment reconciler. Redeliveries are harmless: a record
already in the confirmed state is left unchanged.
"""
import json
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request

from edu_billing.api.services.payments import parse_webhook_payload, verify_payplus_signature
from edu_billing.api.services.reconciler import PendingPaymentReconciler
from edu_billing.api.services.repository import BillingRepository
from edu_billing.core.api_client import service_client
from edu_billing.core.exceptions import EduBillingError
from edu_billing.core.settings import settings

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = structlog.get_logger(__name__)


async def get_reconciler() -> AsyncIterator[PendingPaymentReconciler]:
    """Reconciler backed by a service client, closed after the request."""
    client = service_client()
    try:
        yield PendingPaymentReconciler(BillingRepository(client))
    finally:
        await client.aclose()


@router.post("/payplus")
async def payplus_webhook(
    request: Request,
    x_payplus_signature: Optional[str] = Header(None),
    reconciler: PendingPaymentReconciler = Depends(get_reconciler)
):
    """
    Handle PayPlus payment confirmations.
    
    Expected event format:
    {
        "event_id": "unique_event_identifier",
        "status": "success|failure",
        "purchase_id": "purchase id (product checkout)",
        "subscription_id": "subscription id (plan checkout)",
        "payplus_subscription_uid": "recurring agreement id",
        "next_billing_date": "ISO_datetime_string"
    }
    """
    try:
        payload = await request.body()
        
        # Unsigned delivery is tolerated only in development without a secret
        if not settings.is_development or settings.payplus_webhook_secret:
            if not x_payplus_signature:
                logger.warning("Missing PayPlus signature header")
                raise HTTPException(status_code=400, detail="Missing signature header")
            
            if not verify_payplus_signature(payload, x_payplus_signature, settings.payplus_webhook_secret):
                logger.warning("Invalid PayPlus signature", signature=x_payplus_signature[:20] + "...")
                raise HTTPException(status_code=401, detail="Invalid signature")
        
        try:
            event_data = json.loads(payload.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.error("Invalid JSON payload", error=str(e))
            raise HTTPException(status_code=400, detail="Invalid JSON payload")
        
        confirmation = parse_webhook_payload(event_data)
        
        logger.info(
            "Received PayPlus webhook",
            event_id=confirmation.event_id,
            status=confirmation.status.value,
            purchase_id=confirmation.purchase_id,
            subscription_id=confirmation.subscription_id
        )
        
        result = await reconciler.apply_gateway_confirmation(confirmation)
        
        return {
            "status": "success",
            "outcome": result.outcome.value,
            "record_type": result.record_type,
            "record_id": result.record_id,
            "record_status": result.status
        }
    
    except (HTTPException, EduBillingError):
        raise
    except Exception as e:
        logger.error("Failed to process PayPlus webhook", error=str(e))
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/health")
async def webhook_health():
    """Health check for webhook endpoints."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "signature_verification": "enabled" if settings.payplus_webhook_secret else "disabled"
    }
