"""
Payment gateway (PayPlus) integration helpers.

Covers order numbers, hosted payment pages, recurring agreement status,
the iframe completion message and webhook signatures. The iframe message is
untrusted: it only tells the client to re-read state. Status changes need
a verified GatewayConfirmation.
"""
import hashlib
import hmac
import json
import secrets
import string
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

import structlog

from edu_billing.core.api_client import ApiClient
from edu_billing.core.config import (
    ORDER_NUMBER_PREFIX,
    ORDER_NUMBER_RANDOM_LENGTH,
    ORDER_NUMBER_TIMESTAMP_DIGITS,
    PAYPLUS_MESSAGE_TYPE,
    GatewayStatus,
)
from edu_billing.core.exceptions import ApiError, GatewayError, ValidationError
from edu_billing.core.settings import settings

logger = structlog.get_logger(__name__)

BASE36_ALPHABET = string.digits + string.ascii_uppercase

# Gateway wording varies between the hosted page and webhooks
STATUS_ALIASES = {
    "success": GatewayStatus.SUCCESS,
    "completed": GatewayStatus.SUCCESS,
    "approved": GatewayStatus.SUCCESS,
    "paid": GatewayStatus.SUCCESS,
    "failure": GatewayStatus.FAILURE,
    "failed": GatewayStatus.FAILURE,
    "declined": GatewayStatus.FAILURE,
    "cancelled": GatewayStatus.FAILURE,
    "error": GatewayStatus.FAILURE,
}


def normalize_gateway_status(status: Any) -> Optional[GatewayStatus]:
    if not isinstance(status, str):
        return None
    return STATUS_ALIASES.get(status.strip().lower())


def generate_order_number(now_ms: Optional[int] = None) -> str:
    """
    Generate a client-side order number.
    
    Format: EDU- + last 6 digits of a millisecond timestamp + 6 random
    base-36 characters, upper-cased.
    """
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    tail = str(now_ms)[-ORDER_NUMBER_TIMESTAMP_DIGITS:]
    suffix = "".join(secrets.choice(BASE36_ALPHABET) for _ in range(ORDER_NUMBER_RANDOM_LENGTH))
    return f"{ORDER_NUMBER_PREFIX}{tail}{suffix}"


@dataclass(frozen=True)
class GatewayMessage:
    """Completion message posted by the hosted payment page."""
    raw_status: str
    outcome: Optional[GatewayStatus]
    purchase_id: Optional[str] = None
    order_number: Optional[str] = None
    
    @property
    def record_reference(self) -> Optional[str]:
        return self.purchase_id or self.order_number


def parse_gateway_message(raw: Any) -> Optional[GatewayMessage]:
    """
    Parse an iframe message without trusting its shape.
    
    Anything that is not a JSON string of type payplus_payment_complete is
    someone else's message and yields None.
    """
    if not isinstance(raw, str):
        return None
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(data, dict) or data.get("type") != PAYPLUS_MESSAGE_TYPE:
        return None
    
    status = data.get("status")
    return GatewayMessage(
        raw_status=str(status) if status is not None else "",
        outcome=normalize_gateway_status(status),
        purchase_id=data.get("purchaseId"),
        order_number=data.get("orderNumber")
    )


@dataclass(frozen=True)
class GatewayConfirmation:
    """A verified terminal status for one pending record."""
    status: GatewayStatus
    event_id: Optional[str] = None
    purchase_id: Optional[str] = None
    subscription_id: Optional[str] = None
    payplus_subscription_uid: Optional[str] = None
    next_billing_date: Optional[datetime] = None
    
    def __post_init__(self):
        if bool(self.purchase_id) == bool(self.subscription_id):
            raise ValidationError("Confirmation must name exactly one of purchase_id or subscription_id")


def parse_webhook_payload(data: Dict[str, Any]) -> GatewayConfirmation:
    """Build a confirmation from a verified webhook body."""
    if not isinstance(data, dict):
        raise ValidationError("Webhook payload must be a JSON object")
    
    status = normalize_gateway_status(data.get("status"))
    if status is None:
        raise ValidationError("Unknown payment status", details={"status": data.get("status")})
    
    next_billing_date = None
    if data.get("next_billing_date"):
        try:
            next_billing_date = datetime.fromisoformat(str(data["next_billing_date"]).replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Failed to parse next_billing_date", next_billing_date=data.get("next_billing_date"))
    
    return GatewayConfirmation(
        status=status,
        event_id=data.get("event_id"),
        purchase_id=data.get("purchase_id"),
        subscription_id=data.get("subscription_id"),
        payplus_subscription_uid=data.get("payplus_subscription_uid"),
        next_billing_date=next_billing_date
    )


def sign_payload(payload: bytes, secret: str) -> str:
    """Signature header value for a payload."""
    digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_payplus_signature(payload: bytes, signature: Optional[str], secret: str) -> bool:
    """
    Verify a PayPlus webhook signature (HMAC-SHA256 over the raw body).
    
    Accepts the bare hex digest or the "sha256=" prefixed form.
    """
    if not signature or not secret:
        return False
    
    if "=" in signature:
        signature = signature.split("=", 1)[1]
    
    expected_signature = hmac.new(
        secret.encode("utf-8"),
        payload,
        hashlib.sha256
    ).hexdigest()
    
    return hmac.compare_digest(signature, expected_signature)


@dataclass(frozen=True)
class RecurringStatus:
    """Gateway view of a recurring billing agreement."""
    is_active: bool
    raw_status: str
    next_charge_date: Optional[datetime] = None


class PaymentPageClient:
    """Creates hosted checkout pages and reads recurring agreements through the backend."""
    
    def __init__(self, client: ApiClient):
        self.client = client
    
    async def create_page(
        self,
        purchase_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
        environment: Optional[str] = None,
        frontend_origin: Optional[str] = None
    ) -> str:
        """
        Create a payment page for one pending record and return its URL.
        
        Raises GatewayError when the backend refuses or returns no URL.
        """
        if bool(purchase_id) == bool(subscription_id):
            raise ValidationError("Exactly one of purchase_id or subscription_id is required")
        
        body: Dict[str, Any] = {
            "environment": environment or settings.payplus_environment,
            "frontendOrigin": frontend_origin or settings.frontend_origin,
        }
        if purchase_id:
            body["purchaseId"] = purchase_id
        else:
            body["subscriptionId"] = subscription_id
        
        try:
            response = await self.client.post("/payments/create-page", body)
        except ApiError as e:
            raise GatewayError(
                f"Payment page creation failed: {e.message}",
                details={"purchase_id": purchase_id, "subscription_id": subscription_id}
            ) from e
        
        payment_url = (response or {}).get("payment_url")
        if not payment_url or (response.get("success") is False):
            error = (response or {}).get("error") or "No payment URL returned"
            logger.error(
                "Payment page creation failed",
                purchase_id=purchase_id,
                subscription_id=subscription_id,
                error=error
            )
            raise GatewayError(
                f"Payment page creation failed: {error}",
                details={"purchase_id": purchase_id, "subscription_id": subscription_id}
            )
        
        logger.info(
            "Payment page created",
            purchase_id=purchase_id,
            subscription_id=subscription_id,
            environment=body["environment"]
        )
        return payment_url
    
    async def get_recurring_status(self, recurring_uid: str, environment: Optional[str] = None) -> RecurringStatus:
        """
        Ask the gateway whether a recurring agreement is still charging.
        
        Raises GatewayError when the backend refuses or the answer carries
        no status.
        """
        body = {
            "recurring_uid": recurring_uid,
            "environment": environment or settings.payplus_environment,
        }
        try:
            response = await self.client.post("/payments/recurring-status", body)
        except ApiError as e:
            raise GatewayError(
                f"Recurring status check failed: {e.message}",
                details={"recurring_uid": recurring_uid}
            ) from e
        
        data = (response or {}).get("data") if (response or {}).get("success") else None
        raw_status = (data or {}).get("recurring_status") or (data or {}).get("status")
        if not raw_status:
            logger.error("Recurring status missing from gateway answer", recurring_uid=recurring_uid)
            raise GatewayError(
                "Recurring status check returned no status",
                details={"recurring_uid": recurring_uid}
            )
        
        next_charge_date = None
        if data.get("next_charge_date"):
            try:
                next_charge_date = datetime.fromisoformat(str(data["next_charge_date"]).replace("Z", "+00:00"))
            except ValueError:
                logger.warning("Failed to parse next_charge_date", next_charge_date=data.get("next_charge_date"))
        
        return RecurringStatus(
            is_active=str(raw_status).strip().lower() == "active",
            raw_status=str(raw_status),
            next_charge_date=next_charge_date
        )
