"""
Error taxonomy for billing operations and the FastAPI handlers that render it.

Every error carries an HTTP status and a details mapping so the webhook
receiver and CLI tools report failures the same way.
"""
from typing import Any, Dict, Optional
from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse


class EduBillingError(Exception):
    """Base exception class for the billing client."""
    
    def __init__(
        self, 
        message: str, 
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class AuthenticationError(EduBillingError):
    """Missing or rejected identity token."""
    
    def __init__(self, message: str = "Authentication failed"):
        super().__init__(
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED
        )


class ValidationError(EduBillingError):
    """Local validation failure; never reaches the network."""
    
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details=details
        )


class NotFoundError(EduBillingError):
    """Resource not found errors."""
    
    def __init__(self, resource: str, identifier: str = ""):
        message = f"{resource} not found"
        if identifier:
            message += f": {identifier}"
        super().__init__(
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "identifier": identifier}
        )


class InvalidCouponError(EduBillingError):
    """Coupon code does not exist, is expired, or is exhausted."""
    
    def __init__(self, code: str, reason: str = "invalid"):
        super().__init__(
            message=f"Coupon {code} is not valid ({reason})",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"coupon_code": code, "reason": reason}
        )


class CouponNotApplicableError(EduBillingError):
    """Coupon exists but its filters exclude the purchase context."""
    
    def __init__(self, code: str, product_type: str, category: Optional[str] = None):
        super().__init__(
            message=f"Coupon {code} does not apply to this product",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"coupon_code": code, "product_type": product_type, "category": category}
        )


class NetworkError(EduBillingError):
    """Transport failure or retryable upstream response."""
    
    def __init__(self, message: str, upstream_status: Optional[int] = None):
        self.upstream_status = upstream_status
        super().__init__(
            message=message,
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details={"upstream_status": upstream_status}
        )


class ApiError(EduBillingError):
    """Non-retryable error response from the backend."""
    
    def __init__(self, upstream_status: int, message: str, payload: Optional[Dict[str, Any]] = None):
        self.upstream_status = upstream_status
        self.payload = payload or {}
        super().__init__(
            message=message,
            status_code=upstream_status,
            details={"upstream_status": upstream_status}
        )


class ConflictError(EduBillingError):
    """Conditional write lost to a concurrent writer."""
    
    def __init__(self, resource: str, identifier: str):
        super().__init__(
            message=f"{resource} {identifier} was modified concurrently",
            status_code=status.HTTP_409_CONFLICT,
            details={"resource": resource, "identifier": identifier}
        )


class GatewayError(EduBillingError):
    """Payment page creation failed or the gateway reported failure."""
    
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_502_BAD_GATEWAY,
            details=details
        )


class PaymentTimeoutError(GatewayError):
    """A pending payment outlived the timeout window."""
    
    def __init__(self, record_id: str, minutes_elapsed: int):
        super().__init__(
            message=f"Pending payment {record_id} timed out after {minutes_elapsed} minutes",
            details={"record_id": record_id, "minutes_elapsed": minutes_elapsed}
        )
        self.status_code = status.HTTP_408_REQUEST_TIMEOUT


class InvalidTransitionError(EduBillingError):
    """Requested status change is not part of the state machine."""
    
    def __init__(self, resource: str, current: str, requested: str):
        super().__init__(
            message=f"{resource} cannot move from {current} to {requested}",
            status_code=status.HTTP_409_CONFLICT,
            details={"current_status": current, "requested_status": requested}
        )


def error_response(status_code: int, message: Any, error_type: str, details: Optional[Dict[str, Any]] = None) -> JSONResponse:
    """Render the {"error": {...}} envelope shared by every handler."""
    body: Dict[str, Any] = {"message": message, "type": error_type, "status_code": status_code}
    if details is not None:
        body["details"] = details
    return JSONResponse(status_code=status_code, content={"error": body})


async def edu_billing_exception_handler(request: Request, exc: EduBillingError) -> JSONResponse:
    return error_response(exc.status_code, exc.message, exc.__class__.__name__, exc.details)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Raised HTTPExceptions (bad signature, bad body) in the same envelope."""
    return error_response(exc.status_code, exc.detail, "ValidationError")


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    return error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error", "InternalServerError"
    )
