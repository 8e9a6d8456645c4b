"""
Per-session REST client for the commerce backend.

This module provides session-scoped clients that carry the user's identity
token (and impersonation header) and service clients for operator tooling.

Key principles:
- User operations use the session token; the backend enforces ownership
- Service role is reserved for the stale-pending sweep
- Transport failures and retryable statuses surface as NetworkError so
  read paths can retry them; other error responses surface as ApiError
"""
from typing import Any, Dict, Optional

import httpx
import structlog

from edu_billing.core.exceptions import ApiError, AuthenticationError, NetworkError
from edu_billing.core.session import SessionContext
from edu_billing.core.settings import settings

logger = structlog.get_logger(__name__)


def _error_message(response: httpx.Response) -> tuple:
    """Extract a readable message and payload from an error response."""
    try:
        payload = response.json()
    except ValueError:
        return response.text or response.reason_phrase, {}
    
    if not isinstance(payload, dict):
        return str(payload), {}
    
    error = payload.get("error")
    if isinstance(error, dict):
        message = error.get("message")
    else:
        message = error
    return message or payload.get("message") or response.reason_phrase, payload


class ApiClient:
    """Thin async wrapper over the backend REST API."""
    
    def __init__(
        self,
        headers: Dict[str, str],
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.api_base_url,
            headers=headers,
            timeout=timeout or settings.http_timeout_seconds,
            transport=transport
        )
    
    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None
    ) -> Any:
        try:
            response = await self._client.request(
                method, path, params=params, json=json, headers=headers
            )
        except httpx.TransportError as e:
            logger.warning("Backend request failed", method=method, path=path, error=str(e))
            raise NetworkError(f"{method} {path} failed: {e}") from e
        
        if response.is_success:
            if response.status_code == 204 or not response.content:
                return None
            return response.json()
        
        message, payload = _error_message(response)
        status_code = response.status_code
        
        logger.warning(
            "Backend returned error",
            method=method,
            path=path,
            status_code=status_code,
            message=message
        )
        
        if status_code in settings.read_retry_statuses or status_code >= 500:
            raise NetworkError(message, upstream_status=status_code)
        if status_code == 401:
            raise AuthenticationError(message)
        raise ApiError(status_code, message, payload)
    
    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self.request("GET", path, params=params)
    
    async def post(self, path: str, json: Any = None) -> Any:
        return await self.request("POST", path, json=json)
    
    async def put(self, path: str, json: Any = None, headers: Optional[Dict[str, str]] = None) -> Any:
        return await self.request("PUT", path, json=json, headers=headers)
    
    async def aclose(self) -> None:
        await self._client.aclose()
    
    async def __aenter__(self) -> "ApiClient":
        return self
    
    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()


def user_client(
    session: SessionContext,
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> ApiClient:
    """
    Create a session-scoped client.
    
    Requests carry the session's bearer token and, while an admin is
    impersonating, the impersonation header naming the effective user.
    
    Example:
        async with user_client(session) as client:
            subscriptions = await client.get("/subscriptions", {"user_id": session.effective_user_id})
    """
    logger.debug("Created user-scoped API client", user_id=session.effective_user_id)
    return ApiClient(headers=session.auth_headers(), transport=transport)


def service_client(transport: Optional[httpx.AsyncBaseTransport] = None) -> ApiClient:
    """
    Create a service-token client for operator tasks.
    
    Use only for maintenance such as the stale-pending sweep; it can read
    and write every user's records.
    """
    if not settings.api_service_token:
        raise AuthenticationError(
            "API service token missing. Set API_SERVICE_TOKEN in the environment."
        )
    
    logger.debug("Created service API client")
    return ApiClient(
        headers={"Authorization": f"Bearer {settings.api_service_token}"},
        transport=transport
    )


class ApiClientManager:
    """
    Async context manager choosing between session and service clients.
    """
    
    def __init__(
        self,
        session: Optional[SessionContext] = None,
        use_service_role: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.session = session
        self.use_service_role = use_service_role
        self.transport = transport
        self._client: Optional[ApiClient] = None
    
    async def __aenter__(self) -> ApiClient:
        if self.use_service_role:
            self._client = service_client(self.transport)
        elif self.session:
            self._client = user_client(self.session, self.transport)
        else:
            raise ValueError("Either session or use_service_role=True must be provided")
        return self._client
    
    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._client:
            if exc_type:
                logger.error("Backend operation failed", error=str(exc_val))
            await self._client.aclose()
        self._client = None
