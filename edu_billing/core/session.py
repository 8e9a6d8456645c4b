"""
Explicit session context for the authenticated identity.

Replaces ambient token storage: the token and any admin impersonation are
carried in one immutable value that callers pass into the API client.
"""
from dataclasses import dataclass, replace
from typing import Dict, Optional

import structlog

from edu_billing.core.exceptions import AuthenticationError, ValidationError

logger = structlog.get_logger(__name__)

IMPERSONATION_HEADER = "X-Impersonate-User"


@dataclass(frozen=True)
class Impersonation:
    """An admin acting as another user."""
    admin_user_id: str
    target_user_id: str


@dataclass(frozen=True)
class SessionContext:
    """
    Authenticated identity for one client session.
    
    Lifecycle: created after sign-in, replaced by start_impersonation(),
    restored by end_impersonation(). Never mutated in place.
    """
    token: str
    user_id: str
    is_admin: bool = False
    impersonation: Optional[Impersonation] = None
    
    def __post_init__(self):
        if not self.token:
            raise AuthenticationError("Session token is required")
        if not self.user_id:
            raise AuthenticationError("Session user id is required")
    
    @property
    def is_impersonating(self) -> bool:
        return self.impersonation is not None
    
    @property
    def effective_user_id(self) -> str:
        """User whose data the session reads and writes."""
        if self.impersonation:
            return self.impersonation.target_user_id
        return self.user_id
    
    def start_impersonation(self, target_user_id: str) -> "SessionContext":
        """Return a session acting as target_user_id."""
        if not self.is_admin:
            raise AuthenticationError("Only admins can impersonate users")
        if self.impersonation:
            raise ValidationError("Already impersonating; return to self first")
        if target_user_id == self.user_id:
            raise ValidationError("Cannot impersonate yourself")
        
        logger.info(
            "Impersonation started",
            admin_user_id=self.user_id,
            target_user_id=target_user_id
        )
        return replace(self, impersonation=Impersonation(self.user_id, target_user_id))
    
    def end_impersonation(self) -> "SessionContext":
        """Return to the admin's own identity. No-op when not impersonating."""
        if not self.impersonation:
            return self
        
        logger.info(
            "Impersonation ended",
            admin_user_id=self.user_id,
            target_user_id=self.impersonation.target_user_id
        )
        return replace(self, impersonation=None)
    
    def auth_headers(self) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {self.token}"}
        if self.impersonation:
            headers[IMPERSONATION_HEADER] = self.impersonation.target_user_id
        return headers
    
    def __repr__(self) -> str:
        return (
            f"SessionContext(user_id={self.user_id!r}, is_admin={self.is_admin}, "
            f"impersonation={self.impersonation!r})"
        )
