"""
Backend-owned platform settings relevant to billing.
"""
from typing import Optional, Tuple

from sqlmodel import SQLModel

from edu_billing.core.config import PurchasableType


# Used when the backend leaves a time-limited default unset or non-positive
FALLBACK_ACCESS_DAYS = {"recording": 30, "course": 365, "tool": 365}


class PlatformSettings(SQLModel):
    """Per-type access-duration defaults served by GET /settings."""
    recording_lifetime_access: Optional[bool] = False
    default_recording_access_days: Optional[int] = 30
    course_lifetime_access: Optional[bool] = False
    default_course_access_days: Optional[int] = 365
    tool_lifetime_access: Optional[bool] = False
    default_tool_access_days: Optional[int] = 365
    file_lifetime_access: Optional[bool] = True
    default_file_access_days: Optional[int] = None
    game_lifetime_access: Optional[bool] = True
    default_game_access_days: Optional[int] = None
    
    def default_access_policy(self, product_type: PurchasableType) -> Tuple[bool, Optional[int]]:
        """Return (is_lifetime, access_days) defaults for a product type."""
        # Workshops are sold as recordings
        prefix = {
            PurchasableType.WORKSHOP: "recording",
            PurchasableType.COURSE: "course",
            PurchasableType.TOOL: "tool",
            PurchasableType.FILE: "file",
            PurchasableType.GAME: "game",
        }[PurchasableType(product_type)]
        
        is_lifetime = getattr(self, f"{prefix}_lifetime_access")
        if is_lifetime:
            return True, None
        access_days = getattr(self, f"default_{prefix}_access_days")
        if not access_days or access_days <= 0:
            access_days = FALLBACK_ACCESS_DAYS.get(prefix)
        return False, access_days
