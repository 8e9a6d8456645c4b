"""
Application settings and configuration management.
"""
from datetime import timedelta
from typing import List
from zoneinfo import ZoneInfo

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Client settings loaded from environment variables."""
    
    # Backend REST API
    api_base_url: str = "http://localhost:8000/api"
    api_service_token: str = ""
    http_timeout_seconds: float = 15.0
    
    # Origin sent to the backend when building gateway callback URLs
    frontend_origin: str = "http://localhost:5173"
    
    # Application Settings
    environment: str = "development"
    
    # Logging
    log_level: str = "INFO"
    
    # Payment Gateway (PayPlus)
    payplus_environment: str = "test"  # "test" or "production"
    payplus_webhook_secret: str = ""
    
    # Pending payment handling
    pending_payment_timeout_minutes: int = 5
    
    # Calendar-day arithmetic for access windows happens in this zone
    reference_timezone: str = "Asia/Jerusalem"
    
    # Read-path retry policy
    read_retry_attempts: int = 3
    read_retry_base_delay_seconds: float = 1.0
    read_retry_statuses: str = "429,502,503,504"
    
    @field_validator("read_retry_statuses")
    def validate_retry_statuses(cls, v):
        """Convert comma-separated status string to list of integers."""
        if not v:
            return [429]
        return [int(code.strip()) for code in v.split(",") if code.strip()]
    
    @field_validator("payplus_environment")
    def validate_payplus_environment(cls, v):
        """Map the legacy 'sandbox' name onto the gateway's 'test' environment."""
        v = v.strip().lower()
        if v == "sandbox":
            return "test"
        if v not in ("test", "production"):
            raise ValueError("payplus_environment must be 'test' or 'production'")
        return v
    
    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment.lower() == "development"
    
    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"
    
    @property
    def pending_payment_timeout(self) -> timedelta:
        return timedelta(minutes=self.pending_payment_timeout_minutes)
    
    @property
    def reference_tz(self) -> ZoneInfo:
        return ZoneInfo(self.reference_timezone)
    
    def validate_production_config(self) -> List[str]:
        """Validate production configuration and return list of issues."""
        issues = []
        
        if self.is_production:
            if self.payplus_environment != "production":
                issues.append("PayPlus environment should be 'production' in production")
            
            if not self.payplus_webhook_secret:
                issues.append("PayPlus webhook secret must be set in production")
            
            if "localhost" in self.api_base_url or "localhost" in self.frontend_origin:
                issues.append("Localhost URLs should be removed in production")
        
        return issues
    
    class Config:
        env_file = ".env"
        case_sensitive = False


# Global settings instance
settings = Settings()
