"""
Configuration settings for the application
"""
from typing import Dict, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Policies for events whose owning user cannot be found
UNMATCHED_IGNORE = "ignore"
UNMATCHED_RETRY = "retry"


class PlanEntry(BaseModel):
    """Display name and price of one catalog plan"""

    name: str
    price: float = 0


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # Stripe billing configuration
    stripe_secret_key: Optional[str] = Field(default=None, alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: Optional[str] = Field(default=None, alias="STRIPE_WEBHOOK_SECRET")
    stripe_webhook_tolerance: int = Field(default=300, alias="STRIPE_WEBHOOK_TOLERANCE")
    stripe_timeout_seconds: float = Field(default=20.0, alias="STRIPE_TIMEOUT_SECONDS")

    # Plan catalog: price id -> {"name": ..., "price": ...}, as JSON in the environment
    plan_catalog: Dict[str, PlanEntry] = Field(default_factory=dict, alias="PLAN_CATALOG")

    # Metadata key carrying the local user id on checkout sessions and customers
    user_id_metadata_key: str = Field(default="localUserId", alias="USER_ID_METADATA_KEY")

    # "ignore" acknowledges events for unknown users, "retry" makes the processor redeliver them
    unmatched_event_policy: str = Field(default=UNMATCHED_IGNORE, alias="UNMATCHED_EVENT_POLICY")

    # Infrastructure configuration
    database_url: Optional[str] = Field(default="sqlite+aiosqlite:///./sql_app.db", alias="DATABASE_URL")
    database_timeout_seconds: float = Field(default=10.0, alias="DATABASE_TIMEOUT_SECONDS")

    # Frontend configuration
    frontend_url: Optional[str] = Field(default="http://localhost:5173", alias="FRONTEND_URL")
    checkout_success_path: str = Field(default="/home.html", alias="CHECKOUT_SUCCESS_PATH")
    checkout_cancel_path: str = Field(default="/manage.html", alias="CHECKOUT_CANCEL_PATH")
    portal_return_path: str = Field(default="/home.html", alias="PORTAL_RETURN_PATH")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Render.com deployment configuration
    render: Optional[str] = Field(default=None, alias="RENDER")

    # Environment configuration
    env: Optional[str] = Field(default=None, alias="ENV")

    @property
    def is_production(self) -> bool:
        return bool(self.render) or bool(self.env and self.env.lower() == "production")


# Instantiate settings object
settings = Settings()

# Determine if we're in production mode
IS_PRODUCTION = settings.is_production
