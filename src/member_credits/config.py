"""
Application configuration using Pydantic Settings.
"""

from __future__ import annotations

from typing import List

from pydantic import BaseModel, ConfigDict
from pydantic_settings import BaseSettings, SettingsConfigDict


class CreditPolicy(BaseModel):
    """Credit amounts granted per membership tier."""

    model_config = ConfigDict(frozen=True)

    initial_free: int = 10
    initial_paid: int = 100
    monthly_free: int = 10
    monthly_paid: int = 100

    def initial_for(self, is_paid: bool) -> int:
        return self.initial_paid if is_paid else self.initial_free

    def monthly_for(self, is_paid: bool) -> int:
        return self.monthly_paid if is_paid else self.monthly_free

    @property
    def upgrade_bonus(self) -> int:
        return self.initial_paid - self.initial_free


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Persistence (empty URI keeps everything in memory)
    MONGO_URI: str = ""
    MONGO_DB: str = "member_credits"

    # Community platform
    COMMUNITY_API_BASE: str = "https://app.circle.so"
    COMMUNITY_API_TOKEN: str = ""
    COMMUNITY_ADMIN_API_TOKEN: str = ""
    COMMUNITY_DOMAIN: str = ""
    HTTP_TIMEOUT_SECONDS: float = 10.0

    # Tags
    PAID_MEMBER_TAGS: str = "paid,premium,subscriber,member,vip,pro"
    PURCHASE_TAG_MIN_CREDITS: int = 1
    PURCHASE_TAG_MAX_CREDITS: int = 10000

    # Credits
    INITIAL_CREDITS_FREE: int = 10
    INITIAL_CREDITS_PAID: int = 100
    MONTHLY_CREDITS_FREE: int = 10
    MONTHLY_CREDITS_PAID: int = 100

    # Security
    DISABLE_EMAIL_ONLY_AUTH: bool = False
    ADMIN_TOKEN_TTL_SECONDS: int = 900

    # Logging
    LEDGER_LOG_PATH: str = "logs/credit_ledger.log"
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    @property
    def paid_member_tags(self) -> List[str]:
        return [
            tag.strip().lower()
            for tag in self.PAID_MEMBER_TAGS.split(",")
            if tag.strip()
        ]

    def credit_policy(self) -> CreditPolicy:
        return CreditPolicy(
            initial_free=self.INITIAL_CREDITS_FREE,
            initial_paid=self.INITIAL_CREDITS_PAID,
            monthly_free=self.MONTHLY_CREDITS_FREE,
            monthly_paid=self.MONTHLY_CREDITS_PAID,
        )


settings = Settings()

