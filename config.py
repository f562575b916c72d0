"""
Runtime configuration for the Salon POS API.

Values come from the environment (a local .env file is loaded if present) and
are collected into a single Settings object that is handed to the parts of the
app that need it instead of reading os.environ ad hoc.
"""

import logging
import os
from functools import lru_cache
from typing import List, Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()

logger = logging.getLogger("salon.config")

DEV_JWT_SECRET = "salon-dev-secret-change-me"


class Settings(BaseModel):
    database_url: Optional[str] = None
    database_name: Optional[str] = None

    jwt_secret: str = DEV_JWT_SECRET
    jwt_algorithm: str = "HS256"
    token_expire_minutes: int = Field(60 * 24 * 7, gt=0)

    edit_policy: Literal["recent", "window"] = "recent"
    edit_recent_limit: int = Field(15, gt=0)
    edit_window_minutes: int = Field(15, gt=0)

    dashboard_window: Literal["day", "morning"] = "day"
    morning_cutoff_hour: int = Field(12, ge=1, le=24)
    recent_bills_limit: int = Field(15, gt=0)

    payment_tolerance: float = Field(0.01, ge=0)

    cors_origins: List[str] = Field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls) -> "Settings":
        secret = os.getenv("JWT_SECRET")
        if not secret:
            logger.warning("JWT_SECRET not set, using the development fallback secret")
            secret = DEV_JWT_SECRET
        origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
        return cls(
            database_url=os.getenv("DATABASE_URL"),
            database_name=os.getenv("DATABASE_NAME"),
            jwt_secret=secret,
            token_expire_minutes=int(os.getenv("TOKEN_EXPIRE_MINUTES", 60 * 24 * 7)),
            edit_policy=os.getenv("BILL_EDIT_POLICY", "recent"),
            edit_recent_limit=int(os.getenv("BILL_EDIT_RECENT_LIMIT", 15)),
            edit_window_minutes=int(os.getenv("BILL_EDIT_WINDOW_MINUTES", 15)),
            dashboard_window=os.getenv("DASHBOARD_WINDOW", "day"),
            cors_origins=origins or ["*"],
        )


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
