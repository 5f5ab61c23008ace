"""
Application settings, read from environment variables or a .env file.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    app_name: str = "AI Change Management System"

    # Supabase project (URL + public anon key)
    supabase_url: str = Field(default="http://localhost:54321", description="Supabase project URL")
    supabase_anon_key: str = Field(default="", description="Public anon key sent as the apikey header")
    request_timeout_seconds: float = Field(default=10.0, description="Timeout for provider calls")

    # Cookie session
    secret_key: str = Field(default="change-me-acms-secret", description="Signing key for the cookie session")
    session_cookie_name: str = "acms_session"
    https_only_cookies: bool = False

    history_table: str = "risk_analysis_history"
    risk_rules_path: Optional[str] = Field(default=None, description="Override for data/risk_rules.yaml")
    mfa_friendly_name: str = "acms-totp"

    log_level: str = "INFO"
    host: str = "127.0.0.1"
    port: int = 8000

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "ACMS_",
        "extra": "ignore",
    }

    @property
    def auth_url(self) -> str:
        return self.supabase_url.rstrip("/") + "/auth/v1"

    @property
    def rest_url(self) -> str:
        return self.supabase_url.rstrip("/") + "/rest/v1"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
