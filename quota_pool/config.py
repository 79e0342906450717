"""Configuration management for the quota and key pool service."""

import os
from dataclasses import dataclass, field
from typing import List
from dotenv import load_dotenv


@dataclass
class Config:
    """Application configuration loaded from environment variables."""

    api_keys: List[str]
    port: int = 8000
    host: str = "0.0.0.0"
    rpm_limit: int = 15
    rpd_limit: int = 200
    error_ban_threshold: int = 5
    min_requests_per_user: int = 30
    max_users_cap: int = 100
    max_retries: int = 3
    max_rate_limit_waits: int = 10
    lease_timeout_seconds: int = 600
    active_user_lookback_days: int = 7
    reset_timezone: str = "America/Los_Angeles"
    default_model: str = "gemini-2.5-flash"
    fallback_models: List[str] = field(default_factory=list)
    database_url: str = "sqlite+aiosqlite:///./data/quota.db"
    gemini_base_url: str = "https://generativelanguage.googleapis.com"
    log_level: str = "INFO"

    def __post_init__(self):
        if not self.api_keys:
            raise ValueError("At least one Gemini API key must be configured")
        for name in (
            "rpm_limit",
            "rpd_limit",
            "error_ban_threshold",
            "max_users_cap",
            "max_retries",
            "lease_timeout_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be a positive integer")
        if self.min_requests_per_user < 0:
            raise ValueError("min_requests_per_user must not be negative")

    @property
    def key_count(self) -> int:
        return len(self.api_keys)

    @property
    def total_daily_capacity(self) -> int:
        return self.key_count * self.rpd_limit


def _split_list(raw: str) -> List[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


def load_config(use_dotenv: bool = True) -> Config:
    """Load configuration from environment variables.

    Every credential slot ``GEMINI_API_KEY_1`` .. ``GEMINI_API_KEY_<N>``
    must be present, where N is ``GEMINI_KEY_COUNT``.

    Returns:
        Config: Configured application settings

    Raises:
        ValueError: If required environment variables are missing or invalid
    """
    if use_dotenv:
        load_dotenv()

    key_count = int(os.getenv("GEMINI_KEY_COUNT", "15"))
    if key_count <= 0:
        raise ValueError("GEMINI_KEY_COUNT must be a positive integer")

    api_keys = []
    for index in range(1, key_count + 1):
        name = f"GEMINI_API_KEY_{index}"
        value = os.getenv(name, "").strip()
        if not value:
            raise ValueError(f"Missing {name} in environment variables")
        api_keys.append(value)

    return Config(
        api_keys=api_keys,
        port=int(os.getenv("PORT", "8000")),
        host=os.getenv("HOST", "0.0.0.0"),
        rpm_limit=int(os.getenv("RPM_LIMIT", "15")),
        rpd_limit=int(os.getenv("RPD_LIMIT", "200")),
        error_ban_threshold=int(os.getenv("ERROR_BAN_THRESHOLD", "5")),
        min_requests_per_user=int(os.getenv("MIN_REQUESTS_PER_USER", "30")),
        max_users_cap=int(os.getenv("MAX_USERS_CAP", "100")),
        max_retries=int(os.getenv("MAX_RETRIES", "3")),
        max_rate_limit_waits=int(os.getenv("MAX_RATE_LIMIT_WAITS", "10")),
        lease_timeout_seconds=int(os.getenv("LEASE_TIMEOUT_SECONDS", "600")),
        active_user_lookback_days=int(os.getenv("ACTIVE_USER_LOOKBACK_DAYS", "7")),
        reset_timezone=os.getenv("RESET_TIMEZONE", "America/Los_Angeles"),
        default_model=os.getenv("DEFAULT_MODEL", "gemini-2.5-flash"),
        fallback_models=_split_list(os.getenv("FALLBACK_MODELS", "")),
        database_url=os.getenv(
            "DATABASE_URL", "sqlite+aiosqlite:///./data/quota.db"
        ),
        gemini_base_url=os.getenv(
            "GEMINI_BASE_URL", "https://generativelanguage.googleapis.com"
        ),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )
