"""Environment configuration and logging setup."""

import logging
import os
from functools import lru_cache
from typing import Dict, Optional

from pydantic import BaseModel, Field

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_mapping(name: str) -> Dict[str, str]:
    """Parse ``a=1,b=2`` into a dict with lowercased keys; blank entries are skipped."""
    mapping = {}
    for item in (os.getenv(name) or "").split(","):
        key, _, value = item.partition("=")
        if key.strip() and value.strip():
            mapping[key.strip().lower()] = value.strip()
    return mapping


class Settings(BaseModel):
    """Runtime settings, read from environment variables."""
    test_mode: bool = True
    http_timeout: float = 30.0
    log_level: str = "INFO"
    rate_limit: str = "60/minute"
    api_key: Optional[str] = None
    # Keys that only unlock one provider, e.g. PAYMENTS_PROVIDER_API_KEYS=stripe=abc,fusebox=def
    provider_api_keys: Dict[str, str] = Field(default_factory=dict)
    stripe_api_key: Optional[str] = None
    converge_merchant_id: Optional[str] = None
    converge_user_id: Optional[str] = None
    converge_pin: Optional[str] = None
    fusebox_terminal_id: Optional[str] = None
    fusebox_chain_code: Optional[str] = None
    fusebox_location_name: Optional[str] = None

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            test_mode=_env_bool("PAYMENTS_TEST_MODE", True),
            http_timeout=float(os.getenv("PAYMENTS_HTTP_TIMEOUT") or 30.0),
            log_level=os.getenv("LOG_LEVEL") or "INFO",
            rate_limit=os.getenv("PAYMENTS_RATE_LIMIT") or "60/minute",
            api_key=os.getenv("API_KEY") or None,
            provider_api_keys=_env_mapping("PAYMENTS_PROVIDER_API_KEYS"),
            stripe_api_key=os.getenv("STRIPE_API_KEY") or None,
            converge_merchant_id=os.getenv("CONVERGE_MERCHANT_ID") or None,
            converge_user_id=os.getenv("CONVERGE_USER_ID") or None,
            converge_pin=os.getenv("CONVERGE_PIN") or None,
            fusebox_terminal_id=os.getenv("FUSEBOX_TERMINAL_ID") or None,
            fusebox_chain_code=os.getenv("FUSEBOX_CHAIN_CODE") or None,
            fusebox_location_name=os.getenv("FUSEBOX_LOCATION_NAME") or None,
        )

    @property
    def converge_configured(self) -> bool:
        return bool(self.converge_merchant_id and self.converge_pin)

    @property
    def fusebox_configured(self) -> bool:
        return bool(
            self.fusebox_terminal_id and self.fusebox_chain_code and self.fusebox_location_name
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings.from_env()


def configure_logging(level: Optional[str] = None) -> None:
    """Apply the standard log format to the root logger."""
    logging.basicConfig(
        level=(level or get_settings().log_level).upper(),
        format=LOG_FORMAT,
    )
