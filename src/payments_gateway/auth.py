"""API key checks scoped to the processor a request targets, and per-key rate limits."""

import hashlib
import logging
import secrets
from typing import Optional

from fastapi import Header, HTTPException, Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from slowapi import Limiter
from slowapi.util import get_remote_address

from .config import Settings, get_settings

logger = logging.getLogger(__name__)

security = HTTPBearer()


def key_fingerprint(api_key: str) -> str:
    """Short stable id for an API key, safe to log and to rate limit on."""
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:12]


def rate_limit_key(request: Request) -> str:
    """Limit each API key separately; unauthenticated calls share their address's budget."""
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() == "bearer" and token:
        return f"key:{key_fingerprint(token)}"
    return get_remote_address(request)


limiter = Limiter(key_func=rate_limit_key)


def expected_key(settings: Settings, provider: Optional[str]) -> Optional[str]:
    """A provider with its own key only accepts that key; the rest share API_KEY."""
    return settings.provider_api_keys.get((provider or "").lower()) or settings.api_key


async def verify_api_key(
    credentials: HTTPAuthorizationCredentials = Security(security),
    x_provider: Optional[str] = Header("simulator"),
) -> str:
    """Check the bearer key against the key for the requested provider.

    Returns:
        The key's fingerprint, used to attribute the request in logs.

    Raises:
        HTTPException: 401 for a wrong key, 500 when no key is configured.
    """
    expected = expected_key(get_settings(), x_provider)
    if not expected:
        logger.error(f"No API key configured for provider {x_provider!r}; set API_KEY or PAYMENTS_PROVIDER_API_KEYS")
        raise HTTPException(status_code=500, detail="Server configuration error")
    fingerprint = key_fingerprint(credentials.credentials)
    if not secrets.compare_digest(credentials.credentials, expected):
        logger.warning(f"Rejected key {fingerprint} for provider {x_provider!r}")
        raise HTTPException(status_code=401, detail="Invalid API key")
    return fingerprint
