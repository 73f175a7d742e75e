"""
API key authentication for the PropEdge API.

Two roles:
  bettors  - any configured key; may evaluate props, size portfolios,
             read hit rates and record outcomes
  admins   - the users named in ADMIN_USERS (default user1); may also
             trigger a refresh, read refresh status and recalculate hit rates

Keys come from API_KEY_USER1..API_KEY_USER5 and are read on the first
authenticated request, so scripts and tests can import the app without them.
"""

import hmac
import logging
import os
from functools import lru_cache
from typing import Dict, FrozenSet, Optional

from dotenv import load_dotenv
from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader

from propedge.core.errors import ConfigurationError

load_dotenv()

logger = logging.getLogger(__name__)

API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)

MAX_API_USERS = 5
DEV_API_KEY = "dev-key-insecure"
DEV_USER = "dev_user"


@lru_cache(maxsize=1)
def get_valid_api_keys() -> Dict[str, str]:
    """Map of API key -> user id.  Cached; call cache_clear() after changing the env."""
    keys = {}
    for i in range(1, MAX_API_USERS + 1):
        key = os.getenv(f"API_KEY_USER{i}")
        if key:
            keys[key] = f"user{i}"

    if not keys:
        if os.getenv("ENVIRONMENT") == "development":
            logger.warning("No API keys configured, accepting the development key")
            keys[DEV_API_KEY] = DEV_USER
        else:
            raise ConfigurationError("No API keys configured! Set API_KEY_USER1 in environment")

    return keys


def admin_users() -> FrozenSet[str]:
    """Users allowed on the /admin routes, from ADMIN_USERS (comma separated)."""
    raw = os.getenv("ADMIN_USERS", "user1")
    return frozenset(u.strip() for u in raw.split(",") if u.strip())


def _lookup(api_key: str) -> Optional[str]:
    for candidate, user in get_valid_api_keys().items():
        if hmac.compare_digest(candidate, api_key):
            return user
    return None


async def verify_api_key(api_key: str = Security(API_KEY_HEADER)) -> str:
    """
    Resolve the X-API-Key header to a user id, or fail with 401.

    Usage in FastAPI routes:
        @app.post("/api/props/evaluate")
        async def evaluate(user: str = Depends(verify_api_key)):
            ...
    """
    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required. Include 'X-API-Key' header.",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    user = _lookup(api_key)
    if user is None:
        logger.warning("Rejected request with an unknown API key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    return user


async def verify_admin_api_key(user: str = Security(verify_api_key)) -> str:
    """Refresh and hit-rate maintenance routes.  403 for non-admin users."""
    if user not in admin_users():
        logger.warning("User %s denied admin route", user)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )

    return user
