"""Session Runner - API Key Authentication

Requests must carry X-API-Key when API_KEY is configured.
With no API_KEY set the service runs open (dev mode).
"""

import logging
import secrets

from fastapi import HTTPException, Security
from fastapi.security import APIKeyHeader

from session_runner.config import settings

logger = logging.getLogger(__name__)

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(api_key: str = Security(api_key_header)):
    if not settings.API_KEY:
        return None
    if not api_key or not secrets.compare_digest(api_key, settings.API_KEY):
        logger.warning("Rejected request with missing or invalid API key")
        raise HTTPException(status_code=401, detail="Invalid or missing API key")
    return api_key
