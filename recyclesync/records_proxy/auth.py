"""Bearer token authentication for the records proxy."""

import hmac
import logging

from fastapi import HTTPException, Request, status

logger = logging.getLogger(__name__)


def extract_token(request: Request) -> str | None:
    auth = request.headers.get("Authorization", "")
    if auth.lower().startswith("bearer "):
        return auth.split(" ", 1)[1].strip()
    return None


async def verify_token(request: Request) -> dict:
    """FastAPI dependency checking the request's bearer token.

    Returns:
        Minimal caller info for handlers

    Raises:
        HTTPException: 401 when the token is missing or wrong
    """
    expected = request.app.state.settings.auth_token
    token = extract_token(request)

    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
        )
    if not expected or not hmac.compare_digest(token, expected):
        logger.warning("Rejected request with invalid token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
        )
    return {"authenticated": True}
