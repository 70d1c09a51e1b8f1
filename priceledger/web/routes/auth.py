"""Authentication routes for the priceledger API.

Routes:
- POST /auth/login  - Exchange admin credentials for a session cookie
- POST /auth/logout - Invalidate the session cookie
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Cookie, HTTPException, Response

from priceledger.web.auth import (
    SESSION_COOKIE,
    SESSION_EXPIRY_SECONDS,
    create_session,
    validate_session,
    verify_credentials,
)
from priceledger.web.auth import logout as auth_logout
from priceledger.web.models import LoginRequest

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["authentication"])


@router.post("/login")
async def login(body: LoginRequest, response: Response):
    """Create a session and set it as an http-only cookie."""
    if not verify_credentials(body.username, body.password):
        logger.warning("login_failed", username=body.username)
        raise HTTPException(status_code=401, detail="Invalid credentials")

    session_token = create_session(body.username, role="admin")
    response.set_cookie(
        key=SESSION_COOKIE,
        value=session_token,
        httponly=True,
        max_age=SESSION_EXPIRY_SECONDS,
        samesite="lax",
    )
    logger.info("login", username=body.username)
    return {"username": body.username, "role": "admin"}


@router.post("/logout")
async def logout(response: Response, session: str | None = Cookie(default=None)):
    """Invalidate the current session."""
    session_data = validate_session(session)
    auth_logout(session)
    response.delete_cookie(SESSION_COOKIE)
    if session_data:
        logger.info("logout", username=session_data["username"])
    return {"status": "logged_out"}
