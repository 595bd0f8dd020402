"""Request authentication for the Outpost API.

Security Model:
    Outpost sits behind the product's own auth layer, which authenticates end
    users and forwards their id in the ``X-Outpost-User`` header. Outpost
    trusts that header only from callers holding the service API key.

    - OUTPOST_API_KEY: When set, every endpoint requires
      ``Authorization: Bearer <key>``. When unset, endpoints are open
      (local development).

Usage:
    @router.get("/setup/status")
    async def status(user_id: str = Depends(current_user)):
        ...

Terminal sessions remember the user they were opened for;
``authorize_session`` compares that owner with the caller and is the single
place the check is enforced.
"""

from __future__ import annotations

import logging
import os
import secrets
from typing import TYPE_CHECKING, Optional

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

if TYPE_CHECKING:
    from outpost.terminal import TerminalSessionManager

logger = logging.getLogger(__name__)

SERVICE_API_KEY_ENV = "OUTPOST_API_KEY"
USER_HEADER = "X-Outpost-User"

_bearer_scheme = HTTPBearer(auto_error=False)


async def require_api_key(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> bool:
    """FastAPI dependency that validates the service API key if configured.

    Uses an ``is None`` check so an empty-string key (misconfigured secret)
    still enforces authentication instead of silently disabling it.
    """
    expected_key = os.environ.get(SERVICE_API_KEY_ENV)
    if expected_key is None:
        return True

    client = request.client.host if request.client else "unknown"
    if credentials is None:
        logger.warning("API request without credentials from %s", client)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required. Provide Authorization: Bearer <api_key> header.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not secrets.compare_digest(credentials.credentials, expected_key):
        logger.warning("Invalid API key from %s", client)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return True


async def current_user(
    _authorized: bool = Depends(require_api_key),
    x_outpost_user: Optional[str] = Header(default=None),
) -> str:
    """The caller's user id, as forwarded by the upstream auth layer."""
    user_id = (x_outpost_user or "").strip()
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return user_id


def authorize_session(sessions: TerminalSessionManager, user_id: str, session_id: str) -> None:
    """Reject any session id that wasn't issued to ``user_id``.

    Raises 404 for unknown or expired sessions and 401 for another user's.
    """
    owner = sessions.owner(session_id)
    if owner is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Session not found or expired"
        )
    if owner != user_id:
        logger.warning("User %s attempted to access session %s", user_id, session_id)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
