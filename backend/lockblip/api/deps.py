"""
LockBlip Ghost - API Dependencies
=================================

Shared dependencies for FastAPI endpoints.

Account authentication is owned by the main chat application: every
request carries its bearer JWT whose `sub` is the username. Ghost Mode
only adds the ghost session token on top.
"""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Annotated, Optional

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from lockblip.core.config import settings
from lockblip.core.database import get_db
from lockblip.core.ghost.audit import AccessAuditLog, get_audit_log
from lockblip.core.ghost.channels import GhostChannelHub, get_channel_hub
from lockblip.core.ghost.controller import ClientInfo, GhostController


# ==========================================================================
# Security
# ==========================================================================

security = HTTPBearer(auto_error=False)

GHOST_SESSION_HEADER = "X-Ghost-Session"


# ==========================================================================
# Token Utilities
# ==========================================================================

def create_access_token(
    username: str,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create an account access token.

    Issued by the main application; provided here for local tooling
    and tests.
    """
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    now = datetime.now(timezone.utc)
    payload = {
        "sub": username,
        "exp": now + expires_delta,
        "iat": now,
        "type": "access",
        "jti": secrets.token_hex(16),
    }

    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_token(token: str) -> dict:
    """
    Decode and validate a JWT token.

    Raises:
        HTTPException: If token is invalid or expired
    """
    try:
        return jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM],
        )
    except JWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


def username_from_token(token: Optional[str]) -> Optional[str]:
    """Username of a valid access token, None otherwise. Used by the WebSocket."""
    if not token:
        return None
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None
    if payload.get("type") != "access":
        return None
    username = payload.get("sub")
    return username if isinstance(username, str) and username else None


# ==========================================================================
# User Dependencies
# ==========================================================================

async def get_current_username(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> str:
    """
    Resolve the authenticated username from the bearer token.

    Raises:
        HTTPException: If not authenticated
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = decode_token(credentials.credentials)

    if payload.get("type") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type",
            headers={"WWW-Authenticate": "Bearer"},
        )

    username = payload.get("sub")
    if not isinstance(username, str) or not username:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return username


async def get_ghost_token(
    x_ghost_session: Annotated[Optional[str], Header(alias=GHOST_SESSION_HEADER)] = None,
) -> Optional[str]:
    """Ghost session token from the unlock call, if the client sent one."""
    return x_ghost_session


# ==========================================================================
# Ghost Dependencies
# ==========================================================================

def get_client_info(request: Request) -> ClientInfo:
    return ClientInfo(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


async def get_controller(
    db: Annotated[AsyncSession, Depends(get_db)],
    audit_log: Annotated[AccessAuditLog, Depends(get_audit_log)],
    hub: Annotated[GhostChannelHub, Depends(get_channel_hub)],
    client: Annotated[ClientInfo, Depends(get_client_info)],
) -> GhostController:
    return GhostController(db, audit_log, hub, client)


# ==========================================================================
# Type Aliases for Dependency Injection
# ==========================================================================

CurrentUsername = Annotated[str, Depends(get_current_username)]
GhostToken = Annotated[Optional[str], Depends(get_ghost_token)]
ChannelHub = Annotated[GhostChannelHub, Depends(get_channel_hub)]
Controller = Annotated[GhostController, Depends(get_controller)]
