"""
Shutterbook Notifications — Session Authentication
====================================================

What:  Resolves the user behind a request from a signed session token.
Why:   Sessions are issued by the marketplace web app; this service only has
       to verify them and map the subject (an email) to a user row.
How:   HS256 JWT (PyJWT) read from the session cookie, falling back to an
       `Authorization: Bearer` header. Verified subject → SELECT users.
Who:   FastAPI dependencies `get_current_user` (REST routes) and
       `get_stream_user` (stream route).

Failure Mapping (both raised before any response byte is written):
    no token / bad signature / expired / no subject → AuthenticationError (401)
    valid token, unknown email                      → NotFoundError (404)
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, Request
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from shutterbook.config import settings
from shutterbook.database import async_session_factory, get_db_session
from shutterbook.exceptions import AuthenticationError, DatabaseError, ForbiddenError, NotFoundError
from shutterbook.models.user import User

logger = logging.getLogger(__name__)


# ── Tokens ────────────────────────────────────────────────────────────────

def create_session_token(email: str, expires_in: Optional[int] = None) -> str:
    """Issue a session token for `email`. Used by tooling and tests."""
    ttl = expires_in if expires_in is not None else settings.session_ttl_seconds
    now = datetime.now(timezone.utc)
    payload = {
        "sub": email,
        "iat": now,
        "exp": now + timedelta(seconds=ttl),
    }
    return jwt.encode(payload, settings.session_secret_key, algorithm=settings.session_algorithm)


def decode_session_token(token: str) -> str:
    """
    Verify a session token and return its subject (the user's email).

    Raises:
        AuthenticationError: expired, tampered or malformed token
    """
    try:
        payload = jwt.decode(
            token,
            settings.session_secret_key,
            algorithms=[settings.session_algorithm],
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationError(message="Session expired. Please login again.")
    except jwt.InvalidTokenError as e:
        logger.debug("Rejected session token: %s", str(e))
        raise AuthenticationError()

    email = payload.get("sub")
    if not isinstance(email, str) or not email:
        raise AuthenticationError()
    return email


def extract_token(request: Request) -> Optional[str]:
    """Session cookie first, then `Authorization: Bearer <token>`."""
    token = request.cookies.get(settings.session_cookie_name)
    if token:
        return token

    authorization = request.headers.get("authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return None


# ── User lookup ───────────────────────────────────────────────────────────

async def resolve_user(db: AsyncSession, email: str) -> User:
    """
    Raises:
        NotFoundError: no user with this email
        DatabaseError: lookup failed
    """
    try:
        result = await db.execute(select(User).where(User.email == email))
        user = result.scalar_one_or_none()
    except SQLAlchemyError as e:
        logger.error("Database error resolving session user: %s", str(e))
        raise DatabaseError(message="Could not verify your session. Please try again.") from e

    if user is None:
        logger.warning("Valid session for unknown user %s", email)
        raise NotFoundError(resource="user")
    return user


async def authenticate(request: Request, db: AsyncSession) -> User:
    token = extract_token(request)
    if token is None:
        raise AuthenticationError()
    email = decode_session_token(token)
    return await resolve_user(db, email)


# ── FastAPI dependencies ──────────────────────────────────────────────────

async def get_current_user(
    request: Request,
    db: AsyncSession = Depends(get_db_session),
) -> User:
    """Authenticated user for REST routes; shares the request's db session."""
    return await authenticate(request, db)


async def get_stream_user(request: Request) -> User:
    """
    Authenticated user for the event stream.

    Uses its own short-lived session so no database connection stays checked
    out for the lifetime of the stream.
    """
    async with async_session_factory() as db:
        return await authenticate(request, db)


async def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise ForbiddenError(message="Only administrators can create notifications manually")
    return user
