"""
EventSwap Platform - Authentication & Authorization Module
OAuth2 password flow with JWT access/refresh tokens and role checks.

Access tokens travel as Bearer headers; refresh tokens live in an
HttpOnly cookie scoped to /api/auth. Both are signed with separate keys
and carry a "type" claim so one can never stand in for the other.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from eventswap.config import get_settings
from eventswap.database import get_session_factory
from eventswap.exceptions import NotAuthorized
from eventswap.models import AUTHORITY_ROLES, User, UserRole

logger = logging.getLogger("eventswap.auth")
settings = get_settings()

ACCESS = "access"
REFRESH = "refresh"

# ═══════════════════════════════════════════════════════
#  Password Hashing (passlib + bcrypt)
# ═══════════════════════════════════════════════════════

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def hash_password(plain_password: str) -> str:
    return pwd_context.hash(plain_password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


# ═══════════════════════════════════════════════════════
#  JWT Tokens (python-jose)
# ═══════════════════════════════════════════════════════


def _signing_key(token_type: str) -> str:
    return settings.JWT_REFRESH_SECRET_KEY if token_type == REFRESH else settings.JWT_SECRET_KEY


def _issue(token_type: str, subject: str, lifetime: timedelta, **claims) -> str:
    issued = datetime.now(timezone.utc)
    payload = {"sub": subject, "type": token_type, "iat": issued, "exp": issued + lifetime, **claims}
    return jwt.encode(payload, _signing_key(token_type), algorithm=settings.JWT_ALGORITHM)


def create_access_token(
    user_id: str,
    role: str,
    full_name: str,
    expires_delta: Optional[timedelta] = None,
) -> str:
    lifetime = expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    return _issue(ACCESS, user_id, lifetime, role=role, name=full_name)


def create_refresh_token(user_id: str, expires_delta: Optional[timedelta] = None) -> str:
    return _issue(REFRESH, user_id, expires_delta or timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS))


def token_subject(token: str, token_type: str) -> str:
    """
    Verify a token and return its subject (the user id).

    Raises JWTError for a bad signature, an expired token, a missing
    subject or a token of the other type.
    """
    payload = jwt.decode(token, _signing_key(token_type), algorithms=[settings.JWT_ALGORITHM])
    subject = payload.get("sub")
    if not subject or payload.get("type") != token_type:
        raise JWTError(f"not a valid {token_type} token")
    return subject


async def load_user(sessions: async_sessionmaker[AsyncSession], user_id: str) -> Optional[User]:
    try:
        uid = UUID(user_id)
    except (TypeError, ValueError):
        return None
    async with sessions() as session:
        return await session.scalar(select(User).where(User.id == uid))


# ═══════════════════════════════════════════════════════
#  get_current_user - FastAPI Dependency
# ═══════════════════════════════════════════════════════

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


def unauthenticated(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    sessions: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> User:
    """Resolve the Bearer access token to a User, or fail with 401."""
    try:
        user_id = token_subject(token, ACCESS)
    except JWTError:
        raise unauthenticated()

    user = await load_user(sessions, user_id)
    if user is None:
        raise unauthenticated()
    return user


# ═══════════════════════════════════════════════════════
#  RoleChecker - RBAC
# ═══════════════════════════════════════════════════════


class RoleChecker:
    """
    Dependency that admits only the given roles.

    Denials surface as NotAuthorized, which the app maps to 403 like every
    other actor check in the services.
    """

    def __init__(self, allowed_roles: frozenset[UserRole]):
        self.allowed_roles = allowed_roles

    async def __call__(self, user: User = Depends(get_current_user)) -> User:
        if user.role not in self.allowed_roles:
            allowed = sorted(role.value for role in self.allowed_roles)
            logger.warning("RBAC denied: %s (role=%s) needs one of %s", user.email, user.role.value, allowed)
            raise NotAuthorized(f"Requires one of these roles: {', '.join(allowed)}.")
        return user


require_authority = RoleChecker(frozenset(AUTHORITY_ROLES))


# ── Refresh cookie ──

REFRESH_COOKIE_NAME = "eventswap_refresh_token"
REFRESH_COOKIE_PATH = "/api/auth"


def set_refresh_cookie(response, refresh_token: str) -> None:
    response.set_cookie(
        key=REFRESH_COOKIE_NAME,
        value=refresh_token,
        httponly=True,
        secure=True,
        samesite="strict",
        max_age=settings.REFRESH_TOKEN_EXPIRE_DAYS * 86400,
        path=REFRESH_COOKIE_PATH,
    )


def clear_refresh_cookie(response) -> None:
    response.delete_cookie(
        key=REFRESH_COOKIE_NAME, path=REFRESH_COOKIE_PATH, httponly=True, secure=True, samesite="strict",
    )


def get_refresh_token_from_cookie(request: Request) -> Optional[str]:
    return request.cookies.get(REFRESH_COOKIE_NAME)
