"""
EventSwap Platform - Auth Router
OAuth2 Password Flow endpoints: login, refresh, logout, and current user profile.
"""
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from jose import JWTError
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from eventswap.auth import (
    REFRESH,
    clear_refresh_cookie,
    create_access_token,
    create_refresh_token,
    get_current_user,
    get_refresh_token_from_cookie,
    load_user,
    set_refresh_cookie,
    token_subject,
    unauthenticated,
    verify_password,
)
from eventswap.config import get_settings
from eventswap.database import get_session_factory
from eventswap.middleware.rate_limit import RATE_LIMIT_AUTH, limiter
from eventswap.models import User

logger = logging.getLogger("eventswap.auth")

router = APIRouter(prefix="/api/auth", tags=["Auth"])


# ═══════════════════════════════════════════════════════
#  Response Models
# ═══════════════════════════════════════════════════════


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int = Field(..., description="Token lifetime in seconds")
    user: dict


class UserProfileResponse(BaseModel):
    id: str
    full_name: str
    email: str
    role: str
    is_verified: bool
    has_payer_identity: bool
    balance: float


def _token_response(user: User) -> JSONResponse:
    settings = get_settings()
    body = TokenResponse(
        access_token=create_access_token(
            user_id=str(user.id),
            role=user.role.value,
            full_name=user.full_name,
        ),
        expires_in=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user={
            "id": str(user.id),
            "full_name": user.full_name,
            "email": user.email,
            "role": user.role.value,
        },
    )
    response = JSONResponse(content=body.model_dump())
    set_refresh_cookie(response, create_refresh_token(user_id=str(user.id)))
    return response


# ═══════════════════════════════════════════════════════
#  POST /api/auth/login - OAuth2 Password Flow
# ═══════════════════════════════════════════════════════


@router.post("/login", response_model=TokenResponse)
@limiter.limit(RATE_LIMIT_AUTH)
async def login(
    request: Request,
    form_data: OAuth2PasswordRequestForm = Depends(),
    sessions: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """
    Authenticate with email and password.

    Returns a JWT access token in the response body and sets
    a refresh token as an HttpOnly cookie.
    """
    async with sessions() as session:
        user = await session.scalar(select(User).where(User.email == form_data.username))

    if not user or not user.password_hash or not verify_password(form_data.password, user.password_hash):
        logger.warning("Failed login attempt for: %s", form_data.username)
        raise unauthenticated("Invalid email or password")

    logger.info("✅ Login successful: %s (%s)", user.email, user.role.value)
    return _token_response(user)


# ═══════════════════════════════════════════════════════
#  POST /api/auth/refresh - Rotate Tokens
# ═══════════════════════════════════════════════════════


@router.post("/refresh", response_model=TokenResponse)
async def refresh_tokens(
    request: Request,
    sessions: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    """Rotate the access token and the refresh cookie."""
    refresh_token = get_refresh_token_from_cookie(request)
    if not refresh_token:
        raise unauthenticated("No refresh token found. Please log in again.")

    try:
        user_id = token_subject(refresh_token, REFRESH)
    except JWTError:
        raise unauthenticated("Refresh token expired or invalid. Please log in again.")

    user = await load_user(sessions, user_id)
    if not user:
        raise unauthenticated("User no longer exists")

    logger.info("🔄 Token rotated for: %s", user.email)
    return _token_response(user)


@router.post("/logout")
async def logout():
    response = JSONResponse(content={"message": "Logged out successfully"})
    clear_refresh_cookie(response)
    return response


@router.get("/me", response_model=UserProfileResponse)
async def get_me(current_user: User = Depends(get_current_user)):
    return UserProfileResponse(
        id=str(current_user.id),
        full_name=current_user.full_name,
        email=current_user.email,
        role=current_user.role.value,
        is_verified=bool(current_user.is_verified),
        has_payer_identity=current_user.has_payer_identity,
        balance=float(current_user.balance or 0),
    )
