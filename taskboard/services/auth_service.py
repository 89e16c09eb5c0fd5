"""
Account session handling: short-lived signed access tokens, rotating refresh
tokens stored per user, and a blacklist of revoked access tokens.
"""

import logging
from datetime import timedelta

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from taskboard.core.config import get_settings
from taskboard.core.exceptions import (
    AuthenticationError,
    ConflictError,
    ValidationError,
    translate_store_errors,
)
from taskboard.core.security import (
    create_access_token,
    decode_access_token,
    new_refresh_token,
    verify_password,
)
from taskboard.database import atomic
from taskboard.models import (
    AuthResponse,
    LoginRequest,
    LogoutRequest,
    RefreshToken,
    RegisterRequest,
    TokenBlacklist,
    TokenPair,
    User,
    UserCreate,
    UserRead,
    get_utc_now,
    to_utc,
)
from taskboard.services.user_service import UserService

logger = logging.getLogger(__name__)


async def _issue_tokens(user_id: int, db: AsyncSession) -> TokenPair:
    """Create a new token pair; the refresh token is added to the caller's transaction."""
    settings = get_settings()
    refresh = RefreshToken(
        token=new_refresh_token(),
        user_id=user_id,
        expires_at=get_utc_now() + timedelta(days=settings.refresh_token_expire_days),
    )
    db.add(refresh)
    return TokenPair(
        token=create_access_token(user_id),
        refresh_token=refresh.token,
        expires_in=settings.access_token_expire_minutes * 60,
        refresh_expires_in=settings.refresh_token_expire_days * 24 * 60 * 60,
    )


async def is_blacklisted(token: str, db: AsyncSession) -> bool:
    query = select(TokenBlacklist.id).where(TokenBlacklist.token == token)
    return (await db.exec(query)).first() is not None


class AuthService:
    @staticmethod
    @translate_store_errors
    async def register(request: RegisterRequest, db: AsyncSession) -> AuthResponse:
        if request.password != request.confirm_password:
            raise ValidationError("Password and confirm_password do not match")

        user_data = UserCreate(email=request.email, password=request.password, name=request.name)
        try:
            async with atomic(db):
                user = await UserService.create_user_row(user_data, db)
                tokens = await _issue_tokens(user.id, db)
        except IntegrityError as exc:
            raise ConflictError("Email already registered") from exc

        logger.info("Registered user %s (%s)", user.id, user.email)
        return AuthResponse(user=UserRead.model_validate(user), tokens=tokens)

    @staticmethod
    @translate_store_errors
    async def login(request: LoginRequest, db: AsyncSession) -> AuthResponse:
        if not request.email or not request.password:
            raise ValidationError("Email and password are required")

        async with atomic(db):
            user = (await db.exec(select(User).where(User.email == request.email.lower()))).first()
            if user is None or not verify_password(request.password, user.password):
                raise AuthenticationError("Invalid email or password")
            tokens = await _issue_tokens(user.id, db)

        logger.info("User %s logged in", user.id)
        return AuthResponse(user=UserRead.model_validate(user), tokens=tokens)

    @staticmethod
    @translate_store_errors
    async def refresh(refresh_token: str, db: AsyncSession) -> TokenPair:
        """Rotate a refresh token: the presented one is consumed, a new pair is issued."""
        if not refresh_token:
            raise ValidationError("Refresh token is required")

        async with atomic(db):
            stored = (await db.exec(select(RefreshToken).where(RefreshToken.token == refresh_token))).first()
            if stored is None:
                raise AuthenticationError("Invalid refresh token")
            await db.delete(stored)
            tokens = None
            if to_utc(stored.expires_at) > get_utc_now():
                tokens = await _issue_tokens(stored.user_id, db)

        if tokens is None:
            raise AuthenticationError("Refresh token expired")
        return tokens

    @staticmethod
    @translate_store_errors
    async def logout(request: LogoutRequest, db: AsyncSession) -> None:
        if not request.token and not request.refresh_token:
            raise ValidationError("Token or refresh token required")

        async with atomic(db):
            if request.token and not await is_blacklisted(request.token, db):
                db.add(TokenBlacklist(token=request.token))
            if request.refresh_token:
                await db.exec(delete(RefreshToken).where(col(RefreshToken.token) == request.refresh_token))

    @staticmethod
    @translate_store_errors
    async def resolve_user(token: str, db: AsyncSession) -> User:
        """Return the user behind a bearer token, rejecting revoked or invalid ones."""
        user_id = decode_access_token(token)
        if await is_blacklisted(token, db):
            raise AuthenticationError("Token has been revoked")
        user = (await db.exec(select(User).where(User.id == user_id))).first()
        if user is None:
            raise AuthenticationError("User not found")
        return user

    @staticmethod
    @translate_store_errors
    async def cleanup_expired_refresh_tokens(db: AsyncSession) -> int:
        async with atomic(db):
            result = await db.exec(delete(RefreshToken)
                .where(col(RefreshToken.expires_at) < get_utc_now())
                .execution_options(synchronize_session=False)
            )
        return result.rowcount

    @staticmethod
    @translate_store_errors
    async def cleanup_blacklist(db: AsyncSession, older_than_days: int | None = None) -> int:
        days = older_than_days if older_than_days is not None else get_settings().blacklist_retention_days
        cutoff = get_utc_now() - timedelta(days=days)
        async with atomic(db):
            result = await db.exec(delete(TokenBlacklist)
                .where(col(TokenBlacklist.created_at) < cutoff)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount
