import logging

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from taskboard.cache.layer import cache_layer
from taskboard.core.exceptions import ConflictError, NotFoundError, ValidationError, translate_store_errors
from taskboard.core.security import get_password_hash
from taskboard.database import atomic
from taskboard.models import (
    RefreshToken,
    Tag,
    Task,
    TaskHistory,
    TaskTagLink,
    User,
    UserCreate,
    UserRead,
    UserUpdate,
    get_utc_now,
)

logger = logging.getLogger(__name__)

AVATAR_URL = "https://api.dicebear.com/7.x/avataaars/svg?seed={seed}"
MIN_PASSWORD_LENGTH = 6


async def unique_display_name(email: str, db: AsyncSession, requested: str | None = None) -> str:
    """Use the requested name (or the e-mail prefix) and append 1, 2, ... until it is free."""
    base = (requested or "").strip() or email.split("@")[0]
    query = select(User.name).where(col(User.name).startswith(base, autoescape=True))
    taken = set((await db.exec(query)).all())
    name, counter = base, 1
    while name in taken:
        name = f"{base}{counter}"
        counter += 1
    return name


async def _get_user(user_id: int, db: AsyncSession) -> User:
    user = (await db.exec(select(User).where(User.id == user_id))).first()
    if user is None:
        raise NotFoundError(f"User with id {user_id} not found")
    return user


async def _ensure_email_free(email: str, db: AsyncSession):
    if (await db.exec(select(User.id).where(User.email == email))).first() is not None:
        raise ConflictError("Email already registered")


class UserService:
    @staticmethod
    @translate_store_errors
    async def list_users(db: AsyncSession) -> list[UserRead]:
        query = select(User).order_by(col(User.created_at).desc(), col(User.id).desc())
        return [UserRead.model_validate(user) for user in (await db.exec(query)).all()]

    @staticmethod
    @translate_store_errors
    async def get_user(user_id: int, db: AsyncSession) -> UserRead:
        return UserRead.model_validate(await _get_user(user_id, db))

    @staticmethod
    async def create_user_row(user_data: UserCreate, db: AsyncSession) -> User:
        """Insert a user inside the caller's transaction and return the row."""
        if len(user_data.password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
        email = str(user_data.email).lower()
        await _ensure_email_free(email, db)
        user = User(
            email=email,
            password=get_password_hash(user_data.password),
            name=await unique_display_name(email, db, user_data.name),
            avatar=user_data.avatar or AVATAR_URL.format(seed=email),
        )
        db.add(user)
        await db.flush()
        return user

    @staticmethod
    @translate_store_errors
    async def create_user(user_data: UserCreate, db: AsyncSession) -> UserRead:
        try:
            async with atomic(db):
                user = await UserService.create_user_row(user_data, db)
        except IntegrityError as exc:
            raise ConflictError("Email already registered") from exc

        logger.info("Created user %s (%s)", user.id, user.email)
        return UserRead.model_validate(user)

    @staticmethod
    @translate_store_errors
    async def update_user(user_id: int, user_data: UserUpdate, db: AsyncSession) -> UserRead:
        patch = user_data.model_dump(exclude_unset=True)
        if not patch:
            raise ValidationError("At least one field (email, name or avatar) is required")
        if "name" in patch:
            patch["name"] = (patch["name"] or "").strip()
            if not patch["name"]:
                raise ValidationError("Name cannot be empty")
        if "email" in patch:
            if patch["email"] is None:
                raise ValidationError("Email cannot be empty")
            patch["email"] = str(patch["email"]).lower()

        try:
            async with atomic(db):
                user = await _get_user(user_id, db)
                if "email" in patch and patch["email"] != user.email:
                    await _ensure_email_free(patch["email"], db)
                user.sqlmodel_update(patch)
                user.updated_at = get_utc_now()
                db.add(user)
        except IntegrityError as exc:
            raise ConflictError("Email already registered") from exc

        return UserRead.model_validate(user)

    @staticmethod
    @translate_store_errors
    async def delete_user(user_id: int, db: AsyncSession) -> UserRead:
        """Remove a user with their refresh tokens, tags and tasks (links and history included)."""
        async with atomic(db):
            user = await _get_user(user_id, db)
            snapshot = UserRead.model_validate(user)

            task_ids = select(Task.id).where(Task.user_id == user_id)
            await db.exec(delete(TaskTagLink).where(col(TaskTagLink.task_id).in_(task_ids)))
            await db.exec(delete(TaskHistory).where(col(TaskHistory.task_id).in_(task_ids)))
            await db.exec(
                delete(Task).where(col(Task.user_id) == user_id).execution_options(synchronize_session="fetch")
            )
            await db.exec(
                delete(Tag).where(col(Tag.user_id) == user_id).execution_options(synchronize_session="fetch")
            )
            await db.exec(delete(RefreshToken).where(col(RefreshToken.user_id) == user_id))
            await db.delete(user)

        await cache_layer.delete_pattern(f"owner:{user_id}:*")
        logger.info("Deleted user %s (%s)", user_id, snapshot.email)
        return snapshot
