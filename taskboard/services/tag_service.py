import logging

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from taskboard.cache.decorators import async_cached_expire, owner_keys
from taskboard.core.exceptions import ConflictError, NotFoundError, ValidationError, translate_store_errors
from taskboard.database import atomic
from taskboard.models import Tag, TagCreate, TagRead, TagUpdate, TaskTagLink

logger = logging.getLogger(__name__)


def _required(value: str | None, label: str) -> str:
    value = (value or "").strip()
    if not value:
        raise ValidationError(f"Tag {label} is required")
    return value


async def _get_owned(owner_id: int, tag_id: int, db: AsyncSession) -> Tag:
    tag = (await db.exec(select(Tag).where(Tag.id == tag_id, Tag.user_id == owner_id))).first()
    if tag is None:
        raise NotFoundError(f"Tag with id {tag_id} not found")
    return tag


async def _ensure_name_free(owner_id: int, name: str, db: AsyncSession, exclude_id: int | None = None):
    query = select(Tag.id).where(Tag.user_id == owner_id, Tag.name == name)
    existing = (await db.exec(query)).first()
    if existing is not None and existing != exclude_id:
        raise ConflictError("Tag name already exists")


class TagService:
    @staticmethod
    @translate_store_errors
    async def list_tags(owner_id: int, db: AsyncSession) -> list[TagRead]:
        query = (
            select(Tag)
            .where(Tag.user_id == owner_id)
            .order_by(col(Tag.created_at).desc(), col(Tag.id).desc())
        )
        return [TagRead.model_validate(tag) for tag in (await db.exec(query)).all()]

    @staticmethod
    @translate_store_errors
    async def get_tag(owner_id: int, tag_id: int, db: AsyncSession) -> TagRead:
        return TagRead.model_validate(await _get_owned(owner_id, tag_id, db))

    @staticmethod
    @translate_store_errors
    @async_cached_expire(owner_keys)
    async def create_tag(owner_id: int, tag_data: TagCreate, db: AsyncSession) -> TagRead:
        name = _required(tag_data.name, "name")
        color = _required(tag_data.color, "color")

        try:
            async with atomic(db):
                await _ensure_name_free(owner_id, name, db)
                tag = Tag(name=name, color=color, user_id=owner_id)
                db.add(tag)
        except IntegrityError as exc:
            raise ConflictError("Tag name already exists") from exc

        logger.info("Created tag %r for owner %s", name, owner_id)
        return TagRead.model_validate(tag)

    @staticmethod
    @translate_store_errors
    @async_cached_expire(owner_keys)
    async def update_tag(owner_id: int, tag_id: int, tag_data: TagUpdate, db: AsyncSession) -> TagRead:
        patch = tag_data.model_dump(exclude_unset=True)
        if "name" in patch:
            patch["name"] = _required(patch["name"], "name")
        if "color" in patch:
            patch["color"] = _required(patch["color"], "color")

        try:
            async with atomic(db):
                tag = await _get_owned(owner_id, tag_id, db)
                if "name" in patch:
                    await _ensure_name_free(owner_id, patch["name"], db, exclude_id=tag.id)
                tag.sqlmodel_update(patch)
                db.add(tag)
        except IntegrityError as exc:
            raise ConflictError("Tag name already exists") from exc

        return TagRead.model_validate(tag)

    @staticmethod
    @translate_store_errors
    @async_cached_expire(owner_keys)
    async def delete_tag(owner_id: int, tag_id: int, db: AsyncSession) -> TagRead:
        """Delete a tag and detach it from every task; the tasks themselves stay."""
        async with atomic(db):
            tag = await _get_owned(owner_id, tag_id, db)
            snapshot = TagRead.model_validate(tag)
            await db.exec(delete(TaskTagLink).where(col(TaskTagLink.tag_id) == tag_id))
            await db.delete(tag)

        logger.info("Deleted tag %s for owner %s", tag_id, owner_id)
        return snapshot
