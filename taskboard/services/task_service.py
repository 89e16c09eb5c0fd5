import logging
import random
from collections import defaultdict

from sqlalchemy import delete, func, update
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from taskboard.cache.decorators import async_cached, async_cached_expire, owner_keys
from taskboard.core.exceptions import NotFoundError, ValidationError, translate_store_errors
from taskboard.database import atomic
from taskboard.history import (
    DueDateChange,
    HistoryAction,
    HistoryRead,
    OrderChange,
    PriorityChange,
    StatusChange,
    TagsChange,
    TextChange,
    action_for,
    history_entry,
)
from taskboard.models import (
    BatchOperation,
    BatchResult,
    Tag,
    Task,
    TaskCreate,
    TaskFilters,
    TaskHistory,
    TaskPage,
    TaskRead,
    TaskSort,
    TaskStatus,
    TaskTagLink,
    TaskUpdate,
    get_utc_now,
    to_utc,
)
from taskboard.services.task_query import build_conditions, build_ordering, page_bounds

logger = logging.getLogger(__name__)

# Colours handed to tags created implicitly from a task's tag list
TAG_COLORS = ("#409EFF", "#67C23A", "#E6A23C", "#F56C6C", "#909399")

BATCH_ACTIONS = ("delete", "update")

_NOT_NULLABLE = ("title", "status", "priority", "tags")


def _to_read(task: Task, tags: list[str]) -> TaskRead:
    return TaskRead(
        id=task.id,
        title=task.title,
        description=task.description,
        status=task.status,
        priority=task.priority,
        tags=sorted(tags),
        due_date=to_utc(task.due_date),
        completed_at=to_utc(task.completed_at),
        created_at=to_utc(task.created_at),
        updated_at=to_utc(task.updated_at),
        order=task.order_index,
    )


def _clean_text(value: str | None) -> str | None:
    return value.strip() if value is not None else None


def _clean_tag_names(names: list[str]) -> list[str]:
    cleaned = []
    for name in names:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Tag names cannot be empty")
        if name not in cleaned:
            cleaned.append(name)
    return cleaned


def _validated_patch(task_data: TaskUpdate) -> dict:
    patch = task_data.model_dump(exclude_unset=True)
    for field in _NOT_NULLABLE:
        if field in patch and patch[field] is None:
            raise ValidationError(f"{field} cannot be null")
    if "title" in patch:
        patch["title"] = patch["title"].strip()
        if not patch["title"]:
            raise ValidationError("Title cannot be empty")
    if "tags" in patch:
        patch["tags"] = _clean_tag_names(patch["tags"])
    return patch


async def _get_owned(owner_id: int, task_id: int, db: AsyncSession) -> Task:
    query = (
        select(Task)
        .where(Task.id == task_id, Task.user_id == owner_id)
        .execution_options(populate_existing=True)
    )
    task = (await db.exec(query)).first()
    if task is None:
        raise NotFoundError(f"Task with id {task_id} not found")
    return task


async def _tag_names_by_task(task_ids: list[int], db: AsyncSession) -> dict[int, list[str]]:
    names: dict[int, list[str]] = defaultdict(list)
    if not task_ids:
        return names
    query = (
        select(TaskTagLink.task_id, Tag.name)
        .join(Tag, col(Tag.id) == col(TaskTagLink.tag_id))
        .where(col(TaskTagLink.task_id).in_(task_ids))
    )
    for task_id, name in (await db.exec(query)).all():
        names[task_id].append(name)
    return names


async def resolve_tag_ids(owner_id: int, names: list[str], db: AsyncSession) -> list[int]:
    """Look up the owner's tags by name, creating any that do not exist yet."""
    if not names:
        return []
    query = select(Tag).where(Tag.user_id == owner_id, col(Tag.name).in_(names))
    existing = {tag.name: tag for tag in (await db.exec(query)).all()}
    for name in names:
        if name not in existing:
            tag = Tag(name=name, color=random.choice(TAG_COLORS), user_id=owner_id)
            db.add(tag)
            existing[name] = tag
    await db.flush()
    return [existing[name].id for name in names]


async def _replace_links(task_id: int, tag_ids: list[int], db: AsyncSession):
    await db.exec(delete(TaskTagLink).where(col(TaskTagLink.task_id) == task_id))
    for tag_id in tag_ids:
        db.add(TaskTagLink(task_id=task_id, tag_id=tag_id))
    await db.flush()


async def _delete_tasks(task_ids: list[int], db: AsyncSession) -> int:
    """Delete tasks the caller has already confirmed exist, links and history first."""
    if not task_ids:
        return 0
    await db.exec(delete(TaskTagLink).where(col(TaskTagLink.task_id).in_(task_ids)))
    await db.exec(delete(TaskHistory).where(col(TaskHistory.task_id).in_(task_ids)))
    # fetch drops the deleted rows from the identity map so their ids can be reused
    await db.exec(
        delete(Task)
        .where(col(Task.id).in_(task_ids))
        .execution_options(synchronize_session="fetch")
    )
    return len(task_ids)


async def _apply_patch(
    owner_id: int,
    task: Task,
    patch: dict,
    db: AsyncSession,
    operator: str | None = None,
    batch: bool = False,
) -> list[str]:
    """
    Apply a validated sparse patch to a loaded task inside the caller's transaction.

    Writes one history record per field whose value actually changed and
    returns the task's tag names after the patch.
    """
    now = get_utc_now()
    changes = []

    if "title" in patch and patch["title"] != task.title:
        changes.append(TextChange(field="title", old_value=task.title, new_value=patch["title"]))
        task.title = patch["title"]

    if "description" in patch:
        description = _clean_text(patch["description"])
        if description != task.description:
            changes.append(
                TextChange(field="description", old_value=task.description, new_value=description)
            )
            task.description = description

    if "status" in patch:
        status = patch["status"]
        if status != task.status:
            changes.append(StatusChange(old_value=task.status, new_value=status))
            task.status = status
        if status == TaskStatus.COMPLETED:
            if task.completed_at is None:
                task.completed_at = now
        else:
            task.completed_at = None

    if "priority" in patch and patch["priority"] != task.priority:
        changes.append(PriorityChange(old_value=task.priority, new_value=patch["priority"]))
        task.priority = patch["priority"]

    if "due_date" in patch:
        due_date = to_utc(patch["due_date"])
        if due_date != to_utc(task.due_date):
            changes.append(DueDateChange(old_value=to_utc(task.due_date), new_value=due_date))
            task.due_date = due_date

    tag_names = (await _tag_names_by_task([task.id], db))[task.id]
    if "tags" in patch and set(patch["tags"]) != set(tag_names):
        tag_ids = await resolve_tag_ids(owner_id, patch["tags"], db)
        await _replace_links(task.id, tag_ids, db)
        changes.append(TagsChange(old_value=sorted(tag_names), new_value=sorted(patch["tags"])))
        tag_names = patch["tags"]

    if changes:
        task.updated_at = now
        db.add(task)
        for change in changes:
            change.batch_operation = batch
            db.add(history_entry(task.id, action_for(change), change, operator))

    return tag_names


async def _bulk_set_status(
    task_ids: list[int], status: TaskStatus, db: AsyncSession, operator: str | None = None
) -> int:
    if not task_ids:
        return 0
    previous = dict((await db.exec(select(Task.id, Task.status).where(col(Task.id).in_(task_ids)))).all())
    # rows already in the target status are matched but left untouched
    changed = [task_id for task_id in task_ids if previous.get(task_id) != status]
    if changed:
        now = get_utc_now()
        completed_at = now if status == TaskStatus.COMPLETED else None
        await db.exec(
            update(Task)
            .where(col(Task.id).in_(changed))
            .values(status=status, updated_at=now, completed_at=completed_at)
        )

    for task_id in changed:
        change = StatusChange(old_value=previous[task_id], new_value=status, batch_operation=True)
        db.add(history_entry(task_id, action_for(change), change, operator))
    return len(task_ids)


@async_cached(lambda owner_id, task_id, *_, **__: f"owner:{owner_id}:task:{task_id}", l2_ttl=120)
async def _load_task(owner_id: int, task_id: int, db: AsyncSession):
    query = (
        select(Task)
        .where(Task.id == task_id, Task.user_id == owner_id)
        .execution_options(populate_existing=True)
    )
    task = (await db.exec(query)).first()
    if task is None:
        return None
    tags = await _tag_names_by_task([task.id], db)
    return _to_read(task, tags[task.id])


class TaskService:
    @staticmethod
    @translate_store_errors
    async def list_tasks(
        owner_id: int,
        db: AsyncSession,
        filters: TaskFilters | None = None,
        sort: TaskSort | None = None,
        page: int = 1,
        size: int = 10,
    ) -> TaskPage:
        offset, limit = page_bounds(page, size)
        conditions = build_conditions(owner_id, filters)

        total = (await db.exec(select(func.count()).select_from(Task).where(*conditions))).one()

        query = (
            select(Task)
            .where(*conditions)
            .order_by(*build_ordering(sort))
            .offset(offset)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        tasks = (await db.exec(query)).all()
        tags = await _tag_names_by_task([task.id for task in tasks], db)

        return TaskPage(
            items=[_to_read(task, tags[task.id]) for task in tasks],
            total=total,
            page=page,
            size=size,
        )

    @staticmethod
    @translate_store_errors
    async def get_task(owner_id: int, task_id: int, db: AsyncSession) -> TaskRead:
        data = await _load_task(owner_id, task_id, db)
        if data is None:
            raise NotFoundError(f"Task with id {task_id} not found")
        return TaskRead.model_validate(data)

    @staticmethod
    @translate_store_errors
    async def get_history(owner_id: int, task_id: int, db: AsyncSession) -> list[HistoryRead]:
        await _get_owned(owner_id, task_id, db)
        query = (
            select(TaskHistory)
            .where(TaskHistory.task_id == task_id)
            .order_by(col(TaskHistory.timestamp).desc(), col(TaskHistory.id).desc())
        )
        return [HistoryRead.from_row(row) for row in (await db.exec(query)).all()]

    @staticmethod
    @translate_store_errors
    @async_cached_expire(owner_keys)
    async def create_task(
        owner_id: int, task_data: TaskCreate, db: AsyncSession, operator: str | None = None
    ) -> TaskRead:
        title = (task_data.title or "").strip()
        if not title:
            raise ValidationError("Title is required")
        tag_names = _clean_tag_names(task_data.tags)

        async with atomic(db):
            max_order = (
                await db.exec(select(func.max(Task.order_index)).where(Task.user_id == owner_id))
            ).one()
            task = Task(
                title=title,
                description=_clean_text(task_data.description),
                priority=task_data.priority,
                due_date=to_utc(task_data.due_date),
                user_id=owner_id,
                order_index=(max_order or 0) + 1,
            )
            db.add(task)
            await db.flush()

            if tag_names:
                tag_ids = await resolve_tag_ids(owner_id, tag_names, db)
                await _replace_links(task.id, tag_ids, db)

            db.add(history_entry(task.id, HistoryAction.CREATE, operator=operator))

        logger.info("Created task %s for owner %s", task.id, owner_id)
        return _to_read(task, tag_names)

    @staticmethod
    @translate_store_errors
    @async_cached_expire(owner_keys)
    async def update_task(
        owner_id: int,
        task_id: int,
        task_data: TaskUpdate,
        db: AsyncSession,
        operator: str | None = None,
    ) -> TaskRead:
        patch = _validated_patch(task_data)

        async with atomic(db):
            task = await _get_owned(owner_id, task_id, db)
            tag_names = await _apply_patch(owner_id, task, patch, db, operator)

        return _to_read(task, tag_names)

    @staticmethod
    @translate_store_errors
    @async_cached_expire(owner_keys)
    async def delete_task(owner_id: int, task_id: int, db: AsyncSession) -> TaskRead:
        async with atomic(db):
            task = await _get_owned(owner_id, task_id, db)
            snapshot = _to_read(task, (await _tag_names_by_task([task.id], db))[task.id])
            await _delete_tasks([task.id], db)

        logger.info("Deleted task %s for owner %s", task_id, owner_id)
        return snapshot

    @staticmethod
    @translate_store_errors
    @async_cached_expire(owner_keys)
    async def batch_mutate(
        owner_id: int, operation: BatchOperation, db: AsyncSession, operator: str | None = None
    ) -> BatchResult:
        if operation.action not in BATCH_ACTIONS:
            raise ValidationError(f"Invalid action type: {operation.action}")
        ids = list(dict.fromkeys(operation.ids))
        if not ids:
            raise ValidationError("ids must contain at least one task id")

        patch = None
        if operation.action == "update":
            if operation.data is None:
                raise ValidationError("Update data is required for batch update")
            patch = _validated_patch(operation.data)
            if not patch:
                raise ValidationError("Update data is required for batch update")

        async with atomic(db):
            owned_query = select(Task.id).where(Task.user_id == owner_id, col(Task.id).in_(ids))
            owned = list((await db.exec(owned_query)).all())

            if operation.action == "delete":
                affected = await _delete_tasks(owned, db)
            elif set(patch) == {"status"}:
                affected = await _bulk_set_status(owned, patch["status"], db, operator)
            else:
                affected = 0
                for task_id in owned:
                    task = await _get_owned(owner_id, task_id, db)
                    await _apply_patch(owner_id, task, patch, db, operator, batch=True)
                    affected += 1

        logger.info(
            "Batch %s for owner %s: %d of %d ids affected", operation.action, owner_id, affected, len(ids)
        )
        return BatchResult(affected=affected)

    @staticmethod
    @translate_store_errors
    @async_cached_expire(owner_keys)
    async def reorder_tasks(
        owner_id: int, task_ids: list[int], db: AsyncSession, operator: str | None = None
    ) -> None:
        """
        Give the listed tasks order 1..k in the given sequence.

        The owner's other tasks keep their relative order after them, so order
        indices stay unique and dense. Either every assignment lands or none does.
        """
        if not task_ids:
            raise ValidationError("task_ids must contain at least one task id")
        if len(set(task_ids)) != len(task_ids):
            raise ValidationError("task_ids must not contain duplicates")

        async with atomic(db):
            query = (
                select(Task)
                .where(Task.user_id == owner_id)
                .order_by(col(Task.order_index).asc(), col(Task.id).asc())
                .execution_options(populate_existing=True)
            )
            tasks = (await db.exec(query)).all()
            by_id = {task.id: task for task in tasks}
            missing = [task_id for task_id in task_ids if task_id not in by_id]
            if missing:
                raise NotFoundError(f"Tasks not found: {', '.join(map(str, missing))}")

            listed = set(task_ids)
            sequence = [by_id[task_id] for task_id in task_ids]
            sequence += [task for task in tasks if task.id not in listed]

            now = get_utc_now()
            for position, task in enumerate(sequence, start=1):
                previous = task.order_index
                task.order_index = position
                if task.id in listed:
                    task.updated_at = now
                    change = OrderChange(old_value=previous, new_value=position)
                    db.add(history_entry(task.id, HistoryAction.UPDATE_ORDER, change, operator))
                db.add(task)

        logger.info("Reordered %d tasks for owner %s", len(task_ids), owner_id)
