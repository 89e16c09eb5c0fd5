from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Query, status

from taskboard.core.config import SettingsDep
from taskboard.core.exceptions import ValidationError
from taskboard.dependencies import CurrentUserDep, DbDep
from taskboard.history import HistoryRead
from taskboard.models import (
    BatchOperation,
    BatchResult,
    DateRange,
    ReorderRequest,
    TaskCreate,
    TaskFilters,
    TaskPage,
    TaskPriority,
    TaskRead,
    TaskSort,
    TaskStatus,
    TaskUpdate,
)
from taskboard.services.task_service import TaskService

router = APIRouter(prefix="/tasks", tags=["tasks"])


@router.get("/", response_model=TaskPage)
async def list_tasks(
    current_user: CurrentUserDep,
    db: DbDep,
    settings: SettingsDep,
    page: int = Query(default=1, ge=1),
    size: int | None = Query(default=None, ge=1),
    status_filter: list[TaskStatus] | None = Query(default=None, alias="status"),
    priority: list[TaskPriority] | None = Query(default=None),
    tags: list[str] | None = Query(default=None),
    keyword: str | None = None,
    date_type: Literal["created", "updated", "completed"] | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    sort_field: Literal["priority", "createdAt", "updatedAt", "completedAt", "dueDate", "order"] = Query(
        default="order", alias="sortField"
    ),
    sort_order: Literal["asc", "desc"] = Query(default="asc", alias="sortOrder"),
):
    """List the caller's tasks, filtered, sorted and paginated"""
    size = size or settings.default_page_size
    if size > settings.max_page_size:
        raise ValidationError(f"size must not exceed {settings.max_page_size}")

    date_range = None
    if date_type or start or end:
        date_range = DateRange(type=date_type or "created", start=start, end=end)

    filters = TaskFilters(
        status=status_filter,
        priority=priority,
        tags=tags,
        keyword=keyword,
        date_range=date_range,
    )
    sort = TaskSort(field=sort_field, order=sort_order)
    return await TaskService.list_tasks(current_user.id, db, filters, sort, page, size)


@router.post("/", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
async def create_task(task_data: TaskCreate, current_user: CurrentUserDep, db: DbDep):
    """Create a new task"""
    return await TaskService.create_task(current_user.id, task_data, db, operator=current_user.name)


@router.post("/batch", response_model=BatchResult)
async def batch_tasks(operation: BatchOperation, current_user: CurrentUserDep, db: DbDep):
    """Delete or update several tasks at once; unknown ids are skipped"""
    return await TaskService.batch_mutate(current_user.id, operation, db, operator=current_user.name)


@router.post("/reorder", status_code=status.HTTP_204_NO_CONTENT)
async def reorder_tasks(request: ReorderRequest, current_user: CurrentUserDep, db: DbDep):
    await TaskService.reorder_tasks(current_user.id, request.task_ids, db, operator=current_user.name)


@router.get("/{task_id}", response_model=TaskRead)
async def get_task(task_id: int, current_user: CurrentUserDep, db: DbDep):
    """Get a specific task by ID"""
    return await TaskService.get_task(current_user.id, task_id, db)


@router.get("/{task_id}/history", response_model=list[HistoryRead])
async def get_task_history(task_id: int, current_user: CurrentUserDep, db: DbDep):
    return await TaskService.get_history(current_user.id, task_id, db)


@router.put("/{task_id}", response_model=TaskRead)
async def update_task(task_id: int, task_data: TaskUpdate, current_user: CurrentUserDep, db: DbDep):
    """Apply a partial update; fields left out of the body stay unchanged"""
    return await TaskService.update_task(current_user.id, task_id, task_data, db, operator=current_user.name)


@router.delete("/{task_id}", response_model=TaskRead)
async def delete_task(task_id: int, current_user: CurrentUserDep, db: DbDep):
    """Delete a task and return it as it was"""
    return await TaskService.delete_task(current_user.id, task_id, db)
