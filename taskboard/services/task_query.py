"""
Filter, sort and pagination clauses for listing an owner's tasks.

``build_conditions`` and ``build_ordering`` return plain SQLAlchemy clause lists
so the same predicates feed both the page query and the total-count query.
"""

from sqlalchemy import case, or_
from sqlmodel import col, select

from taskboard.core.exceptions import ValidationError
from taskboard.models import (
    Tag,
    Task,
    TaskFilters,
    TaskSort,
    TaskTagLink,
    PRIORITY_RANK,
    to_utc,
)

_DATE_FIELDS = {
    "created": Task.created_at,
    "updated": Task.updated_at,
    "completed": Task.completed_at,
}

_SORT_FIELDS = {
    "createdAt": Task.created_at,
    "updatedAt": Task.updated_at,
    "completedAt": Task.completed_at,
    "dueDate": Task.due_date,
    "order": Task.order_index,
}

priority_rank = case(
    *[(col(Task.priority) == priority, rank) for priority, rank in PRIORITY_RANK.items()],
    else_=0,
)


def build_conditions(owner_id: int, filters: TaskFilters | None = None) -> list:
    conditions = [col(Task.user_id) == owner_id]
    if filters is None:
        return conditions

    if filters.status:
        conditions.append(col(Task.status).in_(filters.status))

    if filters.priority:
        conditions.append(col(Task.priority).in_(filters.priority))

    if filters.tags:
        # any of the requested tags, scoped to the owner's tag namespace
        tagged = (
            select(TaskTagLink.task_id)
            .join(Tag, col(Tag.id) == col(TaskTagLink.tag_id))
            .where(col(Tag.user_id) == owner_id, col(Tag.name).in_(filters.tags))
        )
        conditions.append(col(Task.id).in_(tagged))

    if filters.keyword:
        keyword = filters.keyword.strip()
        if keyword:
            conditions.append(
                or_(
                    col(Task.title).icontains(keyword, autoescape=True),
                    col(Task.description).icontains(keyword, autoescape=True),
                )
            )

    if filters.date_range:
        date_range = filters.date_range
        column = col(_DATE_FIELDS[date_range.type])
        if date_range.type == "completed":
            conditions.append(column.is_not(None))
        if date_range.start:
            conditions.append(column >= to_utc(date_range.start))
        if date_range.end:
            conditions.append(column <= to_utc(date_range.end))

    return conditions


def build_ordering(sort: TaskSort | None = None) -> list:
    """
    ORDER BY clauses for a sort request, always ending with ``id`` for stable pages.

    A missing completed_at sorts as the smallest value, a missing due_date as
    the largest.
    """
    sort = sort or TaskSort()
    descending = sort.order == "desc"

    if sort.field == "priority":
        clauses = [priority_rank.desc() if descending else priority_rank.asc()]
    else:
        column = col(_SORT_FIELDS[sort.field])
        clauses = []
        if sort.field in ("completedAt", "dueDate"):
            is_null = case((column.is_(None), 1), else_=0)
            nulls_first = descending if sort.field == "dueDate" else not descending
            clauses.append(is_null.desc() if nulls_first else is_null.asc())
        clauses.append(column.desc() if descending else column.asc())

    clauses.append(col(Task.id).asc())
    return clauses


def page_bounds(page: int, size: int) -> tuple[int, int]:
    """Return (offset, limit) for a 1-indexed page."""
    if page < 1:
        raise ValidationError("Page must be 1 or greater")
    if size < 1:
        raise ValidationError("Size must be 1 or greater")
    return (page - 1) * size, size
