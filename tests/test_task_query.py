from datetime import datetime, timedelta, timezone

import pytest

from taskboard.core.exceptions import ValidationError
from taskboard.models import (
    DateRange,
    Task,
    TaskCreate,
    TaskFilters,
    TaskPriority,
    TaskSort,
    TaskStatus,
    TaskUpdate,
)
from taskboard.services.task_service import TaskService


async def create(db, owner, title, **kwargs):
    return await TaskService.create_task(owner.id, TaskCreate(title=title, **kwargs), db)


async def titles(db, owner, **kwargs):
    page = await TaskService.list_tasks(owner.id, db, **kwargs)
    return [item.title for item in page.items]


async def test_default_listing_follows_order(db, owner):
    for title in ("first", "second", "third"):
        await create(db, owner, title)

    page = await TaskService.list_tasks(owner.id, db)

    assert [item.title for item in page.items] == ["first", "second", "third"]
    assert [item.order for item in page.items] == [1, 2, 3]
    assert page.total == 3
    assert (page.page, page.size) == (1, 10)


async def test_listing_only_returns_callers_tasks(db, owner, other_owner):
    await create(db, owner, "mine")
    await create(db, other_owner, "theirs")

    assert await titles(db, owner) == ["mine"]
    assert await titles(db, other_owner) == ["theirs"]


async def test_status_and_priority_filters_are_anded(db, owner):
    a = await create(db, owner, "a", priority=TaskPriority.HIGH)
    await create(db, owner, "b", priority=TaskPriority.HIGH)
    c = await create(db, owner, "c", priority=TaskPriority.LOW)
    await TaskService.update_task(owner.id, a.id, TaskUpdate(status=TaskStatus.COMPLETED), db)
    await TaskService.update_task(owner.id, c.id, TaskUpdate(status=TaskStatus.COMPLETED), db)

    filters = TaskFilters(status=[TaskStatus.COMPLETED], priority=[TaskPriority.HIGH])
    assert await titles(db, owner, filters=filters) == ["a"]

    filters = TaskFilters(status=[TaskStatus.COMPLETED, TaskStatus.PENDING])
    assert await titles(db, owner, filters=filters) == ["a", "b", "c"]


async def test_tag_filter_matches_any_requested_tag(db, owner, other_owner):
    await create(db, owner, "work only", tags=["work"])
    await create(db, owner, "home only", tags=["home"])
    await create(db, owner, "both", tags=["work", "home"])
    await create(db, owner, "untagged")
    await create(db, other_owner, "foreign work", tags=["work"])

    assert await titles(db, owner, filters=TaskFilters(tags=["work"])) == ["work only", "both"]
    assert await titles(db, owner, filters=TaskFilters(tags=["work", "home"])) == [
        "work only",
        "home only",
        "both",
    ]
    assert await titles(db, owner, filters=TaskFilters(tags=["missing"])) == []


async def test_keyword_searches_title_and_description_case_insensitively(db, owner):
    await create(db, owner, "Buy MILK")
    await create(db, owner, "errand", description="pick up milk on the way")
    await create(db, owner, "unrelated")

    assert await titles(db, owner, filters=TaskFilters(keyword="milk")) == ["Buy MILK", "errand"]


async def test_keyword_wildcards_are_literal(db, owner):
    await create(db, owner, "100% done")
    await create(db, owner, "1000 done")

    assert await titles(db, owner, filters=TaskFilters(keyword="0%")) == ["100% done"]
    assert await titles(db, owner, filters=TaskFilters(keyword="_")) == []


async def test_completed_date_range_excludes_open_tasks(db, owner):
    done = await create(db, owner, "done")
    await create(db, owner, "open")
    await TaskService.update_task(owner.id, done.id, TaskUpdate(status=TaskStatus.COMPLETED), db)

    now = datetime.now(timezone.utc)
    filters = TaskFilters(date_range=DateRange(type="completed", start=now - timedelta(hours=1)))
    assert await titles(db, owner, filters=filters) == ["done"]

    filters = TaskFilters(date_range=DateRange(type="completed"))
    assert await titles(db, owner, filters=filters) == ["done"]


async def test_created_date_range_bounds_are_inclusive(db, owner):
    tasks = [await create(db, owner, f"t{i}") for i in range(3)]
    base = datetime(2024, 5, 1, tzinfo=timezone.utc)
    for offset, read in enumerate(tasks):
        row = await db.get(Task, read.id)
        row.created_at = base + timedelta(days=offset)
        db.add(row)
    await db.commit()

    filters = TaskFilters(
        date_range=DateRange(type="created", start=base, end=base + timedelta(days=1))
    )
    assert await titles(db, owner, filters=filters) == ["t0", "t1"]


async def test_priority_sort_uses_rank_with_id_tiebreak(db, owner):
    await create(db, owner, "low", priority=TaskPriority.LOW)
    await create(db, owner, "high-1", priority=TaskPriority.HIGH)
    await create(db, owner, "medium", priority=TaskPriority.MEDIUM)
    await create(db, owner, "high-2", priority=TaskPriority.HIGH)

    desc = await titles(db, owner, sort=TaskSort(field="priority", order="desc"))
    assert desc == ["high-1", "high-2", "medium", "low"]

    asc = await titles(db, owner, sort=TaskSort(field="priority", order="asc"))
    assert asc == ["low", "medium", "high-1", "high-2"]


async def test_missing_due_date_sorts_as_latest(db, owner):
    now = datetime.now(timezone.utc)
    await create(db, owner, "no due")
    await create(db, owner, "later", due_date=now + timedelta(days=2))
    await create(db, owner, "sooner", due_date=now + timedelta(days=1))

    assert await titles(db, owner, sort=TaskSort(field="dueDate", order="asc")) == [
        "sooner",
        "later",
        "no due",
    ]
    assert await titles(db, owner, sort=TaskSort(field="dueDate", order="desc")) == [
        "no due",
        "later",
        "sooner",
    ]


async def test_missing_completed_at_sorts_as_earliest(db, owner):
    first = await create(db, owner, "first done")
    await create(db, owner, "open")
    second = await create(db, owner, "second done")
    await TaskService.update_task(owner.id, first.id, TaskUpdate(status=TaskStatus.COMPLETED), db)
    await TaskService.update_task(owner.id, second.id, TaskUpdate(status=TaskStatus.COMPLETED), db)

    assert await titles(db, owner, sort=TaskSort(field="completedAt", order="asc")) == [
        "open",
        "first done",
        "second done",
    ]
    assert await titles(db, owner, sort=TaskSort(field="completedAt", order="desc")) == [
        "second done",
        "first done",
        "open",
    ]


async def test_pagination_reports_filtered_total(db, owner):
    for i in range(7):
        await create(db, owner, f"task {i}", priority=TaskPriority.HIGH if i % 2 else TaskPriority.LOW)

    page = await TaskService.list_tasks(owner.id, db, page=2, size=3)
    assert [item.title for item in page.items] == ["task 3", "task 4", "task 5"]
    assert page.total == 7

    page = await TaskService.list_tasks(owner.id, db, page=3, size=3)
    assert [item.title for item in page.items] == ["task 6"]

    filtered = await TaskService.list_tasks(
        owner.id, db, filters=TaskFilters(priority=[TaskPriority.HIGH]), page=1, size=2
    )
    assert filtered.total == 3
    assert len(filtered.items) == 2

    beyond = await TaskService.list_tasks(owner.id, db, page=10, size=3)
    assert beyond.items == []
    assert beyond.total == 7


@pytest.mark.parametrize("page,size", [(0, 10), (1, 0), (-1, 5)])
async def test_invalid_page_bounds_are_rejected(db, owner, page, size):
    with pytest.raises(ValidationError):
        await TaskService.list_tasks(owner.id, db, page=page, size=size)


async def test_listed_tasks_carry_their_tag_names(db, owner):
    await create(db, owner, "tagged", tags=["b", "a"])

    page = await TaskService.list_tasks(owner.id, db)
    assert page.items[0].tags == ["a", "b"]
