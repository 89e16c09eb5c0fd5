from datetime import datetime, timedelta, timezone

import pytest

from taskboard.core.exceptions import ValidationError
from taskboard.models import Task, TaskCreate, TaskPriority, TaskStatus, TaskUpdate
from taskboard.services import stats_service
from taskboard.services.stats_service import StatsService
from taskboard.services.task_service import TaskService


async def create(db, owner, title, status=None, **kwargs):
    task = await TaskService.create_task(owner.id, TaskCreate(title=title, **kwargs), db)
    if status is not None:
        task = await TaskService.update_task(owner.id, task.id, TaskUpdate(status=status), db)
    return task


async def test_stats_for_an_owner_without_tasks_are_zero(db, owner):
    stats = await StatsService.get_stats(owner.id, db)

    assert (stats.total, stats.pending, stats.in_progress, stats.completed, stats.overdue) == (0, 0, 0, 0, 0)
    assert stats.tag_stats == []

    rate = await StatsService.get_completion_rate(owner.id, db)
    assert (rate.overall, rate.this_week, rate.this_month, rate.average_completion_time) == (0, 0, 0, 0)


async def test_status_counts_and_overdue(db, owner, other_owner):
    past = datetime.now(timezone.utc) - timedelta(days=1)
    await create(db, owner, "late", due_date=past)
    await create(db, owner, "late but done", status=TaskStatus.COMPLETED, due_date=past)
    await create(db, owner, "busy", status=TaskStatus.IN_PROGRESS)
    await create(db, owner, "future", due_date=datetime.now(timezone.utc) + timedelta(days=3))
    await create(db, other_owner, "foreign", due_date=past)

    stats = await StatsService.get_stats(owner.id, db)

    assert stats.total == 4
    assert stats.pending == 2
    assert stats.in_progress == 1
    assert stats.completed == 1
    assert stats.overdue == 1
    assert stats.pending + stats.in_progress + stats.completed == stats.total


async def test_tag_stats_are_ordered_by_usage_then_name(db, owner):
    await create(db, owner, "a", tags=["work", "urgent"])
    await create(db, owner, "b", tags=["work", "home"])
    await create(db, owner, "c", tags=["work"])

    stats = await StatsService.get_stats(owner.id, db)

    assert [(item.tag, item.count) for item in stats.tag_stats] == [
        ("work", 3),
        ("home", 1),
        ("urgent", 1),
    ]


async def test_stats_refresh_after_a_mutation(db, owner):
    task = await create(db, owner, "a")
    assert (await StatsService.get_stats(owner.id, db)).pending == 1

    await TaskService.update_task(owner.id, task.id, TaskUpdate(status=TaskStatus.COMPLETED), db)

    stats = await StatsService.get_stats(owner.id, db)
    assert (stats.pending, stats.completed) == (0, 1)


async def test_priority_stats_break_down_by_status(db, owner):
    await create(db, owner, "h1", priority=TaskPriority.HIGH)
    await create(db, owner, "h2", priority=TaskPriority.HIGH, status=TaskStatus.COMPLETED)
    await create(db, owner, "l1", priority=TaskPriority.LOW, status=TaskStatus.IN_PROGRESS)

    stats = await StatsService.get_priority_stats(owner.id, db)

    assert stats.high.model_dump() == {"total": 2, "pending": 1, "in_progress": 0, "completed": 1}
    assert stats.medium.model_dump() == {"total": 0, "pending": 0, "in_progress": 0, "completed": 0}
    assert stats.low.model_dump() == {"total": 1, "pending": 0, "in_progress": 1, "completed": 0}


async def test_timeline_buckets_trailing_days(db, owner):
    now = datetime.now(timezone.utc)
    old = await create(db, owner, "old", status=TaskStatus.COMPLETED)
    await create(db, owner, "today")
    row = await db.get(Task, old.id)
    row.created_at = now - timedelta(days=2)
    db.add(row)
    await db.commit()

    timeline = await StatsService.get_timeline(owner.id, db, days=3)

    assert [day.date for day in timeline] == [
        (now.date() - timedelta(days=offset)).isoformat() for offset in (2, 1, 0)
    ]
    assert [(day.created, day.completed) for day in timeline] == [(1, 0), (0, 0), (1, 1)]


async def test_timeline_ignores_tasks_outside_the_window(db, owner):
    task = await create(db, owner, "ancient")
    row = await db.get(Task, task.id)
    row.created_at = datetime.now(timezone.utc) - timedelta(days=30)
    db.add(row)
    await db.commit()

    timeline = await StatsService.get_timeline(owner.id, db, days=7)

    assert len(timeline) == 7
    assert sum(day.created for day in timeline) == 0


@pytest.mark.parametrize("days", [0, -1, 366])
async def test_timeline_rejects_out_of_range_days(db, owner, days):
    with pytest.raises(ValidationError):
        await StatsService.get_timeline(owner.id, db, days=days)


async def test_completion_rate(db, owner):
    now = datetime.now(timezone.utc)
    done = await create(db, owner, "done", status=TaskStatus.COMPLETED)
    await create(db, owner, "open")
    old = await create(db, owner, "old done", status=TaskStatus.COMPLETED)
    old_open = await create(db, owner, "old open")

    # the "old" tasks were created 10 days ago; "old done" took 2 hours
    row = await db.get(Task, old.id)
    row.created_at = now - timedelta(days=10)
    row.completed_at = now - timedelta(days=10) + timedelta(hours=2)
    db.add(row)
    row = await db.get(Task, old_open.id)
    row.created_at = now - timedelta(days=10)
    db.add(row)
    row = await db.get(Task, done.id)
    row.created_at = now - timedelta(hours=4)
    row.completed_at = now
    db.add(row)
    await db.commit()

    rate = await StatsService.get_completion_rate(owner.id, db)

    assert rate.overall == 50.0
    # last 7 days: "done" and "open" created, "done" completed
    assert rate.this_week == 50.0
    # last 30 days: all four created, two completed
    assert rate.this_month == 50.0
    assert rate.average_completion_time == 3.0


async def test_overdue_follows_the_clock_between_cached_reads(db, owner, monkeypatch):
    now = datetime.now(timezone.utc)
    await create(db, owner, "due soon", due_date=now + timedelta(hours=1))
    assert (await StatsService.get_stats(owner.id, db)).overdue == 0

    monkeypatch.setattr(stats_service, "get_utc_now", lambda: now + timedelta(hours=2))

    stats = await StatsService.get_stats(owner.id, db)
    assert stats.overdue == 1
    assert stats.pending == 1
