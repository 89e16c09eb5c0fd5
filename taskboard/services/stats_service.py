from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import and_, case, func
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from taskboard.cache.decorators import async_cached
from taskboard.core.config import get_settings
from taskboard.core.exceptions import ValidationError, translate_store_errors
from taskboard.models import (
    CompletionRate,
    PriorityStats,
    Tag,
    TagCount,
    Task,
    TaskStats,
    TaskStatus,
    TaskTagLink,
    TimelineDay,
    get_utc_now,
    to_utc,
)

MAX_TIMELINE_DAYS = 365

_STATUS_KEYS = {
    TaskStatus.PENDING: "pending",
    TaskStatus.IN_PROGRESS: "in_progress",
    TaskStatus.COMPLETED: "completed",
}


def _count_where(*conditions):
    return func.coalesce(func.sum(case((and_(*conditions), 1), else_=0)), 0)


def _percent(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def _stats_zone():
    name = get_settings().stats_timezone
    return timezone.utc if name.upper() == "UTC" else ZoneInfo(name)


def _day_bounds(days: int, now: datetime | None = None):
    """(date, utc_start, utc_end) for each of the trailing ``days`` local days, oldest first."""
    zone = _stats_zone()
    today = (now or get_utc_now()).astimezone(zone).date()
    bounds = []
    for offset in range(days - 1, -1, -1):
        day = today - timedelta(days=offset)
        start = datetime.combine(day, time.min, tzinfo=zone)
        end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=zone)
        bounds.append((day, start.astimezone(timezone.utc), end.astimezone(timezone.utc)))
    return bounds


@async_cached(lambda owner_id, *_, **__: f"owner:{owner_id}:stats", l2_ttl=get_settings().stats_ttl_seconds)
async def _load_counts(owner_id: int, db: AsyncSession) -> TaskStats:
    """Status and tag counts; they only move on a mutation, which drops this entry."""
    owned = col(Task.user_id) == owner_id
    query = select(
        func.count(col(Task.id)),
        _count_where(col(Task.status) == TaskStatus.PENDING),
        _count_where(col(Task.status) == TaskStatus.IN_PROGRESS),
        _count_where(col(Task.status) == TaskStatus.COMPLETED),
    ).where(owned)
    total, pending, in_progress, completed = (await db.exec(query)).one()

    tag_count = func.count(col(TaskTagLink.id)).label("count")
    tag_query = (
        select(Tag.name, tag_count)
        .join(TaskTagLink, col(TaskTagLink.tag_id) == col(Tag.id))
        .join(Task, col(Task.id) == col(TaskTagLink.task_id))
        .where(owned)
        .group_by(col(Tag.id), col(Tag.name))
        .order_by(tag_count.desc(), col(Tag.name).asc())
    )
    tag_stats = [TagCount(tag=name, count=count) for name, count in (await db.exec(tag_query)).all()]

    return TaskStats(
        total=total,
        pending=pending,
        in_progress=in_progress,
        completed=completed,
        tag_stats=tag_stats,
    )


class StatsService:
    @staticmethod
    @translate_store_errors
    async def get_stats(owner_id: int, db: AsyncSession) -> TaskStats:
        stats = TaskStats.model_validate(await _load_counts(owner_id, db))
        # overdue depends on the clock, so it is never served from the cache
        overdue_query = select(func.count(col(Task.id))).where(
            Task.user_id == owner_id,
            col(Task.status) != TaskStatus.COMPLETED,
            col(Task.due_date).is_not(None),
            col(Task.due_date) < get_utc_now(),
        )
        stats.overdue = (await db.exec(overdue_query)).one()
        return stats

    @staticmethod
    @translate_store_errors
    async def get_priority_stats(owner_id: int, db: AsyncSession) -> PriorityStats:
        query = (
            select(Task.priority, Task.status, func.count(col(Task.id)))
            .where(Task.user_id == owner_id)
            .group_by(col(Task.priority), col(Task.status))
        )
        stats = PriorityStats()
        for priority, status, count in (await db.exec(query)).all():
            breakdown = getattr(stats, priority.value)
            breakdown.total += count
            setattr(breakdown, _STATUS_KEYS[status], count)
        return stats

    @staticmethod
    @translate_store_errors
    async def get_timeline(owner_id: int, db: AsyncSession, days: int = 7) -> list[TimelineDay]:
        """
        Per-day created / completed counts for the trailing ``days`` days, today included.

        Days run midnight to midnight in the configured stats timezone. All
        buckets come back from a single aggregate query.
        """
        if days < 1 or days > MAX_TIMELINE_DAYS:
            raise ValidationError(f"days must be between 1 and {MAX_TIMELINE_DAYS}")

        bounds = _day_bounds(days)
        columns = []
        for _, start, end in bounds:
            columns.append(_count_where(col(Task.created_at) >= start, col(Task.created_at) < end))
            columns.append(_count_where(col(Task.completed_at) >= start, col(Task.completed_at) < end))

        row = (await db.exec(select(*columns).where(Task.user_id == owner_id))).one()
        return [
            TimelineDay(date=day.isoformat(), created=row[2 * i], completed=row[2 * i + 1])
            for i, (day, _, _) in enumerate(bounds)
        ]

    @staticmethod
    @translate_store_errors
    async def get_completion_rate(owner_id: int, db: AsyncSession) -> CompletionRate:
        now = get_utc_now()
        week_ago = now - timedelta(days=7)
        month_ago = now - timedelta(days=30)
        done = col(Task.status) == TaskStatus.COMPLETED
        created = col(Task.created_at)

        query = select(
            func.count(col(Task.id)),
            _count_where(done),
            _count_where(created >= week_ago),
            _count_where(created >= week_ago, done),
            _count_where(created >= month_ago),
            _count_where(created >= month_ago, done),
        ).where(Task.user_id == owner_id)
        total, completed, week_total, week_done, month_total, month_done = (await db.exec(query)).one()

        durations_query = select(Task.created_at, Task.completed_at).where(
            Task.user_id == owner_id,
            col(Task.completed_at).is_not(None),
            col(Task.created_at).is_not(None),
        )
        durations = [
            (to_utc(completed_at) - to_utc(created_at)).total_seconds()
            for created_at, completed_at in (await db.exec(durations_query)).all()
        ]
        average_hours = sum(durations) / len(durations) / 3600 if durations else 0.0

        return CompletionRate(
            overall=_percent(completed, total),
            this_week=_percent(week_done, week_total),
            this_month=_percent(month_done, month_total),
            average_completion_time=round(average_hours, 2),
        )
