from fastapi import APIRouter, Query

from taskboard.dependencies import CurrentUserDep, DbDep
from taskboard.models import CompletionRate, PriorityStats, TaskStats, TimelineDay
from taskboard.services.stats_service import MAX_TIMELINE_DAYS, StatsService

router = APIRouter(prefix="/stats", tags=["stats"])


@router.get("/", response_model=TaskStats)
async def get_stats(current_user: CurrentUserDep, db: DbDep):
    """Status counts, overdue count and per-tag usage for the caller's tasks"""
    return await StatsService.get_stats(current_user.id, db)


@router.get("/priority", response_model=PriorityStats)
async def get_priority_stats(current_user: CurrentUserDep, db: DbDep):
    return await StatsService.get_priority_stats(current_user.id, db)


@router.get("/timeline", response_model=list[TimelineDay])
async def get_timeline(
    current_user: CurrentUserDep,
    db: DbDep,
    days: int = Query(default=7, ge=1, le=MAX_TIMELINE_DAYS),
):
    return await StatsService.get_timeline(current_user.id, db, days)


@router.get("/completion-rate", response_model=CompletionRate)
async def get_completion_rate(current_user: CurrentUserDep, db: DbDep):
    return await StatsService.get_completion_rate(current_user.id, db)
