from fastapi import APIRouter, status

from taskboard.dependencies import CurrentUserDep, DbDep
from taskboard.models import TagCreate, TagRead, TagUpdate
from taskboard.services.tag_service import TagService

router = APIRouter(prefix="/tags", tags=["tags"])


@router.get("/", response_model=list[TagRead])
async def list_tags(current_user: CurrentUserDep, db: DbDep):
    return await TagService.list_tags(current_user.id, db)


@router.get("/{tag_id}", response_model=TagRead)
async def get_tag(tag_id: int, current_user: CurrentUserDep, db: DbDep):
    return await TagService.get_tag(current_user.id, tag_id, db)


@router.post("/", response_model=TagRead, status_code=status.HTTP_201_CREATED)
async def create_tag(tag_data: TagCreate, current_user: CurrentUserDep, db: DbDep):
    return await TagService.create_tag(current_user.id, tag_data, db)


@router.put("/{tag_id}", response_model=TagRead)
async def update_tag(tag_id: int, tag_data: TagUpdate, current_user: CurrentUserDep, db: DbDep):
    return await TagService.update_tag(current_user.id, tag_id, tag_data, db)


@router.delete("/{tag_id}", response_model=TagRead)
async def delete_tag(tag_id: int, current_user: CurrentUserDep, db: DbDep):
    """Delete a tag; tasks that carried it keep their other tags"""
    return await TagService.delete_tag(current_user.id, tag_id, db)
