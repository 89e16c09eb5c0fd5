from fastapi import APIRouter, status

from taskboard.core.exceptions import ForbiddenError
from taskboard.dependencies import CurrentUserDep, DbDep
from taskboard.models import User, UserCreate, UserRead, UserUpdate
from taskboard.services.user_service import UserService

router = APIRouter(prefix="/users", tags=["users"])


def ensure_self(user_id: int, current_user: User) -> None:
    if user_id != current_user.id:
        raise ForbiddenError("You can only modify your own account")


@router.get("/", response_model=list[UserRead])
async def list_users(current_user: CurrentUserDep, db: DbDep):
    return await UserService.list_users(db)


@router.get("/{user_id}", response_model=UserRead)
async def get_user(user_id: int, current_user: CurrentUserDep, db: DbDep):
    return await UserService.get_user(user_id, db)


@router.post("/", response_model=UserRead, status_code=status.HTTP_201_CREATED)
async def create_user(user_data: UserCreate, current_user: CurrentUserDep, db: DbDep):
    return await UserService.create_user(user_data, db)


@router.put("/{user_id}", response_model=UserRead)
async def update_user(user_id: int, user_data: UserUpdate, current_user: CurrentUserDep, db: DbDep):
    ensure_self(user_id, current_user)
    return await UserService.update_user(user_id, user_data, db)


@router.delete("/{user_id}", response_model=UserRead)
async def delete_user(user_id: int, current_user: CurrentUserDep, db: DbDep):
    """Delete your own account together with its tags, tasks and refresh tokens"""
    ensure_self(user_id, current_user)
    return await UserService.delete_user(user_id, db)
