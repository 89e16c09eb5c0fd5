from fastapi import APIRouter, status

from taskboard.dependencies import CurrentUserDep, DbDep
from taskboard.models import (
    AuthResponse,
    LoginRequest,
    LogoutRequest,
    RefreshRequest,
    RegisterRequest,
    TokenPair,
    UserRead,
    UserUpdate,
)
from taskboard.services.auth_service import AuthService
from taskboard.services.user_service import UserService

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def register(request: RegisterRequest, db: DbDep):
    return await AuthService.register(request, db)


@router.post("/login", response_model=AuthResponse)
async def login(request: LoginRequest, db: DbDep):
    return await AuthService.login(request, db)


@router.post("/refresh-token", response_model=TokenPair)
async def refresh_token(request: RefreshRequest, db: DbDep):
    """Exchange a refresh token for a new pair; the old one stops working"""
    return await AuthService.refresh(request.refresh_token, db)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(request: LogoutRequest, db: DbDep):
    await AuthService.logout(request, db)


@router.get("/profile", response_model=UserRead)
async def get_profile(current_user: CurrentUserDep):
    return UserRead.model_validate(current_user)


@router.put("/profile", response_model=UserRead)
async def update_profile(user_data: UserUpdate, current_user: CurrentUserDep, db: DbDep):
    return await UserService.update_user(current_user.id, user_data, db)
