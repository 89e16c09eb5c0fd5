from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlmodel.ext.asyncio.session import AsyncSession
from typing_extensions import Annotated

from taskboard.core.exceptions import AuthenticationError
from taskboard.database import get_db
from taskboard.models import User
from taskboard.services.auth_service import AuthService

bearer_scheme = HTTPBearer(auto_error=False)

DbDep = Annotated[AsyncSession, Depends(get_db)]


async def get_current_user(
    db: DbDep,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> User:
    """Resolve the bearer token on the request to its user."""
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Authentication required")
    return await AuthService.resolve_user(credentials.credentials, db)


CurrentUserDep = Annotated[User, Depends(get_current_user)]
