import logging
from functools import wraps
from typing import Callable

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base class for errors the HTTP layer turns into a client response."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(AppError):
    """Malformed or missing input, detected before touching the store."""

    status_code = status.HTTP_400_BAD_REQUEST


class AuthenticationError(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED


class ForbiddenError(AppError):
    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(AppError):
    status_code = status.HTTP_404_NOT_FOUND


class ConflictError(AppError):
    status_code = status.HTTP_409_CONFLICT


class StoreError(AppError):
    """Persistence failure. The message is generic; the cause is only logged."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message)


def translate_store_errors(fn: Callable):
    """
    Wrap an async service operation so SQLAlchemy failures surface as StoreError.

    Typed AppErrors pass through untouched.
    """

    @wraps(fn)
    async def wrapper(*args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except SQLAlchemyError as exc:
            logger.exception("Store failure in %s: %s", fn.__qualname__, exc)
            raise StoreError() from exc

    return wrapper


async def app_error_handler(request: Request, exc: AppError):
    if isinstance(exc, StoreError):
        logger.error("%s %s failed with an internal error", request.method, request.url.path)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
