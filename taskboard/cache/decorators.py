from functools import wraps
from typing import Callable

from taskboard.cache.layer import cache_layer


def async_cached(key_builder: Callable[..., str], l2_ttl: int = None):
    """
    Decorator for async loaders. key_builder receives the same args/kwargs.
    Pydantic results are cached as their JSON-mode dump, so the wrapped
    function always returns plain data.
    Example:
      @async_cached(lambda owner_id, task_id, *_, **__: f"owner:{owner_id}:task:{task_id}")
      async def load_task(owner_id, task_id, db): ...
    """

    def decorator(fn: Callable):
        @wraps(fn)
        async def wrapper(*args, **kwargs):
            key = key_builder(*args, **kwargs)

            async def loader():
                value = await fn(*args, **kwargs)
                if value is None:
                    return None
                if hasattr(value, "model_dump"):
                    return value.model_dump(mode="json")
                return value

            return await cache_layer.get(key, loader=loader, l2_ttl=l2_ttl)

        return wrapper

    return decorator


def async_cached_expire(pattern_builder: Callable[..., str]):
    """
    Invalidate every key matching the built glob pattern once the wrapped
    mutation has finished, whether it succeeded or not.
    """

    def decorator(fn: Callable):
        @wraps(fn)
        async def wrapper(*args, **kwargs):
            pattern = pattern_builder(*args, **kwargs)
            try:
                return await fn(*args, **kwargs)
            finally:
                await cache_layer.delete_pattern(pattern)

        return wrapper

    return decorator


def owner_keys(owner_id: int, *_, **__) -> str:
    """Glob covering every cached value that belongs to one owner."""
    return f"owner:{owner_id}:*"
