import asyncio
import time
from collections.abc import Callable
from functools import wraps
from typing import Any


def async_cache(ttl_seconds: int, cache_falsy: bool = True) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator for caching the result of an async function for `ttl_seconds`.

    Each unique combination of positional and keyword arguments gets its own entry. Exceptions
    are never cached. With `cache_falsy=False` empty results (e.g. "" from a contract read) are
    returned but re-fetched on the next call.

    The wrapper gains a `.clear_cache()` method that wipes everything.
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        cache: dict[tuple[tuple[Any, ...], tuple[tuple[str, Any], ...]], tuple[Any, float]] = {}
        lock = asyncio.Lock()

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            # `id(self)` keeps methods of different instances apart.
            if args and hasattr(args[0], "__dict__"):
                key_args = (id(args[0]),) + args[1:]
            else:
                key_args = args
            key = (key_args, tuple(sorted(kwargs.items())))

            now = time.monotonic()
            async with lock:
                cached = cache.get(key)
                if cached:
                    value, expires_at = cached
                    if now < expires_at:
                        return value
                    del cache[key]

            value = await func(*args, **kwargs)

            if value or cache_falsy:
                async with lock:
                    cache[key] = (value, now + ttl_seconds)
            return value

        def clear_cache() -> None:
            cache.clear()

        wrapper.clear_cache = clear_cache  # type: ignore[attr-defined]
        return wrapper

    return decorator


def mask_url(url: str) -> str:
    """Mask endpoint urls, used to redact api keys and private hosts in public logs."""
    if len(url) <= 12:
        return "***"
    return f"{url[:6]}***{url[-3:]}"
