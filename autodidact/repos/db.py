"""Database connection pool management.

Wraps the asyncpg pool so that a query hitting a connection the server
already dropped (idle reaper, Postgres restart) is retried on a fresh one
instead of failing the task.
"""

import asyncio
import logging
from typing import Any

import asyncpg

from autodidact.config import settings

logger = logging.getLogger(__name__)

# Exceptions that mean "the connection died, retry with a fresh one"
_RETRY_EXCEPTIONS = (
    asyncpg.ConnectionDoesNotExistError,
    asyncpg.InterfaceError,
    ConnectionResetError,
    OSError,
)

_MAX_RETRIES = 3


class _ResilientPool:
    """Proxy for :class:`asyncpg.Pool` that retries on dead connections.

    ``fetch``, ``fetchrow``, ``fetchval`` and ``execute`` are retried; any
    other attribute goes straight to the underlying pool.
    """

    __slots__ = ("_pool",)

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def fetch(self, query: str, *args: Any, **kw: Any) -> list:
        return await self._retry(self._pool.fetch, query, *args, **kw)

    async def fetchrow(self, query: str, *args: Any, **kw: Any):
        return await self._retry(self._pool.fetchrow, query, *args, **kw)

    async def fetchval(self, query: str, *args: Any, **kw: Any):
        return await self._retry(self._pool.fetchval, query, *args, **kw)

    async def execute(self, query: str, *args: Any, **kw: Any) -> str:
        return await self._retry(self._pool.execute, query, *args, **kw)

    @staticmethod
    async def _retry(func, *args: Any, **kw: Any):
        for attempt in range(_MAX_RETRIES + 1):
            try:
                return await func(*args, **kw)
            except _RETRY_EXCEPTIONS as exc:
                if attempt >= _MAX_RETRIES:
                    # The pool itself is poisoned; rebuild it on next use.
                    _invalidate_pool()
                    raise
                wait = min(0.5 * (2 ** attempt), 5.0)
                logger.warning(
                    "DB connection lost (attempt %d/%d): %s, retrying in %.1fs",
                    attempt + 1, _MAX_RETRIES + 1, exc, wait,
                )
                await asyncio.sleep(wait)
        raise AssertionError("unreachable")  # pragma: no cover

    def __getattr__(self, name: str):
        return getattr(self._pool, name)


_pool: asyncpg.Pool | None = None
_pool_loop: asyncio.AbstractEventLoop | None = None
_wrapper: _ResilientPool | None = None


def _invalidate_pool() -> None:
    global _pool, _wrapper
    _pool = None
    _wrapper = None


async def get_pool() -> _ResilientPool:
    """Get or create the connection pool.

    A pool created on a different event loop (test suites) is discarded.
    """
    global _pool, _pool_loop, _wrapper
    loop = asyncio.get_running_loop()
    if _pool is not None and _pool_loop is not loop:
        _pool.terminate()
        _invalidate_pool()
    if _pool is None:
        _pool = await asyncio.wait_for(
            asyncpg.create_pool(
                dsn=settings.DATABASE_URL,
                min_size=1,
                max_size=10,
                command_timeout=60,
                max_inactive_connection_lifetime=300.0,
                server_settings={"statement_timeout": "30000"},
            ),
            timeout=20,
        )
        _pool_loop = loop
        _wrapper = _ResilientPool(_pool)
    return _wrapper  # type: ignore[return-value]


async def close_pool() -> None:
    """Close the connection pool.  Called during app shutdown."""
    global _pool, _pool_loop, _wrapper
    if _pool is not None:
        await _pool.close()
    _pool = None
    _pool_loop = None
    _wrapper = None
