"""Tests for the resilient pool wrapper."""

from unittest.mock import AsyncMock, MagicMock, patch

import asyncpg
import pytest

from autodidact.repos import db


@pytest.fixture
def no_sleep():
    with patch("autodidact.repos.db.asyncio.sleep", new=AsyncMock()) as sleep:
        yield sleep


@pytest.mark.asyncio
async def test_dead_connection_is_retried(no_sleep):
    raw = MagicMock()
    raw.fetchval = AsyncMock(side_effect=[asyncpg.InterfaceError("connection is closed"), 1])

    assert await db._ResilientPool(raw).fetchval("SELECT 1") == 1
    assert raw.fetchval.await_count == 2
    no_sleep.assert_awaited_once()


@pytest.mark.asyncio
async def test_exhausted_retries_invalidate_pool(no_sleep, monkeypatch):
    raw = MagicMock()
    raw.execute = AsyncMock(side_effect=ConnectionResetError("reset"))
    monkeypatch.setattr(db, "_pool", raw)

    with pytest.raises(ConnectionResetError):
        await db._ResilientPool(raw).execute("UPDATE x")

    assert raw.execute.await_count == db._MAX_RETRIES + 1
    assert db._pool is None


@pytest.mark.asyncio
async def test_query_errors_are_not_retried(no_sleep):
    raw = MagicMock()
    raw.fetch = AsyncMock(side_effect=asyncpg.PostgresSyntaxError("bad sql"))

    with pytest.raises(asyncpg.PostgresSyntaxError):
        await db._ResilientPool(raw).fetch("SELEC")

    assert raw.fetch.await_count == 1


def test_other_attributes_pass_through():
    raw = MagicMock()
    raw.get_size.return_value = 4
    assert db._ResilientPool(raw).get_size() == 4


@pytest.mark.asyncio
async def test_close_pool_without_pool_is_noop(monkeypatch):
    monkeypatch.setattr(db, "_pool", None)
    await db.close_pool()
    assert db._wrapper is None
