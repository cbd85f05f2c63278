# tests/api/conftest.py
from __future__ import annotations

from typing import Any, Awaitable, Callable

import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession


@pytest_asyncio.fixture(scope="function")
async def seed(async_session_maker) -> Callable[[Callable[[AsyncSession], Awaitable[Any]]], Awaitable[Any]]:
    """
    HTTP 用例的造数：在独立 Session 中执行并提交，请求侧的新 Session 才能看到。

        item = await seed(lambda s: make_item(s))
    """

    async def _run(fn: Callable[[AsyncSession], Awaitable[Any]]) -> Any:
        async with async_session_maker() as s:
            out = await fn(s)
            await s.commit()
            return out

    return _run
