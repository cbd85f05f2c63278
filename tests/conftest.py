# tests/conftest.py
from __future__ import annotations

import os
from typing import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from app.db.base import Base, init_models
from app.db.engine import create_async_engine_safe
from app.db.session import get_session, normalize_async_dsn
from app.main import app

init_models()


# ==========================
# 数据库 DSN
#   - PHARM_TEST_DATABASE_URL 显式指定时使用（例如 PG）
#   - 否则每个用例一个临时文件 SQLite（aiosqlite）
# ==========================
@pytest.fixture(scope="function")
def database_url(tmp_path) -> str:
    url = os.getenv("PHARM_TEST_DATABASE_URL")
    if url:
        return normalize_async_dsn(url)
    return f"sqlite+aiosqlite:///{tmp_path / 'pharmacy_test.db'}"


# =========================================
# 每用例独立 Engine（NullPool，避免跨 loop）+ 建表
# =========================================
@pytest_asyncio.fixture(scope="function")
async def async_engine(database_url: str) -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine_safe(database_url, poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture(scope="function")
def async_session_maker(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def session(async_session_maker) -> AsyncGenerator[AsyncSession, None]:
    """
    标准 Session：用例结束时未提交的内容回滚。
    """
    async with async_session_maker() as sess:
        try:
            yield sess
        finally:
            if sess.in_transaction():
                await sess.rollback()


# =========================================
# FastAPI / httpx AsyncClient（每个请求一个新 Session，绑定到用例的 Engine）
# =========================================
@pytest_asyncio.fixture(scope="function")
async def client(async_session_maker) -> AsyncGenerator[httpx.AsyncClient, None]:
    async def _override_session() -> AsyncGenerator[AsyncSession, None]:
        async with async_session_maker() as sess:
            yield sess

    app.dependency_overrides[get_session] = _override_session
    transport = httpx.ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(
            transport=transport,
            base_url="http://testserver",
            timeout=httpx.Timeout(10.0, connect=5.0, read=10.0, write=5.0, pool=5.0),
        ) as c:
            yield c
    finally:
        app.dependency_overrides.pop(get_session, None)
