# app/core/tx.py
from __future__ import annotations

from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession


@asynccontextmanager
async def tx_atomic(session: AsyncSession):
    """
    原子块：使用保存点包裹。

    - 块内抛异常 → 回滚到保存点后继续上抛（块内写入全部撤销）
    - 块内成功 → 释放保存点；最终提交由外层决定
    """
    async with session.begin_nested():
        yield


@asynccontextmanager
async def tx_commit(session: AsyncSession):
    """
    Commit 事务：成功 commit，异常 rollback 后上抛。
    供路由 / job 这类“外层”使用；服务内部不得控事务。
    """
    try:
        yield
        await session.commit()
    except Exception:
        await session.rollback()
        raise
