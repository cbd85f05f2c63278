# app/db/engine.py
# 统一引擎工厂：PG 下注入 server_settings；SQLite 修正事务语义 + 外键约束
from typing import Any

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

__all__ = ["create_async_engine_safe"]


def _connect_args_for(url_str: str) -> dict[str, Any]:
    """
    返回后端专属 connect_args：
    - PostgreSQL(psycopg): 不注入（psycopg3 不接受 server_settings）
    - SQLite: 仅 check_same_thread
    """
    backend = make_url(url_str).get_backend_name()

    if backend.startswith("sqlite"):
        return {"check_same_thread": False}

    return {}


def _install_sqlite_tx_hooks(engine: AsyncEngine) -> None:
    """
    pysqlite / aiosqlite 默认延迟发 BEGIN，SAVEPOINT 语义不可靠：
      - 连接级关掉驱动自己的 BEGIN，改由 SQLAlchemy 在 begin 事件里显式发出
      - 打开 foreign_keys（SQLite 默认不校验外键）
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _connection_record):  # pragma: no cover - driver hook
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):  # pragma: no cover - driver hook
        conn.exec_driver_sql("BEGIN")


def create_async_engine_safe(url_str: str, *, echo: bool = False, **extra: Any) -> AsyncEngine:
    """Async 引擎（'postgresql+psycopg' 或 'sqlite+aiosqlite'）。"""
    connect_args: dict[str, Any] = _connect_args_for(url_str)
    u = make_url(url_str)
    is_sqlite = u.get_backend_name().startswith("sqlite")

    kwargs: dict[str, Any] = {"echo": echo}
    if u.get_backend_name().startswith("postgresql"):
        kwargs["pool_pre_ping"] = True
    if connect_args:
        kwargs["connect_args"] = connect_args
    kwargs.update(extra)

    engine = create_async_engine(url_str, **kwargs)
    if is_sqlite:
        _install_sqlite_tx_hooks(engine)
    return engine
