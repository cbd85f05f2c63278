# app/jobs/order_acceptance_ttl.py
"""
待接受订单超时清理 Job

目标：
  - 药房代下单（initiator_type='pharmacy'）在 acceptance_deadline 前未被患者接受 → rejected + cancelled
  - 不触碰批次 / 台账

用法：
  - 本地/生产均可使用：
        python -m app.jobs.order_acceptance_ttl
        python -m app.jobs.order_acceptance_ttl --dry-run
  - 也可以由 cron / 调度器定期调用 main()。
"""

from __future__ import annotations

import argparse
import logging
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from app.core.config import get_settings
from app.core.logging import setup_logging
from app.db.engine import create_async_engine_safe
from app.db.session import normalize_async_dsn
from app.services.order_acceptance_ttl import sweep_expired_acceptances

UTC = timezone.utc

log = logging.getLogger("pharmacy.jobs.acceptance_ttl")


async def main(*, dry_run: bool = False) -> int:
    """
    独立运行入口。

    行为：
      - 连接与应用相同的 DATABASE_URL；
      - 调用 sweep_expired_acceptances 扫描并取消超时订单；
      - 最后提交事务并记录处理数量。
    """
    settings = get_settings()
    engine = create_async_engine_safe(normalize_async_dsn(settings.DATABASE_URL), poolclass=NullPool)
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    batch_size = settings.ACCEPTANCE_TTL_BATCH_SIZE
    now = datetime.now(UTC)

    try:
        async with maker() as session:
            processed = await sweep_expired_acceptances(
                session, now=now, dry_run=dry_run, batch_size=batch_size
            )
            await session.commit()
    finally:
        await engine.dispose()

    log.info(
        "[AcceptanceTTL] %s %s overdue orders (batch_size=%s)",
        "would cancel" if dry_run else "cancelled",
        processed,
        batch_size,
    )
    return processed


if __name__ == "__main__":
    import asyncio

    parser = argparse.ArgumentParser(description="Cancel pharmacy-initiated orders past their acceptance deadline")
    parser.add_argument("--dry-run", action="store_true", help="only count overdue orders")
    args = parser.parse_args()

    s = get_settings()
    setup_logging(s.LOG_LEVEL, json=s.JSON_LOG)
    asyncio.run(main(dry_run=args.dry_run))
