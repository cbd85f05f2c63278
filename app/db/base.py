from __future__ import annotations

import importlib
import logging
from typing import Iterable, List, Set

from sqlalchemy.orm import DeclarativeBase, configure_mappers

log = logging.getLogger("pharmacy.models")


class Base(DeclarativeBase):
    """全局唯一 ORM Base"""

    pass


_INITIALIZED: bool = False  # 防重复初始化

# 显式导入顺序：先被引用方，再引用方（保证字符串关系目标类已注册）
MODEL_MODULES = [
    "app.models.inventory_item",
    "app.models.batch",
    "app.models.batch_movement",
    "app.models.order",
    "app.models.order_item",
    "app.models.order_fulfillment",
]


def init_models(
    *,
    extra_modules: Iterable[str] | None = None,
    force: bool = False,
) -> None:
    """
    集中导入模型 + 固化关系映射：
      1) 按 MODEL_MODULES 顺序导入
      2) 追加 extra_modules
      3) 最后统一 configure_mappers()
    """
    global _INITIALIZED
    if _INITIALIZED and not force:
        log.debug("init_models() called again; already initialized, skipping.")
        return

    loaded: List[str] = []
    seen: Set[str] = set()
    for mod in [*MODEL_MODULES, *(extra_modules or [])]:
        if mod in seen:
            continue
        seen.add(mod)
        importlib.import_module(mod)
        loaded.append(mod)

    configure_mappers()
    _INITIALIZED = True
    log.info("ORM models initialized & mappers configured (loaded %d modules)", len(loaded))
