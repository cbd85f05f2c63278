# app/metrics.py
from __future__ import annotations

import os

from fastapi import APIRouter
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, CollectorRegistry, Counter, generate_latest, multiprocess

# 业务指标
STOCK_CONSUMED = Counter(
    "stock_consumed_units_total", "Units consumed from batches", ["path"]
)  # path: fefo | explicit
CONSUME_CONFLICTS = Counter(
    "stock_consume_conflicts_total", "Commit-time stale reads on conditional decrement"
)
FULFILLMENTS = Counter(
    "order_fulfillments_total", "Order fulfillment attempts", ["result"]
)  # result: completed | insufficient_stock | validation_error | conflict | not_found

router = APIRouter()


@router.get("/metrics")
def metrics() -> Response:
    """
    单进程：直接导出默认 REGISTRY；
    多进程（设置了 PROMETHEUS_MULTIPROC_DIR）：临时 CollectorRegistry 合并各分片。
    """
    if os.environ.get("PROMETHEUS_MULTIPROC_DIR"):
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)
        payload = generate_latest(registry)
    else:
        payload = generate_latest(REGISTRY)
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
