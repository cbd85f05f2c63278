# app/schemas/alerts.py
from __future__ import annotations

from typing import List

from pydantic import BaseModel, ConfigDict

from app.schemas.batch import BatchOut


class _Base(BaseModel):
    model_config = ConfigDict(from_attributes=True, extra="ignore")


class StockLevelOut(_Base):
    inventory_id: int
    name: str
    available_qty: int
    has_batches: bool


class AvailableOut(_Base):
    inventory_id: int
    available_qty: int


class ReconcileOut(_Base):
    inventory_id: int
    stock: int


class AlertsSummaryOut(_Base):
    pharmacy_id: str
    low_stock: List[StockLevelOut]
    critical_stock: List[StockLevelOut]
    out_of_stock: List[StockLevelOut]
    expiring: List[BatchOut]
    expired: List[BatchOut]
    total: int
