from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Optional, Union

from app.models.enums import BatchStatus

DateLike = Union[date, str]


def as_date(value: DateLike, *, field: str = "date") -> date:
    """
    归一为 date：
    - date / datetime → date
    - ISO-8601 字符串（'2026-01-31' 或带时间部分）→ date

    非法输入抛 ValueError，由调用方转换为业务校验错误。
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        s = value.strip()
        try:
            return date.fromisoformat(s[:10])
        except ValueError:
            raise ValueError(f"{field} must be an ISO-8601 date, got {value!r}") from None
    raise ValueError(f"{field} must be a date or ISO-8601 string, got {type(value).__name__}")


def is_expired(expiry_date: date, today: Optional[date] = None) -> bool:
    """
    语义约定：expiry_date 是“最后一个可用日”（含当天）。
    today <= expiry_date 视为未过期；today > expiry_date 视为已过期。
    """
    return expiry_date < (today or date.today())


def is_expiring_soon(expiry_date: date, days: int = 30, today: Optional[date] = None) -> bool:
    """未过期，且在 days 天内到期。"""
    t = today or date.today()
    return t <= expiry_date <= t + timedelta(days=days)


def days_to_expiry(expiry_date: date, today: Optional[date] = None) -> int:
    return (expiry_date - (today or date.today())).days


def batch_status(
    *,
    remaining_qty: int,
    expiry_date: date,
    today: Optional[date] = None,
    expiring_days: int = 30,
) -> BatchStatus:
    """批次展示状态：depleted > expired > expiring > good"""
    if remaining_qty <= 0:
        return BatchStatus.DEPLETED
    if is_expired(expiry_date, today):
        return BatchStatus.EXPIRED
    if is_expiring_soon(expiry_date, expiring_days, today):
        return BatchStatus.EXPIRING
    return BatchStatus.GOOD
