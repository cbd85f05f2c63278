# app/api/problem.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, TypedDict


class ProblemDetail(TypedDict, total=False):
    # 必填
    type: str  # validation|shortage|state|ledger
    # 可选：用于行内定位
    path: str  # e.g. selections[2]
    # 常用字段（按需）
    reason: str
    inventory_id: int
    batch_id: int
    batch_code: Optional[str]

    required_qty: int
    available_qty: int
    short_qty: int


class NextAction(TypedDict, total=False):
    action: str
    label: str


@dataclass(frozen=True)
class Problem:
    error_code: str
    message: str
    http_status: int
    context: Optional[Dict[str, Any]] = None
    details: Optional[List[ProblemDetail]] = None
    next_actions: Optional[List[NextAction]] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "error_code": self.error_code,
            "message": self.message,
            "http_status": int(self.http_status),
        }
        if self.context:
            out["context"] = self.context
        if self.details:
            out["details"] = self.details
        if self.next_actions:
            out["next_actions"] = self.next_actions
        return out


def make_problem(
    *,
    status_code: int,
    error_code: str,
    message: str,
    context: Optional[Dict[str, Any]] = None,
    details: Optional[Sequence[ProblemDetail]] = None,
    next_actions: Optional[Sequence[NextAction]] = None,
) -> Dict[str, Any]:
    p = Problem(
        error_code=str(error_code),
        message=str(message),
        http_status=int(status_code),
        context=context,
        details=list(details) if details else None,
        next_actions=list(next_actions) if next_actions else None,
    )
    return p.to_dict()


def shortage_detail(
    *,
    inventory_id: int,
    required_qty: int,
    available_qty: int,
    path: str,
    batch_id: Optional[int] = None,
) -> ProblemDetail:
    short_qty = max(0, int(required_qty) - int(available_qty))
    d: ProblemDetail = {
        "type": "shortage",
        "path": path,
        "inventory_id": int(inventory_id),
        "required_qty": int(required_qty),
        "available_qty": int(available_qty),
        "short_qty": int(short_qty),
        "reason": "insufficient_stock",
    }
    if batch_id is not None:
        d["batch_id"] = int(batch_id)
    return d
