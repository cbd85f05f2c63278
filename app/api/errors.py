# app/api/errors.py
from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Sequence

from fastapi import Request
from fastapi.responses import JSONResponse

from app.api.problem import NextAction, ProblemDetail, make_problem

log = logging.getLogger("pharmacy.errors")


class BizError(Exception):
    code = "BIZ_ERROR"
    status = 400

    def __init__(
        self,
        message: str,
        code: str | None = None,
        status: int | None = None,
        *,
        context: Optional[Dict[str, Any]] = None,
        details: Optional[Sequence[ProblemDetail]] = None,
        next_actions: Optional[Sequence[NextAction]] = None,
    ):
        super().__init__(message)
        if code:
            self.code = code
        if status:
            self.status = status
        self.message = message
        self.context = context
        self.details = list(details) if details else []
        self.next_actions = list(next_actions) if next_actions else []

    def to_problem(self) -> Dict[str, Any]:
        return make_problem(
            status_code=self.status,
            error_code=self.code,
            message=self.message,
            context=self.context,
            details=self.details,
            next_actions=self.next_actions,
        )


class ValidationError(BizError):
    """输入不合法（日期 / 数量 / 批次码 / 分配合计不符）；不自动重试。"""

    code = "validation_error"
    status = 422


class NotFoundError(BizError):
    code = "not_found"
    status = 404


class InsufficientStockError(BizError):
    """非过期批次的可用量不足（计划期或提交期）。"""

    code = "insufficient_stock"
    status = 409


class ConflictError(BizError):
    """状态冲突：批次已有出库流水、订单已完成 / 已取消、批次码重复等。"""

    code = "conflict"
    status = 409


def biz_error_handler(_: Request, exc: BizError):
    log.info("biz error %s: %s", exc.code, exc.message)
    return JSONResponse(status_code=exc.status, content={"detail": exc.to_problem()})
