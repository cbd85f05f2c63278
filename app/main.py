# app/main.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.api.errors import BizError, biz_error_handler
from app.core.config import get_settings
from app.core.logging import setup_logging
from app.db.session import close_engines

settings = get_settings()
setup_logging(settings.LOG_LEVEL, json=settings.JSON_LOG)
logger = logging.getLogger("pharmacy")


@asynccontextmanager
async def _lifespan(_app: FastAPI):
    logger.info("pharmacy inventory service starting (env=%s)", settings.ENV)
    yield
    await close_engines()


app = FastAPI(
    title="Pharmacy Inventory",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=_lifespan,
)


app.add_exception_handler(BizError, biz_error_handler)


@app.exception_handler(Exception)
async def _unhandled_exc(_req: Request, exc: Exception):
    logger.exception("UNHANDLED_EXC: %s", exc)
    return JSONResponse(status_code=500, content={"detail": "INTERNAL_ERROR"})


@app.exception_handler(RequestValidationError)
async def _validation_exc(_req: Request, exc: RequestValidationError):
    safe = [{k: v for k, v in e.items() if k != "ctx"} for e in exc.errors()]
    return JSONResponse(status_code=422, content={"detail": safe})


@app.exception_handler(HTTPException)
async def _http_exc(_req: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


# ===========================
#        批次 / 库存
# ===========================
from app.api.routers.batches import inventory_router as inventory_batches_router  # noqa: E402
from app.api.routers.batches import router as batches_router  # noqa: E402

# ===========================
#        订单 / 履约
# ===========================
from app.api.routers.orders import router as orders_router  # noqa: E402

# ===========================
#        告警 / 观测
# ===========================
from app.api.routers.pharmacies import router as pharmacies_router  # noqa: E402
from app.metrics import router as metrics_router  # noqa: E402

app.include_router(inventory_batches_router)
app.include_router(batches_router)
app.include_router(orders_router)
app.include_router(pharmacies_router)
app.include_router(metrics_router)


@app.get("/ping")
async def ping():
    return {"pong": True}
