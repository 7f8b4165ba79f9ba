"""
Order Service — FastAPI エントリーポイント

Command (POST / PATCH) と Query (GET) のエンドポイントを分離し、
すべてのレスポンスを {success, data, pagination, error, details} の形で返す。
"""

import logging
from contextlib import asynccontextmanager
from typing import Literal
from uuid import UUID

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import commands, queries
from .auth import CurrentUser, get_current_user, require_role
from .config import DEBUG, LOG_LEVEL, REDIS_URL
from .db import async_session, create_tables, engine
from .errors import AppError
from .schemas import (
    CreateOrderRequest,
    OrderFilters,
    OrderStatus,
    Role,
    SortField,
    UpdateStatusRequest,
)

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

redis_pool: aioredis.Redis | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global redis_pool
    await create_tables(engine)
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    yield
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)


# ── Dependencies ─────────────────────────────────

async def get_session():
    async with async_session() as session:
        yield session


def get_redis() -> aioredis.Redis | None:
    return redis_pool


# ── Error Handlers ───────────────────────────────

def _validation_details(errors) -> list[dict]:
    details = []
    for error in errors:
        loc = list(error.get("loc", ()))
        if loc and loc[0] in ("body", "query", "path", "header"):
            loc = loc[1:]
        details.append({
            "field": ".".join(str(part) for part in loc),
            "message": error.get("msg", ""),
        })
    return details


@app.exception_handler(RequestValidationError)
async def handle_request_validation(_request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={
        "success": False,
        "error": "Validation error",
        "details": _validation_details(exc.errors()),
    })


@app.exception_handler(AppError)
async def handle_app_error(_request: Request, exc: AppError):
    content = {"success": False, "error": exc.message}
    if exc.details is not None:
        content["details"] = exc.details
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(IntegrityError)
async def handle_integrity_error(_request: Request, exc: IntegrityError):
    logger.warning("Integrity error: %s", exc.orig)
    # 存在しない顧客・商品への参照は入力の誤り
    if "foreign key" in str(exc.orig).lower():
        return JSONResponse(status_code=400, content={
            "success": False,
            "error": "Invalid reference",
        })
    return JSONResponse(status_code=409, content={
        "success": False,
        "error": "Resource already exists",
    })


@app.exception_handler(Exception)
async def handle_unexpected(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    content = {"success": False, "error": "Internal server error"}
    if DEBUG:
        content["details"] = str(exc)
    return JSONResponse(status_code=500, content=content)


# ── Command Endpoints (Write 側) ─────────────────

@app.post("/orders", status_code=201)
async def cmd_create_order(
    req: CreateOrderRequest,
    user: CurrentUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis | None = Depends(get_redis),
):
    """注文作成 (チェックアウト)"""
    order = await commands.create_order(
        session, redis, user.id, req.items, req.shipping_address,
    )
    return {"success": True, "data": order}


@app.post("/orders/{order_id}/cancel")
async def cmd_cancel_order(
    order_id: UUID,
    user: CurrentUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis | None = Depends(get_redis),
):
    """注文キャンセル (本人または管理者)"""
    order = await commands.cancel_order(
        session, redis, str(order_id), user.id, user.is_admin,
    )
    return {"success": True, "data": order}


@app.patch("/orders/{order_id}/status")
async def cmd_update_order_status(
    order_id: UUID,
    req: UpdateStatusRequest,
    user: CurrentUser = Depends(require_role(Role.ADMIN)),
    session: AsyncSession = Depends(get_session),
    redis: aioredis.Redis | None = Depends(get_redis),
):
    """注文ステータス変更 (管理者のみ)"""
    order = await commands.update_order_status(
        session, redis, str(order_id), req.status, user.is_admin,
    )
    return {"success": True, "data": order}


# ── Query Endpoints (Read 側) ────────────────────

@app.get("/orders")
async def query_list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: str | None = Query(None),
    sort_by: SortField = Query("createdAt", alias="sortBy"),
    order: Literal["asc", "desc"] = Query("desc"),
    status: OrderStatus | None = Query(None),
    customer_id: UUID | None = Query(None, alias="customerId"),
    user: CurrentUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
):
    """注文一覧 (管理者以外は自分の注文のみ)"""
    filters = OrderFilters(
        page=page,
        limit=limit,
        search=search,
        sort_by=sort_by,
        order=order,
        status=status,
        customer_id=customer_id if user.is_admin else None,
    )
    result = await queries.list_orders(session, filters, user.id, user.is_admin)
    return {"success": True, "data": result["data"], "pagination": result["pagination"]}


@app.get("/orders/{order_id}")
async def query_get_order(
    order_id: UUID,
    user: CurrentUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
):
    """注文詳細 (管理者以外は自分の注文のみ)"""
    order = await queries.get_order_for_user(session, str(order_id), user.id, user.is_admin)
    return {"success": True, "data": order}


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
