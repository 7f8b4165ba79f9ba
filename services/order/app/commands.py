"""
Order Service — コマンドハンドラ (Write 側)

注文の作成・ステータス変更・キャンセルを処理する。
複数行にまたがる更新は UnitOfWork で 1 トランザクションにまとめ、
途中で失敗した場合はすべてロールバックする。

在庫の増減は「読んでから書く」のではなく条件付き UPDATE 1 文で行う:

    UPDATE products SET stock = stock - :qty ... WHERE id = :id AND stock >= :qty

同時チェックアウトで在庫がマイナスになることはなく、
競合に負けた側は更新件数 0 として在庫不足エラーになる。
"""

import logging
from datetime import datetime, timezone
from uuid import uuid4

import redis.asyncio as aioredis
from sqlalchemy import bindparam, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import events, queries
from .db import ORDER_NUMBER_CONSTRAINT, ORDER_SEQUENCE_CONSTRAINT, timestamp_param
from .errors import (
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    StockUnavailableError,
)
from .order_number import next_order_number
from .schemas import (
    CANCELLABLE_STATUSES,
    TERMINAL_STATUSES,
    OrderItemRequest,
    OrderStatus,
    ProductStatus,
    ShippingAddress,
)
from .unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

# 注文番号の一意制約違反時のリトライ回数
ORDER_NUMBER_RETRIES = 1

# 採番の競合を示す制約 (PostgreSQL は制約名、SQLite は "テーブル.カラム" で報告する)
_ORDER_NUMBER_COLLISIONS = (
    ORDER_NUMBER_CONSTRAINT,
    ORDER_SEQUENCE_CONSTRAINT,
    "orders.order_number",
    "order_sequences.period",
)

_UNAVAILABLE_STATUSES = (ProductStatus.OUT_OF_STOCK.value, ProductStatus.INACTIVE.value)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_order_number_collision(exc: IntegrityError) -> bool:
    """注文番号 / 月別カウンタの一意制約違反かどうか。外部キー違反などは False。"""
    message = str(exc.orig)
    return any(name in message for name in _ORDER_NUMBER_COLLISIONS)


def check_availability(products_by_id: dict[str, dict], items: list[OrderItemRequest]) -> list[str]:
    """
    明細ごとの在庫・販売状況をチェックし、問題をすべて列挙する。

    1 件目で止めずに全商品の問題を返すので、画面でまとめて表示できる。
    """
    problems: list[str] = []
    for item in items:
        product = products_by_id[str(item.product_id)]
        if product["stock"] < item.quantity:
            problems.append(
                f"{product['name']}: insufficient stock "
                f"(available: {product['stock']}, requested: {item.quantity})"
            )
        if product["status"] in _UNAVAILABLE_STATUSES:
            problems.append(f"{product['name']}: product not available")
    return problems


def calculate_total(products_by_id: dict[str, dict], items: list[OrderItemRequest]) -> int:
    return sum(products_by_id[str(item.product_id)]["price"] * item.quantity for item in items)


async def _load_products(session: AsyncSession, product_ids: list[str]) -> dict[str, dict]:
    result = await session.execute(
        text("""
            SELECT id, name, price, stock, status
            FROM products
            WHERE id IN :ids
        """).bindparams(bindparam("ids", expanding=True)),
        {"ids": product_ids},
    )
    return {row.id: dict(row._mapping) for row in result.fetchall()}


async def _decrement_stock(session: AsyncSession, product: dict, quantity: int, now: datetime) -> None:
    """
    在庫を quantity だけ減らす。在庫がちょうど 0 になれば OUT_OF_STOCK にする。

    在庫が足りなければ何も更新せず StockUnavailableError。
    """
    result = await session.execute(
        text("""
            UPDATE products
            SET stock = stock - :quantity,
                status = CASE WHEN stock - :quantity = 0 THEN 'OUT_OF_STOCK' ELSE status END,
                updated_at = :now
            WHERE id = :id AND stock >= :quantity
        """).bindparams(timestamp_param("now")),
        {"id": product["id"], "quantity": quantity, "now": now},
    )
    if result.rowcount == 0:
        raise StockUnavailableError([
            f"{product['name']}: insufficient stock (requested: {quantity})"
        ])


async def _restore_stock(session: AsyncSession, product_id: str, quantity: int, now: datetime) -> bool:
    """
    在庫を quantity だけ戻す。OUT_OF_STOCK だった商品は在庫が 1 以上になれば ACTIVE に戻す。
    INACTIVE の商品はステータスを変えない。商品が削除済みなら False。
    """
    result = await session.execute(
        text("""
            UPDATE products
            SET stock = stock + :quantity,
                status = CASE
                    WHEN status = 'OUT_OF_STOCK' AND stock + :quantity > 0 THEN 'ACTIVE'
                    ELSE status
                END,
                updated_at = :now
            WHERE id = :id
        """).bindparams(timestamp_param("now")),
        {"id": product_id, "quantity": quantity, "now": now},
    )
    return result.rowcount > 0


async def _place_order(
    session: AsyncSession,
    customer_id: str,
    items: list[OrderItemRequest],
    shipping_address: ShippingAddress,
    now: datetime,
) -> tuple[str, str, int, list[events.OrderLine]]:
    """1 回分のチェックアウト。コミットまで行い (order_id, order_number, total, lines) を返す。"""
    product_ids = [str(item.product_id) for item in items]

    async with UnitOfWork(session) as uow:
        # 1. 商品をまとめて取得
        products_by_id = await _load_products(uow.session, product_ids)
        if len(products_by_id) != len(set(product_ids)):
            raise NotFoundError("One or more products not found")

        # 2-3. 在庫・販売状況のチェック (問題はすべて列挙)
        problems = check_availability(products_by_id, items)
        if problems:
            logger.warning("Order rejected for customer %s: %s", customer_id, problems)
            raise StockUnavailableError(problems)

        # 4. 合計金額 (この時点の価格で確定)
        total = calculate_total(products_by_id, items)

        # 5. 注文番号
        order_number = await next_order_number(uow.session, now)

        # 6. 注文・明細の作成と在庫の引き当て
        order_id = str(uuid4())
        await uow.session.execute(
            text("""
                INSERT INTO orders
                    (id, order_number, customer_id, status, total,
                     shipping_street, shipping_city, shipping_state,
                     shipping_postal_code, shipping_country, created_at, updated_at)
                VALUES
                    (:id, :order_number, :customer_id, 'PENDING', :total,
                     :street, :city, :state,
                     :postal_code, :country, :now, :now)
            """).bindparams(timestamp_param("now")),
            {
                "id": order_id,
                "order_number": order_number,
                "customer_id": customer_id,
                "total": total,
                "street": shipping_address.street,
                "city": shipping_address.city,
                "state": shipping_address.state,
                "postal_code": shipping_address.postal_code,
                "country": shipping_address.country,
                "now": now,
            },
        )

        lines: list[events.OrderLine] = []
        for item in items:
            product = products_by_id[str(item.product_id)]
            await uow.session.execute(
                text("""
                    INSERT INTO order_items (id, order_id, product_id, quantity, price)
                    VALUES (:id, :order_id, :product_id, :quantity, :price)
                """),
                {
                    "id": str(uuid4()),
                    "order_id": order_id,
                    "product_id": product["id"],
                    "quantity": item.quantity,
                    "price": product["price"],
                },
            )
            await _decrement_stock(uow.session, product, item.quantity, now)
            lines.append(events.OrderLine(
                product_id=product["id"], quantity=item.quantity, price=product["price"],
            ))

        # 7. コミット
        await uow.commit()

    return order_id, order_number, total, lines


async def create_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    customer_id: str,
    items: list[OrderItemRequest],
    shipping_address: ShippingAddress,
    now: datetime | None = None,
) -> dict:
    """
    注文作成コマンド

    1. 商品をまとめて取得し、存在・在庫・販売状況を検証
    2. 合計金額を計算し、注文番号を採番
    3. 注文・明細の作成と在庫の引き当てを 1 トランザクションで実行
    4. OrderCreated イベントを発行

    注文番号が一意制約に違反した場合 (同時採番) は 1 回だけやり直す。
    それ以外の制約違反 (存在しない顧客など) はそのまま送出する。
    """
    now = now or _utcnow()

    for attempt in range(ORDER_NUMBER_RETRIES + 1):
        try:
            order_id, order_number, total, lines = await _place_order(
                session, customer_id, items, shipping_address, now
            )
            break
        except IntegrityError as exc:
            if not is_order_number_collision(exc):
                raise
            logger.warning(
                "Order number collision for customer %s (attempt %d)", customer_id, attempt + 1
            )
    else:
        raise ConflictError("Could not allocate a unique order number, please retry")

    logger.info("Order %s (%s) created for customer %s, total=%d",
                order_number, order_id, customer_id, total)

    await events.publish(redis, events.OrderCreated(
        order_id=order_id,
        order_number=order_number,
        customer_id=customer_id,
        total=total,
        items=lines,
        timestamp=now,
    ))

    return await queries.get_order(session, order_id)


async def update_order_status(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: str,
    status: OrderStatus,
    is_admin: bool,
) -> dict:
    """
    注文ステータス変更コマンド (管理者のみ)

    CANCELLED / DELIVERED からは変更できない。それ以外の状態からは
    順序を問わず任意のステータスに変更できる (後戻りも可)。
    CANCELLED への変更でも在庫は戻さない。在庫を戻すのは cancel_order。
    """
    if not is_admin:
        raise ForbiddenError("Only administrators can change order status")

    now = _utcnow()
    terminal = [s.value for s in TERMINAL_STATUSES]

    async with UnitOfWork(session) as uow:
        current = await uow.session.scalar(
            text("SELECT status FROM orders WHERE id = :id"),
            {"id": order_id},
        )
        if current is None:
            raise NotFoundError("Order not found")
        if current in terminal:
            raise InvalidTransitionError("Cannot change a cancelled or delivered order")

        # 読み取り後に別リクエストが終端状態にした場合もここで弾く
        result = await uow.session.execute(
            text("""
                UPDATE orders
                SET status = :status, updated_at = :now
                WHERE id = :id AND status NOT IN :terminal
            """).bindparams(timestamp_param("now"), bindparam("terminal", expanding=True)),
            {"id": order_id, "status": status.value, "now": now, "terminal": terminal},
        )
        if result.rowcount == 0:
            raise InvalidTransitionError("Cannot change a cancelled or delivered order")

        await uow.commit()

    logger.info("Order %s status changed %s -> %s", order_id, current, status.value)

    await events.publish(redis, events.OrderStatusChanged(
        order_id=order_id,
        previous_status=current,
        status=status.value,
        timestamp=now,
    ))

    return await queries.get_order(session, order_id)


async def cancel_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: str,
    requesting_user_id: str,
    is_admin: bool,
) -> dict:
    """
    注文キャンセルコマンド

    PENDING / PROCESSING の注文のみキャンセルできる。本人または管理者のみ。
    注文作成時に減らした在庫を明細ごとに戻す (補償処理)。
    """
    now = _utcnow()
    cancellable = [s.value for s in CANCELLABLE_STATUSES]

    async with UnitOfWork(session) as uow:
        result = await uow.session.execute(
            text("SELECT customer_id, status FROM orders WHERE id = :id"),
            {"id": order_id},
        )
        order = result.fetchone()
        if order is None:
            raise NotFoundError("Order not found")
        if not is_admin and order.customer_id != requesting_user_id:
            raise ForbiddenError("Access to this order is not allowed")
        if order.status not in cancellable:
            raise InvalidTransitionError("Cannot cancel an order that has been shipped or delivered")

        # 先にステータスを確定させ、二重キャンセルによる在庫の二重戻しを防ぐ
        result = await uow.session.execute(
            text("""
                UPDATE orders
                SET status = 'CANCELLED', updated_at = :now
                WHERE id = :id AND status IN :cancellable
            """).bindparams(timestamp_param("now"), bindparam("cancellable", expanding=True)),
            {"id": order_id, "now": now, "cancellable": cancellable},
        )
        if result.rowcount == 0:
            raise InvalidTransitionError("Cannot cancel an order that has been shipped or delivered")

        result = await uow.session.execute(
            text("""
                SELECT product_id, quantity, price
                FROM order_items
                WHERE order_id = :order_id
            """),
            {"order_id": order_id},
        )
        restored: list[events.OrderLine] = []
        for item in result.fetchall():
            if await _restore_stock(uow.session, item.product_id, item.quantity, now):
                restored.append(events.OrderLine(
                    product_id=item.product_id, quantity=item.quantity, price=item.price,
                ))
            else:
                logger.warning("Product %s of order %s no longer exists, stock not restored",
                               item.product_id, order_id)

        await uow.commit()

    logger.info("Order %s cancelled by %s", order_id, requesting_user_id)

    await events.publish(redis, events.OrderCancelled(
        order_id=order_id,
        cancelled_by=requesting_user_id,
        restored=restored,
        timestamp=now,
    ))

    return await queries.get_order(session, order_id)
