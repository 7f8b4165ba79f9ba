"""
Order Service — クエリハンドラ (Read 側)

注文・明細・顧客・商品を結合し、管理画面向けの JSON 形状に変換して返す。
配送先住所はフラットなカラムで保存しているので、ここでオブジェクトに組み立て直す。
"""

import math
from datetime import datetime

from sqlalchemy import DateTime, Row, bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import ForbiddenError, NotFoundError
from .schemas import OrderFilters

# sortBy → ORDER BY に埋め込むカラム (この表にあるものだけを SQL に入れる)
SORT_COLUMNS = {
    "createdAt": "o.created_at",
    "updatedAt": "o.updated_at",
    "total": "o.total",
    "status": "o.status",
    "orderNumber": "o.order_number",
}

ORDER_WITH_CUSTOMER = """
    SELECT o.id, o.order_number, o.customer_id, o.status, o.total,
           o.shipping_street, o.shipping_city, o.shipping_state,
           o.shipping_postal_code, o.shipping_country,
           o.created_at, o.updated_at,
           u.id AS customer_ref, u.name AS customer_name,
           u.email AS customer_email, u.avatar AS customer_avatar
    FROM orders o
    LEFT OUTER JOIN users u ON u.id = o.customer_id
"""

# SQLite では日時が文字列で返るので型を指定して datetime に戻す
_TIMESTAMPS = {
    "created_at": DateTime(timezone=True),
    "updated_at": DateTime(timezone=True),
}


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _like_pattern(term: str) -> str:
    """部分一致用の LIKE パターン (大文字小文字を区別しない / % _ はそのまま検索)"""
    escaped = term.lower().replace("/", "//").replace("%", "/%").replace("_", "/_")
    return f"%{escaped}%"


def _serialize_order(row: Row, items: list[dict]) -> dict:
    customer = None
    if row.customer_ref is not None:
        customer = {
            "id": row.customer_ref,
            "name": row.customer_name,
            "email": row.customer_email,
            "avatar": row.customer_avatar,
        }
    return {
        "id": row.id,
        "orderNumber": row.order_number,
        "customerId": row.customer_id,
        "status": row.status,
        "total": row.total,
        "shippingAddress": {
            "street": row.shipping_street,
            "city": row.shipping_city,
            "state": row.shipping_state,
            "postalCode": row.shipping_postal_code,
            "country": row.shipping_country,
        },
        "customer": customer,
        "items": items,
        "createdAt": _iso(row.created_at),
        "updatedAt": _iso(row.updated_at),
    }


async def _load_items(session: AsyncSession, order_ids: list[str]) -> dict[str, list[dict]]:
    """注文 ID ごとの明細 (商品情報付き) をまとめて取得する。"""
    if not order_ids:
        return {}
    result = await session.execute(
        text("""
            SELECT i.id, i.order_id, i.product_id, i.quantity, i.price,
                   p.id AS product_ref, p.name AS product_name, p.slug AS product_slug,
                   p.price AS product_price, p.status AS product_status
            FROM order_items i
            LEFT OUTER JOIN products p ON p.id = i.product_id
            WHERE i.order_id IN :order_ids
            ORDER BY i.order_id, i.id
        """).bindparams(bindparam("order_ids", expanding=True)),
        {"order_ids": order_ids},
    )
    grouped: dict[str, list[dict]] = {order_id: [] for order_id in order_ids}
    for row in result.fetchall():
        product = None
        if row.product_ref is not None:
            product = {
                "id": row.product_ref,
                "name": row.product_name,
                "slug": row.product_slug,
                # 現在の商品価格 (注文時の価格は明細の price)
                "price": row.product_price,
                "status": row.product_status,
            }
        grouped[row.order_id].append({
            "id": row.id,
            "productId": row.product_id,
            "quantity": row.quantity,
            "price": row.price,
            "product": product,
        })
    return grouped


async def get_order(session: AsyncSession, order_id: str) -> dict | None:
    """注文を 1 件取得する。存在しなければ None。"""
    result = await session.execute(
        text(ORDER_WITH_CUSTOMER + " WHERE o.id = :id").columns(**_TIMESTAMPS),
        {"id": order_id},
    )
    row = result.fetchone()
    if not row:
        return None
    items = await _load_items(session, [row.id])
    return _serialize_order(row, items[row.id])


async def get_order_for_user(
    session: AsyncSession,
    order_id: str,
    requesting_user_id: str,
    is_admin: bool,
) -> dict:
    """
    注文を取得する。管理者以外は自分の注文しか見られない。
    """
    order = await get_order(session, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    if not is_admin and order["customerId"] != requesting_user_id:
        raise ForbiddenError("Access to this order is not allowed")
    return order


async def list_orders(
    session: AsyncSession,
    filters: OrderFilters,
    requesting_user_id: str,
    is_admin: bool,
) -> dict:
    """
    注文一覧をページ単位で取得する。

    管理者以外は customer_id フィルタを無視し、常に自分の注文に絞り込む。
    """
    conditions = []
    params: dict = {}

    if not is_admin:
        conditions.append("o.customer_id = :customer_id")
        params["customer_id"] = requesting_user_id
    elif filters.customer_id:
        conditions.append("o.customer_id = :customer_id")
        params["customer_id"] = str(filters.customer_id)

    if filters.search:
        conditions.append("""(
            LOWER(o.order_number) LIKE :pattern ESCAPE '/'
            OR LOWER(u.name) LIKE :pattern ESCAPE '/'
            OR LOWER(u.email) LIKE :pattern ESCAPE '/'
        )""")
        params["pattern"] = _like_pattern(filters.search)

    if filters.status:
        conditions.append("o.status = :status")
        params["status"] = filters.status.value

    where = " WHERE " + " AND ".join(conditions) if conditions else ""

    total = await session.scalar(
        text(f"""
            SELECT COUNT(*)
            FROM orders o
            LEFT OUTER JOIN users u ON u.id = o.customer_id
            {where}
        """),
        params,
    )

    direction = "ASC" if filters.order == "asc" else "DESC"
    result = await session.execute(
        text(
            ORDER_WITH_CUSTOMER + where
            + f" ORDER BY {SORT_COLUMNS[filters.sort_by]} {direction}, o.id"
            + " LIMIT :limit OFFSET :offset"
        ).columns(**_TIMESTAMPS),
        {**params, "limit": filters.limit, "offset": (filters.page - 1) * filters.limit},
    )
    rows = result.fetchall()
    items = await _load_items(session, [row.id for row in rows])

    data = []
    for row in rows:
        order = _serialize_order(row, items[row.id])
        order["itemCount"] = len(order["items"])
        data.append(order)

    return {
        "data": data,
        "pagination": {
            "page": filters.page,
            "limit": filters.limit,
            "total": total,
            "totalPages": math.ceil(total / filters.limit),
        },
    }
