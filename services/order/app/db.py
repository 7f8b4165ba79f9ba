"""
Order Service — データベース定義

テーブル定義は SQLAlchemy Core のメタデータで管理する。
注文・明細・採番カウンタはこのサービスが所有し、
users / products はカタログ・認証サービスと共有するテーブル。
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    UniqueConstraint,
    bindparam,
)
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from .config import DATABASE_URL, DB_ECHO

metadata = MetaData()

# 採番の競合を判定するために制約名を固定する
ORDER_NUMBER_CONSTRAINT = "uq_orders_order_number"
ORDER_SEQUENCE_CONSTRAINT = "pk_order_sequences"

users = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("email", String(255), nullable=False, unique=True),
    Column("avatar", String(512), nullable=True),
    Column("role", String(16), nullable=False, server_default="USER"),
)

products = Table(
    "products",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("slug", String(255), nullable=False, unique=True),
    Column("price", Integer, nullable=False),
    Column("stock", Integer, nullable=False, server_default="0"),
    Column("status", String(16), nullable=False, server_default="ACTIVE"),
    Column("updated_at", DateTime(timezone=True), nullable=True),
    CheckConstraint("price > 0", name="ck_products_price_positive"),
    CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
)

orders = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_number", String(32), nullable=False),
    Column("customer_id", String(36), ForeignKey("users.id"), nullable=False, index=True),
    Column("status", String(16), nullable=False, server_default="PENDING", index=True),
    Column("total", Integer, nullable=False),
    Column("shipping_street", String(255), nullable=False),
    Column("shipping_city", String(128), nullable=False),
    Column("shipping_state", String(128), nullable=False),
    Column("shipping_postal_code", String(32), nullable=False),
    Column("shipping_country", String(128), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False, index=True),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("order_number", name=ORDER_NUMBER_CONSTRAINT),
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", String(36), primary_key=True),
    Column(
        "order_id",
        String(36),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("product_id", String(36), ForeignKey("products.id"), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("price", Integer, nullable=False),
    CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
)

# 月ごとの注文番号カウンタ (period = "YYYYMM")
order_sequences = Table(
    "order_sequences",
    metadata,
    Column("period", String(6), nullable=False),
    Column("last_value", Integer, nullable=False),
    PrimaryKeyConstraint("period", name=ORDER_SEQUENCE_CONSTRAINT),
)


engine = create_async_engine(DATABASE_URL, echo=DB_ECHO)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_tables(bind: AsyncEngine) -> None:
    """メタデータに定義した全テーブルを作成する (既存テーブルはそのまま)。"""
    async with bind.begin() as conn:
        await conn.run_sync(metadata.create_all)


def timestamp_param(name: str):
    """text() の SQL に渡す日時パラメータ (SQLite でも日時として保存される)"""
    return bindparam(name, type_=DateTime(timezone=True))
