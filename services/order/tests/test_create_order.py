import logging
from datetime import datetime, timezone

import pytest
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError

from app import commands, queries
from app.db import order_items, order_sequences, orders, products
from app.errors import ConflictError, NotFoundError, StockUnavailableError

MARCH_2024 = datetime(2024, 3, 14, 10, 30, tzinfo=timezone.utc)


async def test_total_is_sum_of_priced_lines(session, redis, add_user, add_product, address, make_line):
    customer = await add_user()
    lamp = await add_product(name="Desk Lamp", price=2500, stock=10)
    chair = await add_product(name="Office Chair", price=12000, stock=3)

    order = await commands.create_order(
        session, redis, customer, [make_line(lamp, 2), make_line(chair, 1)], address,
    )

    assert order["status"] == "PENDING"
    assert order["total"] == 2500 * 2 + 12000
    assert order["total"] == sum(item["price"] * item["quantity"] for item in order["items"])
    assert order["customerId"] == customer
    assert order["shippingAddress"] == {
        "street": "12 rue de la Paix",
        "city": "Paris",
        "state": "Ile-de-France",
        "postalCode": "75002",
        "country": "France",
    }
    assert order["customer"]["id"] == customer


async def test_price_snapshot_survives_later_price_change(session, redis, add_user, add_product, address, make_line):
    customer = await add_user()
    lamp = await add_product(price=2500, stock=10)

    order = await commands.create_order(session, redis, customer, [make_line(lamp, 2)], address)

    await session.execute(update(products).where(products.c.id == lamp).values(price=9900))
    await session.commit()

    reloaded = await queries.get_order(session, order["id"])
    item = reloaded["items"][0]
    assert item["price"] == 2500
    assert item["product"]["price"] == 9900
    assert reloaded["total"] == 5000


async def test_stock_sequence_until_out_of_stock(session, redis, add_user, add_product, product_state, address, make_line):
    customer = await add_user()
    lamp = await add_product(name="Desk Lamp", stock=5)

    await commands.create_order(session, redis, customer, [make_line(lamp, 3)], address)
    assert await product_state(lamp) == (2, "ACTIVE")

    await commands.create_order(session, redis, customer, [make_line(lamp, 2)], address)
    assert await product_state(lamp) == (0, "OUT_OF_STOCK")

    with pytest.raises(StockUnavailableError) as exc_info:
        await commands.create_order(session, redis, customer, [make_line(lamp, 1)], address)

    assert any(problem.startswith("Desk Lamp:") for problem in exc_info.value.problems)
    assert await product_state(lamp) == (0, "OUT_OF_STOCK")


async def test_all_stock_problems_are_reported_together(session, redis, add_user, add_product, product_state, address, make_line):
    customer = await add_user()
    lamp = await add_product(name="Desk Lamp", stock=1)
    chair = await add_product(name="Office Chair", stock=10, status="INACTIVE")
    desk = await add_product(name="Standing Desk", stock=4)

    with pytest.raises(StockUnavailableError) as exc_info:
        await commands.create_order(
            session, redis, customer,
            [make_line(lamp, 2), make_line(chair, 1), make_line(desk, 1)],
            address,
        )

    problems = exc_info.value.problems
    assert problems == [
        "Desk Lamp: insufficient stock (available: 1, requested: 2)",
        "Office Chair: product not available",
    ]
    # 何も書き込まれていない
    assert await product_state(desk) == (4, "ACTIVE")
    assert await session.scalar(select(func.count()).select_from(orders)) == 0
    assert redis.messages == []


async def test_out_of_stock_status_rejected_even_with_stock(session, redis, add_user, add_product, address, make_line):
    customer = await add_user()
    lamp = await add_product(name="Desk Lamp", stock=3, status="OUT_OF_STOCK")

    with pytest.raises(StockUnavailableError) as exc_info:
        await commands.create_order(session, redis, customer, [make_line(lamp, 1)], address)

    assert exc_info.value.problems == ["Desk Lamp: product not available"]


async def test_unknown_product_is_not_found(session, redis, add_user, add_product, address, make_line):
    customer = await add_user()
    lamp = await add_product()

    with pytest.raises(NotFoundError):
        await commands.create_order(
            session, redis, customer,
            [make_line(lamp, 1), make_line("7b0e9a4e-6a55-4b8e-9d44-0f2a5f9c1d11", 1)],
            address,
        )

    assert await session.scalar(select(func.count()).select_from(orders)) == 0


async def test_order_items_are_persisted_with_snapshot(session, redis, add_user, add_product, address, make_line):
    customer = await add_user()
    lamp = await add_product(price=2500, stock=10)

    order = await commands.create_order(session, redis, customer, [make_line(lamp, 4)], address)

    result = await session.execute(
        select(order_items.c.product_id, order_items.c.quantity, order_items.c.price)
        .where(order_items.c.order_id == order["id"])
    )
    assert [tuple(row) for row in result.fetchall()] == [(lamp, 4, 2500)]


async def test_order_created_event_is_published(session, redis, add_user, add_product, address, make_line):
    customer = await add_user()
    lamp = await add_product(price=2500, stock=10)

    order = await commands.create_order(session, redis, customer, [make_line(lamp, 2)], address)

    assert redis.event_types() == ["OrderCreated"]
    channel, message = redis.messages[0]
    assert channel == "order_events"
    assert message["data"]["order_id"] == order["id"]
    assert message["data"]["order_number"] == order["orderNumber"]
    assert message["data"]["total"] == 5000
    assert message["data"]["items"] == [{"product_id": lamp, "quantity": 2, "price": 2500}]


async def test_order_can_be_created_without_event_bus(session, add_user, add_product, address, make_line):
    customer = await add_user()
    lamp = await add_product(stock=10)

    order = await commands.create_order(session, None, customer, [make_line(lamp, 1)], address)

    assert order["status"] == "PENDING"


async def test_conditional_decrement_refuses_stale_read(session, add_product, product_state):
    lamp = await add_product(name="Desk Lamp", stock=1)
    # 別リクエストが先に在庫を減らした後の古い読み取り結果
    stale = {"id": lamp, "name": "Desk Lamp", "stock": 5}

    with pytest.raises(StockUnavailableError):
        await commands._decrement_stock(session, stale, 2, MARCH_2024)
    await session.rollback()

    assert await product_state(lamp) == (1, "ACTIVE")


async def test_order_number_collision_is_retried_once(
    session, redis, add_user, add_product, product_state, address, make_line, monkeypatch,
):
    customer = await add_user()
    lamp = await add_product(stock=10)
    first = await commands.create_order(
        session, redis, customer, [make_line(lamp, 1)], address, now=MARCH_2024,
    )

    real_next = commands.next_order_number
    calls = []

    async def colliding_once(session, now):
        calls.append(now)
        if len(calls) == 1:
            return first["orderNumber"]
        return await real_next(session, now)

    monkeypatch.setattr(commands, "next_order_number", colliding_once)

    second = await commands.create_order(
        session, redis, customer, [make_line(lamp, 2)], address, now=MARCH_2024,
    )

    assert len(calls) == 2
    assert second["orderNumber"] == "ORD-202403-0002"
    assert await product_state(lamp) == (7, "ACTIVE")


async def test_repeated_order_number_collision_is_a_conflict(
    session, redis, add_user, add_product, product_state, address, make_line, monkeypatch,
):
    customer = await add_user()
    lamp = await add_product(stock=10)
    first = await commands.create_order(
        session, redis, customer, [make_line(lamp, 1)], address, now=MARCH_2024,
    )

    async def always_colliding(session, now):
        return first["orderNumber"]

    monkeypatch.setattr(commands, "next_order_number", always_colliding)

    with pytest.raises(ConflictError):
        await commands.create_order(
            session, redis, customer, [make_line(lamp, 2)], address, now=MARCH_2024,
        )

    assert await product_state(lamp) == (9, "ACTIVE")
    assert await session.scalar(select(func.count()).select_from(orders)) == 1


@pytest.mark.foreign_keys
async def test_unknown_customer_is_not_retried_as_collision(
    session, redis, add_product, product_state, address, make_line, monkeypatch, caplog,
):
    caplog.set_level(logging.WARNING, logger="app.commands")
    lamp = await add_product(stock=10)

    real_next = commands.next_order_number
    calls = []

    async def counting(session, now):
        calls.append(now)
        return await real_next(session, now)

    monkeypatch.setattr(commands, "next_order_number", counting)

    with pytest.raises(IntegrityError):
        await commands.create_order(
            session, redis, "no-such-customer", [make_line(lamp, 1)], address, now=MARCH_2024,
        )

    assert len(calls) == 1
    assert "collision" not in caplog.text
    assert await product_state(lamp) == (10, "ACTIVE")
    assert await session.scalar(select(func.count()).select_from(orders)) == 0
    assert redis.messages == []


async def test_checkout_after_deleted_order_skips_used_numbers(
    session, redis, add_user, add_product, address, make_line,
):
    customer = await add_user()
    lamp = await add_product(stock=10)
    created = []
    for _ in range(3):
        created.append(await commands.create_order(
            session, redis, customer, [make_line(lamp, 1)], address, now=MARCH_2024,
        ))

    # 0002 を削除し、カウンタも失われた状態 (0001 と 0003 だけが残る)
    await session.execute(delete(order_items).where(order_items.c.order_id == created[1]["id"]))
    await session.execute(delete(orders).where(orders.c.id == created[1]["id"]))
    await session.execute(delete(order_sequences))
    await session.commit()

    numbers = []
    for _ in range(3):
        order = await commands.create_order(
            session, redis, customer, [make_line(lamp, 1)], address,
            now=datetime(2024, 3, 20, 9, 0, tzinfo=timezone.utc),
        )
        numbers.append(order["orderNumber"])

    assert numbers == ["ORD-202403-0004", "ORD-202403-0005", "ORD-202403-0006"]


@pytest.mark.parametrize("message, expected", [
    ("UNIQUE constraint failed: orders.order_number", True),
    ("UNIQUE constraint failed: order_sequences.period", True),
    ('duplicate key value violates unique constraint "uq_orders_order_number"', True),
    ('duplicate key value violates unique constraint "pk_order_sequences"', True),
    ("FOREIGN KEY constraint failed", False),
    ('insert or update on table "orders" violates foreign key constraint "orders_customer_id_fkey"', False),
    ("UNIQUE constraint failed: users.email", False),
])
def test_only_order_number_constraints_count_as_collisions(message, expected):
    exc = IntegrityError("INSERT ...", {}, Exception(message))

    assert commands.is_order_number_collision(exc) is expected
