"""
Order Service — イベント定義

注文の状態が変わったことを他サービス (マーケティング・分析など) に通知する。
イベントは過去形で命名し、コミット後に Redis Pub/Sub で発行する。
正はあくまで RDB のテーブルで、イベントは通知にすぎない。
"""

import json
import logging
from datetime import datetime

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError

from .config import ORDER_EVENTS_CHANNEL

logger = logging.getLogger(__name__)


class OrderLine(BaseModel):
    product_id: str
    quantity: int
    price: int


class OrderCreated(BaseModel):
    """注文が作成された"""
    order_id: str
    order_number: str
    customer_id: str
    total: int
    items: list[OrderLine]
    timestamp: datetime


class OrderStatusChanged(BaseModel):
    """管理者が注文ステータスを変更した"""
    order_id: str
    previous_status: str
    status: str
    timestamp: datetime


class OrderCancelled(BaseModel):
    """注文がキャンセルされ、在庫が戻された"""
    order_id: str
    cancelled_by: str
    restored: list[OrderLine]
    timestamp: datetime


async def publish(redis: aioredis.Redis | None, event: BaseModel) -> None:
    """
    イベントを order_events チャネルに発行する。

    注文はすでにコミット済みなので、発行に失敗してもリクエストは失敗させない。
    """
    if redis is None:
        return
    event_type = type(event).__name__
    try:
        await redis.publish(ORDER_EVENTS_CHANNEL, json.dumps({
            "event_type": event_type,
            "data": event.model_dump(mode="json"),
        }, default=str))
    except RedisError:
        logger.exception("Failed to publish %s", event_type)
