"""
Order Service — 設定

すべての設定は環境変数から読み込む。
本番環境では DATABASE_URL に postgresql+asyncpg:// を指定する。
"""

import os

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./orders.db")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
ORDER_EVENTS_CHANNEL = os.environ.get("ORDER_EVENTS_CHANNEL", "order_events")

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
DEBUG = os.environ.get("DEBUG", "").lower() in ("1", "true", "yes")
DB_ECHO = os.environ.get("DB_ECHO", "").lower() in ("1", "true", "yes")

HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8000"))
