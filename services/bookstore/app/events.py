"""
Bookstore Service — イベント定義

書籍コレクションの変更イベント。コミット後に Redis Pub/Sub の
book_events チャネルへ発行され、ライブクエリの購読者が
スナップショットを再取得するきっかけになる。
"""

import json
from datetime import datetime

import redis.asyncio as aioredis
from pydantic import BaseModel

BOOK_EVENTS_CHANNEL = "book_events"


class BookAdded(BaseModel):
    """書籍が追加された"""
    book_id: str
    title: str
    timestamp: datetime


class BookUpdated(BaseModel):
    """書籍が編集された"""
    book_id: str
    fields: list[str]
    timestamp: datetime


class BookDeleted(BaseModel):
    """書籍が削除された"""
    book_id: str
    timestamp: datetime


class StockPurchased(BaseModel):
    """購入により在庫がアトミックに減算された"""
    items: dict[str, int]
    timestamp: datetime


async def publish(
    redis: aioredis.Redis,
    event: BaseModel,
    channel: str = BOOK_EVENTS_CHANNEL,
) -> None:
    await redis.publish(
        channel,
        json.dumps(
            {
                "event_type": type(event).__name__,
                "data": event.model_dump(mode="json"),
            },
            default=str,
        ),
    )
