"""
Bookstore Service — コマンドハンドラ (CQRS Write 側)

書籍の追加・編集・削除を処理する。
ストアへの書き込みが確定した後、Redis Pub/Sub で変更イベントを発行し、
ライブクエリの購読者に通知する。

在庫の購入（減算）は ledger.StockLedger が担当する。
"""

import logging
from datetime import datetime, timezone
from uuid import uuid4

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from . import events
from .errors import NotFound
from .models import Book, BookCreate, BookUpdate
from .store import BookStore

logger = logging.getLogger(__name__)


async def _publish(redis: aioredis.Redis | None, event) -> None:
    if redis is None:
        return
    try:
        await events.publish(redis, event)
    except RedisError:
        # 書き込みは確定済み。購読者は再接続時にスナップショットで追いつく
        logger.exception("Failed to publish %s", type(event).__name__)


async def add_book(
    store: BookStore,
    redis: aioredis.Redis | None,
    data: BookCreate,
) -> Book:
    """
    書籍追加コマンド

    1. ID と作成日時を付与（作成日時は以後変更されない）
    2. ストアに保存
    3. BookAdded イベントを発行
    """
    now = datetime.now(timezone.utc)
    book = Book(id=str(uuid4()), created_at=now, **data.model_dump())

    await store.insert(book)
    logger.info("Added book %s (%s)", book.id, book.title)

    await _publish(
        redis, events.BookAdded(book_id=book.id, title=book.title, timestamp=now)
    )
    return book


async def update_book(
    store: BookStore,
    redis: aioredis.Redis | None,
    book_id: str,
    data: BookUpdate,
) -> Book:
    """書籍編集コマンド。指定されたフィールドだけを更新する。"""
    changes = data.changes()
    if not changes:
        book = await store.get(book_id)
        if book is None:
            raise NotFound(book_id)
        return book

    book = await store.update(book_id, changes)
    if book is None:
        raise NotFound(book_id)

    await _publish(
        redis,
        events.BookUpdated(
            book_id=book_id,
            fields=sorted(changes),
            timestamp=datetime.now(timezone.utc),
        ),
    )
    return book


async def delete_book(
    store: BookStore,
    redis: aioredis.Redis | None,
    book_id: str,
) -> None:
    """書籍削除コマンド"""
    if not await store.delete(book_id):
        raise NotFound(book_id)
    logger.info("Deleted book %s", book_id)

    await _publish(
        redis,
        events.BookDeleted(book_id=book_id, timestamp=datetime.now(timezone.utc)),
    )
