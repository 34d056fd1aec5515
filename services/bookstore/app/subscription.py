"""
Bookstore Service — ライブクエリ (書籍コレクションの購読)

book_events チャネルを購読し、変更があるたびに
全書籍（作成日時の降順）のスナップショットを配信する。

  ┌──────────────┐  book_events  ┌──────────────────┐
  │ commands /   │ ─── Redis ──▶ │ BookSubscription │ ──▶ Snapshot
  │ StockLedger  │   Pub/Sub     │                  │ ──▶ ConnectionLost
  └──────────────┘               └──────────────────┘

- 最初に購読してから初期スナップショットを読むので、その間の変更を取りこぼさない
- 接続が切れたら ConnectionLost を通知し、待ってから再購読する（購読は終了しない）
- cancel() の後は何も配信しない。永続化された状態には一切触れない
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .errors import Unavailable
from .events import BOOK_EVENTS_CHANNEL
from .models import Book
from .store import BookStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Snapshot:
    """コレクション全体のスナップショット"""
    books: list[Book]


@dataclass(frozen=True)
class ConnectionLost:
    """接続断のシグナル。購読は継続し、復旧後に新しいスナップショットが届く。"""
    reason: str


class BookSubscription:
    def __init__(
        self,
        store: BookStore,
        redis: aioredis.Redis,
        channel: str = BOOK_EVENTS_CHANNEL,
        poll_interval: float = 1.0,
        retry_delay: float = 1.0,
    ):
        self.store = store
        self.redis = redis
        self.channel = channel
        self.poll_interval = poll_interval
        self.retry_delay = retry_delay
        self._cancelled = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def __aiter__(self) -> AsyncIterator[Snapshot | ConnectionLost]:
        return self._run()

    async def _run(self) -> AsyncIterator[Snapshot | ConnectionLost]:
        while not self.cancelled:
            pubsub = self.redis.pubsub()
            subscribed = False
            try:
                await pubsub.subscribe(self.channel)
                subscribed = True
                logger.info("Subscribed to %s channel", self.channel)

                books = await self.store.list_books()
                if self.cancelled:
                    return
                yield Snapshot(books)

                while not self.cancelled:
                    message = await pubsub.get_message(
                        ignore_subscribe_messages=True, timeout=self.poll_interval
                    )
                    if not message or message["type"] != "message":
                        continue
                    books = await self.store.list_books()
                    if self.cancelled:
                        return
                    yield Snapshot(books)
            except (RedisError, Unavailable) as e:
                if self.cancelled:
                    return
                logger.warning("Book subscription lost connection: %s", e)
                yield ConnectionLost(str(e))
                await self._wait_before_retry()
            finally:
                await self._close(pubsub, subscribed)

    async def _wait_before_retry(self) -> None:
        try:
            await asyncio.wait_for(self._cancelled.wait(), self.retry_delay)
        except asyncio.TimeoutError:
            pass

    async def _close(self, pubsub, subscribed: bool) -> None:
        if subscribed:
            try:
                await pubsub.unsubscribe(self.channel)
            except RedisError as e:
                logger.debug("Unsubscribe from %s failed: %s", self.channel, e)
        await pubsub.aclose()


def subscribe_to_books(
    store: BookStore,
    redis: aioredis.Redis,
    callback: Callable[[list[Book]], None],
    on_error: Callable[[ConnectionLost], None] | None = None,
    **options,
) -> Callable[[], None]:
    """
    コールバック登録型の購読。戻り値を呼ぶと購読を解除する。

    実行中のイベントループから呼ぶこと。
    """
    subscription = BookSubscription(store, redis, **options)

    async def pump() -> None:
        async for signal in subscription:
            try:
                if isinstance(signal, Snapshot):
                    callback(signal.books)
                elif on_error is not None:
                    on_error(signal)
            except Exception:
                logger.exception("Book subscription callback failed")

    task = asyncio.create_task(pump())

    def unsubscribe() -> None:
        subscription.cancel()
        task.cancel()

    return unsubscribe
