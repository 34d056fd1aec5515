"""
Bookstore Service — 在庫台帳 (StockLedger)

カート精算時の在庫引き当て。複数の書籍の在庫を
「全部減らすか、何も減らさないか」のどちらかで処理する。

  フロー (1回の試行):
  ┌──────────────────────────────────────────────────────┐
  │  1. 参照する全書籍の在庫をスナップショット読み取り   │
  │  2. 存在確認 → NotFound                              │
  │  3. 在庫確認 → InsufficientStock                     │
  │  4. 相対減算を version 条件付きで一括コミット        │
  │     └─ 競合 (WriteConflict) → 1 からやり直す         │
  └──────────────────────────────────────────────────────┘

検証で失敗した場合は何も書き込んでいないので、補償処理は不要。
"""

import asyncio
import logging
import random
import time
from collections.abc import Iterable
from datetime import datetime, timezone

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from . import events
from .errors import (
    InsufficientStock,
    InvalidInput,
    NotFound,
    TransientConflict,
    Unavailable,
    WriteConflict,
)
from .models import Decrement
from .store import BookStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5


def normalize_items(items: Iterable[tuple[str, int]]) -> dict[str, int]:
    """
    購入アイテムを検証し、書籍ごとの数量にまとめる。

    同じ書籍 ID が複数回現れた場合は数量を合算する（最初の出現位置を保つ）。
    """
    merged: dict[str, int] = {}
    for book_id, quantity in items:
        if not isinstance(book_id, str) or not book_id:
            raise InvalidInput(f"Invalid book id: {book_id!r}")
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise InvalidInput(f"Quantity for {book_id} must be an integer")
        if quantity <= 0:
            raise InvalidInput(
                f"Quantity for {book_id} must be positive, got {quantity}"
            )
        merged[book_id] = merged.get(book_id, 0) + quantity
    if not merged:
        raise InvalidInput("Purchase must contain at least one item")
    return merged


class StockLedger:
    """在庫のアトミックな複数アイテム購入"""

    def __init__(
        self,
        store: BookStore,
        redis: aioredis.Redis | None = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        timeout: float = 10.0,
        retry_backoff: float = 0.01,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.store = store
        self.redis = redis
        self.max_attempts = max_attempts
        self.timeout = timeout
        self.retry_backoff = retry_backoff

    async def purchase(self, items: Iterable[tuple[str, int]]) -> None:
        """
        購入を実行する。

        成功時は各書籍の在庫が要求数だけ減る。失敗時は型付きの例外を送出し、
        永続化された状態は一切変わらない。
        """
        requested = normalize_items(items)
        deadline = time.monotonic() + self.timeout

        attempt = 0
        while True:
            attempt += 1
            try:
                await self._attempt(requested, deadline)
                break
            except WriteConflict as e:
                logger.debug(
                    "Purchase attempt %d/%d conflicted on book %s",
                    attempt,
                    self.max_attempts,
                    e.book_id,
                )
                if attempt >= self.max_attempts or time.monotonic() >= deadline:
                    logger.warning(
                        "Purchase gave up after %d conflicting attempt(s)", attempt
                    )
                    raise TransientConflict(attempt) from e
                await asyncio.sleep(
                    self.retry_backoff * attempt * (1 + random.random())
                )

        if attempt > 1:
            logger.info("Purchase committed after %d attempts", attempt)
        await self._notify(requested)

    async def _attempt(self, requested: dict[str, int], deadline: float) -> None:
        # 1. スナップショット読み取り（書き込み前に全件）。残り時間で打ち切る
        try:
            async with asyncio.timeout(max(deadline - time.monotonic(), 0)):
                snapshot = await self.store.read_stock(list(requested))
        except TimeoutError as e:
            raise Unavailable(
                f"Stock read did not finish within {self.timeout}s"
            ) from e

        # 2, 3. 検証。ここで失敗すれば何も書き込まれていない
        decrements = []
        for book_id, quantity in requested.items():
            current = snapshot.get(book_id)
            if current is None:
                raise NotFound(book_id)
            if current.stock < quantity:
                raise InsufficientStock(
                    book_id, current.stock, quantity, title=current.title
                )
            decrements.append(Decrement(book_id, quantity, current.version))

        # 4. 相対減算を一括コミット。途中で取り消さない（上限はストア側のタイムアウト）
        await self.store.apply_decrements(decrements)

    async def _notify(self, requested: dict[str, int]) -> None:
        if self.redis is None:
            return
        event = events.StockPurchased(
            items=requested, timestamp=datetime.now(timezone.utc)
        )
        try:
            await events.publish(self.redis, event)
        except RedisError:
            # 購入はコミット済み。通知の失敗で購入を失敗扱いにはしない
            logger.exception("Failed to publish StockPurchased event")
