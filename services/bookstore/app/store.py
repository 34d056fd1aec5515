"""
Bookstore Service — 書籍ストア

書籍ドキュメントの永続化層。台帳はこの抽象だけを使う。

楽観的ロック:
  各書籍は version を持ち、すべての書き込みで +1 される。
  購入のコミットは「読み取り時の version と一致する場合のみ」
  相対減算 (stock = stock - :qty) を適用する。
  一致しない行が1つでもあればトランザクション全体をロールバックし、
  WriteConflict を送出する → 台帳が読み取りからやり直す。

  ┌────────────┐  read_stock   ┌───────────┐
  │ StockLedger│ ────────────▶ │ BookStore │
  │            │ ◀──────────── │           │
  │            │ apply_decrements (version 条件付き)
  └────────────┘ ────────────▶ └───────────┘
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    delete,
    insert,
    make_url,
    select,
    update,
)
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from .errors import Unavailable, WriteConflict
from .models import Book, Decrement, StockSnapshot

logger = logging.getLogger(__name__)

metadata = MetaData()

books = Table(
    "books",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("title", String(512), nullable=False),
    Column("author", String(512), nullable=False),
    Column("isbn", String(32), nullable=False, default=""),
    Column("price", Numeric(10, 2), nullable=False),
    Column("stock", Integer, nullable=False),
    Column("category", String(128), nullable=False, default=""),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Column("version", Integer, nullable=False, default=0),
    CheckConstraint("stock >= 0", name="ck_books_stock_non_negative"),
    CheckConstraint("price >= 0", name="ck_books_price_non_negative"),
)

UPDATABLE_FIELDS = {"title", "author", "isbn", "price", "stock", "category"}


class BookStore(ABC):
    """書籍ドキュメントストアのインターフェース"""

    async def create_schema(self) -> None:
        return None

    @abstractmethod
    async def insert(self, book: Book) -> None: ...

    @abstractmethod
    async def get(self, book_id: str) -> Book | None: ...

    @abstractmethod
    async def list_books(self) -> list[Book]:
        """作成日時の降順で全書籍を返す"""

    @abstractmethod
    async def update(self, book_id: str, changes: dict) -> Book | None: ...

    @abstractmethod
    async def delete(self, book_id: str) -> bool: ...

    @abstractmethod
    async def read_stock(self, book_ids: list[str]) -> dict[str, StockSnapshot]:
        """
        参照する全書籍の在庫を1回の一貫した読み取りで取得する。
        存在しない id は結果に含まれない。
        """

    @abstractmethod
    async def apply_decrements(self, decrements: list[Decrement]) -> None:
        """
        すべての減算を1つのアトミックな単位として適用する。
        いずれかの version が変わっていれば何も適用せず WriteConflict。
        """

    async def close(self) -> None:
        return None


def _utc(value: datetime) -> datetime:
    # SQLite はタイムゾーンを保存しないので UTC とみなす
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _row_to_book(row) -> Book:
    return Book(
        id=row.id,
        title=row.title,
        author=row.author,
        isbn=row.isbn,
        price=row.price,
        stock=row.stock,
        category=row.category,
        created_at=_utc(row.created_at),
    )


class SqlBookStore(BookStore):
    """SQLAlchemy (async) による実装。PostgreSQL / SQLite で動作する。"""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self.session_factory = sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False
        )

    @classmethod
    def from_url(
        cls,
        database_url: str,
        command_timeout: float | None = None,
        **engine_kwargs,
    ) -> "SqlBookStore":
        """
        URL からエンジンを作る。

        command_timeout を指定すると、コネクション取得と各 SQL 文の待ち時間に
        上限がかかる (asyncpg: pool_timeout + command_timeout,
        SQLite: ロック待ちの timeout)。超過はドライバのエラーとして返り、
        Unavailable になる。コミットはこの上限の中で必ず決着する。
        """
        if command_timeout is not None:
            url = make_url(database_url)
            connect_args = engine_kwargs.setdefault("connect_args", {})
            if url.get_driver_name() == "asyncpg":
                engine_kwargs.setdefault("pool_timeout", command_timeout)
                connect_args.setdefault("command_timeout", command_timeout)
            elif url.get_backend_name() == "sqlite":
                connect_args.setdefault("timeout", command_timeout)
        return cls(create_async_engine(database_url, echo=False, **engine_kwargs))

    async def create_schema(self) -> None:
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(metadata.create_all)
        except (OperationalError, InterfaceError, OSError) as e:
            raise Unavailable(f"Database unavailable: {e}") from e

    async def insert(self, book: Book) -> None:
        now = datetime.now(timezone.utc)
        try:
            async with self.session_factory() as session, session.begin():
                await session.execute(
                    insert(books).values(
                        id=book.id,
                        title=book.title,
                        author=book.author,
                        isbn=book.isbn,
                        price=book.price,
                        stock=book.stock,
                        category=book.category,
                        created_at=book.created_at,
                        updated_at=now,
                        version=0,
                    )
                )
        except (OperationalError, InterfaceError, OSError) as e:
            raise Unavailable(f"Database unavailable: {e}") from e

    async def get(self, book_id: str) -> Book | None:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(books).where(books.c.id == book_id)
                )
                row = result.fetchone()
        except (OperationalError, InterfaceError, OSError) as e:
            raise Unavailable(f"Database unavailable: {e}") from e
        return _row_to_book(row) if row else None

    async def list_books(self) -> list[Book]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(books).order_by(
                        books.c.created_at.desc(), books.c.id.asc()
                    )
                )
                rows = result.fetchall()
        except (OperationalError, InterfaceError, OSError) as e:
            raise Unavailable(f"Database unavailable: {e}") from e
        return [_row_to_book(row) for row in rows]

    async def update(self, book_id: str, changes: dict) -> Book | None:
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated: {sorted(unknown)}")
        try:
            async with self.session_factory() as session, session.begin():
                result = await session.execute(
                    update(books)
                    .where(books.c.id == book_id)
                    .values(
                        **changes,
                        version=books.c.version + 1,
                        updated_at=datetime.now(timezone.utc),
                    )
                )
                if result.rowcount == 0:
                    return None
                row = (
                    await session.execute(select(books).where(books.c.id == book_id))
                ).fetchone()
        except (OperationalError, InterfaceError, OSError) as e:
            raise Unavailable(f"Database unavailable: {e}") from e
        return _row_to_book(row)

    async def delete(self, book_id: str) -> bool:
        try:
            async with self.session_factory() as session, session.begin():
                result = await session.execute(
                    delete(books).where(books.c.id == book_id)
                )
        except (OperationalError, InterfaceError, OSError) as e:
            raise Unavailable(f"Database unavailable: {e}") from e
        return result.rowcount > 0

    async def read_stock(self, book_ids: list[str]) -> dict[str, StockSnapshot]:
        # 1つの SELECT で読むので、全行が同一時点のスナップショットになる
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(
                        books.c.id, books.c.title, books.c.stock, books.c.version
                    ).where(books.c.id.in_(book_ids))
                )
                rows = result.fetchall()
        except (OperationalError, InterfaceError, OSError) as e:
            raise Unavailable(f"Database unavailable: {e}") from e
        return {
            row.id: StockSnapshot(row.id, row.title, row.stock, row.version)
            for row in rows
        }

    async def apply_decrements(self, decrements: list[Decrement]) -> None:
        now = datetime.now(timezone.utc)
        try:
            async with self.session_factory() as session, session.begin():
                # id 順に書き込み、重なるコミット同士のデッドロックを避ける
                for d in sorted(decrements, key=lambda d: d.book_id):
                    result = await session.execute(
                        update(books)
                        .where(
                            books.c.id == d.book_id,
                            books.c.version == d.expected_version,
                        )
                        .values(
                            stock=books.c.stock - d.quantity,
                            version=books.c.version + 1,
                            updated_at=now,
                        )
                    )
                    if result.rowcount != 1:
                        # session.begin() を例外で抜ける → ロールバック
                        logger.debug(
                            "Version mismatch on book %s (expected %d)",
                            d.book_id,
                            d.expected_version,
                        )
                        raise WriteConflict(d.book_id)
        except (OperationalError, InterfaceError, OSError) as e:
            raise Unavailable(f"Database unavailable: {e}") from e

    async def close(self) -> None:
        await self.engine.dispose()


class MemoryBookStore(BookStore):
    """
    プロセス内ストア。SqlBookStore と同じ楽観的ロックの意味論を持つ。

    コミット時の version 検査と適用だけをロックの中で行う
    （DB のコミット処理に相当）。読み取りから書き込みまでの間は
    何もロックしない。
    """

    def __init__(self) -> None:
        self._docs: dict[str, Book] = {}
        self._versions: dict[str, int] = {}
        self._commit_lock = asyncio.Lock()

    async def insert(self, book: Book) -> None:
        async with self._commit_lock:
            self._docs[book.id] = book.model_copy()
            self._versions[book.id] = 0

    async def get(self, book_id: str) -> Book | None:
        await asyncio.sleep(0)
        book = self._docs.get(book_id)
        return book.model_copy() if book else None

    async def list_books(self) -> list[Book]:
        await asyncio.sleep(0)
        ordered = sorted(self._docs.values(), key=lambda b: b.id)
        ordered.sort(key=lambda b: b.created_at, reverse=True)
        return [b.model_copy() for b in ordered]

    async def update(self, book_id: str, changes: dict) -> Book | None:
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated: {sorted(unknown)}")
        async with self._commit_lock:
            book = self._docs.get(book_id)
            if book is None:
                return None
            updated = book.model_copy(update=changes)
            self._docs[book_id] = updated
            self._versions[book_id] += 1
            return updated.model_copy()

    async def delete(self, book_id: str) -> bool:
        async with self._commit_lock:
            if self._docs.pop(book_id, None) is None:
                return False
            del self._versions[book_id]
            return True

    async def read_stock(self, book_ids: list[str]) -> dict[str, StockSnapshot]:
        # 他のコルーチンに実行を譲り、読み取りとコミットの間の割り込みを再現する
        await asyncio.sleep(0)
        return {
            book_id: StockSnapshot(
                book_id,
                self._docs[book_id].title,
                self._docs[book_id].stock,
                self._versions[book_id],
            )
            for book_id in book_ids
            if book_id in self._docs
        }

    async def apply_decrements(self, decrements: list[Decrement]) -> None:
        await asyncio.sleep(0)
        async with self._commit_lock:
            for d in decrements:
                if self._versions.get(d.book_id) != d.expected_version:
                    raise WriteConflict(d.book_id)
                if self._docs[d.book_id].stock < d.quantity:
                    # CHECK (stock >= 0) に相当
                    raise WriteConflict(d.book_id)
            for d in decrements:
                book = self._docs[d.book_id]
                self._docs[d.book_id] = book.model_copy(
                    update={"stock": book.stock - d.quantity}
                )
                self._versions[d.book_id] += 1
