"""
Bookstore Service — FastAPI エントリーポイント

書店の在庫管理サービス。CQRS パターン。
書籍の CRUD、カート精算（在庫のアトミックな減算）、
書籍コレクションのライブクエリ (Server-Sent Events) を提供する。
"""

import json
import os
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.responses import StreamingResponse

from . import commands, queries
from .errors import (
    BookstoreError,
    InsufficientStock,
    InvalidInput,
    NotFound,
    TransientConflict,
    Unavailable,
)
from .ledger import StockLedger
from .models import Book, BookCreate, BookUpdate, PurchaseRequest
from .store import BookStore, MemoryBookStore, SqlBookStore
from .subscription import BookSubscription, ConnectionLost, Snapshot

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
PURCHASE_MAX_ATTEMPTS = int(os.environ.get("PURCHASE_MAX_ATTEMPTS", "5"))
PURCHASE_TIMEOUT = float(os.environ.get("PURCHASE_TIMEOUT", "10"))
SUBSCRIPTION_RETRY_DELAY = float(os.environ.get("SUBSCRIPTION_RETRY_DELAY", "1"))

store: BookStore | None = None
ledger: StockLedger | None = None
redis_pool: aioredis.Redis | None = None


def open_store(database_url: str) -> BookStore:
    if database_url == "memory://":
        return MemoryBookStore()
    return SqlBookStore.from_url(database_url, command_timeout=PURCHASE_TIMEOUT)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global store, ledger, redis_pool
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    store = open_store(DATABASE_URL)
    await store.create_schema()
    ledger = StockLedger(
        store,
        redis_pool,
        max_attempts=PURCHASE_MAX_ATTEMPTS,
        timeout=PURCHASE_TIMEOUT,
    )
    yield
    await store.close()
    await redis_pool.aclose()


app = FastAPI(title="Bookstore Service", lifespan=lifespan)


# ── エラー変換 ───────────────────────────────────

STATUS_CODES = {
    InvalidInput: 422,
    NotFound: 404,
    InsufficientStock: 409,
    TransientConflict: 409,
    Unavailable: 503,
}


def to_http_error(e: BookstoreError) -> HTTPException:
    detail = {"error": e.code, "message": str(e)}
    if isinstance(e, NotFound):
        detail["book_id"] = e.book_id
    if isinstance(e, InsufficientStock):
        detail.update(
            book_id=e.book_id, available=e.available, requested=e.requested
        )
    return HTTPException(status_code=STATUS_CODES.get(type(e), 500), detail=detail)


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/commands/books", response_model=Book, status_code=201)
async def cmd_add_book(req: BookCreate):
    """書籍追加コマンド"""
    try:
        return await commands.add_book(store, redis_pool, req)
    except BookstoreError as e:
        raise to_http_error(e) from e


@app.patch("/commands/books/{book_id}", response_model=Book)
async def cmd_update_book(book_id: str, req: BookUpdate):
    """書籍編集コマンド"""
    try:
        return await commands.update_book(store, redis_pool, book_id, req)
    except BookstoreError as e:
        raise to_http_error(e) from e


@app.delete("/commands/books/{book_id}", status_code=204)
async def cmd_delete_book(book_id: str):
    """書籍削除コマンド"""
    try:
        await commands.delete_book(store, redis_pool, book_id)
    except BookstoreError as e:
        raise to_http_error(e) from e
    return Response(status_code=204)


@app.post("/commands/purchases")
async def cmd_purchase(req: PurchaseRequest):
    """
    カート精算コマンド

    全アイテムの在庫をアトミックに減らす。1つでも失敗すれば何も減らさない。
    """
    try:
        await ledger.purchase(req.pairs())
    except BookstoreError as e:
        raise to_http_error(e) from e
    return {"success": True}


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/queries/books", response_model=list[Book])
async def query_list_books():
    """全書籍を作成日時の新しい順に取得"""
    try:
        return await queries.list_books(store)
    except BookstoreError as e:
        raise to_http_error(e) from e


async def sse_frames(subscription: BookSubscription, is_disconnected):
    """ライブクエリの信号を Server-Sent Events のフレームに変換する"""
    stream = aiter(subscription)
    try:
        async for signal in stream:
            if await is_disconnected():
                break
            if isinstance(signal, Snapshot):
                data = json.dumps(
                    [b.model_dump(mode="json", by_alias=True) for b in signal.books]
                )
                yield f"event: snapshot\ndata: {data}\n\n"
            elif isinstance(signal, ConnectionLost):
                data = json.dumps({"reason": signal.reason})
                yield f"event: connection_lost\ndata: {data}\n\n"
    finally:
        subscription.cancel()
        await stream.aclose()


@app.get("/queries/books/stream")
async def query_stream_books(request: Request):
    """
    ライブクエリ (Server-Sent Events)

    最初に全書籍のスナップショットを送り、その後は変更のたびに送る。
    接続断は connection_lost イベントで通知し、ストリームは継続する。
    """
    subscription = BookSubscription(
        store, redis_pool, retry_delay=SUBSCRIPTION_RETRY_DELAY
    )
    return StreamingResponse(
        sse_frames(subscription, request.is_disconnected),
        media_type="text/event-stream",
    )


@app.get("/queries/books/{book_id}", response_model=Book)
async def query_get_book(book_id: str):
    """指定書籍を取得"""
    try:
        book = await queries.get_book(store, book_id)
    except BookstoreError as e:
        raise to_http_error(e) from e
    if not book:
        raise to_http_error(NotFound(book_id))
    return book


@app.get("/health")
async def health():
    return {"status": "ok", "service": "bookstore-service"}
