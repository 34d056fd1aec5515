"""
Live query tests

Initial snapshot, a fresh snapshot per change, cancellation, and the
connection-lost signal followed by transparent recovery.
"""

import asyncio
from decimal import Decimal

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from app import commands
from app.errors import Unavailable
from app.ledger import StockLedger
from app.models import BookCreate
from app.subscription import (
    BookSubscription,
    ConnectionLost,
    Snapshot,
    subscribe_to_books,
)

TIMEOUT = 2.0


def new_book(title: str, stock: int = 1) -> BookCreate:
    return BookCreate(title=title, author="Jane Austen", price=Decimal("8.00"), stock=stock)


class BrokenPubSub:
    """A pubsub whose connection is refused."""

    async def subscribe(self, *channels):
        raise RedisConnectionError("Error 111 connecting to localhost:6379. Connection refused.")

    async def aclose(self):
        return None


class FlakyRedis:
    """Refuses the first `failures` subscriptions, then behaves like `redis`."""

    def __init__(self, redis, failures: int):
        self.redis = redis
        self.failures = failures

    def pubsub(self):
        if self.failures > 0:
            self.failures -= 1
            return BrokenPubSub()
        return self.redis.pubsub()


@pytest.fixture
async def close_streams():
    streams = []
    yield streams
    for stream in streams:
        await stream.aclose()


async def next_signal(stream):
    return await asyncio.wait_for(anext(stream), TIMEOUT)


class TestSnapshots:

    async def test_initial_snapshot_then_updates(self, memory_store, redis, make_book, close_streams):
        older = await make_book(memory_store, title="Emma")
        newer = await make_book(memory_store, title="Persuasion")
        subscription = BookSubscription(memory_store, redis, poll_interval=0.05)
        stream = aiter(subscription)
        close_streams.append(stream)

        first = await next_signal(stream)
        assert isinstance(first, Snapshot)
        assert [b.id for b in first.books] == [newer.id, older.id]

        added = await commands.add_book(memory_store, redis, new_book("Sanditon"))
        second = await next_signal(stream)
        assert isinstance(second, Snapshot)
        assert added.id in [b.id for b in second.books]
        assert len(second.books) == 3

    async def test_purchase_delivers_updated_stock(self, memory_store, redis, make_book, close_streams):
        book = await make_book(memory_store, stock=5)
        subscription = BookSubscription(memory_store, redis, poll_interval=0.05)
        stream = aiter(subscription)
        close_streams.append(stream)
        await next_signal(stream)

        await StockLedger(memory_store, redis).purchase([(book.id, 2)])

        update = await next_signal(stream)
        assert [b.stock for b in update.books] == [3]

    async def test_delete_delivers_snapshot_without_book(self, memory_store, redis, make_book, close_streams):
        book = await make_book(memory_store)
        subscription = BookSubscription(memory_store, redis, poll_interval=0.05)
        stream = aiter(subscription)
        close_streams.append(stream)
        await next_signal(stream)

        await commands.delete_book(memory_store, redis, book.id)

        update = await next_signal(stream)
        assert update.books == []


class TestCancellation:

    async def test_cancel_stops_delivery(self, memory_store, redis, close_streams):
        subscription = BookSubscription(memory_store, redis, poll_interval=0.05)
        stream = aiter(subscription)
        close_streams.append(stream)
        await next_signal(stream)

        subscription.cancel()
        await commands.add_book(memory_store, redis, new_book("Lady Susan"))

        assert subscription.cancelled
        with pytest.raises(StopAsyncIteration):
            await next_signal(stream)

    async def test_cancel_before_first_snapshot(self, memory_store, redis):
        subscription = BookSubscription(memory_store, redis, poll_interval=0.05)
        subscription.cancel()

        signals = [signal async for signal in subscription]

        assert signals == []

    async def test_cancel_leaves_store_untouched(self, memory_store, redis, make_book, close_streams):
        book = await make_book(memory_store, stock=4)
        subscription = BookSubscription(memory_store, redis, poll_interval=0.05)
        stream = aiter(subscription)
        close_streams.append(stream)
        await next_signal(stream)

        subscription.cancel()

        assert (await memory_store.get(book.id)).stock == 4


class TestConnectivity:

    async def test_connection_lost_then_recovers(self, memory_store, redis, make_book, close_streams):
        book = await make_book(memory_store)
        flaky = FlakyRedis(redis, failures=2)
        subscription = BookSubscription(
            memory_store, flaky, poll_interval=0.05, retry_delay=0.05
        )
        stream = aiter(subscription)
        close_streams.append(stream)

        first = await next_signal(stream)
        second = await next_signal(stream)
        third = await next_signal(stream)

        assert isinstance(first, ConnectionLost)
        assert "Connection refused" in first.reason
        assert isinstance(second, ConnectionLost)
        assert isinstance(third, Snapshot)
        assert [b.id for b in third.books] == [book.id]
        assert not subscription.cancelled

    async def test_store_unavailable_is_reported_as_connection_lost(
        self, memory_store, redis, make_book, monkeypatch, close_streams
    ):
        await make_book(memory_store)
        original = memory_store.list_books
        calls = []

        async def flaky_list():
            calls.append(1)
            if len(calls) == 1:
                raise Unavailable("Database unavailable: connection reset")
            return await original()

        monkeypatch.setattr(memory_store, "list_books", flaky_list)
        subscription = BookSubscription(
            memory_store, redis, poll_interval=0.05, retry_delay=0.05
        )
        stream = aiter(subscription)
        close_streams.append(stream)

        first = await next_signal(stream)
        second = await next_signal(stream)

        assert isinstance(first, ConnectionLost)
        assert isinstance(second, Snapshot)
        assert len(second.books) == 1

    async def test_cancel_during_outage(self, memory_store, redis, close_streams):
        subscription = BookSubscription(
            memory_store, FlakyRedis(redis, failures=100), poll_interval=0.05, retry_delay=5
        )
        stream = aiter(subscription)
        close_streams.append(stream)
        assert isinstance(await next_signal(stream), ConnectionLost)

        subscription.cancel()

        with pytest.raises(StopAsyncIteration):
            await next_signal(stream)


class TestCallbackSubscription:

    async def test_callbacks_until_unsubscribed(self, memory_store, redis):
        received = []
        delivered = asyncio.Event()

        def on_books(books):
            received.append([b.title for b in books])
            delivered.set()

        unsubscribe = subscribe_to_books(memory_store, redis, on_books, poll_interval=0.05)

        await asyncio.wait_for(delivered.wait(), TIMEOUT)
        delivered.clear()
        await commands.add_book(memory_store, redis, new_book("Emma"))
        await asyncio.wait_for(delivered.wait(), TIMEOUT)

        assert received == [[], ["Emma"]]

        unsubscribe()
        await commands.add_book(memory_store, redis, new_book("Persuasion"))
        await asyncio.sleep(0.2)

        assert received == [[], ["Emma"]]

    async def test_errors_go_to_error_callback(self, memory_store, redis):
        errors = []
        failed = asyncio.Event()

        def on_error(signal):
            errors.append(signal)
            failed.set()

        unsubscribe = subscribe_to_books(
            memory_store,
            FlakyRedis(redis, failures=1),
            lambda books: None,
            on_error,
            poll_interval=0.05,
            retry_delay=0.05,
        )
        try:
            await asyncio.wait_for(failed.wait(), TIMEOUT)
        finally:
            unsubscribe()
            await asyncio.sleep(0.1)

        assert isinstance(errors[0], ConnectionLost)
