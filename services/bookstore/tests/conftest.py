"""
conftest.py - Shared pytest fixtures for Bookstore Service tests

Provides:
- Stores (in-memory, SQLite via aiosqlite, or both through `store`)
- A fake Redis client for the book_events channel
- A factory for inserting book records with explicit stock/creation time
- A FastAPI TestClient wired to an in-memory store and fake Redis
"""

import os

# main.py reads its configuration at import time
os.environ["DATABASE_URL"] = "memory://"

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import fakeredis
import pytest
from fastapi.testclient import TestClient

from app.models import Book
from app.store import MemoryBookStore, SqlBookStore


BASE_TIME = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
async def memory_store():
    store = MemoryBookStore()
    yield store
    await store.close()


@pytest.fixture
async def sql_store(tmp_path):
    store = SqlBookStore.from_url(f"sqlite+aiosqlite:///{tmp_path / 'books.db'}")
    await store.create_schema()
    yield store
    await store.close()


@pytest.fixture(params=["memory", "sql"])
async def store(request, tmp_path):
    """Runs the test against both store implementations."""
    if request.param == "memory":
        store = MemoryBookStore()
    else:
        store = SqlBookStore.from_url(f"sqlite+aiosqlite:///{tmp_path / 'books.db'}")
    await store.create_schema()
    yield store
    await store.close()


@pytest.fixture
async def redis():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def make_book():
    """
    Insert a book directly into a store.

    Each call gets a creation time one minute after the previous one,
    so ordering by createdAt is deterministic.
    """
    counter = {"n": 0}

    async def _make(store, title="Dune", stock=3, price="10.00", **fields) -> Book:
        counter["n"] += 1
        book = Book(
            id=fields.pop("id", str(uuid4())),
            title=title,
            author=fields.pop("author", "Frank Herbert"),
            isbn=fields.pop("isbn", "978-0441013593"),
            price=Decimal(price),
            stock=stock,
            category=fields.pop("category", "Science Fiction"),
            created_at=fields.pop(
                "created_at", BASE_TIME + timedelta(minutes=counter["n"])
            ),
        )
        await store.insert(book)
        return book

    return _make


@pytest.fixture
def client(monkeypatch):
    from app import main

    monkeypatch.setattr(
        main.aioredis,
        "from_url",
        lambda *args, **kwargs: fakeredis.FakeAsyncRedis(decode_responses=True),
    )
    with TestClient(main.app) as client:
        yield client
