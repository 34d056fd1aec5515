"""
Bookstore Service — クエリハンドラ (CQRS Read 側)
"""

from .models import Book
from .store import BookStore


async def get_book(store: BookStore, book_id: str) -> Book | None:
    return await store.get(book_id)


async def list_books(store: BookStore) -> list[Book]:
    """全書籍を作成日時の新しい順に返す"""
    return await store.list_books()
