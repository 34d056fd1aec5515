"""
Bookstore Service — 例外定義

コア（台帳・ストア）は型付きの例外を送出し、
HTTP ステータスへの変換は main.py だけが行う。
"""


class BookstoreError(Exception):
    """Bookstore Service のすべての例外の基底クラス"""

    code = "bookstore_error"


class InvalidInput(BookstoreError):
    """購入リクエストが不正（空のリスト、0 以下の数量など）"""

    code = "invalid_input"


class NotFound(BookstoreError):
    """指定した書籍が存在しない"""

    code = "not_found"

    def __init__(self, book_id: str) -> None:
        super().__init__(f"Book with ID {book_id} not found")
        self.book_id = book_id


class InsufficientStock(BookstoreError):
    """在庫不足。ユーザー向けメッセージのために在庫数と要求数を持つ。"""

    code = "insufficient_stock"

    def __init__(
        self,
        book_id: str,
        available: int,
        requested: int,
        title: str | None = None,
    ) -> None:
        label = f'"{title}"' if title else book_id
        super().__init__(
            f"Insufficient stock for {label}. "
            f"Available: {available}, Requested: {requested}"
        )
        self.book_id = book_id
        self.available = available
        self.requested = requested
        self.title = title


class TransientConflict(BookstoreError):
    """競合によるリトライを使い切った"""

    code = "transient_conflict"

    def __init__(self, attempts: int) -> None:
        super().__init__(
            f"Purchase aborted after {attempts} conflicting attempt(s). Please try again."
        )
        self.attempts = attempts


class Unavailable(BookstoreError):
    """バックエンドのストアに到達できない"""

    code = "unavailable"


class WriteConflict(Exception):
    """
    ストア内部の競合シグナル。

    読み取り後に別トランザクションがドキュメントを書き換えた場合、
    条件付きコミットがこの例外で拒否される。台帳の外には出さない。
    """

    def __init__(self, book_id: str) -> None:
        super().__init__(f"Concurrent modification of book {book_id}")
        self.book_id = book_id
