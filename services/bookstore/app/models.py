"""
Bookstore Service — 書籍モデル

書籍レコードと購入リクエストの Pydantic モデル。
JSON では作成日時を createdAt として扱う。
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

# books テーブルの列に収まる範囲
MAX_STOCK = 2**31 - 1
MAX_PRICE = Decimal("99999999.99")


class BookCreate(BaseModel):
    """書籍の追加リクエスト"""
    title: str = Field(min_length=1, max_length=512)
    author: str = Field(min_length=1, max_length=512)
    isbn: str = Field(default="", max_length=32)
    price: Decimal = Field(ge=0, le=MAX_PRICE, max_digits=10, decimal_places=2)
    stock: int = Field(ge=0, le=MAX_STOCK)
    category: str = Field(default="", max_length=128)


class BookUpdate(BaseModel):
    """書籍の部分更新。id と createdAt は変更できない。"""
    model_config = ConfigDict(extra="forbid")

    title: str | None = Field(default=None, min_length=1, max_length=512)
    author: str | None = Field(default=None, min_length=1, max_length=512)
    isbn: str | None = Field(default=None, max_length=32)
    price: Decimal | None = Field(
        default=None, ge=0, le=MAX_PRICE, max_digits=10, decimal_places=2
    )
    stock: int | None = Field(default=None, ge=0, le=MAX_STOCK)
    category: str | None = Field(default=None, max_length=128)

    def changes(self) -> dict:
        # 明示的に指定され、かつ None でないフィールドだけを更新する
        return {
            k: v
            for k, v in self.model_dump(exclude_unset=True).items()
            if v is not None
        }


class Book(BookCreate):
    """永続化された書籍レコード"""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    created_at: datetime = Field(alias="createdAt")


class PurchaseItem(BaseModel):
    id: str = Field(min_length=1)
    quantity: int


class PurchaseRequest(BaseModel):
    items: list[PurchaseItem]

    def pairs(self) -> list[tuple[str, int]]:
        return [(item.id, item.quantity) for item in self.items]


@dataclass(frozen=True)
class StockSnapshot:
    """トランザクション開始時点の在庫（スナップショット読み取りの結果）"""
    book_id: str
    title: str
    stock: int
    version: int


@dataclass(frozen=True)
class Decrement:
    """条件付きコミットで適用する相対的な在庫減算"""
    book_id: str
    quantity: int
    expected_version: int
