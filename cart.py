"""
In-memory cart for a POS terminal.

Lines are keyed by a short random line id. Quantity changes that would leave
a line at zero or above the book's known stock are ignored: the line stays
exactly as it was.
"""
import uuid
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, computed_field

from errors import NotFoundError
from schemas import BillItem, Book
from stock import within_stock


class CartLine(BaseModel):
    id: str
    book: Book
    quantity: int
    price: float
    discount: float = 0.0

    @computed_field
    @property
    def total(self) -> float:
        return self.quantity * (self.price - self.discount)

    def to_bill_item(self) -> BillItem:
        return BillItem(
            id=self.id,
            book=self.book,
            quantity=self.quantity,
            price=self.price,
            discount=self.discount,
            total=round(self.total, 2),
        )


class Totals(BaseModel):
    subtotal: float = 0.0
    line_discount: float = 0.0
    discount: float = 0.0
    total: float = 0.0


def calculate_totals(lines: Iterable, global_discount: float = 0.0) -> Totals:
    """Totals for any lines exposing price, quantity and discount.

    discount = sum of per-line discounts + subtotal * global_discount / 100
    """
    subtotal = 0.0
    line_discount = 0.0
    for line in lines:
        subtotal += line.price * line.quantity
        line_discount += line.discount * line.quantity
    discount = line_discount + subtotal * (global_discount / 100.0)
    return Totals(
        subtotal=subtotal,
        line_discount=line_discount,
        discount=discount,
        total=subtotal - discount,
    )


def new_line_id() -> str:
    return uuid.uuid4().hex[:9]


class Cart:
    def __init__(self):
        self._lines: Dict[str, CartLine] = {}

    def __len__(self) -> int:
        return len(self._lines)

    def __iter__(self):
        return iter(list(self._lines.values()))

    @property
    def lines(self) -> List[CartLine]:
        return list(self._lines.values())

    def is_empty(self) -> bool:
        return not self._lines

    def get(self, line_id: str) -> CartLine:
        try:
            return self._lines[line_id]
        except KeyError:
            raise NotFoundError("Cart line not found") from None

    def line_for_book(self, book_id: Optional[str]) -> Optional[CartLine]:
        for line in self._lines.values():
            if line.book.id == book_id:
                return line
        return None

    def add_item(self, book: Book) -> Optional[CartLine]:
        """Add one copy of `book`; a no-op once the line reaches known stock."""
        line = self.line_for_book(book.id)
        if line is not None:
            if within_stock(line.quantity + 1, book):
                line.quantity += 1
                line.book = book
            return line
        if not within_stock(1, book):
            return None
        line = CartLine(id=new_line_id(), book=book, quantity=1, price=book.price)
        self._lines[line.id] = line
        return line

    def update_quantity(self, line_id: str, delta: int, book: Optional[Book] = None) -> CartLine:
        """Change a line by `delta`, bounded by `book` (the newest known copy) or the line's own."""
        line = self.get(line_id)
        known = book or line.book
        if within_stock(line.quantity + delta, known):
            line.quantity += delta
            line.book = known
        return line

    def sync_books(self, catalog: Dict[str, Book]) -> None:
        # Stock bounds follow the newest catalog; quantities are left alone.
        for line in self._lines.values():
            fresh = catalog.get(line.book.id)
            if fresh is not None:
                line.book = fresh

    def update_discount(self, line_id: str, discount: float) -> CartLine:
        line = self.get(line_id)
        line.discount = discount
        return line

    def remove_item(self, line_id: str) -> None:
        self._lines.pop(line_id, None)

    def clear(self) -> None:
        self._lines.clear()

    def totals(self, global_discount: float = 0.0) -> Totals:
        return calculate_totals(self._lines.values(), global_discount)

    def to_bill_items(self) -> List[BillItem]:
        return [line.to_bill_item() for line in self._lines.values()]
