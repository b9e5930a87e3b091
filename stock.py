"""
Stock checks for the POS.

`within_stock` is the quick check the cart runs against whatever copy of the
catalog the terminal holds; it only gives the cashier immediate feedback.
`verify_live_stock` re-reads every book from the store right before checkout
commits and is the check that actually gates a sale.
"""
from typing import Iterable

from errors import NotFoundError, StockConflictError
from repositories import BookRepository
from schemas import Book


def within_stock(quantity: int, book: Book) -> bool:
    return 0 < quantity <= book.stock


def verify_live_stock(books: BookRepository, lines: Iterable) -> None:
    """Raise StockConflictError for the first line the store can't cover."""
    for line in lines:
        try:
            live = books.get_book(line.book.id)
        except NotFoundError:
            # Deleted since it was put in the cart.
            raise StockConflictError(line.book.title, line.quantity, 0)
        if live.stock < line.quantity:
            raise StockConflictError(live.title, line.quantity, live.stock)
