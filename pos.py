"""
POS terminal session: the cart plus everything the cashier has picked for the
sale in progress, and the checkout that turns it into a bill.

Checkout walks Idle -> Validating -> Committing -> Succeeded, or ends in
Rejected. The bill insert and the stock decrements go through one store
transaction, so a rejected attempt leaves both the store and the cart as they
were. Succeeded and Rejected stay visible until the cashier next touches the
sale (any cart, customer, discount or payment command), which puts the
session back to Idle.
"""
import logging
import os
import threading
import time
import uuid
from enum import Enum
from typing import Callable, Dict, List, Optional, get_args

from pydantic import BaseModel

from auth import IdentityProvider
from cart import Cart, CartLine, Totals
from errors import NotFoundError, POSError, PersistenceError, ValidationError
from invoice import Receipt, build_receipt, next_invoice_number
from repositories import Store
from schemas import (
    GUEST_CUSTOMER_ID,
    GUEST_CUSTOMER_NAME,
    Bill,
    Book,
    Customer,
    PaymentMethod,
    StoreSettings,
    utcnow,
)
from stock import verify_live_stock

logger = logging.getLogger(__name__)

DEFAULT_PAYMENT_METHOD = "cash"
PAYMENT_METHODS = get_args(PaymentMethod)

ReceiptPrinter = Callable[[Receipt], None]


class CheckoutState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    COMMITTING = "committing"
    SUCCEEDED = "succeeded"
    REJECTED = "rejected"


class CheckoutResult(BaseModel):
    bill: Bill
    receipt: Receipt


def log_receipt(receipt: Receipt) -> None:
    logger.debug("Receipt %s\n%s", receipt.bill_number, receipt.render_text())


class PosSession:
    def __init__(self, store: Store, printer: Optional[ReceiptPrinter] = None, session_id: Optional[str] = None):
        self.id = session_id or uuid.uuid4().hex
        self.store = store
        self.printer = printer or log_receipt
        self.cart = Cart()
        self.catalog: Dict[str, Book] = {}
        self.customer: Optional[Customer] = None
        self.payment_method: str = DEFAULT_PAYMENT_METHOD
        self.global_discount: float = 0.0
        self.state = CheckoutState.IDLE
        self.last_result: Optional[CheckoutResult] = None
        self.last_used = time.monotonic()
        self._lock = threading.RLock()

    def _start_edit(self) -> None:
        if self.state in (CheckoutState.SUCCEEDED, CheckoutState.REJECTED):
            self.state = CheckoutState.IDLE

    # -----------------------------
    # Catalog snapshot
    # -----------------------------

    def refresh_catalog(self) -> List[Book]:
        books = self.store.books.list_books()
        with self._lock:
            self.catalog = {b.id: b for b in books}
            self.cart.sync_books(self.catalog)
        return books

    def catalog_book(self, book_id: str) -> Book:
        book = self.catalog.get(book_id)
        if book is None:
            raise NotFoundError("Book not found")
        return book

    # -----------------------------
    # Cart commands
    # -----------------------------

    @property
    def totals(self) -> Totals:
        return self.cart.totals(self.global_discount)

    def add_to_cart(self, book: Book) -> Optional[CartLine]:
        with self._lock:
            self._start_edit()
            return self.cart.add_item(book)

    def change_quantity(self, line_id: str, delta: int) -> CartLine:
        with self._lock:
            self._start_edit()
            line = self.cart.get(line_id)
            return self.cart.update_quantity(line_id, delta, self.catalog.get(line.book.id))

    def update_discount(self, line_id: str, discount: float) -> CartLine:
        with self._lock:
            self._start_edit()
            return self.cart.update_discount(line_id, discount)

    def remove_from_cart(self, line_id: str) -> None:
        with self._lock:
            self._start_edit()
            self.cart.remove_item(line_id)

    def set_global_discount(self, percent: float) -> None:
        if not 0 <= percent <= 100:
            raise ValidationError("Discount must be between 0 and 100 percent")
        with self._lock:
            self._start_edit()
            self.global_discount = percent

    def set_payment_method(self, method: str) -> None:
        if method not in PAYMENT_METHODS:
            raise ValidationError(f"Unknown payment method '{method}'")
        with self._lock:
            self._start_edit()
            self.payment_method = method

    def select_customer(self, customer: Optional[Customer]) -> None:
        with self._lock:
            self._start_edit()
            self.customer = customer

    def select_customer_by_phone(
        self, phone: str, name: str, email: str = "", gstin: Optional[str] = None
    ) -> Customer:
        """Select the customer with this phone, registering them first if new."""
        customer = self.store.customers.find_by_phone(phone)
        if customer is None:
            now = utcnow()
            customer = self.store.customers.create_customer(
                Customer(name=name, phone=phone, email=email, gstin=gstin, created_at=now, updated_at=now)
            )
            logger.info("Registered customer %s (%s) at the till", customer.id, phone)
        self.select_customer(customer)
        return customer

    # -----------------------------
    # Checkout
    # -----------------------------

    def build_bill(self, invoice_number: str, actor) -> Bill:
        totals = self.totals
        c = self.customer
        return Bill(
            invoice_number=invoice_number,
            items=self.cart.to_bill_items(),
            subtotal=round(totals.subtotal, 2),
            discount=round(totals.discount, 2),
            total=round(totals.total, 2),
            created_at=utcnow(),
            customer_id=(c.id if c and c.id else GUEST_CUSTOMER_ID),
            customer_name=c.name if c else GUEST_CUSTOMER_NAME,
            customer_phone=c.phone if c else "",
            customer_email=c.email if c else "",
            payment_method=self.payment_method,
            status="completed",
            created_by=actor,
        )

    def checkout(self, identity: IdentityProvider) -> CheckoutResult:
        with self._lock:
            actor = identity.current_actor()
            if actor is None:
                self.state = CheckoutState.REJECTED
                raise ValidationError("Please login to create an order")
            if self.cart.is_empty():
                self.state = CheckoutState.REJECTED
                raise ValidationError("Cart is empty")

            self.state = CheckoutState.VALIDATING
            try:
                bill = self.build_bill(next_invoice_number(self.store.bills), actor)
                verify_live_stock(self.store.books, self.cart)

                self.state = CheckoutState.COMMITTING
                with self.store.transaction() as tx:
                    bill_id = tx.insert_bill(bill)
                    for line in self.cart:
                        tx.decrement_stock(line.book.id, line.quantity)
            except PersistenceError:
                self.state = CheckoutState.REJECTED
                logger.error("Checkout failed on session %s", self.id, exc_info=True)
                raise
            except POSError as e:
                self.state = CheckoutState.REJECTED
                logger.warning("Checkout rejected on session %s: %s", self.id, e)
                raise

            bill = bill.model_copy(update={"id": bill_id})
            self.state = CheckoutState.SUCCEEDED
            logger.info(
                "Order %s placed by %s: %d lines, total %.2f",
                bill.invoice_number, actor.id, len(bill.items), bill.total,
            )
            self._reset()

        result = CheckoutResult(bill=bill, receipt=build_receipt(bill, self._store_settings()))
        self.last_result = result
        self._after_commit(result)
        return result

    def _reset(self) -> None:
        self.cart.clear()
        self.customer = None
        self.global_discount = 0.0
        self.payment_method = DEFAULT_PAYMENT_METHOD

    def _store_settings(self) -> Optional[StoreSettings]:
        try:
            return self.store.settings.get_store_settings()
        except PersistenceError:
            logger.warning("Store settings unavailable, printing receipt without them")
            return None

    def _after_commit(self, result: CheckoutResult) -> None:
        # The sale is already committed; nothing here may fail it.
        try:
            self.refresh_catalog()
        except PersistenceError:
            logger.warning("Catalog refresh after order %s failed", result.bill.invoice_number)
        try:
            self.printer(result.receipt)
        except Exception:
            logger.exception("Receipt printer failed for order %s", result.bill.invoice_number)


def session_idle_timeout() -> float:
    """Seconds a POS session may sit unused before it is dropped."""
    return float(os.getenv("POS_SESSION_IDLE_SECONDS", 4 * 60 * 60))


class SessionRegistry:
    """
    POS sessions for the terminals talking to this process.

    A session unused for longer than `idle_timeout` seconds is dropped the
    next time the registry is opened into or read, so tills that disappear
    without closing their session do not pile up.
    """

    def __init__(self, idle_timeout: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.idle_timeout = session_idle_timeout() if idle_timeout is None else idle_timeout
        self.clock = clock
        self._sessions: Dict[str, PosSession] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def _expire(self, now: float) -> None:
        stale = [sid for sid, s in self._sessions.items() if now - s.last_used > self.idle_timeout]
        for sid in stale:
            del self._sessions[sid]
        if stale:
            logger.info("Dropped %d idle POS session(s)", len(stale))

    def open(self, store: Store, printer: Optional[ReceiptPrinter] = None) -> PosSession:
        session = PosSession(store, printer)
        with self._lock:
            now = self.clock()
            self._expire(now)
            session.last_used = now
            self._sessions[session.id] = session
        return session

    def get(self, session_id: str) -> PosSession:
        with self._lock:
            now = self.clock()
            self._expire(now)
            session = self._sessions.get(session_id)
            if session is not None:
                session.last_used = now
        if session is None:
            raise NotFoundError("POS session not found")
        return session

    def close(self, session_id: str) -> None:
        with self._lock:
            if self._sessions.pop(session_id, None) is None:
                raise NotFoundError("POS session not found")
