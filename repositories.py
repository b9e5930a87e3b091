"""
Repository interfaces and their MongoDB implementations.

The POS core only talks to the protocols declared here, so tests can swap the
Mongo-backed store for an in-memory one. Driver errors never leave this
module: they are re-raised as PersistenceError, and documents that fail
schema validation are re-raised as MalformedDocumentError.
"""
import logging
import re
from contextlib import contextmanager
from datetime import datetime
from functools import wraps
from typing import Any, ContextManager, Dict, Iterator, List, Optional, Protocol, Type, TypeVar

from bson import ObjectId
from pydantic import BaseModel
from pydantic import ValidationError as SchemaError
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.collation import Collation
from pymongo.database import Database
from pymongo.errors import PyMongoError

from errors import (
    DuplicateError,
    MalformedDocumentError,
    NotFoundError,
    PersistenceError,
    StockConflictError,
)
from schemas import (
    STORE_SETTINGS_ID,
    Bill,
    Book,
    Category,
    Customer,
    StoreSettings,
)

logger = logging.getLogger(__name__)

BOOKS = "books"
CATEGORIES = "categories"
CUSTOMERS = "customers"
ORDERS = "orders"
SETTINGS = "settings"

# Invoice numbers are zero-padded strings; compare them as numbers so "100"
# sorts after "99".
NUMERIC_ORDER = Collation(locale="en", numericOrdering=True)

M = TypeVar("M", bound=BaseModel)


# -----------------------------
# Protocols
# -----------------------------

class BookRepository(Protocol):
    def list_books(self, q: Optional[str] = None, category: Optional[str] = None) -> List[Book]: ...
    def get_book(self, book_id: str) -> Book: ...
    def create_book(self, book: Book) -> Book: ...
    def update_book(self, book_id: str, book: Book) -> Book: ...
    def delete_book(self, book_id: str) -> None: ...
    def low_stock(self, threshold: int) -> List[Book]: ...
    def count(self) -> int: ...


class BillRepository(Protocol):
    def latest_by_invoice_number(self, limit: int = 1) -> List[Bill]: ...
    def get_bill(self, bill_id: str) -> Bill: ...
    def list_bills(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        customer_id: Optional[str] = None,
        q: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Bill]: ...


class CustomerRepository(Protocol):
    def list_customers(self, q: Optional[str] = None) -> List[Customer]: ...
    def search_by_phone(self, fragment: str, limit: int = 100) -> List[Customer]: ...
    def find_by_phone(self, phone: str) -> Optional[Customer]: ...
    def get_customer(self, customer_id: str) -> Customer: ...
    def create_customer(self, customer: Customer) -> Customer: ...
    def update_customer(self, customer_id: str, customer: Customer) -> Customer: ...
    def delete_customer(self, customer_id: str) -> None: ...
    def count(self) -> int: ...


class CategoryRepository(Protocol):
    def list_categories(self) -> List[Category]: ...
    def create_category(self, category: Category) -> Category: ...
    def update_category(self, category_id: str, category: Category) -> Category: ...
    def delete_category(self, category_id: str) -> None: ...


class SettingsRepository(Protocol):
    def get_store_settings(self) -> Optional[StoreSettings]: ...
    def save_store_settings(self, settings: StoreSettings) -> StoreSettings: ...


class StoreTransaction(Protocol):
    """Writes staged here become visible together or not at all."""

    def insert_bill(self, bill: Bill) -> str: ...
    def decrement_stock(self, book_id: str, quantity: int) -> None: ...


class Store(Protocol):
    books: BookRepository
    bills: BillRepository
    customers: CustomerRepository
    categories: CategoryRepository
    settings: SettingsRepository

    def transaction(self) -> ContextManager[StoreTransaction]: ...
    def ping(self) -> None: ...


# -----------------------------
# Utilities
# -----------------------------

def oid(obj: Optional[str]) -> Optional[ObjectId]:
    if obj is None:
        return None
    try:
        return ObjectId(obj)
    except Exception:
        return None


def to_str_id(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    for k, v in list(d.items()):
        if isinstance(v, ObjectId):
            d[k] = str(v)
    return d


def to_model(model: Type[M], collection: str, doc: Dict[str, Any]) -> M:
    data = to_str_id(doc)
    try:
        return model.model_validate(data)
    except SchemaError as e:
        raise MalformedDocumentError(collection, data.get("id"), str(e)) from e


def to_document(model: BaseModel) -> Dict[str, Any]:
    return model.model_dump(exclude={"id"})


def store_errors(fn):
    """Re-raise driver failures as PersistenceError."""

    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except PyMongoError as e:
            logger.error("Store call %s failed: %s", fn.__name__, e, exc_info=True)
            raise PersistenceError() from e

    return wrapper


def _require_oid(value: str, what: str) -> ObjectId:
    _id = oid(value)
    if not _id:
        raise NotFoundError(f"{what} not found")
    return _id


def _search(q: str, *fields: str) -> List[Dict[str, Any]]:
    """Case-insensitive substring match on any of `fields`; `q` is matched literally."""
    pattern = re.escape(q)
    return [{f: {"$regex": pattern, "$options": "i"}} for f in fields]


def _created_between(start: Optional[datetime], end: Optional[datetime]) -> Dict[str, Any]:
    rng: Dict[str, Any] = {}
    if start is not None:
        rng["$gte"] = start
    if end is not None:
        rng["$lte"] = end
    return {"created_at": rng} if rng else {}


# -----------------------------
# MongoDB repositories
# -----------------------------

class MongoBookRepository:
    def __init__(self, db: Database):
        self.col = db[BOOKS]

    @store_errors
    def list_books(self, q: Optional[str] = None, category: Optional[str] = None) -> List[Book]:
        filt: Dict[str, Any] = {}
        if q:
            filt["$or"] = _search(q, "title", "author")
        if category:
            filt["category"] = category
        return [to_model(Book, BOOKS, d) for d in self.col.find(filt).sort("title", ASCENDING)]

    @store_errors
    def get_book(self, book_id: str) -> Book:
        d = self.col.find_one({"_id": _require_oid(book_id, "Book")})
        if not d:
            raise NotFoundError("Book not found")
        return to_model(Book, BOOKS, d)

    @store_errors
    def create_book(self, book: Book) -> Book:
        res = self.col.insert_one(to_document(book))
        return book.model_copy(update={"id": str(res.inserted_id)})

    @store_errors
    def update_book(self, book_id: str, book: Book) -> Book:
        upd = self.col.find_one_and_update(
            {"_id": _require_oid(book_id, "Book")},
            {"$set": to_document(book)},
            return_document=ReturnDocument.AFTER,
        )
        if not upd:
            raise NotFoundError("Book not found")
        return to_model(Book, BOOKS, upd)

    @store_errors
    def delete_book(self, book_id: str) -> None:
        res = self.col.delete_one({"_id": _require_oid(book_id, "Book")})
        if res.deleted_count == 0:
            raise NotFoundError("Book not found")

    @store_errors
    def low_stock(self, threshold: int) -> List[Book]:
        docs = self.col.find({"stock": {"$lt": threshold}}).sort("stock", ASCENDING)
        return [to_model(Book, BOOKS, d) for d in docs]

    @store_errors
    def count(self) -> int:
        return self.col.count_documents({})


class MongoBillRepository:
    def __init__(self, db: Database):
        self.col = db[ORDERS]

    @store_errors
    def latest_by_invoice_number(self, limit: int = 1) -> List[Bill]:
        cursor = self.col.find({}).collation(NUMERIC_ORDER).sort("invoice_number", DESCENDING).limit(limit)
        return [to_model(Bill, ORDERS, d) for d in cursor]

    @store_errors
    def get_bill(self, bill_id: str) -> Bill:
        d = self.col.find_one({"_id": _require_oid(bill_id, "Order")})
        if not d:
            raise NotFoundError("Order not found")
        return to_model(Bill, ORDERS, d)

    @store_errors
    def list_bills(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        customer_id: Optional[str] = None,
        q: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Bill]:
        filt = _created_between(start, end)
        if customer_id:
            filt["customer_id"] = customer_id
        if q:
            filt["$or"] = _search(q, "customer_name", "customer_phone", "invoice_number")
        cursor = self.col.find(filt).sort("created_at", DESCENDING)
        if limit:
            cursor = cursor.limit(limit)
        return [to_model(Bill, ORDERS, d) for d in cursor]


class MongoCustomerRepository:
    def __init__(self, db: Database):
        self.col = db[CUSTOMERS]

    @store_errors
    def list_customers(self, q: Optional[str] = None) -> List[Customer]:
        filt = {"$or": _search(q, "name", "phone")} if q else {}
        return [to_model(Customer, CUSTOMERS, d) for d in self.col.find(filt).sort("name", ASCENDING)]

    @store_errors
    def search_by_phone(self, fragment: str, limit: int = 100) -> List[Customer]:
        filt = {"phone": {"$regex": re.escape(fragment)}}
        docs = self.col.find(filt).sort("phone", ASCENDING).limit(limit)
        return [to_model(Customer, CUSTOMERS, d) for d in docs]

    @store_errors
    def find_by_phone(self, phone: str) -> Optional[Customer]:
        d = self.col.find_one({"phone": phone})
        return to_model(Customer, CUSTOMERS, d) if d else None

    @store_errors
    def get_customer(self, customer_id: str) -> Customer:
        d = self.col.find_one({"_id": _require_oid(customer_id, "Customer")})
        if not d:
            raise NotFoundError("Customer not found")
        return to_model(Customer, CUSTOMERS, d)

    @store_errors
    def create_customer(self, customer: Customer) -> Customer:
        if self.col.find_one({"phone": customer.phone}):
            raise DuplicateError("Customer with this phone already exists")
        res = self.col.insert_one(to_document(customer))
        return customer.model_copy(update={"id": str(res.inserted_id)})

    @store_errors
    def update_customer(self, customer_id: str, customer: Customer) -> Customer:
        upd = self.col.find_one_and_update(
            {"_id": _require_oid(customer_id, "Customer")},
            {"$set": to_document(customer)},
            return_document=ReturnDocument.AFTER,
        )
        if not upd:
            raise NotFoundError("Customer not found")
        return to_model(Customer, CUSTOMERS, upd)

    @store_errors
    def delete_customer(self, customer_id: str) -> None:
        res = self.col.delete_one({"_id": _require_oid(customer_id, "Customer")})
        if res.deleted_count == 0:
            raise NotFoundError("Customer not found")

    @store_errors
    def count(self) -> int:
        return self.col.count_documents({})


class MongoCategoryRepository:
    def __init__(self, db: Database):
        self.col = db[CATEGORIES]

    @store_errors
    def list_categories(self) -> List[Category]:
        return [to_model(Category, CATEGORIES, d) for d in self.col.find({}).sort("name", ASCENDING)]

    @store_errors
    def create_category(self, category: Category) -> Category:
        if self.col.find_one({"name": category.name}):
            raise DuplicateError("Category already exists")
        res = self.col.insert_one(to_document(category))
        return category.model_copy(update={"id": str(res.inserted_id)})

    @store_errors
    def update_category(self, category_id: str, category: Category) -> Category:
        upd = self.col.find_one_and_update(
            {"_id": _require_oid(category_id, "Category")},
            {"$set": {"name": category.name, "description": category.description}},
            return_document=ReturnDocument.AFTER,
        )
        if not upd:
            raise NotFoundError("Category not found")
        return to_model(Category, CATEGORIES, upd)

    @store_errors
    def delete_category(self, category_id: str) -> None:
        res = self.col.delete_one({"_id": _require_oid(category_id, "Category")})
        if res.deleted_count == 0:
            raise NotFoundError("Category not found")


class MongoSettingsRepository:
    def __init__(self, db: Database):
        self.col = db[SETTINGS]

    @store_errors
    def get_store_settings(self) -> Optional[StoreSettings]:
        d = self.col.find_one({"_id": STORE_SETTINGS_ID})
        return to_model(StoreSettings, SETTINGS, d) if d else None

    @store_errors
    def save_store_settings(self, settings: StoreSettings) -> StoreSettings:
        self.col.replace_one({"_id": STORE_SETTINGS_ID}, settings.model_dump(), upsert=True)
        return settings


# -----------------------------
# Checkout transaction
# -----------------------------

class MongoTransaction:
    def __init__(self, db: Database, session):
        self.db = db
        self.session = session

    def insert_bill(self, bill: Bill) -> str:
        res = self.db[ORDERS].insert_one(to_document(bill), session=self.session)
        return str(res.inserted_id)

    def decrement_stock(self, book_id: str, quantity: int) -> None:
        _id = oid(book_id)
        # The stock precondition is part of the write, so two sessions racing
        # on the same book can never push it below zero.
        res = self.db[BOOKS].update_one(
            {"_id": _id, "stock": {"$gte": quantity}},
            {"$inc": {"stock": -quantity}},
            session=self.session,
        )
        if res.matched_count == 0:
            d = self.db[BOOKS].find_one({"_id": _id}, session=self.session)
            title = d.get("title", book_id) if d else book_id
            available = int(d.get("stock", 0)) if d else 0
            raise StockConflictError(title, quantity, available)


class MongoStore:
    def __init__(self, client: MongoClient, db: Database):
        self.client = client
        self.db = db
        self.books = MongoBookRepository(db)
        self.bills = MongoBillRepository(db)
        self.customers = MongoCustomerRepository(db)
        self.categories = MongoCategoryRepository(db)
        self.settings = MongoSettingsRepository(db)

    @contextmanager
    def transaction(self) -> Iterator[MongoTransaction]:
        try:
            with self.client.start_session() as session:
                with session.start_transaction():
                    yield MongoTransaction(self.db, session)
        except PyMongoError as e:
            logger.error("Checkout transaction aborted: %s", e, exc_info=True)
            raise PersistenceError() from e

    @store_errors
    def ping(self) -> None:
        self.db.command("ping")
