import logging
import os
from datetime import date
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from auth import IdentityProvider, header_identity
from cart import CartLine, Totals, calculate_totals
from database import get_client, get_db
from errors import (
    NotFoundError,
    PersistenceError,
    POSError,
    StockConflictError,
)
from invoice import Receipt
from pos import CheckoutState, PosSession, SessionRegistry
from reports import (
    CustomerRow,
    Dashboard,
    InventoryRow,
    InvoiceRow,
    SalesRow,
    build_dashboard,
    customer_report,
    day_range,
    export_filename,
    inventory_report,
    invoice_report,
    rows_to_csv,
    sales_summary,
)
from repositories import MongoStore, Store
from schemas import Bill, Book, Category, Customer, PaymentMethod, StoreSettings, utcnow

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)


def low_stock_threshold() -> int:
    return int(os.getenv("LOW_STOCK_THRESHOLD", 5))


# -----------------------------
# Dependencies
# -----------------------------

sessions = SessionRegistry()


def get_store() -> Store:
    return MongoStore(get_client(), get_db())


def get_sessions() -> SessionRegistry:
    return sessions


def get_session(session_id: str, registry: SessionRegistry = Depends(get_sessions)) -> PosSession:
    return registry.get(session_id)


# -----------------------------
# Pydantic Schemas (API layer)
# -----------------------------
class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str = ""


class BookIn(BaseModel):
    title: str = Field(..., min_length=1)
    author: str
    category: str = ""
    pages: int = Field(0, ge=0)
    price: float = Field(..., ge=0)
    stock: int = Field(0, ge=0)


class CustomerIn(BaseModel):
    name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    email: str = ""
    address: Optional[str] = None
    gstin: Optional[str] = None


class POSItem(BaseModel):
    price: float = Field(..., ge=0)
    quantity: int = Field(..., gt=0)
    discount: float = Field(0.0, ge=0)


class PricingRequest(BaseModel):
    items: List[POSItem]
    global_discount: float = Field(0.0, ge=0, le=100)


class AddItemIn(BaseModel):
    book_id: str


class LineUpdateIn(BaseModel):
    delta: Optional[int] = None
    discount: Optional[float] = Field(None, ge=0)


class DiscountIn(BaseModel):
    percent: float = Field(..., ge=0, le=100)


class PaymentMethodIn(BaseModel):
    method: PaymentMethod


class CustomerSelectIn(BaseModel):
    customer_id: Optional[str] = None
    phone: Optional[str] = None
    name: Optional[str] = None
    email: str = ""
    gstin: Optional[str] = None


class SessionOut(BaseModel):
    id: str
    state: CheckoutState
    items: List[CartLine]
    totals: Totals
    customer: Optional[Customer] = None
    payment_method: PaymentMethod
    global_discount: float


class CheckoutOut(BaseModel):
    bill: Bill
    receipt: Receipt
    receipt_text: str


def session_out(s: PosSession) -> SessionOut:
    return SessionOut(
        id=s.id,
        state=s.state,
        items=s.cart.lines,
        totals=s.totals,
        customer=s.customer,
        payment_method=s.payment_method,
        global_discount=s.global_discount,
    )


# -----------------------------
# FastAPI App
# -----------------------------
app = FastAPI(title="Bookstore POS API - MongoDB")

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StockConflictError)
def stock_conflict_handler(request: Request, exc: StockConflictError):
    return JSONResponse(status_code=409, content=exc.to_dict())


@app.exception_handler(POSError)
def pos_error_handler(request: Request, exc: POSError):
    if isinstance(exc, PersistenceError):
        # Driver details stay in the log.
        return JSONResponse(status_code=503, content={"detail": PersistenceError.message})
    status = 404 if isinstance(exc, NotFoundError) else 400
    return JSONResponse(status_code=status, content={"detail": exc.detail})


@app.get("/")
def root():
    return {"message": "Bookstore POS Backend Running", "driver": "mongodb", "db": os.getenv("DATABASE_NAME")}


@app.get("/health")
def health(store: Store = Depends(get_store)):
    try:
        store.ping()
        return {"status": "ok"}
    except PersistenceError:
        raise HTTPException(status_code=500, detail="database unavailable")


# -----------------------------
# Categories
# -----------------------------
@app.get("/categories", response_model=List[Category])
def list_categories(store: Store = Depends(get_store)):
    return store.categories.list_categories()


@app.post("/categories", response_model=Category)
def create_category(payload: CategoryIn, store: Store = Depends(get_store)):
    return store.categories.create_category(Category(**payload.model_dump(), created_at=utcnow()))


@app.put("/categories/{category_id}", response_model=Category)
def update_category(category_id: str, payload: CategoryIn, store: Store = Depends(get_store)):
    return store.categories.update_category(category_id, Category(**payload.model_dump()))


@app.delete("/categories/{category_id}")
def delete_category(category_id: str, store: Store = Depends(get_store)):
    store.categories.delete_category(category_id)
    return {"message": "deleted"}


# -----------------------------
# Books
# -----------------------------
@app.get("/books", response_model=List[Book])
def list_books(
    q: Optional[str] = Query(None, description="Search by title or author"),
    category: Optional[str] = Query(None, description="Category name"),
    store: Store = Depends(get_store),
):
    return store.books.list_books(q=q, category=category)


@app.get("/books/{book_id}", response_model=Book)
def get_book(book_id: str, store: Store = Depends(get_store)):
    return store.books.get_book(book_id)


@app.post("/books", response_model=Book)
def create_book(payload: BookIn, store: Store = Depends(get_store)):
    return store.books.create_book(Book(**payload.model_dump()))


@app.put("/books/{book_id}", response_model=Book)
def update_book(book_id: str, payload: BookIn, store: Store = Depends(get_store)):
    return store.books.update_book(book_id, Book(**payload.model_dump()))


@app.delete("/books/{book_id}")
def delete_book(book_id: str, store: Store = Depends(get_store)):
    store.books.delete_book(book_id)
    return {"message": "deleted"}


# -----------------------------
# Customers
# -----------------------------
@app.get("/customers", response_model=List[Customer])
def list_customers(
    q: Optional[str] = Query(None, description="Search by name or phone"),
    store: Store = Depends(get_store),
):
    return store.customers.list_customers(q=q)


@app.get("/customers/lookup", response_model=List[Customer])
def lookup_customers(phone: str = Query(..., description="Part of a phone number"), store: Store = Depends(get_store)):
    if len(phone) < 3:
        return []
    return store.customers.search_by_phone(phone)


@app.get("/customers/{customer_id}", response_model=Customer)
def get_customer(customer_id: str, store: Store = Depends(get_store)):
    return store.customers.get_customer(customer_id)


@app.get("/customers/{customer_id}/orders", response_model=List[Bill])
def customer_orders(customer_id: str, store: Store = Depends(get_store)):
    store.customers.get_customer(customer_id)
    return store.bills.list_bills(customer_id=customer_id)


@app.post("/customers", response_model=Customer)
def create_customer(payload: CustomerIn, store: Store = Depends(get_store)):
    now = utcnow()
    return store.customers.create_customer(Customer(**payload.model_dump(), created_at=now, updated_at=now))


@app.put("/customers/{customer_id}", response_model=Customer)
def update_customer(customer_id: str, payload: CustomerIn, store: Store = Depends(get_store)):
    cur = store.customers.get_customer(customer_id)
    doc = Customer(**payload.model_dump(), created_at=cur.created_at, updated_at=utcnow())
    return store.customers.update_customer(customer_id, doc)


@app.delete("/customers/{customer_id}")
def delete_customer(customer_id: str, store: Store = Depends(get_store)):
    store.customers.delete_customer(customer_id)
    return {"message": "deleted"}


# -----------------------------
# Store settings
# -----------------------------
@app.get("/settings/store", response_model=StoreSettings)
def get_store_settings(store: Store = Depends(get_store)):
    settings = store.settings.get_store_settings()
    if settings is None:
        raise HTTPException(status_code=404, detail="Store settings not configured")
    return settings


@app.put("/settings/store", response_model=StoreSettings)
def save_store_settings(payload: StoreSettings, store: Store = Depends(get_store)):
    return store.settings.save_store_settings(payload)


# -----------------------------
# POS Pricing & Sessions
# -----------------------------
@app.post("/pos/pricing", response_model=Totals)
def pos_pricing(payload: PricingRequest):
    t = calculate_totals(payload.items, payload.global_discount)
    return Totals(
        subtotal=round(t.subtotal, 2),
        line_discount=round(t.line_discount, 2),
        discount=round(t.discount, 2),
        total=round(t.total, 2),
    )


@app.post("/pos/sessions", response_model=SessionOut)
def open_session(store: Store = Depends(get_store), registry: SessionRegistry = Depends(get_sessions)):
    session = registry.open(store)
    session.refresh_catalog()
    return session_out(session)


@app.get("/pos/sessions/{session_id}", response_model=SessionOut)
def read_session(session: PosSession = Depends(get_session)):
    return session_out(session)


@app.delete("/pos/sessions/{session_id}")
def close_session(session_id: str, registry: SessionRegistry = Depends(get_sessions)):
    registry.close(session_id)
    return {"message": "closed"}


@app.post("/pos/sessions/{session_id}/catalog/refresh", response_model=List[Book])
def refresh_catalog(session: PosSession = Depends(get_session)):
    return session.refresh_catalog()


@app.post("/pos/sessions/{session_id}/items", response_model=SessionOut)
def add_item(payload: AddItemIn, session: PosSession = Depends(get_session)):
    session.add_to_cart(session.catalog_book(payload.book_id))
    return session_out(session)


@app.patch("/pos/sessions/{session_id}/items/{line_id}", response_model=SessionOut)
def update_item(line_id: str, payload: LineUpdateIn, session: PosSession = Depends(get_session)):
    if payload.delta is not None:
        session.change_quantity(line_id, payload.delta)
    if payload.discount is not None:
        session.update_discount(line_id, payload.discount)
    return session_out(session)


@app.delete("/pos/sessions/{session_id}/items/{line_id}", response_model=SessionOut)
def remove_item(line_id: str, session: PosSession = Depends(get_session)):
    session.remove_from_cart(line_id)
    return session_out(session)


@app.put("/pos/sessions/{session_id}/discount", response_model=SessionOut)
def set_discount(payload: DiscountIn, session: PosSession = Depends(get_session)):
    session.set_global_discount(payload.percent)
    return session_out(session)


@app.put("/pos/sessions/{session_id}/payment-method", response_model=SessionOut)
def set_payment_method(payload: PaymentMethodIn, session: PosSession = Depends(get_session)):
    session.set_payment_method(payload.method)
    return session_out(session)


@app.put("/pos/sessions/{session_id}/customer", response_model=SessionOut)
def select_customer(payload: CustomerSelectIn, session: PosSession = Depends(get_session)):
    if payload.customer_id:
        session.select_customer(session.store.customers.get_customer(payload.customer_id))
    elif payload.phone:
        if not payload.name:
            raise HTTPException(status_code=400, detail="Name is required for a new customer")
        session.select_customer_by_phone(payload.phone, payload.name, payload.email, payload.gstin)
    else:
        session.select_customer(None)
    return session_out(session)


@app.post("/pos/sessions/{session_id}/checkout", response_model=CheckoutOut)
def checkout(session: PosSession = Depends(get_session), identity: IdentityProvider = Depends(header_identity)):
    result = session.checkout(identity)
    return CheckoutOut(bill=result.bill, receipt=result.receipt, receipt_text=result.receipt.render_text())


# -----------------------------
# Orders list/detail
# -----------------------------
@app.get("/orders", response_model=List[Bill])
def list_orders(
    start: Optional[date] = None,
    end: Optional[date] = None,
    q: Optional[str] = Query(None, description="Search by customer name, phone or invoice number"),
    limit: Optional[int] = Query(None, gt=0),
    store: Store = Depends(get_store),
):
    lo, hi = day_range(start, end)
    return store.bills.list_bills(start=lo, end=hi, q=q, limit=limit)


@app.get("/orders/{order_id}", response_model=Bill)
def get_order(order_id: str, store: Store = Depends(get_store)):
    return store.bills.get_bill(order_id)


# -----------------------------
# Dashboard & Reports
# -----------------------------
@app.get("/dashboard", response_model=Dashboard)
def dashboard(store: Store = Depends(get_store)):
    return build_dashboard(store, utcnow(), low_stock_threshold())



def report_response(name: str, rows: list, model, fmt: str):
    """Rows as JSON, or as a dated CSV download when `format=csv`."""
    if fmt != "csv":
        return rows
    filename = export_filename(name, utcnow().date())
    return Response(
        content=rows_to_csv(rows, model),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/reports/sales", response_model=List[SalesRow])
def report_sales(
    start: Optional[date] = None,
    end: Optional[date] = None,
    fmt: str = Query("json", alias="format", pattern="^(json|csv)$"),
    store: Store = Depends(get_store),
):
    lo, hi = day_range(start, end)
    return report_response("sales", sales_summary(store.bills.list_bills(start=lo, end=hi)), SalesRow, fmt)


@app.get("/reports/invoices", response_model=List[InvoiceRow])
def report_invoices(
    start: Optional[date] = None,
    end: Optional[date] = None,
    fmt: str = Query("json", alias="format", pattern="^(json|csv)$"),
    store: Store = Depends(get_store),
):
    lo, hi = day_range(start, end)
    return report_response("invoice", invoice_report(store.bills.list_bills(start=lo, end=hi)), InvoiceRow, fmt)


@app.get("/reports/customers", response_model=List[CustomerRow])
def report_customers(
    start: Optional[date] = None,
    end: Optional[date] = None,
    fmt: str = Query("json", alias="format", pattern="^(json|csv)$"),
    store: Store = Depends(get_store),
):
    lo, hi = day_range(start, end)
    return report_response("customer", customer_report(store.bills.list_bills(start=lo, end=hi)), CustomerRow, fmt)


@app.get("/reports/inventory", response_model=List[InventoryRow])
def report_inventory(
    fmt: str = Query("json", alias="format", pattern="^(json|csv)$"),
    store: Store = Depends(get_store),
):
    rows = inventory_report(store.books.list_books(), low_stock_threshold())
    return report_response("inventory", rows, InventoryRow, fmt)


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
