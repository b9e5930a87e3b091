"""
Dashboard metrics and tabular reports.

All of it is a straight reduction over bills and books already fetched from
the store; nothing here writes. Days are UTC calendar days and weeks start on
Sunday.
"""
import csv
import io
from collections import OrderedDict
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, List, Optional, Tuple, Type

from pydantic import BaseModel

from errors import ValidationError
from repositories import Store
from schemas import Bill, Book

TOP_BOOKS = 5
RECENT_ORDERS = 5
TREND_DAYS = 7


def day_range(start: Optional[date], end: Optional[date]) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Whole-day bounds for a [start, end] date filter; both or neither."""
    if start is None and end is None:
        return None, None
    if start is None or end is None:
        raise ValidationError("Please select both start and end dates")
    return (
        datetime.combine(start, time.min, tzinfo=timezone.utc),
        datetime.combine(end, time.max, tzinfo=timezone.utc),
    )


def start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_week(now: datetime) -> datetime:
    # weekday(): Monday == 0, so Sunday is (weekday + 1) % 7 days back
    return start_of_day(now) - timedelta(days=(now.weekday() + 1) % 7)


def start_of_month(now: datetime) -> datetime:
    return start_of_day(now).replace(day=1)


# -----------------------------
# Dashboard
# -----------------------------

class PeriodMetrics(BaseModel):
    sales: float = 0.0
    orders: int = 0


class TrendPoint(BaseModel):
    date: str
    sales: float = 0.0


class TopBook(BaseModel):
    name: str
    value: int = 0


class Dashboard(BaseModel):
    total_sales: float
    total_orders: int
    total_customers: int
    total_products: int
    today: PeriodMetrics
    week: PeriodMetrics
    month: PeriodMetrics
    sales_trend: List[TrendPoint]
    top_books: List[TopBook]
    recent_orders: List[Bill]
    low_stock: List[Book]


def period_metrics(bills: Iterable[Bill], since: datetime, now: datetime) -> PeriodMetrics:
    m = PeriodMetrics()
    for b in bills:
        if since <= b.created_at <= now:
            m.sales += b.total
            m.orders += 1
    m.sales = round(m.sales, 2)
    return m


def sales_trend(bills: Iterable[Bill], now: datetime, days: int = TREND_DAYS) -> List[TrendPoint]:
    today = now.date()
    points = OrderedDict(
        (today - timedelta(days=i), TrendPoint(date=(today - timedelta(days=i)).strftime("%b %d")))
        for i in reversed(range(days))
    )
    for b in bills:
        point = points.get(b.created_at.date())
        if point is not None:
            point.sales += b.total
    for point in points.values():
        point.sales = round(point.sales, 2)
    return list(points.values())


def top_books(bills: Iterable[Bill], limit: int = TOP_BOOKS) -> List[TopBook]:
    sold = {}
    for b in bills:
        for item in b.items:
            key = item.book.id or item.book.title
            entry = sold.setdefault(key, TopBook(name=item.book.title))
            entry.value += item.quantity
    return sorted(sold.values(), key=lambda t: t.value, reverse=True)[:limit]


def recent_orders(bills: Iterable[Bill], limit: int = RECENT_ORDERS) -> List[Bill]:
    return sorted(bills, key=lambda b: b.created_at, reverse=True)[:limit]


def build_dashboard(store: Store, now: datetime, low_stock_threshold: int) -> Dashboard:
    bills = store.bills.list_bills()
    return Dashboard(
        total_sales=round(sum(b.total for b in bills), 2),
        total_orders=len(bills),
        total_customers=store.customers.count(),
        total_products=store.books.count(),
        today=period_metrics(bills, start_of_day(now), now),
        week=period_metrics(bills, start_of_week(now), now),
        month=period_metrics(bills, start_of_month(now), now),
        sales_trend=sales_trend(bills, now),
        top_books=top_books(bills),
        recent_orders=recent_orders(bills),
        low_stock=store.books.low_stock(low_stock_threshold),
    )


# -----------------------------
# Reports
# -----------------------------

class SalesRow(BaseModel):
    date: str
    invoice_number: str
    customer_name: str
    total_amount: float
    payment_method: str
    status: str


class InvoiceRow(SalesRow):
    items: int


class CustomerRow(BaseModel):
    customer_name: str
    email: str
    phone: str
    total_orders: int = 0
    total_spent: float = 0.0
    last_order_date: str


class InventoryRow(BaseModel):
    book_id: Optional[str]
    title: str
    author: str
    category: str
    current_stock: int
    reorder_point: int
    low_stock: bool
    price: float


def _sales_fields(b: Bill) -> dict:
    return dict(
        date=b.created_at.strftime("%Y-%m-%d"),
        invoice_number=b.invoice_number,
        customer_name=b.customer_name,
        total_amount=b.total,
        payment_method=b.payment_method,
        status=b.status,
    )


def sales_summary(bills: Iterable[Bill]) -> List[SalesRow]:
    return [SalesRow(**_sales_fields(b)) for b in bills]


def invoice_report(bills: Iterable[Bill]) -> List[InvoiceRow]:
    return [InvoiceRow(items=len(b.items), **_sales_fields(b)) for b in bills]


def customer_report(bills: Iterable[Bill]) -> List[CustomerRow]:
    """One row per customer email; walk-in bills without an email are skipped."""
    rows = {}
    last_seen = {}
    for b in bills:
        if not b.customer_email:
            continue
        row = rows.get(b.customer_email)
        if row is None:
            row = rows[b.customer_email] = CustomerRow(
                customer_name=b.customer_name or "N/A",
                email=b.customer_email,
                phone=b.customer_phone or "N/A",
                last_order_date="",
            )
        row.total_orders += 1
        row.total_spent += b.total
        if b.customer_email not in last_seen or b.created_at > last_seen[b.customer_email]:
            last_seen[b.customer_email] = b.created_at
    for email, row in rows.items():
        row.total_spent = round(row.total_spent, 2)
        row.last_order_date = last_seen[email].strftime("%Y-%m-%d")
    return list(rows.values())


def inventory_report(books: Iterable[Book], reorder_point: int) -> List[InventoryRow]:
    return [
        InventoryRow(
            book_id=b.id,
            title=b.title,
            author=b.author,
            category=b.category or "N/A",
            current_stock=b.stock,
            reorder_point=reorder_point,
            low_stock=b.stock < reorder_point,
            price=b.price,
        )
        for b in books
    ]


# -----------------------------
# CSV export
# -----------------------------

def rows_to_csv(rows: Iterable[BaseModel], model: Type[BaseModel]) -> str:
    """Render report rows as CSV, one column per field of `model`, header first."""
    out = io.StringIO()
    writer = csv.DictWriter(out, fieldnames=list(model.model_fields), lineterminator="\n")
    writer.writeheader()
    for row in rows:
        writer.writerow(row.model_dump())
    return out.getvalue()


def export_filename(report: str, today: date) -> str:
    return f"{report}_report_{today.isoformat()}.csv"
