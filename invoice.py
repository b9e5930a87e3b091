"""
Invoice numbers and printable receipts.
"""
from typing import List, Optional

from pydantic import BaseModel

from repositories import BillRepository
from schemas import Bill, StoreSettings

INVOICE_NUMBER_WIDTH = 2
DEFAULT_STORE_NAME = "Book Store"
RECEIPT_FOOTER = "Thank you! Visit Again."
RECEIPT_WIDTH = 40


def format_invoice_number(seq: int) -> str:
    return str(seq).zfill(INVOICE_NUMBER_WIDTH)


def next_invoice_number(bills: BillRepository) -> str:
    # Read-then-compute with no lock: two terminals checking out at the same
    # moment can both get the same number.
    latest = bills.latest_by_invoice_number(limit=1)
    if not latest:
        return format_invoice_number(1)
    return format_invoice_number(int(latest[0].invoice_number) + 1)


# -----------------------------
# Receipt
# -----------------------------

class ReceiptLine(BaseModel):
    description: str
    qty: int
    rate: float
    amount: float


class Receipt(BaseModel):
    store_name: str
    store_address: str = ""
    store_phone: str = ""
    store_gstin: Optional[str] = None
    bill_number: str
    date: str
    lines: List[ReceiptLine]
    total_qty: int
    subtotal: float
    discount: Optional[float] = None  # omitted when nothing was discounted
    total: float
    footer: str = RECEIPT_FOOTER

    def render_text(self) -> str:
        w = RECEIPT_WIDTH
        out = [self.store_name.center(w)]
        if self.store_address:
            out.append(self.store_address.center(w))
        if self.store_phone:
            out.append(f"Ph. {self.store_phone}".center(w))
        if self.store_gstin:
            out.append(f"GSTIN: {self.store_gstin}".center(w))
        out.append("-" * w)
        out.append(_columns(f"Bill No: {self.bill_number}", f"Date: {self.date}"))
        out.append("-" * w)
        out.append(f"{'Description':<18}{'Qty':>4}{'Rate':>9}{'Amount':>9}")
        for line in self.lines:
            out.append(f"{line.description[:18]:<18}{line.qty:>4}{line.rate:>9.2f}{line.amount:>9.2f}")
        out.append("-" * w)
        out.append(_columns("Total Qty", str(self.total_qty)))
        out.append(_columns("Subtotal", f"{self.subtotal:.2f}"))
        if self.discount:
            out.append(_columns("Discount", f"{self.discount:.2f}"))
        out.append(_columns("Total Amount", f"{self.total:.2f}"))
        out.append("")
        out.append(self.footer.center(w))
        return "\n".join(out)


def _columns(left: str, right: str) -> str:
    return left + right.rjust(RECEIPT_WIDTH - len(left))


def build_receipt(bill: Bill, settings: Optional[StoreSettings]) -> Receipt:
    return Receipt(
        store_name=settings.name if settings else DEFAULT_STORE_NAME,
        store_address=settings.address if settings else "",
        store_phone=settings.phone if settings else "",
        store_gstin=settings.gstin if settings else None,
        bill_number=bill.invoice_number,
        date=bill.created_at.strftime("%d-%b-%Y"),
        lines=[
            ReceiptLine(description=i.book.title, qty=i.quantity, rate=i.price, amount=i.total)
            for i in bill.items
        ],
        total_qty=bill.total_quantity,
        subtotal=bill.subtotal,
        discount=bill.discount if bill.discount > 0 else None,
        total=bill.total,
    )
