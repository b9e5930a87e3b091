from datetime import datetime, timezone

import pytest

from invoice import build_receipt, format_invoice_number, next_invoice_number
from schemas import Actor, Bill, BillItem, Book, StoreSettings


def make_bill(number, total=100.0, discount=0.0, created_at=None):
    item = BillItem(
        id="l1",
        book=Book(id="b1", title="Atlas", author="Anon", price=50.0, stock=3),
        quantity=2,
        price=50.0,
        total=100.0,
    )
    return Bill(
        invoice_number=number,
        items=[item],
        subtotal=100.0,
        discount=discount,
        total=total,
        created_at=created_at or datetime(2026, 3, 14, 10, 30, tzinfo=timezone.utc),
        created_by=Actor(id="staff-1", name="Asha"),
    )


@pytest.mark.parametrize("seq,expected", [(1, "01"), (9, "09"), (10, "10"), (123, "123")])
def test_format_invoice_number(seq, expected):
    assert format_invoice_number(seq) == expected


def test_first_invoice_is_01(store):
    assert next_invoice_number(store.bills) == "01"


def test_next_after_highest(store):
    store.bills.docs.extend([make_bill("07"), make_bill("99"), make_bill("12")])
    assert next_invoice_number(store.bills) == "100"


def test_reading_twice_without_writing_repeats_the_number(store):
    store.bills.docs.append(make_bill("41"))
    assert next_invoice_number(store.bills) == next_invoice_number(store.bills) == "42"


class TestReceipt:
    def test_uses_store_settings(self):
        settings = StoreSettings(name="Chapter One", address="12 MG Road", phone="98450", gstin="29ABCDE")
        receipt = build_receipt(make_bill("05", total=90.0, discount=10.0), settings)
        assert receipt.store_name == "Chapter One"
        assert receipt.bill_number == "05"
        assert receipt.date == "14-Mar-2026"
        assert receipt.total_qty == 2
        assert receipt.discount == 10.0

        text = receipt.render_text()
        assert "Chapter One" in text
        assert "GSTIN: 29ABCDE" in text
        assert "Bill No: 05" in text
        assert "Discount" in text
        assert text.rstrip().endswith("Thank you! Visit Again.")

    def test_falls_back_without_settings_and_hides_zero_discount(self):
        receipt = build_receipt(make_bill("01"), None)
        assert receipt.store_name == "Book Store"
        assert receipt.discount is None
        text = receipt.render_text()
        assert "Discount" not in text
        assert "GSTIN" not in text
        assert "Atlas" in text
