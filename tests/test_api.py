import pytest


def open_session(client):
    res = client.post("/pos/sessions")
    assert res.status_code == 200
    return res.json()["id"]


def test_root(client):
    assert client.get("/").json()["message"] == "Bookstore POS Backend Running"


def test_health(client, store):
    assert client.get("/health").json() == {"status": "ok"}
    store.down = True
    res = client.get("/health")
    assert res.status_code == 500
    assert res.json() == {"detail": "database unavailable"}


class TestCategories:
    def test_crud(self, client):
        res = client.post("/categories", json={"name": "Fiction", "description": "Novels"})
        assert res.status_code == 200
        cat = res.json()
        assert cat["created_at"]

        assert client.post("/categories", json={"name": "Fiction"}).status_code == 400

        res = client.put(f"/categories/{cat['id']}", json={"name": "Literature"})
        assert res.json()["name"] == "Literature"
        assert [c["name"] for c in client.get("/categories").json()] == ["Literature"]

        assert client.delete(f"/categories/{cat['id']}").json() == {"message": "deleted"}
        assert client.delete(f"/categories/{cat['id']}").status_code == 404


class TestBooks:
    def test_create_and_search(self, client):
        payload = {"title": "Atlas", "author": "R. Mercator", "category": "Reference", "price": 100, "stock": 3}
        book = client.post("/books", json=payload).json()
        client.post("/books", json={"title": "Dune", "author": "F. Herbert", "category": "Fiction", "price": 45.5, "stock": 10})

        assert client.get(f"/books/{book['id']}").json()["title"] == "Atlas"
        assert [b["title"] for b in client.get("/books", params={"q": "herb"}).json()] == ["Dune"]
        assert [b["title"] for b in client.get("/books", params={"category": "Reference"}).json()] == ["Atlas"]

    def test_update_and_delete(self, client, atlas):
        res = client.put(f"/books/{atlas.id}", json={"title": "Atlas", "author": "R. Mercator", "price": 120, "stock": 8})
        assert res.json()["stock"] == 8
        assert client.delete(f"/books/{atlas.id}").status_code == 200
        assert client.get(f"/books/{atlas.id}").status_code == 404

    @pytest.mark.parametrize("field,value", [("price", -1), ("stock", -2)])
    def test_rejects_negative_values(self, client, field, value):
        payload = {"title": "Atlas", "author": "Anon", "price": 10, "stock": 1, field: value}
        assert client.post("/books", json=payload).status_code == 422


class TestCustomers:
    def test_create_lookup_update(self, client):
        created = client.post("/customers", json={"name": "Meera", "phone": "9845012345", "email": "m@example.com"}).json()

        assert client.get("/customers/lookup", params={"phone": "98"}).json() == []
        found = client.get("/customers/lookup", params={"phone": "4501"}).json()
        assert [c["id"] for c in found] == [created["id"]]

        updated = client.put(
            f"/customers/{created['id']}",
            json={"name": "Meera K", "phone": "9845012345", "email": "m@example.com", "gstin": "29AB"},
        ).json()
        assert updated["name"] == "Meera K"
        assert updated["created_at"] == created["created_at"]
        assert updated["gstin"] == "29AB"

    def test_duplicate_phone(self, client):
        client.post("/customers", json={"name": "Meera", "phone": "111"})
        assert client.post("/customers", json={"name": "Other", "phone": "111"}).status_code == 400

    def test_search_by_name_or_phone(self, client):
        client.post("/customers", json={"name": "Meera", "phone": "9845012345"})
        client.post("/customers", json={"name": "Ravi", "phone": "9000011111"})

        def names(q):
            return [c["name"] for c in client.get("/customers", params={"q": q}).json()]

        assert names("meer") == ["Meera"]
        assert names("90000") == ["Ravi"]
        assert names("9") == ["Meera", "Ravi"]
        assert names("(") == []

    def test_unknown_customer(self, client):
        assert client.get("/customers/nope").status_code == 404
        assert client.get("/customers/nope/orders").status_code == 404


def test_store_settings(client):
    assert client.get("/settings/store").status_code == 404
    body = {"name": "Chapter One", "address": "12 MG Road", "phone": "080-1234", "gstin": "29ABCDE"}
    assert client.put("/settings/store", json=body).status_code == 200
    assert client.get("/settings/store").json()["name"] == "Chapter One"


def test_pricing_preview(client):
    res = client.post("/pos/pricing", json={
        "items": [{"price": 100, "quantity": 2}, {"price": 20, "quantity": 1, "discount": 5}],
        "global_discount": 10,
    })
    assert res.json() == {"subtotal": 220.0, "line_discount": 5.0, "discount": 27.0, "total": 193.0}


class TestPosFlow:
    def test_checkout_end_to_end(self, client, store, atlas, staff_headers):
        sid = open_session(client)
        url = f"/pos/sessions/{sid}"

        state = client.post(f"{url}/items", json={"book_id": atlas.id}).json()
        line_id = state["items"][0]["id"]
        state = client.patch(f"{url}/items/{line_id}", json={"delta": 1}).json()
        assert state["items"][0]["quantity"] == 2

        # past the known stock: unchanged
        state = client.patch(f"{url}/items/{line_id}", json={"delta": 5}).json()
        assert state["items"][0]["quantity"] == 2

        client.put(f"{url}/discount", json={"percent": 10})
        client.put(f"{url}/payment-method", json={"method": "card"})
        state = client.put(f"{url}/customer", json={"phone": "9845012345", "name": "Meera"}).json()
        assert state["customer"]["name"] == "Meera"
        assert state["totals"]["total"] == pytest.approx(180.0)

        res = client.post(f"{url}/checkout", headers=staff_headers)
        assert res.status_code == 200
        body = res.json()
        assert body["bill"]["total"] == 180.0
        assert body["bill"]["invoice_number"] == "01"
        assert body["bill"]["payment_method"] == "card"
        assert body["bill"]["customer_name"] == "Meera"
        assert body["bill"]["created_by"] == {"id": "staff-1", "name": "Asha"}
        assert "Bill No: 01" in body["receipt_text"]
        assert store.books.get_book(atlas.id).stock == 1

        state = client.get(url).json()
        assert state["items"] == []
        assert state["customer"] is None
        assert state["payment_method"] == "cash"
        assert state["global_discount"] == 0
        assert state["state"] == "succeeded"

        orders = client.get("/orders").json()
        assert [o["invoice_number"] for o in orders] == ["01"]
        assert client.get(f"/orders/{orders[0]['id']}").json()["total"] == 180.0
        customer_id = body["bill"]["customer_id"]
        assert len(client.get(f"/customers/{customer_id}/orders").json()) == 1

    def test_checkout_requires_actor(self, client, store, atlas):
        sid = open_session(client)
        client.post(f"/pos/sessions/{sid}/items", json={"book_id": atlas.id})
        res = client.post(f"/pos/sessions/{sid}/checkout")
        assert res.status_code == 400
        assert store.bills.docs == []

    def test_stock_conflict_is_409(self, client, store, atlas, staff_headers):
        sid = open_session(client)
        client.post(f"/pos/sessions/{sid}/items", json={"book_id": atlas.id})
        store.books.set_stock(atlas.id, 0)

        res = client.post(f"/pos/sessions/{sid}/checkout", headers=staff_headers)
        assert res.status_code == 409
        assert res.json() == {"detail": "Not enough stock for Atlas", "title": "Atlas", "requested": 1, "available": 0}
        assert len(client.get(f"/pos/sessions/{sid}").json()["items"]) == 1

    def test_store_outage_is_generic_503(self, client, store, atlas, staff_headers):
        sid = open_session(client)
        client.post(f"/pos/sessions/{sid}/items", json={"book_id": atlas.id})
        store.down = True
        res = client.post(f"/pos/sessions/{sid}/checkout", headers=staff_headers)
        assert res.status_code == 503
        assert res.json()["detail"] == "Failed to save order. Please try again."

    def test_catalog_refresh_and_unknown_book(self, client, store, atlas):
        sid = open_session(client)
        assert client.post(f"/pos/sessions/{sid}/items", json={"book_id": "missing"}).status_code == 404
        late = client.post("/books", json={"title": "Late Arrival", "author": "Anon", "price": 5, "stock": 1}).json()
        assert client.post(f"/pos/sessions/{sid}/items", json={"book_id": late["id"]}).status_code == 404
        client.post(f"/pos/sessions/{sid}/catalog/refresh")
        assert client.post(f"/pos/sessions/{sid}/items", json={"book_id": late["id"]}).status_code == 200

    def test_remove_line_and_close(self, client, atlas):
        sid = open_session(client)
        line_id = client.post(f"/pos/sessions/{sid}/items", json={"book_id": atlas.id}).json()["items"][0]["id"]
        assert client.delete(f"/pos/sessions/{sid}/items/{line_id}").json()["items"] == []
        assert client.delete(f"/pos/sessions/{sid}").status_code == 200
        assert client.get(f"/pos/sessions/{sid}").status_code == 404

    def test_invalid_inputs(self, client):
        sid = open_session(client)
        assert client.put(f"/pos/sessions/{sid}/discount", json={"percent": 150}).status_code == 422
        assert client.put(f"/pos/sessions/{sid}/payment-method", json={"method": "cheque"}).status_code == 422
        assert client.put(f"/pos/sessions/{sid}/customer", json={"phone": "900"}).status_code == 400


def test_reports_and_dashboard(client, store, atlas, staff_headers):
    sid = open_session(client)
    client.put(f"/pos/sessions/{sid}/customer", json={"phone": "9845012345", "name": "Meera", "email": "m@example.com"})
    client.post(f"/pos/sessions/{sid}/items", json={"book_id": atlas.id})
    client.post(f"/pos/sessions/{sid}/checkout", headers=staff_headers)

    board = client.get("/dashboard").json()
    assert board["total_orders"] == 1
    assert board["today"]["sales"] == 100.0
    assert [b["title"] for b in board["low_stock"]] == ["Atlas"]

    assert client.get("/reports/sales").json()[0]["invoice_number"] == "01"
    assert client.get("/reports/invoices").json()[0]["items"] == 1
    assert client.get("/reports/customers").json()[0]["total_spent"] == 100.0
    inventory = client.get("/reports/inventory").json()
    assert inventory[0]["low_stock"] is True
    assert client.get("/reports/sales", params={"start": "2000-01-01", "end": "2000-01-02"}).json() == []


def checkout(client, book_id, headers, phone=None, name=None):
    sid = open_session(client)
    if phone:
        client.put(f"/pos/sessions/{sid}/customer", json={"phone": phone, "name": name})
    client.post(f"/pos/sessions/{sid}/items", json={"book_id": book_id})
    return client.post(f"/pos/sessions/{sid}/checkout", headers=headers).json()["bill"]


def test_order_search(client, atlas, dune, staff_headers):
    checkout(client, atlas.id, staff_headers, phone="9845012345", name="Meera")
    checkout(client, dune.id, staff_headers, phone="9000011111", name="Ravi")

    def invoices(q):
        return sorted(o["invoice_number"] for o in client.get("/orders", params={"q": q}).json())

    assert invoices("meera") == ["01"]
    assert invoices("90000") == ["02"]
    assert invoices("02") == ["02"]
    assert invoices("nobody") == []


class TestReportExport:
    def test_csv_download(self, client, atlas, staff_headers):
        checkout(client, atlas.id, staff_headers)
        res = client.get("/reports/sales", params={"format": "csv"})
        assert res.status_code == 200
        assert res.headers["content-type"].startswith("text/csv")
        disposition = res.headers["content-disposition"]
        assert disposition.startswith('attachment; filename="sales_report_')
        assert disposition.endswith('.csv"')
        lines = res.text.splitlines()
        assert lines[0].startswith("date,invoice_number,")
        assert ",01,Guest,100.0,cash,completed" in lines[1]

    @pytest.mark.parametrize("name", ["sales", "invoices", "customers", "inventory"])
    def test_every_report_exports(self, client, atlas, name):
        res = client.get(f"/reports/{name}", params={"format": "csv"})
        assert res.status_code == 200
        assert res.headers["content-type"].startswith("text/csv")

    def test_unknown_format(self, client):
        assert client.get("/reports/sales", params={"format": "xml"}).status_code == 422

    def test_single_date_is_rejected(self, client):
        res = client.get("/reports/customers", params={"start": "2026-10-01"})
        assert res.status_code == 400
        assert res.json()["detail"] == "Please select both start and end dates"
