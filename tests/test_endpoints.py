from io import BytesIO
import re

import pytest
from openpyxl import Workbook, load_workbook
from sqlalchemy import text

from quotedesk.customer_import import CUSTOMER_COLUMNS
from quotedesk.identifiers import UncheckedRandomId
from quotedesk.quote_import import QUOTE_COLUMNS, build_quote_template

XLSX = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


def seed_customer(engine, customer_id: int, name: str, phone: str):
    with engine.begin() as conn:
        conn.execute(
            text(
                """
                INSERT INTO customers (id, name, phone, status, created_at)
                VALUES (:id, :name, :phone, 'active', NOW())
                """
            ),
            {"id": customer_id, "name": name, "phone": phone},
        )


def count(engine, table: str) -> int:
    with engine.connect() as conn:
        return conn.execute(text(f"SELECT COUNT(*) FROM {table}")).scalar_one()


def workbook_bytes(header, rows):
    wb = Workbook()
    ws = wb.active
    ws.append(header)
    for row in rows:
        ws.append(row)
    buffer = BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


def upload(client, url, content, filename="quotes.xlsx", data=None):
    return client.post(url, files={"workbook_file": (filename, content, XLSX)}, data=data or {})


def quote_payload(customer_id=1, **overrides):
    payload = {
        "customer_id": customer_id,
        "items": [{"location": "Hall", "type": "window", "height": 100, "width": 100, "qty": 1, "unit_price": 100}],
        "discount_type": "none",
        "discount_value": 0,
        "shipping_amount": 0,
        "minimum_chargeable_area": 1,
        "status": "Draft",
        "remarks": "",
        "valid_until": "2026-12-31",
    }
    payload.update(overrides)
    return payload


def test_health(client_and_engine):
    client, _ = client_and_engine

    assert client.get("/health").json() == {"ok": True}


def test_quote_import_creates_customers_and_draft_quotes(client_and_engine):
    client, engine = client_and_engine

    response = upload(client, "/import/quotes", build_quote_template(), data={"minimum_chargeable_area": "1"})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "completed"
    assert body["success_count"] == 2
    assert body["customers_created"] == 2
    assert body["progress"] == 100
    with engine.connect() as conn:
        statuses = conn.execute(text("SELECT DISTINCT status FROM customers")).scalars().all()
        quote_statuses = conn.execute(text("SELECT DISTINCT status FROM quotes")).scalars().all()
    assert statuses == ["Lead"]
    assert quote_statuses == ["Draft"]

    listed = client.get("/api/quotes").json()["items"]
    assert {q["customer_name"] for q in listed} == {"John Doe", "Jane Smith"}
    assert all(isinstance(q["items"], list) for q in listed)


def test_quote_import_reuses_existing_customer(client_and_engine):
    client, engine = client_and_engine
    seed_customer(engine, 7, "John Doe", "+971501234567")

    body = upload(client, "/import/quotes", build_quote_template()).json()

    assert body["customers_created"] == 1
    with engine.connect() as conn:
        owner = conn.execute(
            text("SELECT customer_id FROM quotes WHERE subtotal = (SELECT MIN(subtotal) FROM quotes)")
        ).scalar_one()
    assert owner == 7
    assert count(engine, "customers") == 2


def test_quote_import_validation_failure_writes_nothing(client_and_engine):
    client, engine = client_and_engine
    content = workbook_bytes(
        QUOTE_COLUMNS,
        [
            ["John", "+971501234567", None, "Hall", "window", 120, 80, 1, 10, None, None],
            [None, "+971509876543", None, "Office", "door", 200, "wide", 1, 10, None, None],
        ],
    )

    response = upload(client, "/import/quotes", content)

    assert response.status_code == 400
    body = response.json()
    assert body["status"] == "invalid"
    assert [(e["row"], e["field"]) for e in body["errors"]] == [(3, "customer_name"), (3, "width")]
    assert count(engine, "customers") == 0
    assert count(engine, "quotes") == 0


def test_quote_import_partial_persistence_failure(client_and_engine, monkeypatch):
    client, engine = client_and_engine
    monkeypatch.setattr(UncheckedRandomId, "generate", lambda self: "QT-202601-0001")

    response = upload(client, "/import/quotes", build_quote_template())

    assert response.status_code == 200
    body = response.json()
    assert body["success_count"] == 1
    assert body["quote_count"] == 2
    assert len(body["errors"]) == 1
    assert body["errors"][0]["kind"] == "persistence"
    assert body["errors"][0]["row"] == 3
    assert body["progress"] == 50
    assert count(engine, "quotes") == 1
    assert count(engine, "customers") == 2


def test_quote_import_rejects_non_workbook(client_and_engine):
    client, _ = client_and_engine

    response = upload(client, "/import/quotes", b"a,b,c", filename="quotes.csv")

    assert response.status_code == 400


def test_quote_import_empty_workbook(client_and_engine):
    client, _ = client_and_engine

    response = upload(client, "/import/quotes", workbook_bytes(QUOTE_COLUMNS, []))

    assert response.status_code == 200
    assert response.json()["status"] == "empty"


def test_quote_import_template_download(client_and_engine):
    client, _ = client_and_engine

    response = client.get("/import/quotes/template")

    assert response.status_code == 200
    assert "Quote_Import_Template.xlsx" in response.headers["content-disposition"]
    rows = list(load_workbook(BytesIO(response.content)).active.iter_rows(values_only=True))
    assert list(rows[0]) == QUOTE_COLUMNS
    assert len(rows) == 3


def test_preview_quote_totals(client_and_engine):
    client, _ = client_and_engine

    response = client.post(
        "/api/quotes/preview",
        json=quote_payload(discount_type="percentage", discount_value=10, shipping_amount=20),
    )

    assert response.status_code == 200
    totals = response.json()["totals"]
    assert totals["subtotal"] == pytest.approx(100.0)
    assert totals["discount"] == pytest.approx(10.0)
    assert totals["vat_amount"] == pytest.approx(4.5)
    assert totals["total"] == pytest.approx(114.5)


def test_create_quote_persists_record(client_and_engine):
    client, engine = client_and_engine
    seed_customer(engine, 1, "Customer 1", "555")

    response = client.post("/api/quotes", json=quote_payload(discount_type="fixed", discount_value=5))

    assert response.status_code == 201
    body = response.json()
    assert re.fullmatch(r"QT-\d{6}-\d{4}", body["quote_number"])
    assert body["total"] == pytest.approx(99.75)
    quote = client.get(f"/api/quotes/{body['id']}").json()
    assert quote["discount_type"] == "fixed"
    assert quote["items"][0]["chargeable_area"] == pytest.approx(1.0)


def test_create_quote_rejects_unknown_customer(client_and_engine):
    client, _ = client_and_engine

    response = client.post("/api/quotes", json=quote_payload(customer_id=999))

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid customer_id"


def test_create_quote_rejects_invalid_discount_type(client_and_engine):
    client, engine = client_and_engine
    seed_customer(engine, 1, "Customer 1", "555")

    response = client.post("/api/quotes", json=quote_payload(discount_type="coupon", discount_value=5))

    assert response.status_code == 400
    assert count(engine, "quotes") == 0


def test_create_quote_requires_a_filled_item(client_and_engine):
    client, engine = client_and_engine
    seed_customer(engine, 1, "Customer 1", "555")

    response = client.post("/api/quotes", json=quote_payload(items=[{"location": "", "type": ""}]))

    assert response.status_code == 400
    assert response.json()["detail"] == "Please fill in at least one item with valid data"


def test_create_quote_rejects_bad_valid_until(client_and_engine):
    client, engine = client_and_engine
    seed_customer(engine, 1, "Customer 1", "555")

    response = client.post("/api/quotes", json=quote_payload(valid_until="31/12/2026"))

    assert response.status_code == 400
    assert "Invalid valid_until" in response.json()["detail"]


def test_update_quote_keeps_number_and_reprices(client_and_engine):
    client, engine = client_and_engine
    seed_customer(engine, 1, "Customer 1", "555")
    created = client.post("/api/quotes", json=quote_payload()).json()

    response = client.put(
        f"/api/quotes/{created['id']}",
        json=quote_payload(
            items=[{"location": "Hall", "type": "window", "height": 200, "width": 100, "qty": 2, "unit_price": 100}],
            status="Sent",
        ),
    )

    assert response.status_code == 200
    assert response.json()["quote_number"] == created["quote_number"]
    quote = client.get(f"/api/quotes/{created['id']}").json()
    assert quote["status"] == "Sent"
    assert quote["subtotal"] == pytest.approx(400.0)
    assert quote["total"] == pytest.approx(420.0)


def test_update_quote_unknown_returns_404(client_and_engine):
    client, _ = client_and_engine

    assert client.put("/api/quotes/999", json=quote_payload()).status_code == 404


def test_convert_quote_to_order(client_and_engine):
    client, engine = client_and_engine
    seed_customer(engine, 1, "Customer 1", "555")
    created = client.post("/api/quotes", json=quote_payload()).json()

    response = client.post(f"/api/quotes/{created['id']}/convert")

    assert response.status_code == 201
    body = response.json()
    assert re.fullmatch(r"ORD-\d{6}-\d{4}", body["order_number"])
    assert body["quote_id"] == created["id"]
    assert client.get(f"/api/quotes/{created['id']}").json()["status"] == "Accepted"
    with engine.connect() as conn:
        order = conn.execute(text("SELECT customer_id, status FROM orders")).mappings().one()
    assert dict(order) == {"customer_id": 1, "status": "Confirmed"}


def test_page_slugs_are_made_unique(client_and_engine):
    client, _ = client_and_engine

    first = client.post("/api/pages", json={"title": "About Us", "content": "Hello"}).json()
    second = client.post("/api/pages", json={"title": "About Us"}).json()
    copy = client.post(f"/api/pages/{first['id']}/duplicate").json()
    copy_again = client.post(f"/api/pages/{first['id']}/duplicate").json()

    assert first["slug"] == "about-us"
    assert second["slug"] == "about-us-1"
    assert copy["slug"] == "about-us-copy"
    assert copy["title"] == "About Us (Copy)"
    assert copy_again["slug"] == "about-us-copy-1"


def test_page_update_does_not_collide_with_itself(client_and_engine):
    client, _ = client_and_engine
    first = client.post("/api/pages", json={"title": "About Us"}).json()
    second = client.post("/api/pages", json={"title": "About Us"}).json()

    unchanged = client.put(f"/api/pages/{second['id']}", json={"slug": "about-us-1"}).json()
    renamed = client.put(f"/api/pages/{first['id']}", json={"title": "Pricing"}).json()

    assert unchanged["slug"] == "about-us-1"
    assert renamed == {"id": first["id"], "title": "Pricing", "slug": "about-us"}


def test_page_missing_returns_404(client_and_engine):
    client, _ = client_and_engine

    assert client.post("/api/pages/42/duplicate").status_code == 404


def test_customer_import_reports_row_failures(client_and_engine):
    client, engine = client_and_engine
    content = workbook_bytes(
        CUSTOMER_COLUMNS,
        [
            ["Alice", "+971500000001", "alice@example.com", None, None, "business", None, "active"],
            [None, "+971500000002", None, None, None, None, None, None],
            ["Bob", "+971500000003", None, None, None, "reseller", None, None],
            ["Carol", 971500000004, None, None, None, None, None, None],
        ],
    )

    response = upload(client, "/import/customers", content, filename="customers.xlsx")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] == 2
    assert body["failed"] == 2
    assert body["errors"][0] == "Row 3: Name is required"
    assert body["errors"][1].startswith("Row 4:")
    with engine.connect() as conn:
        carol = conn.execute(text("SELECT phone, customer_type, status FROM customers WHERE name = 'Carol'")).one()
    assert tuple(carol) == ("971500000004", "individual", "active")


def test_customer_template_download(client_and_engine):
    client, _ = client_and_engine

    response = client.get("/import/customers/template")

    rows = list(load_workbook(BytesIO(response.content)).active.iter_rows(values_only=True))
    assert list(rows[0]) == CUSTOMER_COLUMNS


def test_list_customers_sorted_by_name(client_and_engine):
    client, engine = client_and_engine
    seed_customer(engine, 1, "Zed", "555")
    seed_customer(engine, 2, "Amy", "556")

    items = client.get("/api/customers").json()["items"]

    assert [c["name"] for c in items] == ["Amy", "Zed"]


def test_update_quote_without_status_keeps_current_status(client_and_engine):
    client, engine = client_and_engine
    seed_customer(engine, 1, "Customer 1", "555")
    created = client.post("/api/quotes", json=quote_payload()).json()
    client.post(f"/api/quotes/{created['id']}/convert")
    payload = quote_payload()
    del payload["status"]

    response = client.put(f"/api/quotes/{created['id']}", json=payload)

    assert response.status_code == 200
    assert client.get(f"/api/quotes/{created['id']}").json()["status"] == "Accepted"
