from __future__ import annotations

from datetime import date
from typing import Any

from sqlalchemy import JSON, bindparam, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from quotedesk.quote_import import PersistenceError, ReconciliationError

QUOTE_FIELDS = (
    "customer_id",
    "quote_number",
    "items",
    "subtotal",
    "discount",
    "vat_amount",
    "total",
    "remarks",
    "status",
    "valid_until",
    "discount_type",
    "discount_value",
    "shipping_amount",
    "minimum_chargeable_area",
)


class SqlCustomerStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    def find_by_phone(self, phone: str) -> int | None:
        try:
            existing = self.db.execute(
                text("SELECT id FROM customers WHERE phone = :phone ORDER BY id LIMIT 1"),
                {"phone": phone},
            ).mappings().first()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise ReconciliationError(f"customer lookup failed: {exc}") from exc
        return int(existing["id"]) if existing is not None else None

    def create(self, *, name: str, phone: str, email: str | None, status: str) -> int:
        try:
            customer_id = self.db.execute(
                text(
                    """
                    INSERT INTO customers (name, phone, email, status, created_at)
                    VALUES (:name, :phone, NULLIF(:email, ''), :status, NOW())
                    RETURNING id
                    """
                ),
                {"name": name, "phone": phone, "email": email or "", "status": status},
            ).scalar_one()
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise ReconciliationError(f"customer create failed: {exc}") from exc
        return int(customer_id)


class SqlQuoteStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    def insert(self, record: dict[str, Any]) -> int:
        params = {column: record.get(column) for column in QUOTE_FIELDS}
        statement = text(
            """
            INSERT INTO quotes (
              customer_id, quote_number, items, subtotal, discount, vat_amount, total,
              remarks, status, valid_until, discount_type, discount_value,
              shipping_amount, minimum_chargeable_area, created_at, updated_at
            )
            VALUES (
              :customer_id, :quote_number, :items, :subtotal, :discount, :vat_amount, :total,
              NULLIF(:remarks, ''), :status, :valid_until, :discount_type, :discount_value,
              :shipping_amount, :minimum_chargeable_area, NOW(), NOW()
            )
            RETURNING id
            """
        ).bindparams(bindparam("items", type_=JSON))
        try:
            quote_id = self.db.execute(statement, params).scalar_one()
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise PersistenceError(f"quote insert failed: {exc}") from exc
        return int(quote_id)

    def update(self, quote_id: int, record: dict[str, Any]) -> None:
        params = {column: record.get(column) for column in QUOTE_FIELDS if column != "quote_number"}
        params["quote_id"] = quote_id
        self.db.execute(
            text(
                """
                UPDATE quotes
                SET customer_id = :customer_id,
                    items = :items,
                    subtotal = :subtotal,
                    discount = :discount,
                    vat_amount = :vat_amount,
                    total = :total,
                    remarks = NULLIF(:remarks, ''),
                    status = :status,
                    valid_until = :valid_until,
                    discount_type = :discount_type,
                    discount_value = :discount_value,
                    shipping_amount = :shipping_amount,
                    minimum_chargeable_area = :minimum_chargeable_area,
                    updated_at = NOW()
                WHERE id = :quote_id
                """
            ).bindparams(bindparam("items", type_=JSON)),
            params,
        )

    def get(self, quote_id: int) -> dict[str, Any] | None:
        row = self.db.execute(
            text(
                """
                SELECT id, customer_id, quote_number, items, subtotal, discount, vat_amount, total,
                       remarks, status, valid_until, discount_type, discount_value,
                       shipping_amount, minimum_chargeable_area
                FROM quotes
                WHERE id = :quote_id
                """
            ).columns(items=JSON),
            {"quote_id": quote_id},
        ).mappings().first()
        return dict(row) if row is not None else None

    def list_all(self) -> list[dict[str, Any]]:
        rows = self.db.execute(
            text(
                """
                SELECT q.id, q.quote_number, q.status, q.subtotal, q.discount, q.vat_amount,
                       q.shipping_amount, q.total, q.valid_until, q.items,
                       c.id AS customer_id, COALESCE(c.name, '') AS customer_name, c.phone AS customer_phone
                FROM quotes q
                JOIN customers c ON c.id = q.customer_id
                ORDER BY q.id DESC
                LIMIT 1000
                """
            ).columns(items=JSON)
        ).mappings().all()
        return [dict(r) for r in rows]

    def set_status(self, quote_id: int, status: str) -> None:
        self.db.execute(
            text("UPDATE quotes SET status = :status, updated_at = NOW() WHERE id = :quote_id"),
            {"quote_id": quote_id, "status": status},
        )


class SqlOrderStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    def insert(self, *, customer_id: int, quote_id: int, order_number: str, order_date: date, status: str) -> int:
        order_id = self.db.execute(
            text(
                """
                INSERT INTO orders (customer_id, quote_id, order_number, order_date, status, created_at)
                VALUES (:customer_id, :quote_id, :order_number, :order_date, :status, NOW())
                RETURNING id
                """
            ),
            {
                "customer_id": customer_id,
                "quote_id": quote_id,
                "order_number": order_number,
                "order_date": order_date,
                "status": status,
            },
        ).scalar_one()
        return int(order_id)


def page_slug_lookup(db: Session):
    def exists(slug: str, exclude_id: int | None) -> bool:
        found = db.execute(
            text(
                """
                SELECT 1
                FROM pages
                WHERE slug = :slug
                  AND (:exclude_id IS NULL OR id <> :exclude_id)
                LIMIT 1
                """
            ),
            {"slug": slug, "exclude_id": exclude_id},
        ).scalar()
        return bool(found)

    return exists
