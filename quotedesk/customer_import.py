from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from quotedesk.quote_import import SheetRow, build_template, clean_phone, clean_text, read_rows

logger = logging.getLogger(__name__)

CUSTOMER_COLUMNS = ["name", "phone", "email", "company", "address", "customer_type", "notes", "status"]
CUSTOMER_TEMPLATE_ROWS = [
    ["John Doe", "+971501234567", "john@example.com", "ABC Company", "Dubai, UAE", "individual", "", "active"],
]
CUSTOMER_COLUMN_WIDTHS = [20, 15, 25, 20, 25, 15, 30, 10]
VALID_CUSTOMER_TYPES = {"individual", "business"}
VALID_CUSTOMER_STATUSES = {"active", "inactive", "suspended"}


def validate_customer_row(row: dict[str, Any], row_number: int) -> str | None:
    if not clean_text(row.get("name")):
        return f"Row {row_number}: Name is required"
    if not clean_phone(row.get("phone")):
        return f"Row {row_number}: Phone is required"
    customer_type = clean_text(row.get("customer_type")).lower()
    if customer_type and customer_type not in VALID_CUSTOMER_TYPES:
        return f"Row {row_number}: customer_type must be 'individual' or 'business'"
    status = clean_text(row.get("status")).lower()
    if status and status not in VALID_CUSTOMER_STATUSES:
        return f"Row {row_number}: status must be 'active', 'inactive', or 'suspended'"
    return None


def _insert_customer(db: Session, sheet_row: SheetRow) -> None:
    values = sheet_row.values
    db.execute(
        text(
            """
            INSERT INTO customers (name, phone, email, company, address, customer_type, notes, status, created_at)
            VALUES (
              :name, :phone, NULLIF(:email, ''), NULLIF(:company, ''), NULLIF(:address, ''),
              :customer_type, NULLIF(:notes, ''), :status, NOW()
            )
            """
        ),
        {
            "name": clean_text(values.get("name")),
            "phone": clean_phone(values.get("phone")),
            "email": clean_text(values.get("email")),
            "company": clean_text(values.get("company")),
            "address": clean_text(values.get("address")),
            "customer_type": clean_text(values.get("customer_type")).lower() or "individual",
            "notes": clean_text(values.get("notes")),
            "status": clean_text(values.get("status")).lower() or "active",
        },
    )


def import_customers(db: Session, content: bytes, filename: str) -> dict[str, Any]:
    rows = read_rows(content, filename)
    summary: dict[str, Any] = {
        "filename": filename,
        "row_count": len(rows),
        "success": 0,
        "failed": 0,
        "errors": [],
        "message": "",
    }
    if not rows:
        summary["message"] = "The file is empty"
        return summary

    for sheet_row in rows:
        error = validate_customer_row(sheet_row.values, sheet_row.row_number)
        if error:
            summary["errors"].append(error)
            summary["failed"] += 1
            continue
        try:
            _insert_customer(db, sheet_row)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning("Customer import failed on row %d: %s", sheet_row.row_number, exc)
            summary["errors"].append(f"Row {sheet_row.row_number}: {exc}")
            summary["failed"] += 1
            continue
        summary["success"] += 1

    logger.info(
        "Customer import for %s finished: imported=%d failed=%d",
        filename,
        summary["success"],
        summary["failed"],
    )
    return summary


def build_customer_template() -> bytes:
    return build_template("Customers Template", CUSTOMER_COLUMNS, CUSTOMER_TEMPLATE_ROWS, CUSTOMER_COLUMN_WIDTHS)
