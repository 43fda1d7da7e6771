import logging
from dataclasses import replace
from datetime import date
from typing import Any

from fastapi import Body, Depends, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.responses import JSONResponse, Response
from sqlalchemy import text
from sqlalchemy.exc import DataError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from quotedesk import models
from quotedesk.config import settings
from quotedesk.customer_import import build_customer_template, import_customers
from quotedesk.database import SessionLocal, engine
from quotedesk.identifiers import IdentifierGenerator, RetryUntilUniqueSlug, UncheckedRandomId, slugify
from quotedesk.pricing import draft_from_payload, recompute, to_number
from quotedesk.quote_import import ImportOrchestrator, PersistenceError, build_quote_template
from quotedesk.stores import SqlCustomerStore, SqlOrderStore, SqlQuoteStore, page_slug_lookup

app = FastAPI(title="Quote Desk")
logger = logging.getLogger(__name__)

QUOTE_STATUSES = {"Draft", "Sent", "Accepted", "Rejected", "Expired"}
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@app.on_event("startup")
def ensure_tables():
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    models.Base.metadata.create_all(bind=engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def build_identifiers(db: Session) -> IdentifierGenerator:
    return IdentifierGenerator(
        quote_numbers=UncheckedRandomId(settings.quote_number_prefix),
        order_numbers=UncheckedRandomId(settings.order_number_prefix),
        slugs=RetryUntilUniqueSlug(page_slug_lookup(db)),
    )


def parse_optional_date(value: Any, field_name: str) -> date | None:
    if value is None:
        return None
    cleaned = str(value).strip()
    if not cleaned:
        return None
    try:
        return date.fromisoformat(cleaned)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {field_name}. Use YYYY-MM-DD.") from exc


def ensure_customer_exists(db: Session, customer_id: Any) -> int:
    try:
        customer_id = int(customer_id)
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail="Invalid customer_id") from exc
    exists = db.execute(
        text("SELECT 1 FROM customers WHERE id = :customer_id"),
        {"customer_id": customer_id},
    ).scalar()
    if not exists:
        raise HTTPException(status_code=400, detail="Invalid customer_id")
    return customer_id


def load_page(db: Session, page_id: int) -> dict[str, Any]:
    page = db.execute(
        text("SELECT id, title, slug, content FROM pages WHERE id = :page_id"),
        {"page_id": page_id},
    ).mappings().first()
    if page is None:
        raise HTTPException(status_code=404, detail="Page not found")
    return dict(page)


def build_quote_record(payload: dict[str, Any], default_status: str = "Draft") -> dict[str, Any]:
    try:
        draft = draft_from_payload(payload, vat_rate=settings.vat_rate)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    items = [item for item in draft.items if not item.is_blank()]
    if not items:
        raise HTTPException(status_code=400, detail="Please fill in at least one item with valid data")

    status = str(payload.get("status") or default_status).strip()
    if status not in QUOTE_STATUSES:
        allowed = ", ".join(sorted(QUOTE_STATUSES))
        raise HTTPException(status_code=400, detail=f"Invalid status '{status}'. Allowed: {allowed}.")

    draft = recompute(replace(draft, items=tuple(items)))
    totals = draft.totals
    return {
        "items": [item.to_dict() for item in draft.items],
        "subtotal": totals.subtotal,
        "discount": totals.discount,
        "vat_amount": totals.vat_amount,
        "total": totals.total,
        "remarks": str(payload.get("remarks") or "").strip(),
        "status": status,
        "valid_until": parse_optional_date(payload.get("valid_until"), "valid_until"),
        "discount_type": draft.discount_type,
        "discount_value": draft.discount_value,
        "shipping_amount": draft.shipping_amount,
        "minimum_chargeable_area": draft.minimum_chargeable_area,
    }


def xlsx_response(content: bytes, filename: str) -> Response:
    return Response(
        content=content,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/health")
def health(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"ok": True}


@app.get("/api/customers")
def list_customers(db: Session = Depends(get_db)):
    rows = db.execute(
        text(
            """
            SELECT id, name, phone, email, company, customer_type, status
            FROM customers
            ORDER BY name
            """
        )
    ).mappings().all()
    return {"items": [dict(r) for r in rows]}


@app.post("/api/quotes/preview")
def preview_quote(payload: dict[str, Any] = Body(...)):
    try:
        draft = draft_from_payload(payload, vat_rate=settings.vat_rate)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return draft.to_dict()


@app.get("/api/quotes")
def list_quotes(db: Session = Depends(get_db)):
    return {"items": SqlQuoteStore(db).list_all()}


@app.get("/api/quotes/{quote_id}")
def get_quote(quote_id: int, db: Session = Depends(get_db)):
    quote = SqlQuoteStore(db).get(quote_id)
    if quote is None:
        raise HTTPException(status_code=404, detail="Quote not found")
    return quote


@app.post("/api/quotes", status_code=201)
def create_quote(payload: dict[str, Any] = Body(...), db: Session = Depends(get_db)):
    customer_id = ensure_customer_exists(db, payload.get("customer_id"))
    record = build_quote_record(payload)
    record["customer_id"] = customer_id
    record["quote_number"] = build_identifiers(db).quote_number()

    try:
        quote_id = SqlQuoteStore(db).insert(record)
    except PersistenceError as exc:
        logger.warning("Could not create quote %s: %s", record["quote_number"], exc)
        raise HTTPException(status_code=400, detail="Could not create quote. Check field values.") from exc

    return {"id": quote_id, "quote_number": record["quote_number"], "total": record["total"]}


@app.put("/api/quotes/{quote_id}")
def update_quote(quote_id: int, payload: dict[str, Any] = Body(...), db: Session = Depends(get_db)):
    store = SqlQuoteStore(db)
    existing = store.get(quote_id)
    if existing is None:
        raise HTTPException(status_code=404, detail="Quote not found")
    customer_id = ensure_customer_exists(db, payload.get("customer_id", existing["customer_id"]))
    record = build_quote_record(payload, default_status=existing["status"])
    record["customer_id"] = customer_id

    try:
        store.update(quote_id, record)
        db.commit()
    except (IntegrityError, DataError) as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail="Could not update quote. Check field values.") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Unexpected database error while updating quote")
        raise HTTPException(status_code=500, detail="Unexpected server error while updating quote.") from exc

    return {"id": quote_id, "quote_number": existing["quote_number"], "total": record["total"]}


@app.post("/api/quotes/{quote_id}/convert", status_code=201)
def convert_quote_to_order(quote_id: int, db: Session = Depends(get_db)):
    quotes = SqlQuoteStore(db)
    quote = quotes.get(quote_id)
    if quote is None:
        raise HTTPException(status_code=404, detail="Quote not found")

    order_number = build_identifiers(db).order_number()
    try:
        order_id = SqlOrderStore(db).insert(
            customer_id=int(quote["customer_id"]),
            quote_id=quote_id,
            order_number=order_number,
            order_date=date.today(),
            status="Confirmed",
        )
        quotes.set_status(quote_id, "Accepted")
        db.commit()
    except (IntegrityError, DataError) as exc:
        db.rollback()
        raise HTTPException(status_code=400, detail="Could not create order from quote.") from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Unexpected database error while converting quote %s", quote_id)
        raise HTTPException(status_code=500, detail="Unexpected server error while creating order.") from exc

    return {"id": order_id, "order_number": order_number, "quote_id": quote_id}


@app.get("/import/quotes/template")
def quote_import_template():
    return xlsx_response(build_quote_template(), "Quote_Import_Template.xlsx")


@app.post("/import/quotes")
async def import_quotes(
    workbook_file: UploadFile = File(...),
    minimum_chargeable_area: str = Form(""),
    db: Session = Depends(get_db),
):
    minimum = to_number(minimum_chargeable_area) or settings.default_minimum_chargeable_area
    orchestrator = ImportOrchestrator(
        SqlCustomerStore(db),
        SqlQuoteStore(db),
        build_identifiers(db).quote_numbers,
        minimum_chargeable_area=minimum,
        quote_status=settings.import_quote_status,
        customer_status=settings.import_customer_status,
        vat_rate=settings.vat_rate,
    )

    payload = await workbook_file.read()
    try:
        report = orchestrator.run(payload, workbook_file.filename or "quotes.xlsx")
    except HTTPException:
        db.rollback()
        raise
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Unexpected database error during quote import")
        raise HTTPException(status_code=500, detail="Unexpected import database error.") from exc

    status_code = 400 if report.status == "invalid" else 200
    return JSONResponse(status_code=status_code, content=report.to_dict())


@app.get("/import/customers/template")
def customer_import_template():
    return xlsx_response(build_customer_template(), "customers_import_template.xlsx")


@app.post("/import/customers")
async def import_customer_workbook(
    workbook_file: UploadFile = File(...),
    db: Session = Depends(get_db),
):
    payload = await workbook_file.read()
    try:
        return import_customers(db, payload, workbook_file.filename or "customers.xlsx")
    except HTTPException:
        db.rollback()
        raise


@app.post("/api/pages", status_code=201)
def create_page(payload: dict[str, Any] = Body(...), db: Session = Depends(get_db)):
    title = str(payload.get("title") or "").strip()
    if not title:
        raise HTTPException(status_code=400, detail="title is required")
    base_slug = slugify(str(payload.get("slug") or "").strip() or title)
    if not base_slug:
        raise HTTPException(status_code=400, detail="Could not derive a slug from the title")

    try:
        slug = build_identifiers(db).unique_slug(base_slug)
        page_id = db.execute(
            text(
                """
                INSERT INTO pages (title, slug, content, created_at)
                VALUES (:title, :slug, NULLIF(:content, ''), NOW())
                RETURNING id
                """
            ),
            {"title": title, "slug": slug, "content": str(payload.get("content") or "")},
        ).scalar_one()
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Unexpected database error while creating page")
        raise HTTPException(status_code=500, detail="Unexpected server error while creating page.") from exc

    return {"id": page_id, "title": title, "slug": slug}


@app.put("/api/pages/{page_id}")
def update_page(page_id: int, payload: dict[str, Any] = Body(...), db: Session = Depends(get_db)):
    page = load_page(db, page_id)
    title = str(payload.get("title") or page["title"]).strip()
    base_slug = slugify(str(payload.get("slug") or page["slug"]).strip())
    if not base_slug:
        raise HTTPException(status_code=400, detail="slug is required")

    try:
        slug = build_identifiers(db).unique_slug(base_slug, exclude_id=page_id)
        db.execute(
            text("UPDATE pages SET title = :title, slug = :slug WHERE id = :page_id"),
            {"page_id": page_id, "title": title, "slug": slug},
        )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Unexpected database error while updating page")
        raise HTTPException(status_code=500, detail="Unexpected server error while updating page.") from exc

    return {"id": page_id, "title": title, "slug": slug}


@app.post("/api/pages/{page_id}/duplicate", status_code=201)
def duplicate_page(page_id: int, db: Session = Depends(get_db)):
    page = load_page(db, page_id)
    title = f"{page['title']} (Copy)"

    try:
        slug = build_identifiers(db).unique_slug(f"{page['slug']}-copy")
        new_id = db.execute(
            text(
                """
                INSERT INTO pages (title, slug, content, created_at)
                VALUES (:title, :slug, :content, NOW())
                RETURNING id
                """
            ),
            {"title": title, "slug": slug, "content": page["content"]},
        ).scalar_one()
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Unexpected database error while duplicating page")
        raise HTTPException(status_code=500, detail="Unexpected server error while duplicating page.") from exc

    return {"id": new_id, "title": title, "slug": slug}
