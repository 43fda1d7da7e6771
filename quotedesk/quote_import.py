from __future__ import annotations

import logging
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from io import BytesIO
from typing import Any, Callable, Protocol, Union

from fastapi import HTTPException
from openpyxl import Workbook, load_workbook

from quotedesk.identifiers import UncheckedRandomId
from quotedesk.pricing import (
    DEFAULT_MINIMUM_CHARGEABLE_AREA,
    VAT_RATE,
    DiscountPolicy,
    QuoteItem,
    aggregate_quote,
    to_number,
    to_quantity,
)

logger = logging.getLogger(__name__)

QUOTE_COLUMNS = [
    "customer_name",
    "customer_phone",
    "customer_email",
    "location",
    "type",
    "height",
    "width",
    "qty",
    "unit_price",
    "remarks",
    "valid_until",
]
QUOTE_TEMPLATE_ROWS = [
    ["John Doe", "+971501234567", "john@example.com", "120 series thermal break s", "window", 158, 158, 1, 8, "Sample quote", "2025/12/31"],
    ["Jane Smith", "+971509876543", "jane@example.com", "Living Room", "door", 200, 90, 2, 15, "Urgent", "2025/11/30"],
]
QUOTE_COLUMN_WIDTHS = [20, 15, 25, 25, 15, 10, 10, 8, 12, 30, 15]
REQUIRED_TEXT_FIELDS = {
    "customer_name": "Customer name is required",
    "customer_phone": "Customer phone is required",
    "location": "Location is required",
    "type": "Type is required",
}
POSITIVE_NUMBER_FIELDS = {
    "height": "Height must be a positive number",
    "width": "Width must be a positive number",
    "unit_price": "Unit price must be a positive number",
}
WORKBOOK_EXTENSIONS = (".xlsx", ".xlsm")
DATE_FORMATS = ("%Y-%m-%d", "%Y/%m/%d", "%d/%m/%Y", "%d-%m-%Y")


def clean_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).replace("\xa0", " ").strip()


def clean_phone(value: Any) -> str:
    raw = clean_text(value)
    if raw.endswith(".0") and raw.replace(".", "", 1).isdigit():
        return raw[:-2]
    return raw


def _to_date(value: Any) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = clean_text(value)
    if not raw:
        return None

    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(raw, fmt).date()
        except ValueError:
            continue
    logger.warning("Ignoring unparseable valid_until value %r", raw)
    return None


@dataclass(frozen=True)
class ValidationError:
    row: int
    field: str
    message: str
    kind: str = "validation"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class QuoteImportError(Exception):
    pass


class ReconciliationError(QuoteImportError):
    pass


class PersistenceError(QuoteImportError):
    pass


@dataclass(frozen=True)
class SheetRow:
    row_number: int
    values: dict[str, Any]


def read_rows(content: bytes, filename: str) -> list[SheetRow]:
    if not filename.lower().endswith(WORKBOOK_EXTENSIONS):
        raise HTTPException(status_code=400, detail="Upload an .xlsx or .xlsm workbook")
    if not content:
        raise HTTPException(status_code=400, detail="Uploaded workbook is empty")

    try:
        workbook = load_workbook(BytesIO(content), data_only=True, read_only=True)
    except Exception as exc:
        raise HTTPException(status_code=400, detail=f"Could not read workbook: {exc}") from exc

    try:
        sheet = workbook.worksheets[0]
        rows = sheet.iter_rows(values_only=True)
        header = next(rows, None)
        if header is None:
            return []
        keys = [clean_text(cell).lower() for cell in header]

        parsed: list[SheetRow] = []
        for row_number, row in enumerate(rows, start=2):
            if not any(clean_text(v) for v in row):
                continue
            values = {key: row[i] if i < len(row) else None for i, key in enumerate(keys) if key}
            parsed.append(SheetRow(row_number=row_number, values=values))
        return parsed
    finally:
        workbook.close()


def validate_row(row: dict[str, Any], row_number: int) -> list[ValidationError]:
    errors: list[ValidationError] = []
    for field_name, message in REQUIRED_TEXT_FIELDS.items():
        if not clean_text(row.get(field_name)):
            errors.append(ValidationError(row_number, field_name, message))

    for field_name in ("height", "width"):
        if to_number(row.get(field_name)) <= 0:
            errors.append(ValidationError(row_number, field_name, POSITIVE_NUMBER_FIELDS[field_name]))
    if to_quantity(row.get("qty")) <= 0:
        errors.append(ValidationError(row_number, "qty", "Quantity must be a positive number"))
    if to_number(row.get("unit_price")) <= 0:
        errors.append(ValidationError(row_number, "unit_price", POSITIVE_NUMBER_FIELDS["unit_price"]))
    return errors


@dataclass
class QuoteGroup:
    phone: str
    customer_name: str
    customer_email: str | None
    remarks: str
    valid_until: date | None
    first_row: int
    items: list[QuoteItem] = field(default_factory=list)
    rows: list[int] = field(default_factory=list)
    customer_id: int | None = None


class CustomerStore(Protocol):
    def find_by_phone(self, phone: str) -> int | None: ...

    def create(self, *, name: str, phone: str, email: str | None, status: str) -> int: ...


class QuoteStore(Protocol):
    def insert(self, record: dict[str, Any]) -> int: ...


class CustomerReconciler:
    def __init__(self, store: CustomerStore, *, customer_status: str = "Lead") -> None:
        self.store = store
        self.customer_status = customer_status
        self.resolved: dict[str, int] = {}
        self.customers_created = 0

    def reset(self) -> None:
        self.resolved = {}
        self.customers_created = 0

    def group(self, rows: list[SheetRow]) -> dict[str, QuoteGroup]:
        groups: dict[str, QuoteGroup] = {}
        for sheet_row in rows:
            values = sheet_row.values
            phone = clean_phone(values.get("customer_phone"))
            group = groups.get(phone)
            if group is None:
                email = clean_text(values.get("customer_email"))
                group = QuoteGroup(
                    phone=phone,
                    customer_name=clean_text(values.get("customer_name")),
                    customer_email=email or None,
                    remarks=clean_text(values.get("remarks")),
                    valid_until=_to_date(values.get("valid_until")),
                    first_row=sheet_row.row_number,
                )
                groups[phone] = group
            group.items.append(
                QuoteItem(
                    location=clean_text(values.get("location")),
                    type=clean_text(values.get("type")),
                    height=to_number(values.get("height")),
                    width=to_number(values.get("width")),
                    qty=to_quantity(values.get("qty")),
                    unit_price=to_number(values.get("unit_price")),
                )
            )
            group.rows.append(sheet_row.row_number)
        return groups

    def resolve(self, group: QuoteGroup) -> int:
        if group.phone in self.resolved:
            return self.resolved[group.phone]

        customer_id = self.store.find_by_phone(group.phone)
        if customer_id is None:
            customer_id = self.store.create(
                name=group.customer_name,
                phone=group.phone,
                email=group.customer_email,
                status=self.customer_status,
            )
            self.customers_created += 1
            logger.info("Created customer %s for phone %s", customer_id, group.phone)
        self.resolved[group.phone] = customer_id
        return customer_id

    def reconcile(self, rows: list[SheetRow]) -> dict[str, QuoteGroup]:
        groups = self.group(rows)
        for group in groups.values():
            group.customer_id = self.resolve(group)
        return groups


@dataclass
class ImportReport:
    filename: str
    status: str = "completed"
    message: str = ""
    row_count: int = 0
    quote_count: int = 0
    success_count: int = 0
    customers_created: int = 0
    progress: int = 0
    quote_numbers: list[str] = field(default_factory=list)
    errors: list[ValidationError] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["errors"] = [error.to_dict() for error in self.errors]
        return data


@dataclass(frozen=True)
class Idle:
    name: str = "idle"


@dataclass(frozen=True)
class Parsing:
    filename: str
    name: str = "parsing"


@dataclass(frozen=True)
class Validating:
    row_count: int
    name: str = "validating"


@dataclass(frozen=True)
class Grouping:
    row_count: int
    name: str = "grouping"


@dataclass(frozen=True)
class Reconciling:
    group_count: int
    name: str = "reconciling"


@dataclass(frozen=True)
class Persisting:
    queued: int
    done: int = 0
    name: str = "persisting"


@dataclass(frozen=True)
class Reporting:
    report: ImportReport
    name: str = "reporting"


ImportState = Union[Idle, Parsing, Validating, Grouping, Reconciling, Persisting, Reporting]
RowSource = Callable[[bytes, str], list[SheetRow]]
ProgressCallback = Callable[[int, int], None]


class ImportOrchestrator:
    """Drives one bulk quote upload from workbook bytes to persisted quotes.

    Validation is all-or-nothing: every row is checked, and a single error
    stops the batch before anything is written. Persistence is per quote:
    a failed customer lookup/create or quote insert is recorded and the next
    quote is still attempted.
    """

    def __init__(
        self,
        customer_store: CustomerStore,
        quote_store: QuoteStore,
        quote_numbers: UncheckedRandomId,
        *,
        minimum_chargeable_area: float = DEFAULT_MINIMUM_CHARGEABLE_AREA,
        quote_status: str = "Draft",
        customer_status: str = "Lead",
        vat_rate: float = VAT_RATE,
        row_source: RowSource = read_rows,
    ) -> None:
        self.quote_store = quote_store
        self.quote_numbers = quote_numbers
        self.reconciler = CustomerReconciler(customer_store, customer_status=customer_status)
        self.minimum_chargeable_area = minimum_chargeable_area or DEFAULT_MINIMUM_CHARGEABLE_AREA
        self.quote_status = quote_status
        self.vat_rate = vat_rate
        self.row_source = row_source
        self.state: ImportState = Idle()
        self.transitions: list[str] = []

    def _enter(self, state: ImportState) -> None:
        logger.debug("Quote import %s -> %s", self.state.name, state.name)
        self.state = state
        self.transitions.append(state.name)

    def run(self, content: bytes, filename: str, progress: ProgressCallback | None = None) -> ImportReport:
        self.transitions = []
        self.reconciler.reset()
        logger.info("Starting quote import for %s", filename)
        try:
            report = self._run(content, filename, progress)
            self._enter(Reporting(report))
            logger.info(
                "Quote import for %s finished: status=%s quotes=%d imported=%d errors=%d",
                filename,
                report.status,
                report.quote_count,
                report.success_count,
                len(report.errors),
            )
            return report
        finally:
            self._enter(Idle())

    def _run(self, content: bytes, filename: str, progress: ProgressCallback | None) -> ImportReport:
        report = ImportReport(filename=filename)

        self._enter(Parsing(filename))
        rows = self.row_source(content, filename)
        report.row_count = len(rows)
        if not rows:
            report.status = "empty"
            report.message = "The file is empty or has no data rows"
            return report

        self._enter(Validating(len(rows)))
        errors: list[ValidationError] = []
        for sheet_row in rows:
            errors.extend(validate_row(sheet_row.values, sheet_row.row_number))
        if errors:
            report.status = "invalid"
            report.message = f"Validation found {len(errors)} error(s); nothing was imported."
            report.errors = errors
            return report

        self._enter(Grouping(len(rows)))
        groups = self.reconciler.group(rows)

        self._enter(Reconciling(len(groups)))
        ready: list[QuoteGroup] = []
        for group in groups.values():
            try:
                group.customer_id = self.reconciler.resolve(group)
            except ReconciliationError as exc:
                logger.warning("Customer reconciliation failed for phone %s: %s", group.phone, exc)
                errors.append(
                    ValidationError(
                        group.first_row,
                        "customer",
                        f"Failed to resolve customer for {group.customer_name}: {exc}",
                        kind="reconciliation",
                    )
                )
                continue
            ready.append(group)
        report.customers_created = self.reconciler.customers_created
        report.quote_count = len(groups)

        queue: deque[QuoteGroup] = deque(ready, maxlen=len(ready) or None)
        total = len(queue)
        self._enter(Persisting(queued=total))
        while queue:
            group = queue.popleft()
            record = self.build_record(group)
            try:
                self.quote_store.insert(record)
            except PersistenceError as exc:
                logger.warning("Quote insert failed for phone %s: %s", group.phone, exc)
                errors.append(
                    ValidationError(
                        group.first_row,
                        "import",
                        f"Failed to import quote for {group.customer_name}: {exc}",
                        kind="persistence",
                    )
                )
            else:
                report.success_count += 1
                report.quote_numbers.append(record["quote_number"])
            self.state = Persisting(queued=total, done=total - len(queue))
            if progress is not None:
                progress(report.success_count, total)

        report.progress = round(report.success_count * 100 / total) if total else 100
        report.errors = errors
        return report

    def build_record(self, group: QuoteGroup) -> dict[str, Any]:
        items = [item.priced(self.minimum_chargeable_area) for item in group.items]
        discount = DiscountPolicy()
        totals = aggregate_quote(items, discount, 0.0, self.vat_rate)
        return {
            "customer_id": group.customer_id,
            "quote_number": self.quote_numbers.generate(),
            "items": [item.to_dict() for item in items],
            "subtotal": totals.subtotal,
            "discount": totals.discount,
            "vat_amount": totals.vat_amount,
            "total": totals.total,
            "remarks": group.remarks,
            "status": self.quote_status,
            "valid_until": group.valid_until,
            "discount_type": discount.discount_type,
            "discount_value": discount.discount_value,
            "shipping_amount": totals.shipping_amount,
            "minimum_chargeable_area": self.minimum_chargeable_area,
        }


def build_template(sheet_title: str, columns: list[str], rows: list[list[Any]], widths: list[int]) -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = sheet_title
    sheet.append(columns)
    for row in rows:
        sheet.append(row)
    for index, width in enumerate(widths):
        sheet.column_dimensions[sheet.cell(row=1, column=index + 1).column_letter].width = width

    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def build_quote_template() -> bytes:
    return build_template("Quote Template", QUOTE_COLUMNS, QUOTE_TEMPLATE_ROWS, QUOTE_COLUMN_WIDTHS)
