"""Receipt selection and file rendering for exports.

``ReceiptFilter`` describes which receipts an export or destination sync
covers; it is stored on background jobs as plain JSON so the worker sees
exactly the selection the user asked for.  Rendering is pure: it takes
already loaded receipts and returns bytes.
"""

from __future__ import annotations

import csv
import datetime as dt
import io
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from openpyxl import Workbook
from openpyxl.styles import Font
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from receiptsync.models.enums import (
    EXPORT_COLUMN_LABELS,
    ExportColumn,
    ExportFormat,
    ReceiptStatus,
)
from receiptsync.models.tables import Receipt
from receiptsync.utils.helpers import slugify

logger = logging.getLogger(__name__)

CSV_CONTENT_TYPE = "text/csv; charset=utf-8"
XLSX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

_MONEY_COLUMNS = {ExportColumn.AMOUNT, ExportColumn.TAX_AMOUNT, ExportColumn.SUBTOTAL}


@dataclass(frozen=True)
class ReceiptFilter:
    start_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None
    categories: Tuple[str, ...] = ()
    statuses: Tuple[ReceiptStatus, ...] = field(default=(ReceiptStatus.EXTRACTED,))

    @classmethod
    def from_request(cls, model: Any) -> "ReceiptFilter":
        """Build from a ``ReceiptFilterModel`` (or None)."""
        if model is None:
            return cls()
        statuses = tuple(model.statuses or ()) or (ReceiptStatus.EXTRACTED,)
        categories = tuple(getattr(c, "value", c) for c in (model.categories or ()))
        return cls(start_date=model.start_date, end_date=model.end_date, categories=categories, statuses=statuses)

    def for_live_sync(self) -> "ReceiptFilter":
        """Same selection with ARCHIVED removed; archived receipts never reach destinations."""
        statuses = tuple(s for s in self.statuses if s != ReceiptStatus.ARCHIVED) or (ReceiptStatus.EXTRACTED,)
        return ReceiptFilter(self.start_date, self.end_date, self.categories, statuses)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "categories": list(self.categories),
            "statuses": [s.value for s in self.statuses],
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ReceiptFilter":
        if not data:
            return cls()
        start = data.get("start_date")
        end = data.get("end_date")
        return cls(
            start_date=dt.date.fromisoformat(start) if start else None,
            end_date=dt.date.fromisoformat(end) if end else None,
            categories=tuple(data.get("categories") or ()),
            statuses=tuple(ReceiptStatus(s) for s in (data.get("statuses") or ())) or (ReceiptStatus.EXTRACTED,),
        )


def _apply_filter(stmt, org_id: str, flt: ReceiptFilter):
    stmt = stmt.where(Receipt.org_id == org_id, Receipt.status.in_(list(flt.statuses)))
    if flt.start_date:
        stmt = stmt.where(Receipt.receipt_date >= flt.start_date)
    if flt.end_date:
        stmt = stmt.where(Receipt.receipt_date <= flt.end_date)
    if flt.categories:
        stmt = stmt.where(Receipt.category.in_(list(flt.categories)))
    return stmt


async def count_receipts(db: AsyncSession, org_id: str, flt: ReceiptFilter) -> int:
    stmt = _apply_filter(select(func.count(Receipt.id)), org_id, flt)
    return int((await db.execute(stmt)).scalar() or 0)


async def fetch_receipts(db: AsyncSession, org_id: str, flt: ReceiptFilter) -> List[Receipt]:
    stmt = _apply_filter(select(Receipt), org_id, flt).order_by(Receipt.receipt_date, Receipt.created_at)
    return list((await db.execute(stmt)).scalars().all())


def _money(value: Optional[float]) -> Optional[str]:
    return f"{value:.2f}" if value is not None else None


def column_value(receipt: Receipt, column: ExportColumn) -> Optional[str]:
    """String rendering of one receipt field, shared by files and sheet rows."""
    if column == ExportColumn.DATE:
        return receipt.receipt_date.isoformat() if receipt.receipt_date else None
    if column == ExportColumn.VENDOR:
        return receipt.vendor
    if column in _MONEY_COLUMNS:
        attr = {
            ExportColumn.AMOUNT: "amount",
            ExportColumn.TAX_AMOUNT: "tax_amount",
            ExportColumn.SUBTOTAL: "subtotal",
        }[column]
        return _money(getattr(receipt, attr))
    if column == ExportColumn.CURRENCY:
        return receipt.currency
    if column == ExportColumn.CATEGORY:
        return receipt.category
    if column == ExportColumn.PAYMENT_METHOD:
        return receipt.payment_method
    if column == ExportColumn.NOTES:
        return receipt.notes[:200] if receipt.notes else None
    if column == ExportColumn.RECEIPT_IMAGE_URL:
        return receipt.original_image_key
    if column == ExportColumn.RECEIPT_NUMBER:
        return receipt.receipt_number
    if column == ExportColumn.STATUS:
        return receipt.status.value if receipt.status else None
    if column == ExportColumn.CREATED_AT:
        return receipt.created_at.isoformat() if receipt.created_at else None
    return None


def render_csv(receipts: Iterable[Receipt], columns: Sequence[ExportColumn]) -> bytes:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow([EXPORT_COLUMN_LABELS[c] for c in columns])
    for receipt in receipts:
        writer.writerow(["" if (v := column_value(receipt, c)) is None else v for c in columns])
    return buf.getvalue().encode("utf-8")


def render_xlsx(receipts: Iterable[Receipt], columns: Sequence[ExportColumn]) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = "Receipts"
    ws.append([EXPORT_COLUMN_LABELS[c] for c in columns])
    for cell in ws[1]:
        cell.font = Font(bold=True)
    for receipt in receipts:
        row: List[Any] = []
        for c in columns:
            value = column_value(receipt, c)
            # keep money numeric in spreadsheets
            row.append(float(value) if c in _MONEY_COLUMNS and value is not None else value)
        ws.append(row)
    out = io.BytesIO()
    wb.save(out)
    return out.getvalue()


def render_export(
    receipts: Sequence[Receipt], columns: Sequence[ExportColumn], fmt: ExportFormat
) -> Tuple[bytes, str, str]:
    """Return ``(body, content_type, extension)``."""
    if fmt == ExportFormat.XLSX:
        return render_xlsx(receipts, columns), XLSX_CONTENT_TYPE, "xlsx"
    return render_csv(receipts, columns), CSV_CONTENT_TYPE, "csv"


def export_filename(org_name: str, flt: ReceiptFilter, extension: str) -> str:
    parts = ["receipts", slugify(org_name)]
    if flt.start_date or flt.end_date:
        parts.append(flt.start_date.isoformat() if flt.start_date else "start")
        parts.append("to")
        parts.append(flt.end_date.isoformat() if flt.end_date else dt.date.today().isoformat())
    return f"{'-'.join(parts)}.{extension}"


__all__ = [
    "ReceiptFilter",
    "count_receipts",
    "fetch_receipts",
    "column_value",
    "render_csv",
    "render_xlsx",
    "render_export",
    "export_filename",
    "CSV_CONTENT_TYPE",
    "XLSX_CONTENT_TYPE",
]
