"""Enumeration types used throughout ReceiptSync.

Enumerations constrain the values that can be stored in the database or
passed through the API. Status enums are paired with explicit transition
tables in ``receiptsync.models.transitions``; never assign a status
directly without going through those tables.

When modifying these enums you should update any corresponding
database columns or Pydantic validators so that new values are
accepted where appropriate.
"""

from enum import Enum


class PlanType(str, Enum):
    """Subscription tier for an organisation."""

    FREE = "free"
    PRO = "pro"
    BUSINESS = "business"


class ReceiptStatus(str, Enum):
    """Lifecycle states for a receipt."""

    PENDING = "pending"
    PROCESSING = "processing"
    EXTRACTED = "extracted"
    ARCHIVED = "archived"


class ReceiptCategory(str, Enum):
    """Expense categories assigned during extraction."""

    FOOD = "food"
    TRAVEL = "travel"
    OFFICE = "office"
    SOFTWARE = "software"
    UTILITIES = "utilities"
    ENTERTAINMENT = "entertainment"
    HEALTHCARE = "healthcare"
    SHOPPING = "shopping"
    SERVICES = "services"
    OTHER = "other"


class ConnectionType(str, Enum):
    """OAuth providers a connection can be made to."""

    GOOGLE = "google"
    NOTION = "notion"


class ConnectionStatus(str, Enum):
    ACTIVE = "active"
    NEEDS_REAUTH = "needs_reauth"
    REVOKED = "revoked"


class DestinationType(str, Enum):
    """Live sync targets.  Each is backed by one connection type."""

    GOOGLE_SHEETS = "google_sheets"
    NOTION = "notion"

    @property
    def connection_type(self) -> "ConnectionType":
        return DESTINATION_CONNECTION_TYPES[self]


DESTINATION_CONNECTION_TYPES = {
    DestinationType.GOOGLE_SHEETS: ConnectionType.GOOGLE,
    DestinationType.NOTION: ConnectionType.NOTION,
}


class DestinationStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    ARCHIVED = "archived"


class SyncedReceiptStatus(str, Enum):
    """Outcome of the last write of a receipt to a destination."""

    SYNCED = "synced"
    FAILED = "failed"


class ExportJobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ExportJobKind(str, Enum):
    """What a background export job produces."""

    FILE = "file"
    DESTINATION = "destination"


class ExportFormat(str, Enum):
    CSV = "csv"
    XLSX = "xlsx"


class ExportColumn(str, Enum):
    """Receipt fields that can be selected for exports and sheet rows."""

    DATE = "date"
    VENDOR = "vendor"
    AMOUNT = "amount"
    CURRENCY = "currency"
    CATEGORY = "category"
    PAYMENT_METHOD = "payment_method"
    NOTES = "notes"
    RECEIPT_IMAGE_URL = "receipt_image_url"
    TAX_AMOUNT = "tax_amount"
    SUBTOTAL = "subtotal"
    RECEIPT_NUMBER = "receipt_number"
    STATUS = "status"
    CREATED_AT = "created_at"


DEFAULT_EXPORT_COLUMNS = [
    ExportColumn.DATE,
    ExportColumn.VENDOR,
    ExportColumn.AMOUNT,
    ExportColumn.CURRENCY,
    ExportColumn.CATEGORY,
    ExportColumn.PAYMENT_METHOD,
    ExportColumn.NOTES,
    ExportColumn.RECEIPT_IMAGE_URL,
]

EXPORT_COLUMN_LABELS = {
    ExportColumn.DATE: "Date",
    ExportColumn.VENDOR: "Vendor",
    ExportColumn.AMOUNT: "Amount",
    ExportColumn.CURRENCY: "Currency",
    ExportColumn.CATEGORY: "Category",
    ExportColumn.PAYMENT_METHOD: "Payment Method",
    ExportColumn.NOTES: "Notes",
    ExportColumn.RECEIPT_IMAGE_URL: "Receipt Image URL",
    ExportColumn.TAX_AMOUNT: "Tax Amount",
    ExportColumn.SUBTOTAL: "Subtotal",
    ExportColumn.RECEIPT_NUMBER: "Receipt Number",
    ExportColumn.STATUS: "Status",
    ExportColumn.CREATED_AT: "Created At",
}
