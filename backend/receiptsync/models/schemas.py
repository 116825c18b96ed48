"""Pydantic schemas for request and response models.

Pydantic models validate and serialise data that crosses the boundary
of the API or an external service. This module defines the domain
schemas (``ExtractedReceipt``, the destination configuration union) and
the API facing schemas for receipts, connections, destinations, exports
and plan limits.

API payloads use camelCase on the wire (``receiptId``, ``receiptCount``)
and accept either camelCase or snake_case on input. Pydantic schemas are
intentionally separate from the ORM models so the API can expose a
different shape than what is stored.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator
from pydantic.alias_generators import to_camel
from typing_extensions import Annotated

from .enums import (
    ConnectionStatus,
    ConnectionType,
    DestinationStatus,
    DestinationType,
    ExportColumn,
    ExportFormat,
    ExportJobKind,
    ExportJobStatus,
    PlanType,
    ReceiptCategory,
    ReceiptStatus,
    DEFAULT_EXPORT_COLUMNS,
)


class ApiModel(BaseModel):
    """Base for API schemas: camelCase aliases, ORM friendly."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# ---------------------------------------------------------------------------
# Extraction


class ExtractedReceipt(BaseModel):
    """Structured fields returned by the extraction model."""

    vendor: Optional[str] = Field(default=None, description="Merchant or vendor name")
    amount: Optional[float] = Field(default=None, description="Total amount paid")
    currency: Optional[str] = Field(default=None, description="ISO 4217 currency code, e.g. USD")
    date: Optional[str] = Field(default=None, description="Purchase date, preferably YYYY-MM-DD")
    category: Optional[str] = Field(default=None, description="Expense category")
    tax_amount: Optional[float] = Field(default=None, description="Tax amount if shown")
    subtotal: Optional[float] = Field(default=None, description="Subtotal before tax if shown")
    payment_method: Optional[str] = Field(default=None, description="Card brand, cash, etc.")
    receipt_number: Optional[str] = Field(default=None, description="Receipt or invoice number")
    notes: Optional[str] = Field(default=None, description="Anything else worth keeping")
    field_confidence: Dict[str, float] = Field(
        default_factory=dict,
        description="Per-field confidence between 0 and 1 keyed by field name",
    )

    @field_validator("currency", mode="before")
    @classmethod
    def _upper_currency(cls, v: Any) -> Any:
        if isinstance(v, str) and v.strip():
            return v.strip().upper()[:3]
        return v or None


# ---------------------------------------------------------------------------
# Receipts


class UploadUrlRequest(ApiModel):
    filename: str = Field(min_length=1, max_length=255)
    content_type: str
    size: int = Field(gt=0)


class UploadUrlResponse(ApiModel):
    upload_url: str
    receipt_id: str
    key: str


class ConfirmUploadResponse(ApiModel):
    receipt_id: str
    status: ReceiptStatus
    message: str


class ReceiptResponse(ApiModel):
    id: str
    org_id: str
    status: ReceiptStatus
    image_hash: Optional[str] = None
    original_image_key: str
    filename: Optional[str] = None
    extraction_result: Optional[Dict[str, Any]] = None
    confidence_score: Optional[float] = None
    vendor: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    receipt_date: Optional[date] = None
    category: Optional[str] = None
    tax_amount: Optional[float] = None
    subtotal: Optional[float] = None
    payment_method: Optional[str] = None
    receipt_number: Optional[str] = None
    notes: Optional[str] = None
    extraction_error: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None
    image_url: Optional[str] = None


class ReceiptUpdate(ApiModel):
    """Manual correction of extracted fields."""

    vendor: Optional[str] = Field(default=None, max_length=500)
    amount: Optional[float] = Field(default=None, gt=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    receipt_date: Optional[date] = None
    category: Optional[ReceiptCategory] = None
    tax_amount: Optional[float] = None
    subtotal: Optional[float] = None
    payment_method: Optional[str] = Field(default=None, max_length=100)
    receipt_number: Optional[str] = Field(default=None, max_length=191)
    notes: Optional[str] = None


class DirectExtractRequest(ApiModel):
    """An image to extract without creating a receipt; exactly one source."""

    image_base64: Optional[str] = None
    image_url: Optional[str] = None
    media_type: Optional[str] = None
    skip_cache: bool = False

    @model_validator(mode="after")
    def _one_source(self) -> "DirectExtractRequest":
        if bool(self.image_base64) == bool(self.image_url):
            raise ValueError("Provide exactly one of imageBase64 or imageUrl")
        return self


class DirectExtractResponse(ApiModel):
    success: bool = True
    cached: bool
    existing_receipt_id: Optional[str] = None
    data: Dict[str, Any]
    confidence_score: Optional[float] = None
    processing_time_ms: Optional[int] = None
    image_hash: str


class BulkArchiveRequest(ApiModel):
    receipt_ids: List[str] = Field(min_length=1, max_length=100)


class BulkArchiveResponse(ApiModel):
    archived: int
    receipt_ids: List[str]


# ---------------------------------------------------------------------------
# Connections


class ConnectionResponse(ApiModel):
    id: str
    org_id: str
    type: ConnectionType
    status: ConnectionStatus
    metadata: Optional[Dict[str, Any]] = Field(default=None, validation_alias="provider_metadata")
    error: Optional[str] = None
    first_failed_at: Optional[datetime] = None
    last_failed_at: Optional[datetime] = None
    created_at: datetime


class GoogleConnectionMetadata(BaseModel):
    model_config = ConfigDict(extra="forbid")

    scopes: str
    owner_email: str
    owner_full_name: Optional[str] = None
    owner_google_user_id: str


class NotionConnectionMetadata(BaseModel):
    model_config = ConfigDict(extra="forbid")

    workspace_id: str
    workspace_name: Optional[str] = None
    workspace_icon: Optional[str] = None
    bot_id: Optional[str] = None
    owner_user_id: Optional[str] = None


class SheetTab(ApiModel):
    id: int
    title: str
    index: int


class SpreadsheetResponse(ApiModel):
    id: str
    title: str
    sheets: List[SheetTab]


class NotionPropertyInfo(ApiModel):
    id: str
    name: str
    type: str


class NotionDatabaseResponse(ApiModel):
    id: str
    title: str
    valid: bool
    errors: List[str] = Field(default_factory=list)
    properties: List[NotionPropertyInfo]


CONNECTION_METADATA_MODELS: Dict[ConnectionType, type[BaseModel]] = {
    ConnectionType.GOOGLE: GoogleConnectionMetadata,
    ConnectionType.NOTION: NotionConnectionMetadata,
}


# ---------------------------------------------------------------------------
# Destinations: tagged union keyed by ``type``


class GoogleSheetsConfiguration(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True, alias_generator=to_camel)

    spreadsheet_id: str = Field(min_length=1)
    sheet_id: Optional[int] = None
    field_mapping: Optional[List[ExportColumn]] = None


class NotionConfiguration(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True, alias_generator=to_camel)

    database_id: str = Field(min_length=1)
    # receipt field key -> Notion property id or name
    field_mapping: Optional[Dict[str, str]] = None


class GoogleSheetsDestinationSpec(BaseModel):
    type: Literal["google_sheets"]
    configuration: GoogleSheetsConfiguration


class NotionDestinationSpec(BaseModel):
    type: Literal["notion"]
    configuration: NotionConfiguration


DestinationSpec = Annotated[
    Union[GoogleSheetsDestinationSpec, NotionDestinationSpec],
    Field(discriminator="type"),
]
DESTINATION_SPEC_ADAPTER: TypeAdapter[Any] = TypeAdapter(DestinationSpec)


class DestinationCreate(ApiModel):
    type: str
    name: Optional[str] = Field(default=None, max_length=200)
    connection_id: str
    configuration: Dict[str, Any]


class DestinationUpdate(ApiModel):
    name: Optional[str] = Field(default=None, max_length=200)
    status: Optional[DestinationStatus] = None
    configuration: Optional[Dict[str, Any]] = None


class DestinationResponse(ApiModel):
    id: str
    org_id: str
    type: DestinationType
    status: DestinationStatus
    name: Optional[str] = None
    configuration: Dict[str, Any]
    connection_id: str
    last_synced_at: Optional[datetime] = None
    error: Optional[str] = None
    created_at: datetime


# ---------------------------------------------------------------------------
# Exports and syncs


class ReceiptFilterModel(ApiModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    categories: Optional[List[ReceiptCategory]] = None
    statuses: Optional[List[ReceiptStatus]] = None


class ExportRequest(ApiModel):
    format: ExportFormat
    columns: List[ExportColumn] = Field(default_factory=lambda: list(DEFAULT_EXPORT_COLUMNS), min_length=1)
    filters: Optional[ReceiptFilterModel] = None


class SyncRequest(ApiModel):
    filters: Optional[ReceiptFilterModel] = None


class AcceptedResponse(ApiModel):
    status: Literal["accepted"] = "accepted"
    receipt_count: int
    job_id: str


class SyncResultResponse(ApiModel):
    status: Literal["completed"] = "completed"
    receipt_count: int
    succeeded: int
    failed: int
    error: Optional[str] = None


class ExportJobResponse(ApiModel):
    job_id: str = Field(validation_alias="id")
    kind: ExportJobKind
    status: ExportJobStatus
    format: Optional[ExportFormat] = None
    destination_id: Optional[str] = None
    receipt_count: int
    error: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    download_url: Optional[str] = None


# ---------------------------------------------------------------------------
# Admission control


class LimitCheckResponse(ApiModel):
    allowed: bool
    current_count: int
    limit: Optional[int] = None
    reason: Optional[str] = None
    suggested_plan: Optional[PlanType] = None


class UsageResponse(ApiModel):
    plan: PlanType
    receipts_used: int
    receipts_limit: Optional[int] = None
    destinations_used: int
    destinations_limit: Optional[int] = None
    percent_receipts_used: Optional[int] = None
    percent_destinations_used: Optional[int] = None
    warning_level: Optional[int] = None
    upgrade_message: Optional[str] = None
    billing_period_start: datetime
    billing_period_end: datetime
    can_add_receipt: LimitCheckResponse
    can_add_destination: LimitCheckResponse
