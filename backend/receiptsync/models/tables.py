"""SQLAlchemy ORM models for ReceiptSync.

These models define the relational schema shared by the API and the
worker. Enumerated fields are stored using SQLAlchemy's Enum type and
JSON columns hold provider metadata, destination configurations and
extraction results.

Nothing here is ever hard-deleted: receipts and destinations are
archived and connections are revoked. Status columns must only be
changed through ``receiptsync.models.transitions``.

If you extend or modify these models call the ``init_db`` helper during
development to recreate the tables.
"""

from __future__ import annotations

import uuid

from sqlalchemy import (
    Column,
    Integer,
    String,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Text,
    JSON,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from receiptsync.core.database import Base
from receiptsync.utils.helpers import utcnow
from .enums import (
    PlanType,
    ReceiptStatus,
    ConnectionType,
    ConnectionStatus,
    DestinationType,
    DestinationStatus,
    SyncedReceiptStatus,
    ExportJobStatus,
    ExportJobKind,
    ExportFormat,
)


def new_id() -> str:
    """Opaque identifier for rows exposed through the API."""
    return uuid.uuid4().hex


class Organisation(Base):
    """Tenant that owns receipts, connections and destinations."""

    __tablename__ = "organisations"

    id = Column(String, primary_key=True, default=new_id)
    name = Column(String, unique=True, nullable=False)
    plan = Column(Enum(PlanType), nullable=False, default=PlanType.FREE)
    # Stripe customer reference for billing webhooks (e.g., "cus_...")
    stripe_customer_id = Column(String, unique=True, nullable=True)
    subscription_status = Column(String, nullable=True)
    billing_period_start = Column(DateTime, nullable=True)
    billing_period_end = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    receipts = relationship("Receipt", back_populates="organisation")
    connections = relationship("Connection", back_populates="organisation")
    destinations = relationship("Destination", back_populates="organisation")


class Receipt(Base):
    """Uploaded receipt image and its extracted data."""

    __tablename__ = "receipts"
    __table_args__ = (
        # Dedup lookups filter on (org, hash, status)
        Index("ix_receipts_org_hash_status", "org_id", "image_hash", "status"),
        Index("ix_receipts_org_created_at", "org_id", "created_at"),
    )

    id = Column(String, primary_key=True, default=new_id)
    org_id = Column(String, ForeignKey("organisations.id"), nullable=False, index=True)
    status = Column(Enum(ReceiptStatus), default=ReceiptStatus.PENDING, nullable=False)
    image_hash = Column(String(64), nullable=True)
    original_image_key = Column(String, nullable=False)
    filename = Column(String, nullable=True)
    content_type = Column(String, nullable=True)

    # Full extraction payload; only populated while EXTRACTED
    extraction_result = Column(JSON, nullable=True)
    confidence_score = Column(Float, nullable=True)

    # Denormalised fields used for filtering, exports and destination rows
    vendor = Column(String, nullable=True)
    amount = Column(Float, nullable=True)
    currency = Column(String(3), nullable=True)
    receipt_date = Column(Date, nullable=True)
    category = Column(String, nullable=True)
    tax_amount = Column(Float, nullable=True)
    subtotal = Column(Float, nullable=True)
    payment_method = Column(String, nullable=True)
    receipt_number = Column(String, nullable=True)
    notes = Column(Text, nullable=True)

    # Retry bookkeeping for the extraction worker
    extraction_error = Column(Text, nullable=True)
    extraction_attempts = Column(Integer, default=0, nullable=False)

    processed_at = Column(DateTime, nullable=True)
    archived_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    organisation = relationship("Organisation", back_populates="receipts")


class Connection(Base):
    """Encrypted OAuth credential binding an organisation to a provider account."""

    __tablename__ = "connections"

    id = Column(String, primary_key=True, default=new_id)
    org_id = Column(String, ForeignKey("organisations.id"), nullable=False, index=True)
    type = Column(Enum(ConnectionType), nullable=False)
    status = Column(Enum(ConnectionStatus), nullable=False, default=ConnectionStatus.ACTIVE)
    # Never decrypted outside ConnectionService.get_decrypted
    encrypted_credential = Column(Text, nullable=False)
    # ``metadata`` is reserved on declarative classes
    provider_metadata = Column("metadata", JSON, nullable=True)
    error = Column(Text, nullable=True)
    first_failed_at = Column(DateTime, nullable=True)
    last_failed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    organisation = relationship("Organisation", back_populates="connections")
    destinations = relationship("Destination", back_populates="connection")


class Destination(Base):
    """Configured sync target backed by a connection."""

    __tablename__ = "destinations"

    id = Column(String, primary_key=True, default=new_id)
    org_id = Column(String, ForeignKey("organisations.id"), nullable=False, index=True)
    type = Column(Enum(DestinationType), nullable=False)
    status = Column(Enum(DestinationStatus), nullable=False, default=DestinationStatus.RUNNING)
    name = Column(String, nullable=True)
    configuration = Column(JSON, nullable=False)
    connection_id = Column(String, ForeignKey("connections.id"), nullable=False)
    last_synced_at = Column(DateTime, nullable=True)
    # Summary of the last batch failure; cleared on the next clean run
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    organisation = relationship("Organisation", back_populates="destinations")
    connection = relationship("Connection", back_populates="destinations")
    synced_receipts = relationship("SyncedReceipt", back_populates="destination")


class SyncedReceipt(Base):
    """Where a receipt was written in a destination, for idempotent upserts."""

    __tablename__ = "synced_receipts"
    __table_args__ = (UniqueConstraint("destination_id", "receipt_id", name="uq_synced_receipt"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    destination_id = Column(String, ForeignKey("destinations.id"), nullable=False)
    receipt_id = Column(String, ForeignKey("receipts.id"), nullable=False)
    external_id = Column(String, nullable=True)
    status = Column(Enum(SyncedReceiptStatus), nullable=False)
    error = Column(Text, nullable=True)
    synced_at = Column(DateTime, default=utcnow, nullable=False)

    destination = relationship("Destination", back_populates="synced_receipts")


class ExportJob(Base):
    """Background export or destination sync for large receipt sets."""

    __tablename__ = "export_jobs"

    id = Column(String, primary_key=True, default=new_id)
    org_id = Column(String, ForeignKey("organisations.id"), nullable=False, index=True)
    kind = Column(Enum(ExportJobKind), nullable=False, default=ExportJobKind.FILE)
    status = Column(Enum(ExportJobStatus), nullable=False, default=ExportJobStatus.QUEUED)
    format = Column(Enum(ExportFormat), nullable=True)
    destination_id = Column(String, ForeignKey("destinations.id"), nullable=True)
    # Columns and filters captured at request time
    configuration = Column(JSON, nullable=True)
    receipt_count = Column(Integer, nullable=False, default=0)
    result_key = Column(String, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
