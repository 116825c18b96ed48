"""Finite-state transition tables for receipts, connections, destinations and export jobs.

Each table maps a current status to the set of statuses it may move to.
``transition`` validates a move against the table, applies it to the
ORM object and raises :class:`InvalidTransitionError` otherwise, so a
status column is never written directly by services.
"""

from __future__ import annotations

from typing import Any, Dict, FrozenSet, Mapping, TypeVar

from receiptsync.core.errors import InvalidTransitionError
from .enums import ReceiptStatus, ConnectionStatus, DestinationStatus, ExportJobStatus

S = TypeVar("S")

RECEIPT_TRANSITIONS: Mapping[ReceiptStatus, FrozenSet[ReceiptStatus]] = {
    ReceiptStatus.PENDING: frozenset({ReceiptStatus.PROCESSING, ReceiptStatus.ARCHIVED}),
    ReceiptStatus.PROCESSING: frozenset({ReceiptStatus.EXTRACTED, ReceiptStatus.ARCHIVED}),
    ReceiptStatus.EXTRACTED: frozenset({ReceiptStatus.ARCHIVED}),
    ReceiptStatus.ARCHIVED: frozenset(),
}

# NEEDS_REAUTH -> NEEDS_REAUTH is allowed so repeated failures only bump timestamps
CONNECTION_TRANSITIONS: Mapping[ConnectionStatus, FrozenSet[ConnectionStatus]] = {
    ConnectionStatus.ACTIVE: frozenset(
        {ConnectionStatus.ACTIVE, ConnectionStatus.NEEDS_REAUTH, ConnectionStatus.REVOKED}
    ),
    ConnectionStatus.NEEDS_REAUTH: frozenset(
        {ConnectionStatus.ACTIVE, ConnectionStatus.NEEDS_REAUTH, ConnectionStatus.REVOKED}
    ),
    ConnectionStatus.REVOKED: frozenset(),
}

DESTINATION_TRANSITIONS: Mapping[DestinationStatus, FrozenSet[DestinationStatus]] = {
    DestinationStatus.RUNNING: frozenset({DestinationStatus.PAUSED, DestinationStatus.ARCHIVED}),
    DestinationStatus.PAUSED: frozenset({DestinationStatus.RUNNING, DestinationStatus.ARCHIVED}),
    DestinationStatus.ARCHIVED: frozenset(),
}

EXPORT_JOB_TRANSITIONS: Mapping[ExportJobStatus, FrozenSet[ExportJobStatus]] = {
    ExportJobStatus.QUEUED: frozenset({ExportJobStatus.PROCESSING, ExportJobStatus.FAILED}),
    ExportJobStatus.PROCESSING: frozenset({ExportJobStatus.COMPLETED, ExportJobStatus.FAILED}),
    ExportJobStatus.COMPLETED: frozenset(),
    ExportJobStatus.FAILED: frozenset(),
}

_TABLES: Dict[str, Mapping[Any, FrozenSet[Any]]] = {
    "receipt": RECEIPT_TRANSITIONS,
    "connection": CONNECTION_TRANSITIONS,
    "destination": DESTINATION_TRANSITIONS,
    "export_job": EXPORT_JOB_TRANSITIONS,
}


def can_transition(entity: str, current: S, target: S) -> bool:
    table = _TABLES[entity]
    return target in table.get(current, frozenset())


def is_terminal(entity: str, status: Any) -> bool:
    return not _TABLES[entity].get(status)


def check_transition(entity: str, current: S, target: S) -> None:
    if not can_transition(entity, current, target):
        raise InvalidTransitionError(entity, current, target)


def transition(entity: str, obj: Any, target: S) -> S:
    """Validate and apply ``obj.status = target``; returns the previous status."""
    previous = obj.status
    check_transition(entity, previous, target)
    obj.status = target
    return previous


__all__ = [
    "RECEIPT_TRANSITIONS",
    "CONNECTION_TRANSITIONS",
    "DESTINATION_TRANSITIONS",
    "EXPORT_JOB_TRANSITIONS",
    "can_transition",
    "is_terminal",
    "check_transition",
    "transition",
]
