"""Error taxonomy shared by the service layer, the API and the worker.

Every domain error carries an :class:`ErrorAction` telling the caller
whether the failure is transient (``retry_later``) or needs somebody to
do something first (``action_required``: re-consent, upgrade the plan,
fix the input).  ``receiptsync.api.error_handlers`` turns these into
structured JSON responses; the worker re-raises retryable ones so the
Dramatiq ``Retries`` middleware can reschedule the message.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Iterable, Optional


class ErrorAction(str, Enum):
    """How the caller should react to an error."""

    RETRY_LATER = "retry_later"
    ACTION_REQUIRED = "action_required"


class ReceiptSyncError(Exception):
    """Base class for domain errors."""

    code: str = "receiptsync_error"
    status_code: int = 400
    action: ErrorAction = ErrorAction.ACTION_REQUIRED

    def __init__(self, message: str, *, action: Optional[ErrorAction] = None) -> None:
        super().__init__(message)
        self.message = message
        if action is not None:
            self.action = action

    @property
    def retryable(self) -> bool:
        return self.action == ErrorAction.RETRY_LATER

    def details(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "code": self.code,
            "action": self.action.value,
            "details": self.details(),
        }


class DecodeError(ReceiptSyncError):
    """Input content could not be decoded (e.g. malformed base64)."""

    code = "decode_error"
    status_code = 422


class FetchError(ReceiptSyncError):
    """A network call or upstream service failed."""

    code = "fetch_error"
    status_code = 502
    action = ErrorAction.RETRY_LATER

    def __init__(
        self,
        message: str,
        *,
        upstream_status: Optional[int] = None,
        retry_after: Optional[float] = None,
        action: Optional[ErrorAction] = None,
    ) -> None:
        super().__init__(message, action=action)
        self.upstream_status = upstream_status
        self.retry_after = retry_after

    def details(self) -> Dict[str, Any]:
        return {"upstream_status": self.upstream_status, "retry_after": self.retry_after}


class MissingScopesError(ReceiptSyncError):
    """The provider grant lacks scopes required for the connection type."""

    code = "missing_scopes"
    status_code = 403

    def __init__(self, missing: Iterable[str]) -> None:
        self.missing = sorted(missing)
        super().__init__(f"Missing required scopes: {', '.join(self.missing)}")

    def details(self) -> Dict[str, Any]:
        return {"missing": self.missing}


class MissingCredentialError(ReceiptSyncError):
    """The provider did not return a credential that can be stored."""

    code = "missing_credential"
    status_code = 400


class ReauthRequiredError(ReceiptSyncError):
    """A connection failed authorization and must be re-consented."""

    code = "reauth_required"
    status_code = 409

    def __init__(self, message: str, *, connection_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.connection_id = connection_id

    def details(self) -> Dict[str, Any]:
        return {"connection_id": self.connection_id}


class DestinationWriteError(ReceiptSyncError):
    """A single record could not be written to a live destination."""

    code = "destination_write_error"
    status_code = 502
    action = ErrorAction.RETRY_LATER

    def __init__(self, message: str, *, receipt_id: Optional[str] = None, retryable: bool = True) -> None:
        super().__init__(
            message,
            action=ErrorAction.RETRY_LATER if retryable else ErrorAction.ACTION_REQUIRED,
        )
        self.receipt_id = receipt_id

    def details(self) -> Dict[str, Any]:
        return {"receipt_id": self.receipt_id}


class DestinationConfigError(ReceiptSyncError):
    """A destination configuration failed validation."""

    code = "destination_config_error"
    status_code = 422


class LimitExceededError(ReceiptSyncError):
    """Admission control denied the operation for the current plan."""

    code = "limit_exceeded"
    status_code = 402

    def __init__(
        self,
        message: str,
        *,
        current_count: int,
        limit: Optional[int],
        suggested_plan: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.current_count = current_count
        self.limit = limit
        self.suggested_plan = suggested_plan

    def details(self) -> Dict[str, Any]:
        return {
            "current_count": self.current_count,
            "limit": self.limit,
            "suggested_plan": self.suggested_plan,
        }


class NotFoundError(ReceiptSyncError):
    """Referenced entity is absent or belongs to another organisation."""

    code = "not_found"
    status_code = 404


class InvalidTransitionError(ReceiptSyncError):
    """A status change is not allowed by the entity's transition table."""

    code = "invalid_transition"
    status_code = 409

    def __init__(self, entity: str, current: Any, target: Any) -> None:
        self.entity = entity
        self.current = getattr(current, "value", current)
        self.target = getattr(target, "value", target)
        super().__init__(f"Cannot move {entity} from {self.current} to {self.target}")

    def details(self) -> Dict[str, Any]:
        return {"entity": self.entity, "current": self.current, "target": self.target}


class DuplicateReceiptError(ReceiptSyncError):
    """The uploaded image matches a receipt the organisation already has."""

    code = "duplicate_receipt"
    status_code = 409

    def __init__(self, existing_receipt_id: str) -> None:
        super().__init__("This receipt has already been uploaded")
        self.existing_receipt_id = existing_receipt_id

    def details(self) -> Dict[str, Any]:
        return {"existing_receipt_id": self.existing_receipt_id}


class CredentialDecryptError(ReceiptSyncError):
    """Stored ciphertext could not be decrypted with the configured key."""

    code = "credential_decrypt_error"
    status_code = 500


__all__ = [
    "ErrorAction",
    "ReceiptSyncError",
    "DecodeError",
    "FetchError",
    "MissingScopesError",
    "MissingCredentialError",
    "ReauthRequiredError",
    "DestinationWriteError",
    "DestinationConfigError",
    "LimitExceededError",
    "NotFoundError",
    "InvalidTransitionError",
    "DuplicateReceiptError",
    "CredentialDecryptError",
]
