"""
Domain exceptions raised by services and mapped to HTTP responses in server.py.
"""
from typing import Any, Dict, List, Optional

from pymongo.errors import OperationFailure

# MongoDB "Unauthorized" error code
MONGO_UNAUTHORIZED = 13

STORE_PERMISSION_HINT = (
    "The database user lacks a required privilege. Grant the service user "
    "readWrite on the RegoCraft database, or review the access rules for this collection."
)


class RegoCraftError(Exception):
    """Base exception for domain failures."""
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"detail": self.message, "error": type(self).__name__}
        if self.details:
            body["details"] = self.details
        return body


class RecordNotFoundError(RegoCraftError):
    status_code = 404

    def __init__(self, resource_type: str, resource_id: str):
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type} not found: {resource_id}")


class TransitionNotAllowedError(RegoCraftError):
    """Action is not permitted for the caller's role at the record's current status."""
    status_code = 403

    def __init__(self, resource_type: str, action: str, status: str, role: str, allowed: Optional[List[str]] = None):
        self.action = action
        self.status = status
        self.role = role
        self.allowed = allowed or []
        super().__init__(
            f"Action '{action}' is not allowed on {resource_type} in status '{status}' for role '{role}'",
            details={"allowed_actions": self.allowed, "current_status": status},
        )


class ChecklistLockedError(RegoCraftError):
    status_code = 409

    def __init__(self, inspection_id: str, status: str):
        super().__init__(
            f"Checklist for inspection {inspection_id} is locked (status '{status}'); "
            f"items can only change while InProgress",
            details={"current_status": status},
        )


class RecordValidationError(RegoCraftError):
    """Payload rule failure that pydantic schemas cannot express (e.g. date ordering)."""
    status_code = 422

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, details={"field": field} if field else None)


class StorePermissionError(RegoCraftError):
    """The document store refused the operation; surfaced verbatim with a remediation hint."""
    status_code = 403

    def __init__(self, operation: str, store_message: str):
        self.operation = operation
        self.store_message = store_message
        super().__init__(
            f"Permission denied by document store during {operation}: {store_message}",
            details={"hint": STORE_PERMISSION_HINT},
        )


class NoDataToExport(RegoCraftError):
    """Report query matched zero records."""
    status_code = 200

    def __init__(self, report_type: str):
        self.report_type = report_type
        super().__init__(f"No data available for report '{report_type}'")

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "no_data": True, "report_type": self.report_type}


def translate_store_error(exc: Exception, operation: str) -> Exception:
    """Map a pymongo authorization failure onto StorePermissionError; other errors pass through."""
    if isinstance(exc, OperationFailure) and exc.code == MONGO_UNAUTHORIZED:
        return StorePermissionError(operation, str(exc))
    return exc


class SuggestionUnavailableError(RegoCraftError):
    """The hosted model is not configured or did not answer."""
    status_code = 503


class SuggestionFormatError(RegoCraftError):
    """The hosted model answered with something other than a list of strings."""
    status_code = 502
