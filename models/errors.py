"""
Exception hierarchy for the order workflow orchestrator.

Every error raised by the core derives from `OrchestratorError` and carries a
machine readable `code` plus the HTTP status the API layer should answer
with.  Expected workflow outcomes (an order that is already terminal, a
transition that is not allowed) are NOT raised; the engine reports them
through `TransitionResult` instead.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""

    code = "ORCHESTRATOR_ERROR"
    http_status = 500

    def __init__(self, message: str, code: Optional[str] = None, detail: Optional[Dict[str, Any]] = None):
        self.message = message
        if code is not None:
            self.code = code
        self.detail = detail
        super().__init__(message)


class NotFoundError(OrchestratorError):
    """Raised when an order, subscription, plan or record does not exist."""

    code = "NOT_FOUND"
    http_status = 404

    def __init__(self, collection: str, key: str):
        self.collection = collection
        self.key = key
        super().__init__(
            f"{collection} record not found: {key}",
            detail={"collection": collection, "key": key},
        )


class RecordConflictError(OrchestratorError):
    """Raised when creating a record whose key already exists."""

    code = "RECORD_CONFLICT"
    http_status = 409

    def __init__(self, collection: str, key: str):
        self.collection = collection
        self.key = key
        super().__init__(
            f"{collection} record already exists: {key}",
            detail={"collection": collection, "key": key},
        )


class InvalidTransitionError(OrchestratorError):
    """Raised when an order cannot move to the requested status."""

    code = "INVALID_TRANSITION"
    http_status = 409


class InvalidCheckoutError(OrchestratorError):
    """Raised when a checkout request has nothing to order."""

    code = "INVALID_CHECKOUT"
    http_status = 400


class InvalidModificationError(OrchestratorError):
    """Raised when a subscription modification is missing inputs or not applicable."""

    code = "INVALID_MODIFICATION"
    http_status = 422


class CollaboratorUnavailableError(OrchestratorError):
    """Raised when the record store or an external service call fails."""

    code = "COLLABORATOR_UNAVAILABLE"
    http_status = 503

    def __init__(self, collaborator: str, reason: str):
        self.collaborator = collaborator
        self.reason = reason
        super().__init__(
            f"{collaborator} unavailable: {reason}",
            detail={"collaborator": collaborator},
        )


class BundleCreationFailedError(OrchestratorError):
    """Raised after a checkout failed part way and its records were cleaned up."""

    code = "BUNDLE_CREATION_FAILED"
    http_status = 500

    def __init__(self, patient_id: str, reason: str, cleaned_order_ids: Optional[list] = None):
        self.patient_id = patient_id
        self.reason = reason
        self.cleaned_order_ids = list(cleaned_order_ids or [])
        super().__init__(
            f"Failed to create order bundle for patient {patient_id}: {reason}",
            detail={"patient_id": patient_id, "cleaned_order_ids": self.cleaned_order_ids},
        )
