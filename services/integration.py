"""
Integration layer for external systems.

This module defines the contracts the workflow engine uses to reach systems
outside the orchestrator (patient notifications, prescription issuance) and
stub implementations for them.  In a production deployment the stubs would be
replaced by API calls or message queue producers that perform the actual
work (e.g. sending an SMS, transmitting an e-prescription).
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Optional, Protocol

from models.schemas import Order, OrderStatus

logger = logging.getLogger(__name__)


@dataclass
class PrescriptionResult:
    success: bool
    prescription_id: Optional[str] = None
    error: Optional[str] = None


class NotificationDispatcher(Protocol):
    def notify_status_change(self, order: Order, new_status: OrderStatus) -> None: ...


class PrescriptionService(Protocol):
    def issue_prescription(self, order: Order) -> PrescriptionResult: ...


class LoggingNotificationDispatcher:
    """Notify the patient of an order status change.

    This stub logs the notification instead of sending email, SMS or push.
    """

    def notify_status_change(self, order: Order, new_status: OrderStatus) -> None:
        logger.info(
            "Notifying patient %s: order %s is now %s",
            order.patient_id,
            order.id[:6],
            new_status.value,
        )


class StubPrescriptionService:
    """Request prescription creation from the e-prescribing system.

    In a real implementation this would call the prescriber network; the stub
    logs the request and always succeeds.
    """

    def issue_prescription(self, order: Order) -> PrescriptionResult:
        prescription_id = f"presc_{uuid.uuid4().hex[:12]}"
        logger.info(
            "Issuing prescription %s for order %s (patient %s, provider %s)",
            prescription_id,
            order.id,
            order.patient_id,
            order.provider_id,
        )
        return PrescriptionResult(success=True, prescription_id=prescription_id)
