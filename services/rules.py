"""
Status side effects for the workflow engine.

Entering certain statuses triggers work outside the status change itself:
issuing a prescription, invoicing, settling payment or scheduling the next
automatic advance.  `SIDE_EFFECTS` maps a status to the effects run, in
order, right after the transition into that status has been committed.

An effect that fails is logged and skipped.  The transition that triggered
it stays committed and the remaining effects still run.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable, Dict, Tuple

from models.schemas import Order, OrderStatus, Trigger
from services.definitions import PHARMACY_FILLING_DELAY, PRESCRIPTION_TRANSMISSION_DELAY
from services.store import ORDERS

if TYPE_CHECKING:
    from services.workflow import WorkflowEngine

logger = logging.getLogger(__name__)

SideEffect = Callable[["WorkflowEngine", Order], None]


def issue_prescription(engine: "WorkflowEngine", order: Order) -> None:
    """Request the prescription for an approved order and record its id."""
    if not order.requires_prescription or order.prescription_created:
        return
    result = engine.prescriptions.issue_prescription(order)
    if not result.success:
        logger.error("Prescription creation failed for order %s: %s", order.id, result.error)
        return
    engine.store.update(
        ORDERS,
        order.id,
        {
            "prescription_created": True,
            "prescription_id": result.prescription_id,
            "prescription_created_at": engine.clock().isoformat(),
        },
    )
    logger.info("Prescription %s created for order %s", result.prescription_id, order.id)


def ensure_invoice(engine: "WorkflowEngine", order: Order) -> None:
    engine.invoices.ensure_invoice(order.id)


def schedule_pharmacy_receipt(engine: "WorkflowEngine", order: Order) -> None:
    engine.schedule_advance(
        order.id,
        PRESCRIPTION_TRANSMISSION_DELAY,
        Trigger(by="system", notes="Prescription received by pharmacy"),
        order.status,
    )


def schedule_filling_start(engine: "WorkflowEngine", order: Order) -> None:
    engine.schedule_advance(
        order.id,
        PHARMACY_FILLING_DELAY,
        Trigger(by="pharmacy_system", notes="Prescription filling started"),
        order.status,
    )


def settle_invoices(engine: "WorkflowEngine", order: Order) -> None:
    if order.requires_prescription:
        return
    engine.invoices.mark_paid(order.id)


def continue_paid_order(engine: "WorkflowEngine", order: Order) -> None:
    """Move a paid direct-shipment order straight into processing."""
    if order.requires_prescription:
        return
    engine.advance_status(order.id, Trigger(by="payment_system", notes="Payment confirmed, processing order"))


SIDE_EFFECTS: Dict[OrderStatus, Tuple[SideEffect, ...]] = {
    OrderStatus.PROVIDER_APPROVED: (issue_prescription, ensure_invoice),
    OrderStatus.PRESCRIPTION_SENT: (schedule_pharmacy_receipt,),
    OrderStatus.PHARMACY_RECEIVED: (schedule_filling_start,),
    OrderStatus.PAYMENT_COMPLETED: (settle_invoices, continue_paid_order),
}


def evaluate_side_effects(engine: "WorkflowEngine", order: Order, status: OrderStatus) -> None:
    """Run the side effects registered for `status` against `order`."""
    for effect in SIDE_EFFECTS.get(status, ()):
        logger.info("Side effect '%s' triggered for order %s (%s)", effect.__name__, order.id, status.value)
        try:
            effect(engine, order)
        except Exception:
            logger.exception("Side effect '%s' failed for order %s", effect.__name__, order.id)
