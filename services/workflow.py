"""
Workflow orchestration engine.

The engine owns the status of every order.  It initialises orders on their
workflow path, moves them forward one step at a time (or to an explicit
status), records every change in the order's status history and then hands
the new status to the side-effect table in `services.rules`.

Collaborators (record store, notifier, prescription service, scheduler and
invoice service) are passed in explicitly so the engine can be wired against
the SQL store in the API and against in-memory doubles in the tests.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from models.errors import InvalidTransitionError, NotFoundError
from models.schemas import (
    Order,
    OrderStatus,
    OrderView,
    StatusHistoryEntry,
    TransitionOutcome,
    TransitionResult,
    Trigger,
    utc_now,
)
from services import rules
from services.definitions import (
    ESCAPE_STATES,
    coerce_status,
    estimate_completion,
    is_terminal,
    next_possible_actions,
    status_category,
)
from services.integration import (
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    PrescriptionService,
    StubPrescriptionService,
)
from services.invoices import InvoiceService
from services.scheduler import Scheduler, TimerScheduler
from services.store import ORDERS, RecordStore

logger = logging.getLogger(__name__)

# Order fields stamped when the order enters the given status
STATUS_TIMESTAMP_FIELDS: Dict[OrderStatus, str] = {
    OrderStatus.PRESCRIPTION_SENT: "prescription_sent_at",
    OrderStatus.PHARMACY_READY: "ready_for_pickup_at",
    OrderStatus.COMPLETED: "completed_at",
    OrderStatus.CANCELLED: "cancelled_at",
}


class WorkflowEngine:
    def __init__(
        self,
        store: RecordStore,
        notifier: Optional[NotificationDispatcher] = None,
        prescriptions: Optional[PrescriptionService] = None,
        scheduler: Optional[Scheduler] = None,
        invoices: Optional[InvoiceService] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.notifier = notifier or LoggingNotificationDispatcher()
        self.prescriptions = prescriptions or StubPrescriptionService()
        self.scheduler = scheduler or TimerScheduler()
        self.invoices = invoices or InvoiceService(store, clock)
        self.clock = clock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_order(self, order_id: str) -> Order:
        data = self.store.get(ORDERS, order_id)
        if data is None:
            raise NotFoundError(ORDERS, order_id)
        return Order.model_validate(data)

    def list_orders(
        self,
        patient_id: Optional[str] = None,
        status: Union[OrderStatus, str, None] = None,
        limit: Optional[int] = None,
    ) -> List[Order]:
        """Return orders, newest first, optionally filtered by patient and status."""
        filters: Dict[str, Any] = {}
        if patient_id is not None:
            filters["patient_id"] = patient_id
        if status is not None:
            filters["status"] = status.value if isinstance(status, OrderStatus) else status
        documents = self.store.query(ORDERS, filters, order_by="-created_at", limit=limit)
        return [Order.model_validate(d) for d in documents]

    def get_order_with_progress(self, order_id: str) -> OrderView:
        """Project an order together with its workflow progress.

        `percentage` counts the current step as done, so the first step of an
        eleven step path reads about 9%.  Terminal orders have no estimated
        completion.
        """
        order = self.get_order(order_id)
        path = order.workflow_path
        index = order.current_step_index
        now = self.clock()

        percentage = (index + 1) / len(path) * 100 if path else 0.0
        estimated = None if is_terminal(order.status) else estimate_completion(path, index, now)
        in_status = 0.0
        if order.status_history:
            in_status = max((now - order.status_history[-1].timestamp).total_seconds(), 0.0)

        return OrderView(
            order=order,
            percentage=percentage,
            status_category=status_category(order.status),
            estimated_completion=estimated,
            next_possible_actions=next_possible_actions(order.status, index, path),
            time_in_current_status=in_status,
        )

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def initialize_order(
        self, order: Order, path: Sequence[OrderStatus], triggered_by: Optional[str] = None
    ) -> Order:
        """Place a new order on the first step of `path` and persist it."""
        if order.status_history:
            raise InvalidTransitionError(f"Order {order.id} has already been initialised")
        if not path:
            raise InvalidTransitionError(f"Order {order.id} has an empty workflow path")

        now = self.clock()
        first = path[0]
        entry = StatusHistoryEntry(
            status=first,
            timestamp=now,
            triggered_by=triggered_by or order.created_by or "system",
            notes="Order created",
        )
        order = order.model_copy(
            update={
                "status": first,
                "workflow_path": tuple(path),
                "current_step_index": 0,
                "status_history": [entry],
                "estimated_completion_date": estimate_completion(path, 0, now),
                "created_at": now,
                "updated_at": now,
            }
        )
        self.store.create(ORDERS, order.id, order.model_dump(mode="json"))
        logger.info("Initialised order %s at %s (%d steps)", order.id, first.value, len(path))
        return order

    def advance_status(self, order_id: str, trigger: Optional[Trigger] = None) -> TransitionResult:
        """Move an order to the next step of its workflow path.

        Terminal orders and orders on the last step are left untouched and
        reported as `already_terminal`.
        """
        trigger = trigger or Trigger()
        order = self.get_order(order_id)
        path = order.workflow_path
        if is_terminal(order.status) or order.current_step_index >= len(path) - 1:
            logger.info("Order %s is already in final state %s", order_id, order.status)
            return self._unchanged(order, TransitionOutcome.ALREADY_TERMINAL, "Order is in a final state")

        next_index = order.current_step_index + 1
        return self._transition(order, path[next_index], next_index, trigger)

    def set_status(
        self, order_id: str, status: Union[OrderStatus, str], trigger: Optional[Trigger] = None
    ) -> TransitionResult:
        """Move an order to an explicit status.

        Only the next step of the path, `cancelled` and `exception` are
        accepted.  The escape states keep the current step index.
        """
        trigger = trigger or Trigger()
        order = self.get_order(order_id)
        if is_terminal(order.status):
            return self._unchanged(order, TransitionOutcome.ALREADY_TERMINAL, "Order is in a final state")

        target = coerce_status(status)
        path = order.workflow_path
        next_index = order.current_step_index + 1
        if target is None:
            reason = f"Unknown status {status!r}"
        elif target is order.status:
            reason = f"Order is already {target.value}"
        elif target in ESCAPE_STATES:
            return self._transition(order, target, order.current_step_index, trigger)
        elif next_index < len(path) and path[next_index] is target:
            return self._transition(order, target, next_index, trigger)
        else:
            reason = f"Cannot move from {order.status.value if order.status else None} to {target.value}"

        logger.warning("Rejected status change for order %s: %s", order_id, reason)
        return self._unchanged(order, TransitionOutcome.INVALID_TRANSITION, reason)

    def schedule_advance(
        self, order_id: str, delay: float, trigger: Trigger, expected_status: Optional[OrderStatus] = None
    ) -> None:
        """Advance the order after `delay` seconds; failures are logged and dropped.

        With `expected_status` the job does nothing unless the order is still
        in that status when it fires.
        """

        def job() -> None:
            try:
                if expected_status is not None:
                    current = self.get_order(order_id).status
                    if current is not expected_status:
                        logger.info(
                            "Skipping scheduled advance of order %s: expected %s, found %s",
                            order_id,
                            expected_status.value,
                            current.value if current else None,
                        )
                        return
                result = self.advance_status(order_id, trigger)
            except Exception:
                logger.exception("Scheduled advance of order %s failed", order_id)
                return
            logger.info("Scheduled advance of order %s finished: %s", order_id, result.outcome.value)

        self.scheduler.schedule(order_id, delay, job)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _unchanged(self, order: Order, outcome: TransitionOutcome, reason: str) -> TransitionResult:
        return TransitionResult(
            order_id=order.id,
            outcome=outcome,
            previous_status=order.status,
            new_status=order.status,
            step_index=order.current_step_index,
            reason=reason,
        )

    def _transition(self, order: Order, target: OrderStatus, index: int, trigger: Trigger) -> TransitionResult:
        now = self.clock()
        if order.status_history:
            # History timestamps never go backwards, even if the clock does.
            now = max(now, order.status_history[-1].timestamp)
        previous = order.status
        entry = StatusHistoryEntry(
            status=target,
            timestamp=now,
            triggered_by=trigger.by,
            notes=trigger.notes,
            previous_status=previous,
            metadata=trigger.metadata,
        )
        history = list(order.status_history) + [entry]

        fields: Dict[str, Any] = {
            "status": target.value,
            "current_step_index": index,
            "status_history": [e.model_dump(mode="json") for e in history],
            "updated_at": now.isoformat(),
        }
        if target in STATUS_TIMESTAMP_FIELDS:
            fields[STATUS_TIMESTAMP_FIELDS[target]] = now.isoformat()
        if not is_terminal(target):
            fields["estimated_completion_date"] = estimate_completion(order.workflow_path, index, now).isoformat()

        self.store.update(ORDERS, order.id, fields)
        updated = Order.model_validate({**order.model_dump(mode="json"), **fields})
        logger.info(
            "Order %s: %s -> %s (triggered by %s)",
            order.id,
            previous.value if previous else None,
            target.value,
            trigger.by,
        )

        if is_terminal(target) or target in ESCAPE_STATES:
            self.scheduler.cancel(order.id)
        self._notify(updated, target)
        rules.evaluate_side_effects(self, updated, target)

        return TransitionResult(
            order_id=order.id,
            outcome=TransitionOutcome.ADVANCED,
            previous_status=previous,
            new_status=target,
            step_index=index,
        )

    def _notify(self, order: Order, status: OrderStatus) -> None:
        try:
            self.notifier.notify_status_change(order, status)
        except Exception:
            logger.exception("Status notification for order %s failed", order.id)
