"""
Workflow definition table.

Static data describing, per product category, the ordered list of states an
order moves through, the expected dwell time per state (used only for ETA
display) and the lookups the engine and the progress view rely on.  This
module is the single source of truth for which transitions exist.
"""

from __future__ import annotations

import os
from datetime import datetime, timedelta
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple, Union

from models.schemas import OrderStatus, StatusCategory, WorkflowCategory

WorkflowPath = Tuple[OrderStatus, ...]

# Simulated pharmacy latency for the automatic advances (seconds).
PRESCRIPTION_TRANSMISSION_DELAY: float = float(os.getenv("PRESCRIPTION_TRANSMISSION_DELAY_SECONDS", "30"))
PHARMACY_FILLING_DELAY: float = float(os.getenv("PHARMACY_FILLING_DELAY_SECONDS", "60"))

WORKFLOW_PATHS: Dict[WorkflowCategory, WorkflowPath] = {
    WorkflowCategory.PRESCRIPTION: (
        OrderStatus.CONSULTATION_PENDING,
        OrderStatus.INTAKE_COMPLETED,
        OrderStatus.PROVIDER_REVIEW,
        OrderStatus.PROVIDER_APPROVED,
        OrderStatus.PRESCRIPTION_CREATED,
        OrderStatus.PRESCRIPTION_SENT,
        OrderStatus.PHARMACY_RECEIVED,
        OrderStatus.PHARMACY_FILLING,
        OrderStatus.PHARMACY_READY,
        OrderStatus.PHARMACY_DISPENSED,
        OrderStatus.COMPLETED,
    ),
    WorkflowCategory.OTC: (
        OrderStatus.PAYMENT_PENDING,
        OrderStatus.PAYMENT_COMPLETED,
        OrderStatus.ORDER_PROCESSING,
        OrderStatus.ORDER_SHIPPED,
        OrderStatus.ORDER_DELIVERED,
        OrderStatus.COMPLETED,
    ),
}

# Average hours spent in each state; states missing here count one hour.
STEP_DWELL_HOURS: Dict[OrderStatus, float] = {
    OrderStatus.CONSULTATION_PENDING: 24,
    OrderStatus.INTAKE_COMPLETED: 2,
    OrderStatus.PROVIDER_REVIEW: 4,
    OrderStatus.PROVIDER_APPROVED: 0.5,
    OrderStatus.PRESCRIPTION_CREATED: 0.5,
    OrderStatus.PRESCRIPTION_SENT: 1,
    OrderStatus.PHARMACY_RECEIVED: 2,
    OrderStatus.PHARMACY_FILLING: 24,
    OrderStatus.PHARMACY_READY: 0,
    OrderStatus.PAYMENT_PENDING: 24,
    OrderStatus.PAYMENT_COMPLETED: 0.5,
    OrderStatus.ORDER_PROCESSING: 24,
    OrderStatus.ORDER_SHIPPED: 72,
    OrderStatus.COMPLETED: 0,
}
DEFAULT_DWELL_HOURS = 1.0

# Terminal states - no further transitions possible
TERMINAL_STATES: FrozenSet[OrderStatus] = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})

# Side exits reachable from any non-terminal state
ESCAPE_STATES: FrozenSet[OrderStatus] = frozenset({OrderStatus.CANCELLED, OrderStatus.EXCEPTION})

STATUS_CATEGORIES: Dict[str, StatusCategory] = {
    OrderStatus.CONSULTATION_PENDING.value: StatusCategory.PENDING,
    OrderStatus.INTAKE_COMPLETED.value: StatusCategory.PENDING,
    OrderStatus.PAYMENT_PENDING.value: StatusCategory.PENDING,
    OrderStatus.PROVIDER_REVIEW.value: StatusCategory.IN_PROGRESS,
    OrderStatus.PRESCRIPTION_CREATED.value: StatusCategory.IN_PROGRESS,
    OrderStatus.PRESCRIPTION_SENT.value: StatusCategory.IN_PROGRESS,
    OrderStatus.PHARMACY_RECEIVED.value: StatusCategory.IN_PROGRESS,
    OrderStatus.PHARMACY_FILLING.value: StatusCategory.IN_PROGRESS,
    OrderStatus.ORDER_PROCESSING.value: StatusCategory.IN_PROGRESS,
    OrderStatus.PHARMACY_READY.value: StatusCategory.READY,
    OrderStatus.ORDER_SHIPPED.value: StatusCategory.READY,
    OrderStatus.COMPLETED.value: StatusCategory.COMPLETED,
    OrderStatus.PHARMACY_DISPENSED.value: StatusCategory.COMPLETED,
    OrderStatus.ORDER_DELIVERED.value: StatusCategory.COMPLETED,
    OrderStatus.CANCELLED.value: StatusCategory.CANCELLED,
}

# Manual actions offered to operators in specific states
STATUS_ACTIONS: Dict[OrderStatus, Tuple[str, ...]] = {
    OrderStatus.PROVIDER_REVIEW: ("approve", "decline", "request_more_info"),
    OrderStatus.PHARMACY_FILLING: ("mark_ready", "delay", "out_of_stock"),
    OrderStatus.PHARMACY_READY: ("dispense", "cancel"),
    OrderStatus.ORDER_PROCESSING: ("ship", "delay", "cancel"),
}


def resolve_path(requires_prescription: bool) -> WorkflowPath:
    """Return the workflow path for a product category."""
    category = WorkflowCategory.PRESCRIPTION if requires_prescription else WorkflowCategory.OTC
    return WORKFLOW_PATHS[category]


def status_category(status: Union[OrderStatus, str, None]) -> StatusCategory:
    """Map a status into its display category; unknown statuses are `pending`."""
    value = status.value if isinstance(status, OrderStatus) else status
    return STATUS_CATEGORIES.get(value, StatusCategory.PENDING)


def coerce_status(status: Union[OrderStatus, str, None]) -> Optional[OrderStatus]:
    """Return the matching `OrderStatus`, or None for unknown identifiers."""
    if isinstance(status, OrderStatus) or status is None:
        return status
    try:
        return OrderStatus(status)
    except ValueError:
        return None


def is_terminal(status: Union[OrderStatus, str, None]) -> bool:
    return coerce_status(status) in TERMINAL_STATES


def estimate_completion(path: Sequence[OrderStatus], index: int, now: datetime) -> datetime:
    """Project a completion time from the dwell hours of the remaining steps."""
    hours = sum(STEP_DWELL_HOURS.get(step, DEFAULT_DWELL_HOURS) for step in path[index:])
    return now + timedelta(hours=hours)


def next_possible_actions(status: OrderStatus, index: int, path: Sequence[OrderStatus]) -> List[str]:
    if is_terminal(status):
        return []
    if status in STATUS_ACTIONS:
        return list(STATUS_ACTIONS[status])
    if index < len(path) - 1:
        return ["advance"]
    return []
