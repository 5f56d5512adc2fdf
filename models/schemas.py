"""
Pydantic models and enums used throughout the telehealth orchestrator.

These models define the shape of the records the orchestrator keeps in the
document store (orders, line items, relationships, invoices, subscriptions)
as well as the request and response bodies of the API.  Records are written
with `model_dump(mode="json")` and read back with `model_validate`, so the
store only ever sees plain JSON documents.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    """Generate a record key such as `order_3f9c0a1b2d4e`."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class OrderStatus(str, Enum):
    """Workflow state of an order."""
    # Prescription path
    CONSULTATION_PENDING = "consultation_pending"
    INTAKE_COMPLETED = "intake_completed"
    PROVIDER_REVIEW = "provider_review"
    PROVIDER_APPROVED = "provider_approved"
    PRESCRIPTION_CREATED = "prescription_created"
    PRESCRIPTION_SENT = "prescription_sent"
    PHARMACY_RECEIVED = "pharmacy_received"
    PHARMACY_FILLING = "pharmacy_filling"
    PHARMACY_READY = "pharmacy_ready"
    PHARMACY_DISPENSED = "pharmacy_dispensed"
    # Direct shipment path
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_COMPLETED = "payment_completed"
    ORDER_PROCESSING = "order_processing"
    ORDER_SHIPPED = "order_shipped"
    ORDER_DELIVERED = "order_delivered"
    # Shared end and escape states
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXCEPTION = "exception"


class WorkflowCategory(str, Enum):
    PRESCRIPTION = "prescription"
    OTC = "otc"


class StatusCategory(str, Enum):
    """Coarse grouping of statuses for display."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    READY = "ready"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class OrderKind(str, Enum):
    SUBSCRIPTION = "subscription"
    ONE_TIME = "one_time"
    MIXED_SIBLING_LINK = "mixed_sibling_link"


class BundleKind(str, Enum):
    MIXED = "mixed"
    SUBSCRIPTION = "subscription"
    ONE_TIME = "one_time"


class OrderItemType(str, Enum):
    SUBSCRIPTION_PLAN = "subscription_plan"
    SUBSCRIPTION_PRODUCT = "subscription_product"
    ONE_TIME_PRODUCT = "one_time_product"


class RelationshipType(str, Enum):
    BUNDLED_PURCHASE = "bundled_purchase"
    FOLLOW_UP = "follow_up"
    REFILL = "refill"
    UPGRADE = "upgrade"


class InvoiceStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"


class TransitionOutcome(str, Enum):
    """Result of an `advance_status` or `set_status` call."""
    ADVANCED = "advanced"                      # status changed and was committed
    ALREADY_TERMINAL = "already_terminal"      # no-op, nothing left to do
    INVALID_TRANSITION = "invalid_transition"  # requested status not reachable


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


class Address(BaseModel):
    line1: str
    line2: Optional[str] = None
    city: str
    state: str
    postal_code: str
    country: str = "US"


class Trigger(BaseModel):
    """Who or what caused a status change."""
    by: str = Field("system", description="Actor that triggered the transition")
    notes: str = Field("", description="Free text recorded in the status history")
    metadata: Dict[str, Any] = Field(default_factory=dict)


class StatusHistoryEntry(BaseModel):
    status: OrderStatus
    timestamp: datetime
    triggered_by: str
    notes: str = ""
    previous_status: Optional[OrderStatus] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Order(BaseModel):
    """One sellable unit of work for one patient."""

    id: str
    patient_id: str
    provider_id: Optional[str] = None
    order_kind: OrderKind = OrderKind.ONE_TIME
    requires_prescription: bool = False

    status: Optional[OrderStatus] = None
    workflow_path: Tuple[OrderStatus, ...] = ()
    current_step_index: int = 0
    status_history: List[StatusHistoryEntry] = Field(default_factory=list)

    total_amount: float = 0.0
    currency: str = "USD"
    subscription_plan_id: Optional[str] = None
    shipping_address: Optional[Address] = None
    billing_address: Optional[Address] = None
    payment_method: str = "stripe"
    order_source: str = "intake_form"
    session_id: Optional[str] = None
    created_by: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    estimated_completion_date: Optional[datetime] = None
    prescription_created: bool = False
    prescription_id: Optional[str] = None
    prescription_created_at: Optional[datetime] = None
    prescription_sent_at: Optional[datetime] = None
    ready_for_pickup_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class OrderItem(BaseModel):
    id: str
    order_id: str
    product_id: Optional[str] = None
    item_type: OrderItemType
    product_name: str
    price_at_order: float
    quantity: int = 1
    subscription_plan_id: Optional[str] = None
    source: str = "user_selection"
    recommendation_rule_id: Optional[str] = None
    confidence_score: float = 1.0


class OrderRelationship(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    primary_order_id: str
    related_order_id: str
    relationship_type: RelationshipType
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


class InvoiceLine(BaseModel):
    description: str
    amount: float
    quantity: int = 1


class Invoice(BaseModel):
    id: str
    order_id: str
    patient_id: str
    amount: float
    status: InvoiceStatus = InvoiceStatus.PENDING
    type: Optional[OrderKind] = None
    items: List[InvoiceLine] = Field(default_factory=list)
    due_date: datetime
    paid_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)


class TransitionResult(BaseModel):
    """Typed outcome of a status change request."""

    order_id: str
    outcome: TransitionOutcome
    previous_status: Optional[OrderStatus] = None
    new_status: Optional[OrderStatus] = None
    step_index: Optional[int] = None
    reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        # An already-terminal order is reported as success with no change.
        return self.outcome is not TransitionOutcome.INVALID_TRANSITION

    @property
    def changed(self) -> bool:
        return self.outcome is TransitionOutcome.ADVANCED


class OrderView(BaseModel):
    """Read-only projection of an order with workflow progress."""

    order: Order
    percentage: float
    status_category: StatusCategory
    estimated_completion: Optional[datetime] = None
    next_possible_actions: List[str] = Field(default_factory=list)
    time_in_current_status: float = 0.0


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------


class BillingInterval(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class SubscriptionPlan(BaseModel):
    id: str
    name: str
    description: str = ""
    amount: float = Field(..., ge=0, description="Price charged per billing interval")
    currency: str = "USD"
    interval: BillingInterval = BillingInterval.MONTHLY
    interval_count: int = Field(1, ge=1)
    features: List[str] = Field(default_factory=list)
    trial_days: int = Field(0, ge=0)


class OrderProduct(BaseModel):
    id: str
    name: str
    price: float = Field(0.0, ge=0)
    quantity: int = Field(1, ge=1)
    requires_prescription: bool = False
    source: str = Field("user_selection", description="user_selection, ai_recommendation or provider_recommendation")
    recommendation_rule_id: Optional[str] = None
    confidence: float = 1.0


class CheckoutRequest(BaseModel):
    """Request model for a single checkout (order bundle)."""

    patient_id: str
    subscription_products: List[OrderProduct] = Field(default_factory=list)
    one_time_products: List[OrderProduct] = Field(default_factory=list)
    selected_plan: Optional[SubscriptionPlan] = None
    shipping_address: Optional[Address] = None
    billing_address: Optional[Address] = None
    payment_method: Optional[str] = None
    discount_code: Optional[str] = None
    session_id: Optional[str] = None
    created_by: Optional[str] = None


class BundleResult(BaseModel):
    subscription_order_id: Optional[str] = None
    one_time_order_id: Optional[str] = None
    order_ids: List[str] = Field(default_factory=list)
    invoice_ids: List[str] = Field(default_factory=list)
    bundle_kind: BundleKind

    @property
    def fully_invoiced(self) -> bool:
        return len(self.invoice_ids) == len(self.order_ids)


class BundleDetails(BaseModel):
    order: Order
    items: List[OrderItem] = Field(default_factory=list)
    relationships: List[OrderRelationship] = Field(default_factory=list)
    related_orders: List[Order] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    CANCELLED = "cancelled"
    PAST_DUE = "past_due"
    TRIALING = "trialing"
    PAUSED = "paused"


class ModificationType(str, Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    PAUSE = "pause"
    RESUME = "resume"
    CANCEL = "cancel"
    REACTIVATE = "reactivate"


class BillingEventType(str, Enum):
    CHARGE = "charge"
    REFUND = "refund"
    PRORATION = "proration"


class BillingEvent(BaseModel):
    id: str
    type: BillingEventType
    amount: float
    description: str
    timestamp: datetime
    status: str = "succeeded"
    invoice_id: Optional[str] = None


class SubscriptionBilling(BaseModel):
    amount: float
    currency: str = "USD"
    interval: BillingInterval = BillingInterval.MONTHLY
    interval_count: int = 1
    next_billing_date: datetime
    last_billing_date: Optional[datetime] = None
    proration_amount: Optional[float] = None
    payment_method: str = "stripe"
    billing_history: List[BillingEvent] = Field(default_factory=list)


class SubscriptionModification(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: ModificationType
    from_plan_id: Optional[str] = None
    to_plan_id: Optional[str] = None
    proration_amount: Optional[float] = None
    effective_date: datetime
    reason: Optional[str] = None
    applied_by: str = "system"
    timestamp: datetime


class Subscription(BaseModel):
    id: str
    customer_id: str
    plan_id: str
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    current_period_start: datetime
    current_period_end: datetime
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_at_period_end: bool = False
    billing: SubscriptionBilling
    modifications: List[SubscriptionModification] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class ProrationCalculation(BaseModel):
    current_plan_amount: float
    new_plan_amount: float
    days_remaining: int
    total_days_in_period: int
    credit_amount: float
    charge_amount: float
    proration_amount: float
    effective_date: datetime


class ModificationParams(BaseModel):
    """Inputs for `apply_modification`; which fields matter depends on the type."""

    current_plan: Optional[SubscriptionPlan] = None
    new_plan: Optional[SubscriptionPlan] = None
    effective_date: Optional[datetime] = None
    prorate: bool = True
    cancel_immediately: bool = False
    refund_amount: float = 0.0
    resume_date: Optional[datetime] = None
    reason: Optional[str] = None
    applied_by: str = "system"


class ModificationRequest(BaseModel):
    """API body for modifying a subscription."""

    type: ModificationType
    new_plan_id: Optional[str] = None
    effective_date: Optional[datetime] = None
    prorate: bool = True
    cancel_immediately: bool = False
    refund_amount: float = Field(0.0, ge=0)
    resume_date: Optional[datetime] = None
    reason: Optional[str] = None
    applied_by: str = "system"


class StatusChangeRequest(BaseModel):
    status: str = Field(..., description="Target status identifier")
    triggered_by: str = "system"
    notes: str = ""
