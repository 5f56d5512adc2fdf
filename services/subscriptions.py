"""
Subscription modification calculator and service.

`compute_proration`, `next_billing_date` and `apply_modification` are pure:
they take a subscription and return a new one without touching storage.
`SubscriptionService` loads subscriptions and plans from the record store,
applies modifications through them and writes the result back.

Every change appends exactly one entry to `Subscription.modifications`;
entries are never edited or removed.  `billing.amount` always equals the
amount of the plan named by the latest plan change, or of the starting
plan when there has been none.
"""

from __future__ import annotations

import calendar
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from models.errors import InvalidModificationError, NotFoundError
from models.schemas import (
    BillingEvent,
    BillingEventType,
    BillingInterval,
    ModificationParams,
    ModificationRequest,
    ModificationType,
    ProrationCalculation,
    Subscription,
    SubscriptionBilling,
    SubscriptionModification,
    SubscriptionPlan,
    SubscriptionStatus,
    new_id,
    utc_now,
)
from services.store import SUBSCRIPTION_PLANS, SUBSCRIPTIONS, RecordStore

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60

MONTHS_PER_INTERVAL: Dict[BillingInterval, int] = {
    BillingInterval.MONTHLY: 1,
    BillingInterval.QUARTERLY: 3,
    BillingInterval.YEARLY: 12,
}

PLAN_CHANGES = (ModificationType.UPGRADE, ModificationType.DOWNGRADE)

# Fields a modification may change; written back as one partial update
MUTABLE_FIELDS = {
    "plan_id",
    "status",
    "current_period_start",
    "current_period_end",
    "cancelled_at",
    "cancel_at_period_end",
    "billing",
    "modifications",
    "metadata",
    "updated_at",
}


def _ceil_days(delta: timedelta) -> int:
    return math.ceil(delta.total_seconds() / SECONDS_PER_DAY)


def next_billing_date(start: datetime, interval: BillingInterval, interval_count: int = 1) -> datetime:
    """Add whole calendar months to `start`.

    The day of month is clamped to the length of the target month, so
    January 31st plus one month is the last day of February.
    """
    months = MONTHS_PER_INTERVAL[BillingInterval(interval)] * interval_count
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def compute_proration(
    subscription: Subscription,
    current_plan: SubscriptionPlan,
    new_plan: SubscriptionPlan,
    effective_date: datetime,
) -> ProrationCalculation:
    """Price a plan change at `effective_date` within the current period.

    Both plans are charged at a daily rate over the current period.  The
    result is signed: a negative `proration_amount` is a credit owed to the
    customer.
    """
    if effective_date.tzinfo is None:
        effective_date = effective_date.replace(tzinfo=timezone.utc)
    total_days = _ceil_days(subscription.current_period_end - subscription.current_period_start)
    if total_days <= 0:
        raise InvalidModificationError(f"Subscription {subscription.id} has an empty billing period")
    # An effective date after the period end leaves nothing to prorate.
    days_remaining = max(_ceil_days(subscription.current_period_end - effective_date), 0)

    credit = current_plan.amount / total_days * days_remaining
    charge = new_plan.amount / total_days * days_remaining
    return ProrationCalculation(
        current_plan_amount=current_plan.amount,
        new_plan_amount=new_plan.amount,
        days_remaining=days_remaining,
        total_days_in_period=total_days,
        credit_amount=credit,
        charge_amount=charge,
        proration_amount=charge - credit,
        effective_date=effective_date,
    )


def _billing_event(event_type: BillingEventType, amount: float, description: str, now: datetime) -> BillingEvent:
    return BillingEvent(id=new_id("billing"), type=event_type, amount=amount, description=description, timestamp=now)


def apply_modification(
    subscription: Subscription,
    modification_type: ModificationType,
    params: ModificationParams,
    now: Optional[datetime] = None,
) -> Subscription:
    """Return a copy of `subscription` with one modification applied.

    Raises `InvalidModificationError` when the inputs the modification needs
    are missing or the subscription is in the wrong status for it.
    """
    now = now or utc_now()
    modification_type = ModificationType(modification_type)
    status = subscription.status
    billing = subscription.billing.model_copy(deep=True)
    updates: Dict[str, Any] = {"updated_at": now}
    effective = params.effective_date or now
    record = {
        "id": new_id("mod"),
        "type": modification_type,
        "reason": params.reason,
        "applied_by": params.applied_by,
        "timestamp": now,
        "effective_date": effective,
    }

    if modification_type in PLAN_CHANGES:
        if status is SubscriptionStatus.CANCELLED:
            raise InvalidModificationError(f"Subscription {subscription.id} is cancelled")
        new_plan = params.new_plan
        if new_plan is None:
            raise InvalidModificationError(f"{modification_type.value} of {subscription.id} needs a new plan")
        proration = 0.0
        if params.prorate:
            if params.current_plan is None:
                raise InvalidModificationError(f"Prorating {subscription.id} needs the current plan")
            proration = compute_proration(subscription, params.current_plan, new_plan, effective).proration_amount
        record.update(from_plan_id=subscription.plan_id, to_plan_id=new_plan.id, proration_amount=proration)
        billing.amount = new_plan.amount
        billing.currency = new_plan.currency
        billing.interval = new_plan.interval
        billing.interval_count = new_plan.interval_count
        billing.proration_amount = proration
        if proration != 0:
            billing.billing_history.append(
                _billing_event(BillingEventType.PRORATION, proration, f"Plan {modification_type.value} proration", now)
            )
        updates["plan_id"] = new_plan.id

    elif modification_type is ModificationType.CANCEL:
        if status is SubscriptionStatus.CANCELLED:
            raise InvalidModificationError(f"Subscription {subscription.id} is already cancelled")
        at_period_end = not params.cancel_immediately
        record["effective_date"] = subscription.current_period_end if at_period_end else now
        updates.update(
            status=status if at_period_end else SubscriptionStatus.CANCELLED,
            cancelled_at=now,
            cancel_at_period_end=at_period_end,
        )
        if params.refund_amount > 0:
            billing.billing_history.append(
                _billing_event(BillingEventType.REFUND, -params.refund_amount, "Subscription cancellation refund", now)
            )

    elif modification_type is ModificationType.PAUSE:
        if status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
            raise InvalidModificationError(f"Cannot pause subscription {subscription.id} in status {status.value}")
        record["effective_date"] = now
        metadata = dict(subscription.metadata)
        metadata["paused_at"] = now.isoformat()
        metadata["resume_date"] = params.resume_date.isoformat() if params.resume_date else None
        updates.update(status=SubscriptionStatus.PAUSED, metadata=metadata)

    elif modification_type is ModificationType.RESUME:
        if status is not SubscriptionStatus.PAUSED:
            raise InvalidModificationError(f"Subscription {subscription.id} is not paused")
        record["effective_date"] = now
        period_end = next_billing_date(now, billing.interval, billing.interval_count)
        billing.next_billing_date = period_end
        updates.update(status=SubscriptionStatus.ACTIVE, current_period_start=now, current_period_end=period_end)

    elif modification_type is ModificationType.REACTIVATE:
        if status is not SubscriptionStatus.CANCELLED and not subscription.cancel_at_period_end:
            raise InvalidModificationError(f"Subscription {subscription.id} is not cancelled")
        record["effective_date"] = now
        updates.update(cancelled_at=None, cancel_at_period_end=False)
        if status is SubscriptionStatus.CANCELLED:
            period_end = next_billing_date(now, billing.interval, billing.interval_count)
            billing.next_billing_date = period_end
            updates.update(status=SubscriptionStatus.ACTIVE, current_period_start=now, current_period_end=period_end)

    modification = SubscriptionModification(**record)
    updates["billing"] = billing
    updates["modifications"] = list(subscription.modifications) + [modification]
    return subscription.model_copy(update=updates)


class SubscriptionService:
    """Store-backed subscription lifecycle built on `apply_modification`."""

    def __init__(self, store: RecordStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    # ------------------------------------------------------------------
    # Plans and lookups
    # ------------------------------------------------------------------

    def save_plan(self, plan: SubscriptionPlan) -> SubscriptionPlan:
        if self.store.get(SUBSCRIPTION_PLANS, plan.id) is None:
            self.store.create(SUBSCRIPTION_PLANS, plan.id, plan.model_dump(mode="json"))
        else:
            self.store.update(SUBSCRIPTION_PLANS, plan.id, plan.model_dump(mode="json"))
        return plan

    def get_plan(self, plan_id: str) -> SubscriptionPlan:
        data = self.store.get(SUBSCRIPTION_PLANS, plan_id)
        if data is None:
            raise NotFoundError(SUBSCRIPTION_PLANS, plan_id)
        return SubscriptionPlan.model_validate(data)

    def get_subscription(self, subscription_id: str) -> Subscription:
        data = self.store.get(SUBSCRIPTIONS, subscription_id)
        if data is None:
            raise NotFoundError(SUBSCRIPTIONS, subscription_id)
        return Subscription.model_validate(data)

    def list_customer_subscriptions(self, customer_id: str) -> List[Subscription]:
        documents = self.store.query(SUBSCRIPTIONS, {"customer_id": customer_id}, order_by="-created_at")
        return [Subscription.model_validate(d) for d in documents]

    def create_subscription(
        self,
        customer_id: str,
        plan_id: str,
        trial_days: Optional[int] = None,
        payment_method: str = "stripe",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Subscription:
        """Start a subscription; a trial delays the first billing period."""
        plan = self.get_plan(plan_id)
        now = self.clock()
        trial_days = plan.trial_days if trial_days is None else trial_days
        trial_end = now + timedelta(days=trial_days) if trial_days > 0 else None
        period_start = trial_end or now
        period_end = next_billing_date(period_start, plan.interval, plan.interval_count)

        subscription = Subscription(
            id=new_id("sub"),
            customer_id=customer_id,
            plan_id=plan.id,
            status=SubscriptionStatus.TRIALING if trial_end else SubscriptionStatus.ACTIVE,
            current_period_start=period_start,
            current_period_end=period_end,
            trial_start=now if trial_end else None,
            trial_end=trial_end,
            billing=SubscriptionBilling(
                amount=plan.amount,
                currency=plan.currency,
                interval=plan.interval,
                interval_count=plan.interval_count,
                next_billing_date=period_end,
                payment_method=payment_method,
            ),
            metadata=metadata or {},
            created_at=now,
            updated_at=now,
        )
        self.store.create(SUBSCRIPTIONS, subscription.id, subscription.model_dump(mode="json"))
        logger.info("Created subscription %s for customer %s on plan %s", subscription.id, customer_id, plan.id)
        return subscription

    def compute_proration(
        self, subscription_id: str, new_plan_id: str, effective_date: Optional[datetime] = None
    ) -> ProrationCalculation:
        subscription = self.get_subscription(subscription_id)
        return compute_proration(
            subscription,
            self.get_plan(subscription.plan_id),
            self.get_plan(new_plan_id),
            effective_date or self.clock(),
        )

    # ------------------------------------------------------------------
    # Modifications
    # ------------------------------------------------------------------

    def modify(self, subscription_id: str, request: ModificationRequest) -> Subscription:
        """Apply an API modification request."""
        if request.type in PLAN_CHANGES:
            if not request.new_plan_id:
                raise InvalidModificationError(f"{request.type.value} needs new_plan_id")
            return self.change_plan(
                subscription_id,
                request.new_plan_id,
                effective_date=request.effective_date,
                prorate=request.prorate,
                reason=request.reason,
                applied_by=request.applied_by,
            )
        params = ModificationParams(
            cancel_immediately=request.cancel_immediately,
            refund_amount=request.refund_amount,
            resume_date=request.resume_date,
            reason=request.reason,
            applied_by=request.applied_by,
        )
        return self._apply(subscription_id, request.type, params)

    def change_plan(
        self,
        subscription_id: str,
        new_plan_id: str,
        effective_date: Optional[datetime] = None,
        prorate: bool = True,
        reason: Optional[str] = None,
        applied_by: str = "system",
    ) -> Subscription:
        """Move a subscription to another plan; a pricier plan is an upgrade."""
        subscription = self.get_subscription(subscription_id)
        current_plan = self.get_plan(subscription.plan_id)
        new_plan = self.get_plan(new_plan_id)
        modification_type = ModificationType.UPGRADE if new_plan.amount > current_plan.amount else ModificationType.DOWNGRADE
        params = ModificationParams(
            current_plan=current_plan,
            new_plan=new_plan,
            effective_date=effective_date,
            prorate=prorate,
            reason=reason,
            applied_by=applied_by,
        )
        return self._save(apply_modification(subscription, modification_type, params, self.clock()))

    def cancel(
        self,
        subscription_id: str,
        cancel_immediately: bool = False,
        refund_amount: float = 0.0,
        reason: Optional[str] = None,
        applied_by: str = "system",
    ) -> Subscription:
        params = ModificationParams(
            cancel_immediately=cancel_immediately, refund_amount=refund_amount, reason=reason, applied_by=applied_by
        )
        return self._apply(subscription_id, ModificationType.CANCEL, params)

    def pause(
        self,
        subscription_id: str,
        resume_date: Optional[datetime] = None,
        reason: Optional[str] = None,
        applied_by: str = "system",
    ) -> Subscription:
        params = ModificationParams(resume_date=resume_date, reason=reason, applied_by=applied_by)
        return self._apply(subscription_id, ModificationType.PAUSE, params)

    def resume(self, subscription_id: str, reason: Optional[str] = None, applied_by: str = "system") -> Subscription:
        params = ModificationParams(reason=reason, applied_by=applied_by)
        return self._apply(subscription_id, ModificationType.RESUME, params)

    def reactivate(self, subscription_id: str, reason: Optional[str] = None, applied_by: str = "system") -> Subscription:
        params = ModificationParams(reason=reason, applied_by=applied_by)
        return self._apply(subscription_id, ModificationType.REACTIVATE, params)

    def _apply(self, subscription_id: str, modification_type: ModificationType, params: ModificationParams) -> Subscription:
        subscription = self.get_subscription(subscription_id)
        return self._save(apply_modification(subscription, modification_type, params, self.clock()))

    def _save(self, subscription: Subscription) -> Subscription:
        latest = subscription.modifications[-1]
        fields = subscription.model_dump(mode="json", include=MUTABLE_FIELDS)
        self.store.update(SUBSCRIPTIONS, subscription.id, fields)
        logger.info(
            "Applied %s to subscription %s (status %s, amount %.2f)",
            latest.type.value,
            subscription.id,
            subscription.status.value,
            subscription.billing.amount,
        )
        return subscription
