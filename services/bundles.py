"""
Order bundle builder.

A single checkout may contain subscription products (covered by a plan) and
one-time products.  The builder turns it into one order per kind, links the
two when both exist and invoices each order.  If writing the orders fails
part way, everything already written is removed again through the
compensation coordinator before the error is reported.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from models.errors import BundleCreationFailedError, InvalidCheckoutError
from models.schemas import (
    BundleDetails,
    BundleKind,
    BundleResult,
    CheckoutRequest,
    Order,
    OrderItem,
    OrderItemType,
    OrderKind,
    OrderProduct,
    OrderRelationship,
    OrderStatus,
    RelationshipType,
    SubscriptionPlan,
    TransitionResult,
    Trigger,
    new_id,
    utc_now,
)
from services.compensation import CompensationCoordinator
from services.definitions import resolve_path
from services.invoices import InvoiceService
from services.store import ORDER_ITEMS, ORDER_RELATIONSHIPS, ORDERS, RecordStore
from services.workflow import WorkflowEngine

logger = logging.getLogger(__name__)


def bundle_kind(subscription_products: Sequence[OrderProduct], one_time_products: Sequence[OrderProduct]) -> BundleKind:
    if subscription_products and one_time_products:
        return BundleKind.MIXED
    if subscription_products:
        return BundleKind.SUBSCRIPTION
    return BundleKind.ONE_TIME


def _product_summary(product: OrderProduct) -> dict:
    return {"id": product.id, "name": product.name, "price": product.price, "source": product.source}


class OrderBundleBuilder:
    def __init__(
        self,
        store: RecordStore,
        engine: WorkflowEngine,
        compensation: Optional[CompensationCoordinator] = None,
        invoices: Optional[InvoiceService] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.engine = engine
        self.compensation = compensation or CompensationCoordinator(store)
        self.invoices = invoices or engine.invoices
        self.clock = clock

    def create_bundle(self, request: CheckoutRequest) -> BundleResult:
        """Create the orders, line items, link and invoices for one checkout.

        Raises `InvalidCheckoutError` when there is nothing to order and
        `BundleCreationFailedError` (after cleanup) when writing the orders
        fails.  Invoice failures are logged and leave `invoice_ids` short.
        """
        wants_subscription = bool(request.subscription_products) and request.selected_plan is not None
        wants_one_time = bool(request.one_time_products)
        if not (wants_subscription or wants_one_time):
            raise InvalidCheckoutError(f"Checkout for patient {request.patient_id} has no orderable items")

        logger.info(
            "Creating order bundle for patient %s (%d subscription, %d one-time products, plan=%s)",
            request.patient_id,
            len(request.subscription_products),
            len(request.one_time_products),
            request.selected_plan.id if request.selected_plan else None,
        )

        order_ids: List[str] = []
        subscription_order_id = None
        one_time_order_id = None
        try:
            if wants_subscription:
                subscription_order_id = new_id("order")
                order_ids.append(subscription_order_id)
                self._create_subscription_order(subscription_order_id, request, request.selected_plan)
            if wants_one_time:
                one_time_order_id = new_id("order")
                order_ids.append(one_time_order_id)
                self._create_one_time_order(one_time_order_id, request)
            if subscription_order_id and one_time_order_id:
                self._link_orders(subscription_order_id, one_time_order_id, request.session_id)
        except Exception as exc:
            logger.exception("Order bundle for patient %s failed, cleaning up %s", request.patient_id, order_ids)
            self.compensation.cleanup(order_ids)
            raise BundleCreationFailedError(request.patient_id, str(exc), order_ids) from exc

        invoice_ids: List[str] = []
        for order_id in order_ids:
            try:
                invoice = self.invoices.create_order_invoice(order_id)
            except Exception:
                # The invoice can still be created after provider approval.
                logger.exception("Error creating invoice for order %s", order_id)
                continue
            invoice_ids.append(invoice.id)

        result = BundleResult(
            subscription_order_id=subscription_order_id,
            one_time_order_id=one_time_order_id,
            order_ids=order_ids,
            invoice_ids=invoice_ids,
            bundle_kind=bundle_kind(request.subscription_products, request.one_time_products),
        )
        logger.info("Created %s order bundle %s for patient %s", result.bundle_kind.value, order_ids, request.patient_id)
        return result

    def get_bundle_details(self, order_id: str) -> BundleDetails:
        """Return an order with its line items and the orders it is linked to."""
        order = self.engine.get_order(order_id)
        items = [OrderItem.model_validate(d) for d in self.store.query(ORDER_ITEMS, {"order_id": order_id})]
        relationships = [
            OrderRelationship.model_validate(d)
            for d in self.store.query(ORDER_RELATIONSHIPS, {"primary_order_id": order_id}, order_by="created_at")
        ]
        related_orders = []
        for relationship in relationships:
            data = self.store.get(ORDERS, relationship.related_order_id)
            if data is None:
                logger.warning("Related order %s of %s no longer exists", relationship.related_order_id, order_id)
                continue
            related_orders.append(Order.model_validate(data))
        return BundleDetails(order=order, items=items, relationships=relationships, related_orders=related_orders)

    def cancel_bundle(self, order_id: str, trigger: Optional[Trigger] = None) -> List[TransitionResult]:
        """Cancel an order and every order linked to it, from either side of the link.

        Orders already in a final state are reported as `already_terminal`.
        """
        self.engine.get_order(order_id)
        order_ids = [order_id]
        for field, other in (("primary_order_id", "related_order_id"), ("related_order_id", "primary_order_id")):
            for data in self.store.query(ORDER_RELATIONSHIPS, {field: order_id}, order_by="created_at"):
                if data[other] not in order_ids:
                    order_ids.append(data[other])

        trigger = trigger or Trigger(notes="Bundle cancelled")
        results = []
        for oid in order_ids:
            if self.store.get(ORDERS, oid) is None:
                logger.warning("Related order %s of %s no longer exists", oid, order_id)
                continue
            results.append(self.engine.set_status(oid, OrderStatus.CANCELLED, trigger))
        logger.info("Cancelled bundle of order %s: %s", order_id, [r.outcome.value for r in results])
        return results

    # ------------------------------------------------------------------

    def _new_order(self, order_id: str, request: CheckoutRequest, kind: OrderKind, products: Sequence[OrderProduct]) -> Order:
        return Order(
            id=order_id,
            patient_id=request.patient_id,
            order_kind=kind,
            requires_prescription=any(p.requires_prescription for p in products),
            shipping_address=request.shipping_address,
            billing_address=request.billing_address or request.shipping_address,
            payment_method=request.payment_method or "stripe",
            session_id=request.session_id,
            created_by=request.created_by,
        )

    def _create_subscription_order(self, order_id: str, request: CheckoutRequest, plan: SubscriptionPlan) -> Order:
        products = request.subscription_products
        order = self._new_order(order_id, request, OrderKind.SUBSCRIPTION, products)
        order.total_amount = plan.amount
        order.currency = plan.currency
        order.subscription_plan_id = plan.id
        order.metadata = {
            "plan_name": plan.name,
            "product_count": len(products),
            "products": [_product_summary(p) for p in products],
            "discount_code": request.discount_code,
        }
        order = self.engine.initialize_order(order, resolve_path(order.requires_prescription))

        items = [
            OrderItem(
                id=new_id("item"),
                order_id=order_id,
                item_type=OrderItemType.SUBSCRIPTION_PLAN,
                product_name=plan.name,
                price_at_order=plan.amount,
                subscription_plan_id=plan.id,
                source="plan_selection",
            )
        ]
        # Products covered by the plan are listed at zero.
        items.extend(self._product_item(order_id, p, OrderItemType.SUBSCRIPTION_PRODUCT, 0.0) for p in products)
        self._write_items(items)
        logger.info("Created subscription order %s (%s, %d products)", order_id, plan.name, len(products))
        return order

    def _create_one_time_order(self, order_id: str, request: CheckoutRequest) -> Order:
        products = request.one_time_products
        order = self._new_order(order_id, request, OrderKind.ONE_TIME, products)
        order.total_amount = sum(p.price * p.quantity for p in products)
        order.metadata = {
            "product_count": len(products),
            "ai_recommended_count": sum(1 for p in products if p.source == "ai_recommendation"),
            "products": [_product_summary(p) for p in products],
            "discount_code": request.discount_code,
        }
        order = self.engine.initialize_order(order, resolve_path(order.requires_prescription))
        self._write_items(self._product_item(order_id, p, OrderItemType.ONE_TIME_PRODUCT, p.price) for p in products)
        logger.info("Created one-time order %s (%d products, total %.2f)", order_id, len(products), order.total_amount)
        return order

    def _product_item(self, order_id: str, product: OrderProduct, item_type: OrderItemType, price: float) -> OrderItem:
        return OrderItem(
            id=new_id("item"),
            order_id=order_id,
            product_id=product.id,
            item_type=item_type,
            product_name=product.name,
            price_at_order=price,
            quantity=product.quantity,
            source=product.source,
            recommendation_rule_id=product.recommendation_rule_id,
            confidence_score=product.confidence,
        )

    def _write_items(self, items) -> None:
        for item in items:
            self.store.create(ORDER_ITEMS, item.id, item.model_dump(mode="json"))

    def _link_orders(self, primary_order_id: str, related_order_id: str, session_id: Optional[str]) -> OrderRelationship:
        relationship = OrderRelationship(
            id=new_id("rel"),
            primary_order_id=primary_order_id,
            related_order_id=related_order_id,
            relationship_type=RelationshipType.BUNDLED_PURCHASE,
            metadata={"session_id": session_id, "order_type": "mixed_cart"},
            created_at=self.clock(),
        )
        self.store.create(ORDER_RELATIONSHIPS, relationship.id, relationship.model_dump(mode="json"))
        logger.info("Linked orders %s -> %s (%s)", primary_order_id, related_order_id, relationship.relationship_type.value)
        return relationship
