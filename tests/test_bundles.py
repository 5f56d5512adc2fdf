import pytest

from models.errors import BundleCreationFailedError, InvalidCheckoutError, NotFoundError
from models.schemas import (
    BundleKind,
    CheckoutRequest,
    OrderItemType,
    OrderKind,
    OrderStatus,
    RelationshipType,
    TransitionOutcome,
    Trigger,
)
from services.bundles import bundle_kind
from services.store import INVOICES, ORDER_ITEMS, ORDER_RELATIONSHIPS, ORDERS


def test_bundle_kind(rx_product, otc_product):
    assert bundle_kind([rx_product], [otc_product]) is BundleKind.MIXED
    assert bundle_kind([rx_product], []) is BundleKind.SUBSCRIPTION
    assert bundle_kind([], [otc_product]) is BundleKind.ONE_TIME
    assert bundle_kind([], []) is BundleKind.ONE_TIME


def test_subscription_only_bundle(builder, store, rx_product, basic_plan):
    request = CheckoutRequest(patient_id="patient_1", subscription_products=[rx_product], selected_plan=basic_plan)

    result = builder.create_bundle(request)

    assert result.bundle_kind is BundleKind.SUBSCRIPTION
    assert result.order_ids == [result.subscription_order_id]
    assert result.one_time_order_id is None
    assert store.keys(ORDER_RELATIONSHIPS) == []
    assert result.fully_invoiced

    order = store.get(ORDERS, result.subscription_order_id)
    assert order["order_kind"] == OrderKind.SUBSCRIPTION.value
    assert order["total_amount"] == basic_plan.amount
    assert order["subscription_plan_id"] == basic_plan.id
    assert order["status"] == OrderStatus.CONSULTATION_PENDING.value

    items = store.query(ORDER_ITEMS, {"order_id": result.subscription_order_id})
    by_type = {i["item_type"]: i for i in items}
    assert len(items) == 2
    assert by_type[OrderItemType.SUBSCRIPTION_PLAN.value]["price_at_order"] == basic_plan.amount
    assert by_type[OrderItemType.SUBSCRIPTION_PRODUCT.value]["price_at_order"] == 0.0


def test_mixed_bundle_links_orders(builder, store, rx_product, otc_product, basic_plan):
    request = CheckoutRequest(
        patient_id="patient_1",
        subscription_products=[rx_product],
        one_time_products=[otc_product],
        selected_plan=basic_plan,
        session_id="sess_1",
    )

    result = builder.create_bundle(request)

    assert result.bundle_kind is BundleKind.MIXED
    assert len(result.order_ids) == 2
    assert len(result.invoice_ids) == 2
    (relationship,) = store.query(ORDER_RELATIONSHIPS)
    assert relationship["primary_order_id"] == result.subscription_order_id
    assert relationship["related_order_id"] == result.one_time_order_id
    assert relationship["relationship_type"] == RelationshipType.BUNDLED_PURCHASE.value

    one_time = store.get(ORDERS, result.one_time_order_id)
    assert one_time["total_amount"] == pytest.approx(25.0)
    assert one_time["status"] == OrderStatus.PAYMENT_PENDING.value
    assert one_time["session_id"] == "sess_1"


def test_bundle_details(builder, rx_product, otc_product, basic_plan):
    result = builder.create_bundle(
        CheckoutRequest(
            patient_id="patient_1",
            subscription_products=[rx_product],
            one_time_products=[otc_product],
            selected_plan=basic_plan,
        )
    )

    details = builder.get_bundle_details(result.subscription_order_id)

    assert details.order.id == result.subscription_order_id
    assert len(details.items) == 2
    assert [o.id for o in details.related_orders] == [result.one_time_order_id]
    assert builder.get_bundle_details(result.one_time_order_id).related_orders == []


def mixed_checkout(rx_product, otc_product, plan):
    return CheckoutRequest(
        patient_id="patient_1",
        subscription_products=[rx_product],
        one_time_products=[otc_product],
        selected_plan=plan,
    )


@pytest.mark.parametrize("side", ["subscription_order_id", "one_time_order_id"])
def test_cancel_bundle_cancels_both_orders(builder, engine, rx_product, otc_product, basic_plan, side):
    result = builder.create_bundle(mixed_checkout(rx_product, otc_product, basic_plan))

    outcomes = builder.cancel_bundle(getattr(result, side), Trigger(by="patient_1", notes="Changed my mind"))

    assert {r.order_id for r in outcomes} == set(result.order_ids)
    assert all(r.outcome is TransitionOutcome.ADVANCED for r in outcomes)
    for order_id in result.order_ids:
        order = engine.get_order(order_id)
        assert order.status is OrderStatus.CANCELLED
        assert order.cancelled_at is not None
        assert order.status_history[-1].triggered_by == "patient_1"


def test_cancel_bundle_reports_orders_already_final(builder, engine, rx_product, otc_product, basic_plan):
    result = builder.create_bundle(mixed_checkout(rx_product, otc_product, basic_plan))
    engine.set_status(result.one_time_order_id, OrderStatus.CANCELLED)

    outcomes = {r.order_id: r.outcome for r in builder.cancel_bundle(result.subscription_order_id)}

    assert outcomes == {
        result.subscription_order_id: TransitionOutcome.ADVANCED,
        result.one_time_order_id: TransitionOutcome.ALREADY_TERMINAL,
    }
    assert engine.get_order(result.subscription_order_id).status is OrderStatus.CANCELLED


def test_cancel_single_order_bundle(builder, engine, otc_product):
    result = builder.create_bundle(CheckoutRequest(patient_id="patient_1", one_time_products=[otc_product]))

    (outcome,) = builder.cancel_bundle(result.one_time_order_id)

    assert outcome.new_status is OrderStatus.CANCELLED
    assert engine.get_order(result.one_time_order_id).status_history[-1].notes == "Bundle cancelled"


def test_cancel_unknown_bundle(builder):
    with pytest.raises(NotFoundError):
        builder.cancel_bundle("order_missing")


def test_empty_checkout_is_rejected(builder, store, rx_product):
    with pytest.raises(InvalidCheckoutError):
        builder.create_bundle(CheckoutRequest(patient_id="patient_1"))
    # subscription products without a plan are not orderable on their own
    with pytest.raises(InvalidCheckoutError):
        builder.create_bundle(CheckoutRequest(patient_id="patient_1", subscription_products=[rx_product]))
    assert store.keys(ORDERS) == []


def test_one_time_failure_removes_subscription_order(builder, store, rx_product, otc_product, basic_plan):
    store.fail("create", ORDERS, after=1)
    request = CheckoutRequest(
        patient_id="patient_1",
        subscription_products=[rx_product],
        one_time_products=[otc_product],
        selected_plan=basic_plan,
    )

    with pytest.raises(BundleCreationFailedError) as excinfo:
        builder.create_bundle(request)

    assert store.keys(ORDERS) == []
    assert store.keys(ORDER_ITEMS) == []
    assert len(excinfo.value.cleaned_order_ids) == 2
    assert excinfo.value.__cause__ is not None


def test_link_failure_removes_both_orders(builder, store, rx_product, otc_product, basic_plan):
    store.fail("create", ORDER_RELATIONSHIPS)
    request = CheckoutRequest(
        patient_id="patient_1",
        subscription_products=[rx_product],
        one_time_products=[otc_product],
        selected_plan=basic_plan,
    )

    with pytest.raises(BundleCreationFailedError):
        builder.create_bundle(request)

    assert store.keys(ORDERS) == []
    assert store.keys(ORDER_ITEMS) == []
    assert store.keys(INVOICES) == []


def test_partial_line_items_are_cleaned_up(builder, store, rx_product, basic_plan):
    store.fail("create", ORDER_ITEMS, after=1)

    with pytest.raises(BundleCreationFailedError):
        builder.create_bundle(
            CheckoutRequest(patient_id="patient_1", subscription_products=[rx_product], selected_plan=basic_plan)
        )

    assert store.keys(ORDERS) == []
    assert store.keys(ORDER_ITEMS) == []


def test_invoice_failure_is_absorbed(builder, store, rx_product, otc_product, basic_plan):
    store.fail("create", INVOICES, after=1)

    result = builder.create_bundle(
        CheckoutRequest(
            patient_id="patient_1",
            subscription_products=[rx_product],
            one_time_products=[otc_product],
            selected_plan=basic_plan,
        )
    )

    assert len(result.order_ids) == 2
    assert len(result.invoice_ids) == 1
    assert not result.fully_invoiced
