from services.compensation import CompensationCoordinator
from services.store import INVOICES, ORDER_ITEMS, ORDER_RELATIONSHIPS, ORDERS


def seed(store, order_id):
    store.create(ORDERS, order_id, {"id": order_id})
    store.create(ORDER_ITEMS, f"{order_id}_item", {"id": f"{order_id}_item", "order_id": order_id})
    store.create(INVOICES, f"{order_id}_inv", {"id": f"{order_id}_inv", "order_id": order_id})


def test_cleanup_removes_children_then_order(store):
    seed(store, "order_a")
    seed(store, "order_b")
    store.create(
        ORDER_RELATIONSHIPS, "rel_1", {"id": "rel_1", "primary_order_id": "order_a", "related_order_id": "order_b"}
    )
    seed(store, "order_other")

    CompensationCoordinator(store).cleanup(["order_a", "order_b"])

    assert store.keys(ORDERS) == ["order_other"]
    assert store.keys(ORDER_ITEMS) == ["order_other_item"]
    assert store.keys(INVOICES) == ["order_other_inv"]
    assert store.keys(ORDER_RELATIONSHIPS) == []
    deletes = [(c, k) for op, c, k in store.calls if op == "delete" and k.startswith("order_a")]
    assert deletes[-1] == (ORDERS, "order_a")


def test_cleanup_never_raises_and_carries_on(store):
    seed(store, "order_a")
    store.fail("query", ORDER_ITEMS)
    store.fail("delete", INVOICES)

    CompensationCoordinator(store).cleanup(["order_a", "order_missing"])

    assert store.keys(ORDERS) == []
    assert store.keys(ORDER_ITEMS) == ["order_a_item"]
    assert store.keys(INVOICES) == ["order_a_inv"]
