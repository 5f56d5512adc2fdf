import pytest
from fastapi.testclient import TestClient

from main import app, build_services, get_services
from models.schemas import ModificationType, OrderStatus


@pytest.fixture
def services(store, notifier, prescriptions, scheduler, clock):
    return build_services(store, notifier=notifier, prescriptions=prescriptions, scheduler=scheduler, clock=clock)


@pytest.fixture
def client(services):
    app.dependency_overrides[get_services] = lambda: services
    yield TestClient(app)
    app.dependency_overrides.clear()


def checkout_body(rx_product, otc_product, plan):
    return {
        "patient_id": "patient_1",
        "subscription_products": [rx_product.model_dump(mode="json")],
        "one_time_products": [otc_product.model_dump(mode="json")],
        "selected_plan": plan.model_dump(mode="json"),
    }


def test_checkout_and_order_progress(client, rx_product, otc_product, basic_plan):
    response = client.post("/checkout", json=checkout_body(rx_product, otc_product, basic_plan))
    assert response.status_code == 201
    bundle = response.json()
    assert bundle["bundle_kind"] == "mixed"
    order_id = bundle["subscription_order_id"]

    view = client.get(f"/orders/{order_id}").json()
    assert view["order"]["status"] == OrderStatus.CONSULTATION_PENDING.value
    assert view["status_category"] == "pending"

    advanced = client.post(f"/orders/{order_id}/advance", json={"by": "intake_form", "notes": "Intake done"})
    assert advanced.status_code == 200
    assert advanced.json()["new_status"] == OrderStatus.INTAKE_COMPLETED.value

    details = client.get(f"/orders/{order_id}/bundle").json()
    assert [o["id"] for o in details["related_orders"]] == [bundle["one_time_order_id"]]


def test_empty_checkout_is_400(client):
    response = client.post("/checkout", json={"patient_id": "patient_1"})
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "INVALID_CHECKOUT"


def test_unknown_order_is_404(client):
    assert client.get("/orders/order_missing").status_code == 404
    assert client.post("/orders/order_missing/advance").status_code == 404


def test_set_status(client, otc_product):
    bundle = client.post("/checkout", json={"patient_id": "patient_1", "one_time_products": [otc_product.model_dump(mode="json")]}).json()
    order_id = bundle["one_time_order_id"]

    invalid = client.post(f"/orders/{order_id}/status", json={"status": "order_shipped"})
    assert invalid.status_code == 409

    cancelled = client.post(f"/orders/{order_id}/status", json={"status": "cancelled", "triggered_by": "patient_1"})
    assert cancelled.status_code == 200
    assert cancelled.json()["outcome"] == "advanced"

    again = client.post(f"/orders/{order_id}/advance")
    assert again.json()["outcome"] == "already_terminal"


def test_cancel_bundle(client, rx_product, otc_product, basic_plan):
    bundle = client.post("/checkout", json=checkout_body(rx_product, otc_product, basic_plan)).json()

    response = client.post(f"/orders/{bundle['one_time_order_id']}/bundle/cancel", json={"by": "patient_1"})

    assert response.status_code == 200
    assert {r["order_id"] for r in response.json()} == set(bundle["order_ids"])
    for order_id in bundle["order_ids"]:
        assert client.get(f"/orders/{order_id}").json()["order"]["status"] == OrderStatus.CANCELLED.value
    assert client.post("/orders/order_missing/bundle/cancel").status_code == 404


def test_subscription_endpoints(client, services, basic_plan, premium_plan, clock):
    services.subscriptions.save_plan(basic_plan)
    services.subscriptions.save_plan(premium_plan)
    sub = services.subscriptions.create_subscription("patient_1", basic_plan.id)

    preview = client.get(f"/subscriptions/{sub.id}/proration", params={"new_plan_id": basic_plan.id})
    assert preview.status_code == 200
    assert preview.json()["proration_amount"] == 0

    response = client.post(
        f"/subscriptions/{sub.id}/modifications",
        json={"type": ModificationType.UPGRADE.value, "new_plan_id": premium_plan.id},
    )
    assert response.status_code == 200
    assert response.json()["plan_id"] == premium_plan.id

    resume = client.post(f"/subscriptions/{sub.id}/modifications", json={"type": "resume"})
    assert resume.status_code == 422

    missing = client.get("/subscriptions/sub_missing/proration", params={"new_plan_id": basic_plan.id})
    assert missing.status_code == 404
