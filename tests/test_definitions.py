from datetime import datetime, timedelta, timezone

import pytest

from models.schemas import OrderStatus, StatusCategory, WorkflowCategory
from services.definitions import (
    STEP_DWELL_HOURS,
    WORKFLOW_PATHS,
    coerce_status,
    estimate_completion,
    is_terminal,
    next_possible_actions,
    resolve_path,
    status_category,
)


def test_paths_end_in_completed_without_repeats():
    for path in WORKFLOW_PATHS.values():
        assert path[-1] is OrderStatus.COMPLETED
        assert len(set(path)) == len(path)


def test_resolve_path_by_prescription_flag():
    assert resolve_path(True) == WORKFLOW_PATHS[WorkflowCategory.PRESCRIPTION]
    assert resolve_path(False)[0] is OrderStatus.PAYMENT_PENDING


@pytest.mark.parametrize(
    "status, expected",
    [
        (OrderStatus.CONSULTATION_PENDING, StatusCategory.PENDING),
        (OrderStatus.PROVIDER_REVIEW, StatusCategory.IN_PROGRESS),
        (OrderStatus.PHARMACY_READY, StatusCategory.READY),
        (OrderStatus.ORDER_DELIVERED, StatusCategory.COMPLETED),
        (OrderStatus.CANCELLED, StatusCategory.CANCELLED),
        ("order_shipped", StatusCategory.READY),
    ],
)
def test_status_category(status, expected):
    assert status_category(status) is expected


def test_status_category_is_total():
    for status in OrderStatus:
        assert isinstance(status_category(status), StatusCategory)
    assert status_category("teleported") is StatusCategory.PENDING
    assert status_category(None) is StatusCategory.PENDING


def test_terminal_states_accept_raw_identifiers():
    assert is_terminal("cancelled")
    assert is_terminal(OrderStatus.COMPLETED)
    assert not is_terminal(OrderStatus.EXCEPTION)
    assert not is_terminal("nonsense")
    assert coerce_status("nonsense") is None


def test_estimate_completion_sums_remaining_dwell_hours():
    now = datetime(2025, 1, 1, tzinfo=timezone.utc)
    path = resolve_path(False)
    expected = sum(STEP_DWELL_HOURS[s] for s in path[3:] if s in STEP_DWELL_HOURS) + 1  # order_delivered defaults to 1h
    assert estimate_completion(path, 3, now) == now + timedelta(hours=expected)


def test_next_possible_actions():
    path = resolve_path(True)
    assert next_possible_actions(OrderStatus.PROVIDER_REVIEW, 2, path) == ["approve", "decline", "request_more_info"]
    assert next_possible_actions(OrderStatus.INTAKE_COMPLETED, 1, path) == ["advance"]
    assert next_possible_actions(OrderStatus.COMPLETED, len(path) - 1, path) == []
    assert next_possible_actions(OrderStatus.CANCELLED, 3, path) == []
