"""
FastAPI application exposing the telehealth order orchestrator.

This module wires the workflow engine, bundle builder and subscription
service to the SQL record store and the integration stubs, and exposes them
as a small RESTful API for checkout, order progress and subscription changes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import List, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware

from models.errors import OrchestratorError
from models.schemas import (
    BundleDetails,
    BundleResult,
    CheckoutRequest,
    ModificationRequest,
    OrderView,
    ProrationCalculation,
    StatusChangeRequest,
    Subscription,
    TransitionOutcome,
    TransitionResult,
    Trigger,
)
from services.bundles import OrderBundleBuilder
from services.integration import LoggingNotificationDispatcher, StubPrescriptionService
from services.scheduler import TimerScheduler
from services.store import RecordStore, SqlRecordStore
from services.subscriptions import SubscriptionService
from services.workflow import WorkflowEngine

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@dataclass
class Services:
    engine: WorkflowEngine
    bundles: OrderBundleBuilder
    subscriptions: SubscriptionService


def build_services(store: RecordStore, **engine_kwargs) -> Services:
    engine = WorkflowEngine(store, **engine_kwargs)
    return Services(
        engine=engine,
        bundles=OrderBundleBuilder(store, engine, clock=engine.clock),
        subscriptions=SubscriptionService(store, clock=engine.clock),
    )


@lru_cache(maxsize=1)
def get_services() -> Services:
    """Default wiring against the SQL store; tests override this dependency."""
    return build_services(
        SqlRecordStore(),
        notifier=LoggingNotificationDispatcher(),
        prescriptions=StubPrescriptionService(),
        scheduler=TimerScheduler(),
    )


def _http_error(exc: OrchestratorError) -> HTTPException:
    if exc.http_status >= 500:
        logger.error("Request failed: %s", exc.message)
    return HTTPException(status_code=exc.http_status, detail={"code": exc.code, "message": exc.message})


app = FastAPI(title="Telehealth Order Orchestrator API", version="0.1.0")

# Allow cross-origin requests for development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.post("/checkout", response_model=BundleResult, status_code=status.HTTP_201_CREATED)
def api_checkout(request: CheckoutRequest, services: Services = Depends(get_services)):
    """Create the orders for a checkout (subscription and/or one-time products)."""
    try:
        return services.bundles.create_bundle(request)
    except OrchestratorError as e:
        raise _http_error(e)


@app.get("/orders/{order_id}", response_model=OrderView)
def api_get_order(order_id: str, services: Services = Depends(get_services)):
    """Retrieve an order with its workflow progress."""
    try:
        return services.engine.get_order_with_progress(order_id)
    except OrchestratorError as e:
        raise _http_error(e)


@app.post("/orders/{order_id}/advance", response_model=TransitionResult)
def api_advance_order(
    order_id: str,
    trigger: Optional[Trigger] = Body(None),
    services: Services = Depends(get_services),
):
    """Move an order to the next step of its workflow."""
    try:
        return services.engine.advance_status(order_id, trigger)
    except OrchestratorError as e:
        raise _http_error(e)


@app.post("/orders/{order_id}/status", response_model=TransitionResult)
def api_set_order_status(order_id: str, change: StatusChangeRequest, services: Services = Depends(get_services)):
    """Move an order to an explicit status (next step, cancelled or exception)."""
    try:
        result = services.engine.set_status(
            order_id, change.status, Trigger(by=change.triggered_by, notes=change.notes)
        )
    except OrchestratorError as e:
        raise _http_error(e)
    if result.outcome is TransitionOutcome.INVALID_TRANSITION:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "INVALID_TRANSITION", "message": result.reason},
        )
    return result


@app.get("/orders/{order_id}/bundle", response_model=BundleDetails)
def api_get_bundle(order_id: str, services: Services = Depends(get_services)):
    """Retrieve an order with its line items and linked orders."""
    try:
        return services.bundles.get_bundle_details(order_id)
    except OrchestratorError as e:
        raise _http_error(e)


@app.post("/orders/{order_id}/bundle/cancel", response_model=List[TransitionResult])
def api_cancel_bundle(
    order_id: str,
    trigger: Optional[Trigger] = Body(None),
    services: Services = Depends(get_services),
):
    """Cancel an order together with every order bundled with it."""
    try:
        return services.bundles.cancel_bundle(order_id, trigger)
    except OrchestratorError as e:
        raise _http_error(e)


@app.get("/subscriptions/{subscription_id}/proration", response_model=ProrationCalculation)
def api_preview_proration(
    subscription_id: str,
    new_plan_id: str = Query(...),
    effective_date: Optional[datetime] = Query(None),
    services: Services = Depends(get_services),
):
    """Preview the prorated amount of moving a subscription to another plan."""
    try:
        return services.subscriptions.compute_proration(subscription_id, new_plan_id, effective_date)
    except OrchestratorError as e:
        raise _http_error(e)


@app.post("/subscriptions/{subscription_id}/modifications", response_model=Subscription)
def api_modify_subscription(
    subscription_id: str,
    request: ModificationRequest,
    services: Services = Depends(get_services),
):
    """Upgrade, downgrade, pause, resume, cancel or reactivate a subscription."""
    try:
        return services.subscriptions.modify(subscription_id, request)
    except OrchestratorError as e:
        raise _http_error(e)
