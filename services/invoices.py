"""
Invoice creation and settlement for orders.

An invoice is created once per order, either when the checkout bundle is
built or when a provider approves a prescription order that has none yet.
After creation only its status changes.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta
from typing import Callable, List

from models.errors import NotFoundError
from models.schemas import Invoice, InvoiceLine, InvoiceStatus, Order, OrderItem, new_id, utc_now
from services.store import INVOICES, ORDER_ITEMS, ORDERS, RecordStore

logger = logging.getLogger(__name__)

INVOICE_DUE_DAYS: int = int(os.getenv("INVOICE_DUE_DAYS", "30"))


class InvoiceService:
    def __init__(self, store: RecordStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    def create_order_invoice(self, order_id: str) -> Invoice:
        """Create a pending invoice covering an order and its line items."""
        data = self.store.get(ORDERS, order_id)
        if data is None:
            raise NotFoundError(ORDERS, order_id)
        order = Order.model_validate(data)
        items = [OrderItem.model_validate(i) for i in self.store.query(ORDER_ITEMS, {"order_id": order_id})]

        now = self.clock()
        invoice = Invoice(
            id=new_id("inv"),
            order_id=order.id,
            patient_id=order.patient_id,
            amount=order.total_amount,
            status=InvoiceStatus.PENDING,
            type=order.order_kind,
            items=[
                InvoiceLine(description=i.product_name, amount=i.price_at_order, quantity=i.quantity)
                for i in items
            ],
            due_date=now + timedelta(days=INVOICE_DUE_DAYS),
            created_at=now,
        )
        self.store.create(INVOICES, invoice.id, invoice.model_dump(mode="json"))
        logger.info("Created invoice %s for order %s (amount %.2f)", invoice.id, order_id, invoice.amount)
        return invoice

    def invoices_for_order(self, order_id: str) -> List[Invoice]:
        return [Invoice.model_validate(d) for d in self.store.query(INVOICES, {"order_id": order_id})]

    def ensure_invoice(self, order_id: str) -> Invoice:
        """Return the order's invoice, creating one if it has none."""
        existing = self.invoices_for_order(order_id)
        if existing:
            return existing[0]
        return self.create_order_invoice(order_id)

    def mark_paid(self, order_id: str) -> List[Invoice]:
        """Settle every pending invoice of an order."""
        paid = []
        for invoice in self.invoices_for_order(order_id):
            if invoice.status is not InvoiceStatus.PENDING:
                continue
            now = self.clock()
            self.store.update(INVOICES, invoice.id, {"status": InvoiceStatus.PAID.value, "paid_at": now.isoformat()})
            paid.append(invoice.model_copy(update={"status": InvoiceStatus.PAID, "paid_at": now}))
            logger.info("Invoice %s for order %s marked paid", invoice.id, order_id)
        return paid
