"""
Compensating cleanup for a checkout that failed part way.

The record store has no transaction spanning several writes, so when bundle
creation fails after some records were written the coordinator deletes them
again: line items, relationships where the order is primary, invoices and
finally the order itself.
"""

from __future__ import annotations

import logging
from typing import Iterable

from services.store import INVOICES, ORDER_ITEMS, ORDER_RELATIONSHIPS, ORDERS, RecordStore

logger = logging.getLogger(__name__)


class CompensationCoordinator:
    def __init__(self, store: RecordStore):
        self.store = store

    def cleanup(self, order_ids: Iterable[str]) -> None:
        """Delete every record written for `order_ids`.  Never raises."""
        for order_id in order_ids:
            logger.info("Cleaning up records of failed order %s", order_id)
            self._delete_children(ORDER_ITEMS, {"order_id": order_id})
            self._delete_children(ORDER_RELATIONSHIPS, {"primary_order_id": order_id})
            self._delete_children(INVOICES, {"order_id": order_id})
            self._delete(ORDERS, order_id)

    def _delete_children(self, collection: str, filters: dict) -> None:
        try:
            documents = self.store.query(collection, filters)
        except Exception:
            logger.exception("Could not list %s matching %s during cleanup", collection, filters)
            return
        for document in documents:
            self._delete(collection, document["id"])

    def _delete(self, collection: str, key: str) -> None:
        try:
            self.store.delete(collection, key)
        except Exception:
            logger.exception("Could not delete %s record %s during cleanup", collection, key)
