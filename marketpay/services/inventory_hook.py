"""
Inventory reconciliation for paid orders.

Every order create/update schedules reconcile() in the background. The first
time an order is seen in status 'paid' without extra.inventory_decremented:

1. group its line items by product
2. per product, match each item to a price entry by Stripe price id and
   decrement tracked inventory (prices written once per product, then published)
3. add the tracked quantities to the product's amount_sold (read-modify-write)
4. set extra.inventory_decremented, but only if something was persisted

Failures are isolated per item and per product. The check and the writes run
without awaiting, so runs for the same order on one event loop never
interleave and the persisted marker stops every later run.
"""

import logging
from collections import OrderedDict
from numbers import Real

from marketpay.models.schemas import InventoryMarker
from marketpay.services.document_store import DocumentStore
from marketpay.services.task_runner import TaskRunner

logger = logging.getLogger(__name__)

PAID_STATUS = "paid"
LOW_INVENTORY_THRESHOLD = 1


def _quantity(item: dict) -> int:
    try:
        qty = int(item.get("quantity") or 1)
    except (TypeError, ValueError):
        return 1
    return qty if qty > 0 else 1


class InventoryHook:
    """Decrements stock exactly once per paid order."""

    def __init__(self, documents: DocumentStore, task_runner: TaskRunner):
        self.documents = documents
        self.task_runner = task_runner

    def register(self) -> None:
        self.documents.use(self.on_document_write)

    def on_document_write(self, entity: str, action: str, doc: dict) -> None:
        """After-write hook: schedule reconciliation for order writes, return at once."""
        if entity != "order" or action not in ("create", "update"):
            return
        order_id = doc.get("id")
        if order_id is None:
            return
        logger.debug("Inventory reconciliation scheduled (order_id=%s, action=%s)", order_id, action)
        self.task_runner.schedule(
            lambda: self.reconcile(order_id),
            name=f"inventory:{order_id}",
        )

    async def reconcile(self, order_id: int) -> bool:
        """
        Apply the one-time stock adjustment for an order if it is due.

        Returns:
            True when the order was marked as processed by this call.
        """
        return self._reconcile(order_id)

    def _reconcile(self, order_id: int) -> bool:
        # Re-read canonically; the triggering write may be stale by now
        order = self.documents.find_one("order", order_id)
        if order is None:
            logger.warning("Inventory: order not found (order_id=%s)", order_id)
            return False

        extra = order.get("extra") or {}
        if order.get("status") != PAID_STATUS or extra.get("inventory_decremented") is True:
            return False

        logger.info("Inventory: processing paid order (order_id=%s)", order_id)

        items_by_product: "OrderedDict[int, list]" = OrderedDict()
        for item in order.get("line_items") or []:
            product_id = item.get("product_id")
            if product_id is None:
                logger.warning(
                    "Inventory: line item without product (order_id=%s, item=%s)",
                    order_id, item.get("name"),
                )
                continue
            items_by_product.setdefault(product_id, []).append(item)

        sold: dict[int, int] = {}
        persisted = False

        for product_id, items in items_by_product.items():
            try:
                if self._update_prices(order_id, product_id, items, sold):
                    persisted = True
            except Exception as e:
                logger.error(
                    "Inventory: price update failed (order_id=%s, product_id=%s): %s",
                    order_id, product_id, e,
                )

        for product_id, quantity in sold.items():
            try:
                self._add_amount_sold(product_id, quantity)
                persisted = True
            except Exception as e:
                logger.error(
                    "Inventory: amount_sold update failed (order_id=%s, product_id=%s): %s",
                    order_id, product_id, e,
                )

        if not persisted:
            logger.info("Inventory: nothing persisted, order left unmarked (order_id=%s)", order_id)
            return False

        try:
            self.documents.merge_extra(order_id, InventoryMarker())
        except Exception as e:
            logger.warning("Inventory: could not mark order (order_id=%s): %s", order_id, e)
            return False

        logger.info("Inventory: order marked as processed (order_id=%s)", order_id)
        return True

    def _update_prices(self, order_id: int, product_id: int, items: list, sold: dict) -> bool:
        """Decrement tracked inventory for one product's items; True when prices were saved."""
        product = self.documents.find_one("product", product_id)
        if product is None or not isinstance(product.get("prices"), list):
            logger.warning("Inventory: product or prices missing (product_id=%s)", product_id)
            return False

        prices = [dict(p) for p in product["prices"]]
        quantity_sold = 0

        for item in items:
            price_id = item.get("stripe_price_id")
            index = next(
                (i for i, p in enumerate(prices) if price_id and p.get("stripe_id") == price_id),
                None,
            )
            if index is None:
                logger.warning(
                    "Inventory: price not found (order_id=%s, product_id=%s, price=%s, item=%s)",
                    order_id, product_id, price_id, item.get("name"),
                )
                continue

            inventory = prices[index].get("inventory")
            if not isinstance(inventory, Real) or isinstance(inventory, bool):
                # Untracked inventory: nothing to decrement, not counted as sold
                continue

            qty = _quantity(item)
            prices[index]["inventory"] = inventory - qty
            quantity_sold += qty

            if inventory - qty <= LOW_INVENTORY_THRESHOLD:
                logger.warning(
                    "Inventory low (product_id=%s, price=%s, inventory=%s)",
                    product_id, price_id, inventory - qty,
                )

        if not quantity_sold:
            return False

        self.documents.update("product", product_id, {"prices": prices})
        sold[product_id] = sold.get(product_id, 0) + quantity_sold
        self._publish(product_id, "prices")
        return True

    def _add_amount_sold(self, product_id: int, quantity: int) -> None:
        product = self.documents.find_one("product", product_id)
        previous = product.get("amount_sold") if product else 0
        if not isinstance(previous, int):
            previous = 0
        self.documents.update("product", product_id, {"amount_sold": previous + quantity})
        self._publish(product_id, "amount_sold")

    def _publish(self, product_id: int, what: str) -> None:
        try:
            self.documents.publish("product", product_id)
        except Exception as e:
            logger.warning("Inventory: publish after %s failed (product_id=%s): %s", what, product_id, e)
