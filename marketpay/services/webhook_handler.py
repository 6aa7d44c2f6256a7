"""
checkout.session.completed handling.

The route verifies the Stripe signature first; only authenticated sessions
reach WebhookHandler. For each session:

1. best-effort lookup of the actual fees in the settlement ledger
2. update the order created with the payment link (append a payment attempt,
   status complete, shipping, Stripe ids and fees merged into extra), or
   build a new order from the session when none exists
3. no fees yet: schedule one deferred retrieval
4. notify the store staff and the buyer; delivery failures are only logged
"""

import logging
from dataclasses import asdict

from marketpay.models.schemas import ActualFees, Order, PaymentAttempt, Store, utc_now_iso
from marketpay.services.document_store import DocumentStore
from marketpay.services.fee_retriever import FeeRetriever, actual_fees_from_balance_transaction
from marketpay.services.notifier import Notifier
from marketpay.services.stripe_client import StripeClients

logger = logging.getLogger(__name__)

COMPLETE_STATUS = "complete"


def _id_of(value):
    """Stripe fields may be an id or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def shipping_from_session(session: dict, previous: dict | None = None) -> dict:
    """Flatten Stripe shipping / customer details into the order's address record."""
    previous = previous or {}
    details = session.get("customer_details") or {}
    shipping = (
        session.get("shipping_details")
        or session.get("shipping")
        or details
        or {}
    )
    address = shipping.get("address") or shipping

    return {
        "name": shipping.get("name") or details.get("name") or previous.get("name"),
        "email": details.get("email") or session.get("customer_email") or previous.get("email"),
        "street": address.get("line1"),
        "street_2": address.get("line2"),
        "city": address.get("city"),
        "state": address.get("state"),
        "zipcode": address.get("postal_code"),
        "country": address.get("country"),
    }


def line_items_from_session(session: dict) -> list[dict]:
    items = []
    for entry in (session.get("line_items") or {}).get("data") or []:
        price = entry.get("price") or {}
        metadata = price.get("metadata") or {}
        product = price.get("product")
        quantity = entry.get("quantity") or 1
        total = entry.get("amount_total") or 0

        product_id = metadata.get("product_id")
        try:
            product_id = int(product_id) if product_id not in (None, "") else None
        except (TypeError, ValueError):
            product_id = None

        name = entry.get("description") or (product.get("name") if isinstance(product, dict) else "") or ""
        items.append({
            "name": name,
            "product_id": product_id,
            "quantity": quantity,
            "unit_price_minor": price.get("unit_amount") or (total // quantity if quantity else total),
            "total_price_minor": total,
            "stripe_price_id": price.get("id"),
        })
    return items


class WebhookHandler:
    """Turns completed checkout sessions into orders."""

    def __init__(
        self,
        documents: DocumentStore,
        clients: StripeClients,
        fee_retriever: FeeRetriever,
        notifier: Notifier,
    ):
        self.documents = documents
        self.clients = clients
        self.fee_retriever = fee_retriever
        self.notifier = notifier

    async def _retrieve_actual_fees(self, payment_intent: str | None, is_test: bool) -> ActualFees | None:
        """Immediate ledger lookup; an empty ledger is normal this early."""
        if not payment_intent:
            return None
        client = self.clients.get(is_test)
        if client is None:
            return None
        try:
            transactions = await client.list_balance_transactions(source=payment_intent, limit=1)
        except Exception as e:
            logger.info("Immediate fee lookup failed (payment_intent=%s): %s", payment_intent, e)
            return None
        if not transactions:
            return None
        return actual_fees_from_balance_transaction(transactions[0])

    def _find_order(self, payment_link: str | None, session_id: str | None) -> dict | None:
        # Orders created here without a payment link are keyed by session id
        for key in (payment_link, session_id):
            if not key:
                continue
            found = self.documents.find("order", {"stripe_payment_id": key}, limit=1)
            if found:
                return found[0]
        return None

    async def handle_checkout_completed(self, session: dict, is_test: bool) -> Order:
        """
        Create or update the order for a completed checkout session.

        Args:
            session: The checkout.session object from a verified event.
            is_test: Test-mode event (selects the Stripe client).

        Returns:
            The stored order after the update.
        """
        session_id = session.get("id")
        payment_intent = _id_of(session.get("payment_intent"))
        payment_link = _id_of(session.get("payment_link"))
        buyer_email = (session.get("customer_details") or {}).get("email") or session.get("customer_email")

        actual_fees = await self._retrieve_actual_fees(payment_intent, is_test)

        existing = self._find_order(payment_link, session_id)
        attempt = PaymentAttempt(
            timestamp=utc_now_iso(),
            buyer_email=buyer_email,
            status="Succeeded",
            session_id=session_id,
        )

        if existing:
            logger.info("Updating order from checkout session (order_id=%s, session=%s)", existing["id"], session_id)
            extra_patch = {
                "stripe_session_id": session_id,
                "stripe_payment_intent": payment_intent,
            }
            if actual_fees is not None:
                extra_patch.update(actual_fees.to_extra())

            data = {
                "status": COMPLETE_STATUS,
                "payment_attempts": [*(existing.get("payment_attempts") or []), asdict(attempt)],
                "shipping_address": shipping_from_session(session, existing.get("shipping_address")),
                "extra": extra_patch,
            }
            if buyer_email and not existing.get("buyer_email"):
                data["buyer_email"] = buyer_email
            doc = self.documents.update("order", existing["id"], data)
        else:
            logger.info("Creating order from checkout session (session=%s)", session_id)
            data = self._build_order(
                session, payment_link, payment_intent, buyer_email, attempt, actual_fees, is_test
            )
            doc = self.documents.create("order", data)

        order_id = doc["id"]

        if payment_intent and actual_fees is None:
            self.fee_retriever.schedule_deferred(order_id, payment_intent, is_test)

        populated = self.documents.find_one("order", order_id, populate=("store",)) or doc
        order = Order.from_doc(populated)
        store = Store.from_doc(populated.get("store"))

        await self._notify(order, store)
        return order

    def _build_order(self, session, payment_link, payment_intent, buyer_email, attempt, actual_fees, is_test) -> dict:
        amount = session.get("amount_total") or 0
        currency = (session.get("currency") or "usd").upper()
        metadata = session.get("metadata") or {}

        store_id = metadata.get("store_id")
        try:
            store_id = int(store_id) if store_id not in (None, "") else None
        except (TypeError, ValueError):
            logger.warning("Ignoring invalid store_id in session metadata: %r", store_id)
            store_id = None
        if store_id is not None and self.documents.find_one("store", store_id) is None:
            logger.warning("Session metadata names unknown store %s, order left unassigned", store_id)
            store_id = None

        extra = {
            "stripe_session_id": session.get("id"),
            "stripe_payment_link": payment_link,
            "stripe_payment_intent": payment_intent,
            "stripe_customer": _id_of(session.get("customer")),
            "stripe_payment_status": session.get("payment_status"),
            "stripe_mode": session.get("mode"),
            "created_from": "webhook_fallback",
            "created_at": utc_now_iso(),
            "is_test": is_test,
            "session_metadata": metadata,
        }
        if actual_fees is not None:
            extra.update(actual_fees.to_extra())

        return {
            "store_id": store_id,
            "stripe_payment_id": payment_link or session.get("id"),
            "amount": amount,
            "currency": currency,
            "status": COMPLETE_STATUS,
            "payment_attempts": [asdict(attempt)],
            "line_items": line_items_from_session(session),
            "shipping_address": shipping_from_session(session),
            "buyer_email": buyer_email,
            "extra": extra,
        }

    async def _notify(self, order: Order, store: Store | None) -> None:
        if store is not None:
            emails = store.notification_emails()
            if emails:
                try:
                    await self.notifier.notify_store_of_purchase(order, emails, store)
                except Exception as e:
                    logger.error("Store notification failed (order_id=%s): %s", order.id, e)

        try:
            await self.notifier.send_order_notification(order, store)
        except Exception as e:
            logger.error("Buyer notification failed (order_id=%s): %s", order.id, e)
