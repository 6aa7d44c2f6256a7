"""
Actual processor fee retrieval.

Stripe creates balance transactions asynchronously, some time after the
payment settles, so the webhook often cannot see the real fee yet. This
service looks the fee up later and stores it on the order:

- ledger hit: fees / net / amount from the balance transaction
- ledger empty: charge lookup fallback (net only, fees 0, source=charge_lookup)
- nothing found or an API error: fees_retrieval_status='failed' (terminal)

All writes merge into Order.extra; unrelated keys are left untouched.
"""

import logging
import os

from marketpay.models.schemas import ActualFees, FeeRetrievalFailure
from marketpay.services.document_store import DocumentNotFoundError, DocumentStore
from marketpay.services.stripe_client import StripeClientError, StripeClients
from marketpay.services.task_runner import TaskRunner

logger = logging.getLogger(__name__)

DEFAULT_DELAY_MS = 2000


def actual_fees_from_balance_transaction(txn: dict) -> ActualFees:
    return ActualFees(
        fees_minor=int(txn.get("fee") or 0),
        net_minor=int(txn.get("net") or 0),
        amount_minor=int(txn.get("amount") or 0),
    )


def _default_delay_ms() -> int:
    raw = os.getenv("FEE_RETRIEVAL_DELAY_MS", str(DEFAULT_DELAY_MS))
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Invalid FEE_RETRIEVAL_DELAY_MS=%r, using %d", raw, DEFAULT_DELAY_MS)
        return DEFAULT_DELAY_MS
    return max(value, 0)


class FeeRetriever:
    """Looks up settled fees and persists them onto orders."""

    def __init__(
        self,
        documents: DocumentStore,
        clients: StripeClients,
        task_runner: TaskRunner,
        default_delay_ms: int | None = None,
    ):
        self.documents = documents
        self.clients = clients
        self.task_runner = task_runner
        self.default_delay_ms = default_delay_ms

    async def retrieve_and_store_actual_fees(
        self, order_id: int, payment_intent: str, is_test: bool = False
    ) -> str | None:
        """
        Fetch the actual fees for a payment intent and store them on the order.

        Returns:
            "success" or "failed" as written to extra.fees_retrieval_status,
            or None when nothing was attempted (missing inputs, no client, or
            the order no longer exists).
        """
        if not order_id or not payment_intent:
            logger.info(
                "Fee retrieval skipped: missing parameters (order_id=%s, payment_intent=%s)",
                order_id, bool(payment_intent),
            )
            return None

        client = self.clients.get(is_test)
        if client is None:
            logger.warning(
                "Fee retrieval skipped (order_id=%s): Stripe client not available (mode=%s)",
                order_id, "test" if is_test else "live",
            )
            return None

        logger.info("Fee retrieval attempt (order_id=%s, payment_intent=%s)", order_id, payment_intent)

        try:
            fees = await self._lookup(client, order_id, payment_intent)
            if fees is None:
                raise LookupError("Balance transactions and charges not yet available")
            self.documents.merge_extra(order_id, fees)
        except DocumentNotFoundError:
            logger.warning("Fee retrieval: order not found (order_id=%s)", order_id)
            return None
        except Exception as e:
            logger.error("Fee retrieval failed (order_id=%s): %s", order_id, e)
            self._mark_failure(order_id, str(e))
            return "failed"

        logger.info(
            "Order fees stored (order_id=%s, fees=%d, net=%d, source=%s)",
            order_id, fees.fees_minor, fees.net_minor, fees.source,
        )
        return "success"

    async def _lookup(self, client, order_id: int, payment_intent: str) -> ActualFees | None:
        transactions = await client.list_balance_transactions(source=payment_intent, limit=1)
        if transactions:
            return actual_fees_from_balance_transaction(transactions[0])

        logger.info("Balance transaction not found, trying charge lookup (order_id=%s)", order_id)
        try:
            charges = await client.list_charges(payment_intent=payment_intent, limit=1)
        except StripeClientError as e:
            logger.info("Charge lookup failed (order_id=%s): %s", order_id, e)
            return None

        if not charges:
            return None

        charge = charges[0]
        amount = int(charge.get("amount") or 0)
        # Fees only exist on the balance transaction; keep the net amount
        return ActualFees(
            fees_minor=0,
            net_minor=amount - int(charge.get("amount_refunded") or 0),
            amount_minor=amount,
            source="charge_lookup",
        )

    def _mark_failure(self, order_id: int, error: str) -> None:
        try:
            self.documents.merge_extra(order_id, FeeRetrievalFailure(error=error))
            logger.info("Order marked with failed fee retrieval (order_id=%s)", order_id)
        except DocumentNotFoundError:
            logger.warning("Could not mark fee retrieval failure, order not found (order_id=%s)", order_id)
        except Exception as e:
            logger.error(
                "Could not mark fee retrieval failure (order_id=%s, error=%s): %s",
                order_id, error, e,
            )

    def schedule_deferred(
        self,
        order_id: int,
        payment_intent: str,
        is_test: bool = False,
        delay_ms: int | None = None,
    ) -> bool:
        """
        Run one retrieval attempt after delay_ms, without waiting for it.

        Returns:
            True when the attempt was scheduled.
        """
        if delay_ms is None:
            delay_ms = self.default_delay_ms if self.default_delay_ms is not None else _default_delay_ms()

        logger.info(
            "Scheduling deferred fee retrieval (order_id=%s, delay_ms=%d, mode=%s)",
            order_id, delay_ms, "test" if is_test else "live",
        )
        return self.task_runner.schedule(
            lambda: self.retrieve_and_store_actual_fees(order_id, payment_intent, is_test),
            delay_seconds=delay_ms / 1000,
            name=f"fee-retrieval:{order_id}",
        )
