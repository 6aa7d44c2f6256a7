"""Deferred actual-fee retrieval tests."""

import asyncio
import os
import sqlite3
import tempfile
from unittest.mock import AsyncMock, MagicMock

import pytest

_tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False, prefix="fee_retriever_")
_tmp.close()
os.environ["DB_PATH"] = _tmp.name

import marketpay.database as _db_mod
from marketpay.database import init_db
from marketpay.services.document_store import DocumentStore
from marketpay.services.fee_retriever import FeeRetriever, actual_fees_from_balance_transaction
from marketpay.services.stripe_client import StripeClientError, StripeClients
from marketpay.services.task_runner import TaskRunner


@pytest.fixture(autouse=True)
def _setup_db():
    """Rebuild the database before every test."""
    os.environ["DB_PATH"] = _tmp.name
    _db_mod.DB_PATH = _tmp.name
    conn = sqlite3.connect(_tmp.name)
    conn.executescript("""
        DROP TABLE IF EXISTS orders;
        DROP TABLE IF EXISTS products;
        DROP TABLE IF EXISTS store_users;
        DROP TABLE IF EXISTS stores;
    """)
    conn.close()
    init_db()
    yield


class FakeSleep:

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def _client(transactions=None, charges=None, txn_error=None, charge_error=None):
    client = MagicMock()
    if txn_error:
        client.list_balance_transactions = AsyncMock(side_effect=txn_error)
    else:
        client.list_balance_transactions = AsyncMock(return_value=transactions or [])
    if charge_error:
        client.list_charges = AsyncMock(side_effect=charge_error)
    else:
        client.list_charges = AsyncMock(return_value=charges or [])
    return client


@pytest.fixture
def documents():
    return DocumentStore()


@pytest.fixture
def order(documents):
    return documents.create("order", {
        "amount": 10000,
        "status": "complete",
        "extra": {"connect_fee_info": {"application_fee_minor": 363}, "stripe_session_id": "cs_1"},
    })


def _retriever(documents, client, sleep=None, delay_ms=None):
    runner = TaskRunner(sleep=sleep or FakeSleep())
    return FeeRetriever(documents, StripeClients(live=client), runner, default_delay_ms=delay_ms)


class TestBalanceTransactionMapping:

    def test_fields(self):
        fees = actual_fees_from_balance_transaction({"fee": 320, "net": 9680, "amount": 10000})
        assert (fees.fees_minor, fees.net_minor, fees.amount_minor) == (320, 9680, 10000)
        assert fees.source == "balance_transaction"


class TestRetrieveAndStore:

    def test_ledger_hit(self, documents, order):
        client = _client(transactions=[{"fee": 320, "net": 9680, "amount": 10000}])
        status = asyncio.run(_retriever(documents, client).retrieve_and_store_actual_fees(order["id"], "pi_1"))

        assert status == "success"
        extra = documents.find_one("order", order["id"])["extra"]
        assert extra["fees_retrieval_status"] == "success"
        assert extra["stripe_actual_fees"]["fees_minor"] == 320
        assert extra["stripe_actual_fees"]["net_minor"] == 9680
        assert extra["stripe_actual_fees"]["net_display"] == "96.80"
        assert extra["stripe_actual_fees"]["source"] == "balance_transaction"
        client.list_charges.assert_not_called()

    def test_existing_extra_keys_preserved(self, documents, order):
        client = _client(transactions=[{"fee": 320, "net": 9680, "amount": 10000}])
        asyncio.run(_retriever(documents, client).retrieve_and_store_actual_fees(order["id"], "pi_1"))

        extra = documents.find_one("order", order["id"])["extra"]
        assert extra["connect_fee_info"] == {"application_fee_minor": 363}
        assert extra["stripe_session_id"] == "cs_1"

    def test_charge_fallback(self, documents, order):
        client = _client(charges=[{"amount": 10000, "amount_refunded": 500}])
        status = asyncio.run(_retriever(documents, client).retrieve_and_store_actual_fees(order["id"], "pi_1"))

        assert status == "success"
        fees = documents.find_one("order", order["id"])["extra"]["stripe_actual_fees"]
        assert fees["fees_minor"] == 0
        assert fees["net_minor"] == 9500
        assert fees["amount_minor"] == 10000
        assert fees["source"] == "charge_lookup"

    def test_nothing_found_marks_failure(self, documents, order):
        status = asyncio.run(_retriever(documents, _client()).retrieve_and_store_actual_fees(order["id"], "pi_1"))

        assert status == "failed"
        extra = documents.find_one("order", order["id"])["extra"]
        assert extra["fees_retrieval_status"] == "failed"
        assert "not yet available" in extra["fees_retrieval_error"]
        assert extra["fees_retrieval_attempted_at"]
        assert extra["connect_fee_info"] == {"application_fee_minor": 363}
        assert "stripe_actual_fees" not in extra

    def test_charge_lookup_error_marks_failure(self, documents, order):
        client = _client(charge_error=StripeClientError("charges down"))
        status = asyncio.run(_retriever(documents, client).retrieve_and_store_actual_fees(order["id"], "pi_1"))
        assert status == "failed"

    def test_api_error_marks_failure(self, documents, order):
        client = _client(txn_error=StripeClientError("Stripe API error [500]"))
        status = asyncio.run(_retriever(documents, client).retrieve_and_store_actual_fees(order["id"], "pi_1"))

        assert status == "failed"
        extra = documents.find_one("order", order["id"])["extra"]
        assert "Stripe API error" in extra["fees_retrieval_error"]

    def test_missing_order(self, documents):
        client = _client(transactions=[{"fee": 1, "net": 2, "amount": 3}])
        status = asyncio.run(_retriever(documents, client).retrieve_and_store_actual_fees(404, "pi_1"))
        assert status is None

    def test_missing_parameters(self, documents, order):
        client = _client()
        retriever = _retriever(documents, client)
        assert asyncio.run(retriever.retrieve_and_store_actual_fees(order["id"], "")) is None
        assert asyncio.run(retriever.retrieve_and_store_actual_fees(None, "pi_1")) is None
        client.list_balance_transactions.assert_not_called()

    def test_no_client_for_mode(self, documents, order):
        retriever = FeeRetriever(documents, StripeClients(live=_client()), TaskRunner())
        assert asyncio.run(retriever.retrieve_and_store_actual_fees(order["id"], "pi_1", is_test=True)) is None
        assert documents.find_one("order", order["id"])["extra"].get("fees_retrieval_status") is None


class TestScheduleDeferred:

    def test_runs_once_after_delay(self, documents, order):
        sleep = FakeSleep()
        client = _client(transactions=[{"fee": 320, "net": 9680, "amount": 10000}])
        retriever = _retriever(documents, client, sleep=sleep, delay_ms=2000)

        async def main():
            assert retriever.schedule_deferred(order["id"], "pi_1") is True
            # Nothing happens until the delay elapses
            assert documents.find_one("order", order["id"])["extra"].get("fees_retrieval_status") is None
            await retriever.task_runner.drain()

        asyncio.run(main())
        assert sleep.delays == [2.0]
        assert client.list_balance_transactions.await_count == 1
        assert documents.find_one("order", order["id"])["extra"]["fees_retrieval_status"] == "success"

    def test_explicit_delay(self, documents, order):
        sleep = FakeSleep()
        retriever = _retriever(documents, _client(), sleep=sleep, delay_ms=2000)

        async def main():
            retriever.schedule_deferred(order["id"], "pi_1", delay_ms=500)
            await retriever.task_runner.drain()

        asyncio.run(main())
        assert sleep.delays == [0.5]

    def test_env_delay(self, documents, order, monkeypatch):
        monkeypatch.setenv("FEE_RETRIEVAL_DELAY_MS", "750")
        sleep = FakeSleep()
        retriever = _retriever(documents, _client(), sleep=sleep)

        async def main():
            retriever.schedule_deferred(order["id"], "pi_1")
            await retriever.task_runner.drain()

        asyncio.run(main())
        assert sleep.delays == [0.75]

    def test_failure_is_terminal(self, documents, order):
        client = _client()
        retriever = _retriever(documents, client)

        async def main():
            retriever.schedule_deferred(order["id"], "pi_1")
            await retriever.task_runner.drain()

        asyncio.run(main())
        assert client.list_balance_transactions.await_count == 1
        assert retriever.task_runner.pending_count() == 0
        assert documents.find_one("order", order["id"])["extra"]["fees_retrieval_status"] == "failed"
