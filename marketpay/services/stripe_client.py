"""
Stripe API client: the narrow slice of the processor API the payment core uses.

- retrieve_account: connected account status (charges_enabled)
- create_payment_link: hosted payment link, optionally with a platform fee split
- list_balance_transactions: settlement ledger entries (actual fees and net)
- list_charges: charge records of a payment intent
- verify_webhook_signature: Stripe-Signature header check

Calls go through the stripe SDK's async resource methods with a per-client
api_key, so live and test keys can be used side by side in one process.
Results come back as plain dicts.
"""

import logging
import os

import stripe

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = 300  # seconds


class StripeClientError(Exception):
    """Stripe request failed (transport, HTTP status or API error)."""
    pass


class WebhookSignatureError(Exception):
    """Webhook payload could not be authenticated."""
    pass


def _plain(value):
    """Stripe objects (and anything nested in them) as plain dicts and lists."""
    if isinstance(value, stripe.StripeObject):
        value = value.to_dict()
    if isinstance(value, dict):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_plain(item) for item in value]
    return value


def verify_webhook_signature(
    payload: bytes | str,
    signature: str,
    secret: str,
    tolerance: int = DEFAULT_TOLERANCE,
) -> dict:
    """
    Verify a Stripe-Signature header and return the decoded event.

    Raises:
        WebhookSignatureError: missing secret/header, bad or stale signature,
            or a payload that is not JSON.
    """
    if not secret:
        raise WebhookSignatureError("Webhook signing secret is not configured")
    if not signature:
        raise WebhookSignatureError("Missing Stripe-Signature header")

    try:
        event = stripe.Webhook.construct_event(payload, signature, secret, tolerance=tolerance)
    except stripe.SignatureVerificationError as e:
        raise WebhookSignatureError(f"Signature verification failed: {e.user_message or e}") from e
    except ValueError as e:
        raise WebhookSignatureError(f"Webhook payload is not valid JSON: {e}") from e
    return _plain(event)


class StripeClient:
    """Stripe client authenticated with one secret key."""

    def __init__(self, secret_key: str):
        """
        Args:
            secret_key: sk_live_... or sk_test_... key.
        """
        if not secret_key:
            raise StripeClientError("Stripe secret key is required")
        self._secret_key = secret_key

    @property
    def is_test(self) -> bool:
        return self._secret_key.startswith("sk_test_")

    async def _call(self, label: str, method, *args, **params):
        try:
            return await method(*args, api_key=self._secret_key, **params)
        except stripe.StripeError as e:
            status = getattr(e, "http_status", None)
            raise StripeClientError(
                f"Stripe API error [{status}] ({label}): {e.user_message or e}"
            ) from e

    async def retrieve_account(self, account_id: str) -> dict:
        account = await self._call("retrieve account", stripe.Account.retrieve_async, account_id)
        return _plain(account)

    async def create_payment_link(self, params: dict) -> dict:
        link = await self._call("create payment link", stripe.PaymentLink.create_async, **params)
        return _plain(link)

    async def list_balance_transactions(self, source: str, limit: int = 1) -> list[dict]:
        """Settlement ledger entries for a charge or payment intent."""
        page = await self._call(
            "list balance transactions",
            stripe.BalanceTransaction.list_async,
            source=source,
            limit=limit,
        )
        return [_plain(item) for item in page.data]

    async def list_charges(self, payment_intent: str, limit: int = 1) -> list[dict]:
        page = await self._call(
            "list charges",
            stripe.Charge.list_async,
            payment_intent=payment_intent,
            limit=limit,
        )
        return [_plain(item) for item in page.data]

    @staticmethod
    def verify_webhook_signature(payload, signature: str, secret: str, tolerance: int = DEFAULT_TOLERANCE) -> dict:
        return verify_webhook_signature(payload, signature, secret, tolerance)


class StripeClients:
    """Live / test client pair, picked per request by mode."""

    def __init__(self, live: StripeClient | None = None, test: StripeClient | None = None):
        self.live = live
        self.test = test

    @classmethod
    def from_env(cls) -> "StripeClients":
        live_key = os.getenv("STRIPE_SECRET_KEY")
        test_key = os.getenv("STRIPE_SECRET_TEST_KEY")
        if not live_key and not test_key:
            logger.warning("No Stripe keys configured, payment features are unavailable")
        return cls(
            live=StripeClient(live_key) if live_key else None,
            test=StripeClient(test_key) if test_key else None,
        )

    def get(self, is_test: bool = False) -> StripeClient | None:
        """
        Client for the given mode.

        Test mode only ever uses the test client. Live mode falls back to the
        test client (with a warning) when no live key is configured.
        """
        if is_test:
            if self.test is None:
                logger.warning("Stripe test client requested but not configured")
            return self.test
        if self.live is not None:
            return self.live
        if self.test is not None:
            logger.warning("Live Stripe client not configured, falling back to test mode")
            return self.test
        return None
