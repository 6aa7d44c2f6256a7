"""
Connect payment links: hosted checkout links that split the payment between
the platform and the seller's connected account.

Flow for a store with a connected account:
1. Check the account can receive charges (charges_enabled)
2. Resolve the store's fee config and compute the application fee
3. Estimate the processor fee and the seller's net payout (informational)
4. Create the link with application_fee_amount + transfer_data[destination]
5. Return the link with a FeeInfo audit record for Order.extra

Stores without a connected account get a plain link and no fee logic.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from marketpay.models.schemas import FeeConfig, FeeInfo, Store, format_minor
from marketpay.services.fees import (
    TransactionType,
    calculate_fee,
    config_source,
    estimate_net,
    estimate_processor_fee,
    get_default_fee_config,
    get_fee_breakdown,
    get_processing_fee_assumptions,
    resolve_fee_config,
    store_tier,
)
from marketpay.services.stripe_client import StripeClient, StripeClientError, StripeClients

logger = logging.getLogger(__name__)

MAX_LINE_ITEMS = 20  # Stripe limit per payment link
SHIPPING_COUNTRIES = ["US", "CO", "MX", "SV", "IL"]


@dataclass
class PaymentLinkResult:
    link: Optional[dict]
    fee_info: Optional[FeeInfo]


async def validate_connect_account(client: StripeClient | None, account_id: str | None) -> dict | None:
    """
    Return the connected account if it can receive charges, else None.

    Invalid ids, a missing client, lookup failures and accounts without
    charges_enabled are all logged and reported as None.
    """
    if not account_id or not isinstance(account_id, str):
        logger.error("Connect account validation: invalid account id")
        return None
    if client is None:
        logger.error("Connect account validation: Stripe client not configured")
        return None

    try:
        account = await client.retrieve_account(account_id)
    except StripeClientError as e:
        logger.error("Connect account lookup failed (account=%s): %s", account_id, e)
        return None

    if not account.get("charges_enabled"):
        logger.warning("Connect account cannot receive charges (account=%s)", account_id)
        return None

    return account


class ConnectService:
    """Builds hosted payment links, with platform fees for connected stores."""

    def __init__(
        self,
        clients: StripeClients,
        defaults: FeeConfig | None = None,
        processing_fees: tuple[float, int] | None = None,
    ):
        """
        Args:
            clients: Live/test Stripe client factory.
            defaults: Platform fee defaults; read from the environment per call when omitted.
            processing_fees: (percent decimal, fixed minor units) assumed for the
                processor's own fee; read from the environment when omitted.
        """
        self.clients = clients
        self.defaults = defaults
        self.processing_fees = processing_fees

    def _link_params(self, line_items: list, redirect_url: str, include_shipping: bool, store: Store) -> dict:
        if len(line_items) > MAX_LINE_ITEMS:
            logger.info(
                "Payment link line items truncated from %d to %d",
                len(line_items), MAX_LINE_ITEMS,
            )
        params = {
            "line_items": list(line_items[:MAX_LINE_ITEMS]),
            "after_completion": {
                "type": "redirect",
                "redirect": {"url": redirect_url},
            },
            "metadata": {"store_id": str(store.id)},
        }
        if include_shipping:
            params["shipping_address_collection"] = {"allowed_countries": SHIPPING_COUNTRIES}
        return params

    def compute_fee_info(
        self,
        total_minor: int,
        store: Store,
        transaction_type: str = TransactionType.PRODUCT.value,
    ) -> FeeInfo:
        """Fee figures for a connected store's transaction, without any API call."""
        defaults = self.defaults if self.defaults is not None else get_default_fee_config()
        processor_percent, processor_fixed = (
            self.processing_fees if self.processing_fees is not None
            else get_processing_fee_assumptions()
        )

        config = resolve_fee_config(store, defaults)
        application_fee = calculate_fee(total_minor, config)
        processor_estimate = estimate_processor_fee(total_minor, processor_percent, processor_fixed)
        net = estimate_net(total_minor, application_fee, processor_percent, processor_fixed)
        breakdown = get_fee_breakdown(
            total_minor, config, tier=store_tier(store), transaction_type=transaction_type
        )

        return FeeInfo(
            application_fee_minor=application_fee,
            processor_fee_estimate_minor=processor_estimate,
            net_to_seller_minor=net,
            config_source=config_source(store),
            fee_config=config.to_dict(),
            processing_fees={"percent": processor_percent, "fixed_minor": processor_fixed},
            breakdown=breakdown,
            connected_account_id=store.connected_account_id,
        )

    async def build_payment_link(
        self,
        line_items: list,
        total_minor: int,
        redirect_url: str,
        store: Store,
        include_shipping: bool = False,
        is_test: bool = False,
        transaction_type: str = TransactionType.PRODUCT.value,
    ) -> PaymentLinkResult:
        """
        Create a hosted payment link for a store.

        Args:
            line_items: Stripe line items ({"price": ..., "quantity": ...} or price_data).
            total_minor: Order total in minor units, the base of the platform fee.
            redirect_url: Where the buyer lands after paying.
            store: Selling store; its connected account enables the fee split.
            include_shipping: Collect a shipping address at checkout.
            is_test: Use the test-mode client.
            transaction_type: Label carried into the fee breakdown.

        Returns:
            PaymentLinkResult. link is None when the account is invalid or the
            API call failed; fee_info is None only in plain (non-split) mode or
            when the account is invalid.
        """
        client = self.clients.get(is_test)
        params = self._link_params(line_items, redirect_url, include_shipping, store)

        if not store.connected_account_id:
            logger.info("Store %s has no connected account, creating plain payment link", store.id)
            if client is None:
                logger.error("Plain payment link failed (store=%s): Stripe client not configured", store.id)
                return PaymentLinkResult(link=None, fee_info=None)
            try:
                link = await client.create_payment_link(params)
            except StripeClientError as e:
                logger.error("Plain payment link failed (store=%s): %s", store.id, e)
                return PaymentLinkResult(link=None, fee_info=None)
            return PaymentLinkResult(link=link, fee_info=None)

        account = await validate_connect_account(client, store.connected_account_id)
        if account is None:
            logger.error(
                "Cannot create payment link, account validation failed (store=%s, account=%s)",
                store.id, store.connected_account_id,
            )
            return PaymentLinkResult(link=None, fee_info=None)

        fee_info = self.compute_fee_info(total_minor, store, transaction_type)
        logger.info(
            "Connect fee breakdown (store=%s): total=%s platform_fee=%s processor_estimate=%s "
            "seller_net=%s minimum_applied=%s source=%s",
            store.id,
            format_minor(total_minor),
            format_minor(fee_info.application_fee_minor),
            format_minor(fee_info.processor_fee_estimate_minor),
            format_minor(fee_info.net_to_seller_minor),
            fee_info.breakdown["minimum_applied"],
            fee_info.config_source,
        )

        params["application_fee_amount"] = fee_info.application_fee_minor
        params["transfer_data"] = {"destination": store.connected_account_id}

        try:
            link = await client.create_payment_link(params)
        except StripeClientError as e:
            logger.error(
                "Connect payment link failed (store=%s, account=%s): %s",
                store.id, store.connected_account_id, e,
            )
            return PaymentLinkResult(link=None, fee_info=fee_info)

        logger.info(
            "Connect payment link created (store=%s, link=%s, fee=%d)",
            store.id, link.get("id"), fee_info.application_fee_minor,
        )
        return PaymentLinkResult(link=link, fee_info=fee_info)
