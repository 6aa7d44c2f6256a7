"""
Checkout route: POST /api/checkout/link

Builds a hosted payment link for a store and records the open order that the
webhook will later complete.
"""

import logging
import os

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from marketpay.models.schemas import Store
from marketpay.services.container import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter()


class CheckoutLineItem(BaseModel):
    price: str | None = None
    quantity: int = Field(default=1, ge=1)
    product_id: int | None = None
    name: str | None = None
    unit_amount: int | None = Field(default=None, ge=0)
    currency: str = "usd"


class CheckoutLinkRequest(BaseModel):
    store_id: int
    line_items: list[CheckoutLineItem]
    total: int = Field(ge=0)
    include_shipping: bool = False
    test_mode: bool = False
    redirect_url: str | None = None


def _default_redirect_url() -> str:
    base = os.getenv("RECEIPT_URL", "https://markket.place/receipt")
    return f"{base}?session_id={{CHECKOUT_SESSION_ID}}"


def _stripe_line_item(item: CheckoutLineItem) -> dict:
    if item.price:
        return {"price": item.price, "quantity": item.quantity}
    return {
        "price_data": {
            "currency": item.currency,
            "unit_amount": item.unit_amount,
            "product_data": {"name": item.name or "Item"},
        },
        "quantity": item.quantity,
    }


def _order_line_item(item: CheckoutLineItem) -> dict:
    unit = item.unit_amount or 0
    return {
        "name": item.name or "",
        "product_id": item.product_id,
        "quantity": item.quantity,
        "unit_price_minor": unit,
        "total_price_minor": unit * item.quantity,
        "stripe_price_id": item.price,
    }


@router.post("/api/checkout/link")
async def create_checkout_link(body: CheckoutLinkRequest, services: Services = Depends(get_services)):
    """
    Create a payment link and its open order.

    Flow: load store -> build link (fee split when the store has a connected
    account) -> create the order with the link id and fee info in extra.
    """
    if not body.line_items:
        return JSONResponse(status_code=400, content={"detail": "line_items is required"})
    invalid = [i for i, item in enumerate(body.line_items) if not item.price and item.unit_amount is None]
    if invalid:
        return JSONResponse(
            status_code=400,
            content={"detail": f"line_items {invalid} need a price or a unit_amount"},
        )

    store = Store.from_doc(services.documents.find_one("store", body.store_id))
    if store is None:
        return JSONResponse(status_code=404, content={"detail": "Store not found"})

    result = await services.connect.build_payment_link(
        line_items=[_stripe_line_item(item) for item in body.line_items],
        total_minor=body.total,
        redirect_url=body.redirect_url or _default_redirect_url(),
        store=store,
        include_shipping=body.include_shipping,
        is_test=body.test_mode,
    )
    fee_info = result.fee_info.to_dict() if result.fee_info else None

    if result.link is None:
        return JSONResponse(
            status_code=502,
            content={"detail": "Payment link could not be created", "fee_info": fee_info},
        )

    extra = {
        "created_from": "checkout_link",
        "stripe_payment_link_url": result.link.get("url"),
        "is_test": body.test_mode,
    }
    if result.fee_info:
        extra.update(result.fee_info.to_extra())

    order = services.documents.create("order", {
        "store_id": store.id,
        "stripe_payment_id": result.link.get("id"),
        "amount": body.total,
        "currency": "USD",
        "status": "open",
        "line_items": [_order_line_item(item) for item in body.line_items],
        "extra": extra,
    })
    logger.info(
        "Checkout link created (store=%s, order_id=%s, link=%s)",
        store.id, order["id"], result.link.get("id"),
    )

    return {
        "url": result.link.get("url"),
        "payment_link_id": result.link.get("id"),
        "order_id": order["id"],
        "fee_info": fee_info,
    }
