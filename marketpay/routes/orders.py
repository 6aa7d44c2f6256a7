"""
Order routes:
- GET   /api/orders/{order_id}
- PATCH /api/orders/{order_id}/status

Setting an order to 'paid' here triggers the inventory reconciliation hook.
"""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from marketpay.models.schemas import Order
from marketpay.services.container import Services, get_services
from marketpay.services.document_store import DocumentNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter()

ORDER_STATUSES = ("open", "pending", "complete", "paid", "refunded", "cancelled")


class OrderStatusUpdate(BaseModel):
    status: str


@router.get("/api/orders/{order_id}")
async def get_order(order_id: int, services: Services = Depends(get_services)):
    order = Order.from_doc(services.documents.find_one("order", order_id))
    if order is None:
        return JSONResponse(status_code=404, content={"detail": "Order not found"})
    return order.to_dict()


@router.patch("/api/orders/{order_id}/status")
async def update_order_status(
    order_id: int,
    body: OrderStatusUpdate,
    services: Services = Depends(get_services),
):
    if body.status not in ORDER_STATUSES:
        return JSONResponse(
            status_code=400,
            content={"detail": f"status must be one of: {', '.join(ORDER_STATUSES)}"},
        )

    try:
        doc = services.documents.update("order", order_id, {"status": body.status})
        services.documents.publish("order", order_id)
    except DocumentNotFoundError:
        return JSONResponse(status_code=404, content={"detail": "Order not found"})

    logger.info("Order status updated (order_id=%s, status=%s)", order_id, body.status)
    return Order.from_doc(services.documents.find_one("order", order_id) or doc).to_dict()
