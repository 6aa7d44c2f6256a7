"""HTML bodies for order e-mails. Every interpolated value is escaped."""

import os
from html import escape

from marketpay.models.schemas import format_minor


def _receipt_url(session_id: str | None) -> str:
    base = os.getenv("RECEIPT_URL", "https://markket.place/receipt")
    return f"{base}?session_id={session_id or ''}"


def _layout(title: str, content: str, store_title: str | None = None) -> str:
    footer = escape(store_title) if store_title else "Markket"
    return f"""<!DOCTYPE html>
<html>
  <head><meta charset="utf-8"><title>{escape(title)}</title></head>
  <body style="font-family: Arial, sans-serif; color: #222;">
    <div style="max-width: 600px; margin: 0 auto; padding: 24px;">
      {content}
      <p style="color: #888; font-size: 12px;">{footer}</p>
    </div>
  </body>
</html>"""


def _items_html(line_items: list) -> str:
    rows = []
    for item in line_items:
        rows.append(
            "<tr><td>{name}</td><td>{qty}</td><td>{total}</td></tr>".format(
                name=escape(str(item.get("name") or "")),
                qty=escape(str(item.get("quantity") or 1)),
                total=format_minor(item.get("total_price_minor") or 0),
            )
        )
    if not rows:
        return ""
    return (
        "<table><tr><th>Item</th><th>Qty</th><th>Total</th></tr>"
        + "".join(rows)
        + "</table>"
    )


def order_confirmation_html(order, store=None) -> str:
    """Buyer-facing confirmation."""
    session_id = order.extra.get("stripe_session_id")
    content = f"""
      <h1>Order Confirmation</h1>
      <p>Thank you for your order!</p>
      <p>Order ID: {escape(str(order.id))}</p>
      <p>Total: {format_minor(order.amount_minor)} {escape(order.currency)}</p>
      {_items_html(order.line_items)}
      <p><a href="{escape(_receipt_url(session_id))}">View Receipt</a></p>
    """
    return _layout("Order Confirmation", content, getattr(store, "title", None))


def store_order_html(order, store=None) -> str:
    """Seller-facing purchase notification."""
    shipping = order.shipping_address or {}
    content = f"""
      <h1>New order in your store</h1>
      <p>Order ID: {escape(str(order.id))}</p>
      <p>Total: {format_minor(order.amount_minor)} {escape(order.currency)}</p>
      <p>Buyer: {escape(order.buyer_email or shipping.get("email") or "unknown")}</p>
      {_items_html(order.line_items)}
      <p>Log in to your dashboard to view the details.</p>
    """
    return _layout("Order Notification", content, getattr(store, "title", None))
