"""
Notification service: order e-mails sent through the SendGrid v3 API.

- send: deliver one structured message
- notify_store_of_purchase: tell store staff about a new order
- send_order_notification: order confirmation to the buyer

Without SENDGRID_FROM_EMAIL / SENDGRID_REPLY_TO_EMAIL the helpers skip
sending and return False.
"""

import logging
import os

import httpx

from marketpay.models.schemas import Order, Store
from marketpay.services.email_templates import order_confirmation_html, store_order_html

logger = logging.getLogger(__name__)

SENDGRID_API_URL = "https://api.sendgrid.com/v3/mail/send"


class NotifierError(Exception):
    """E-mail delivery failed."""
    pass


def _as_list(value) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return [v for v in value if v]


class Notifier:
    """Sends structured e-mail messages."""

    def __init__(
        self,
        api_key: str | None = None,
        from_email: str | None = None,
        reply_to: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.from_email = from_email
        self.reply_to = reply_to
        self._transport = transport

    @classmethod
    def from_env(cls) -> "Notifier":
        return cls(
            api_key=os.getenv("SENDGRID_API_KEY"),
            from_email=os.getenv("SENDGRID_FROM_EMAIL"),
            reply_to=os.getenv("SENDGRID_REPLY_TO_EMAIL"),
        )

    @property
    def configured(self) -> bool:
        return bool(self.from_email and self.reply_to)

    def _payload(self, message: dict) -> dict:
        personalization = {"to": [{"email": e} for e in _as_list(message.get("to"))]}
        cc = [e for e in _as_list(message.get("cc")) if e not in _as_list(message.get("to"))]
        if cc:
            personalization["cc"] = [{"email": e} for e in cc]

        content = [{"type": "text/plain", "value": message.get("text") or ""}]
        if message.get("html"):
            content.append({"type": "text/html", "value": message["html"]})

        payload = {
            "personalizations": [personalization],
            "from": {"email": message.get("from") or self.from_email},
            "subject": message.get("subject") or "",
            "content": content,
        }
        reply_to = message.get("reply_to") or self.reply_to
        if reply_to:
            payload["reply_to"] = {"email": reply_to}
        return payload

    async def send(self, message: dict) -> None:
        """
        Deliver a message: {to, from, cc, reply_to, subject, text, html}.

        Raises:
            NotifierError: no API key, no recipient, or the API call failed.
        """
        if not self.api_key:
            raise NotifierError("SENDGRID_API_KEY is not configured")
        if not _as_list(message.get("to")):
            raise NotifierError("Message has no recipient")

        try:
            async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
                resp = await client.post(
                    SENDGRID_API_URL,
                    json=self._payload(message),
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
        except httpx.HTTPError as e:
            raise NotifierError(f"E-mail request failed: {e}")

        if resp.status_code >= 400:
            raise NotifierError(f"E-mail API returned {resp.status_code}: {resp.text[:200]}")

    async def notify_store_of_purchase(self, order: Order, emails: list[str], store: Store | None) -> bool:
        logger.info(
            "Store purchase notification (order_id=%s, recipients=%d)",
            order.id, len(emails),
        )
        if not self.configured or not emails:
            logger.info("Store notification skipped (order_id=%s): sender not configured or no recipients", order.id)
            return False

        await self.send({
            "to": emails,
            "from": self.from_email,
            "cc": self.reply_to,
            "reply_to": self.reply_to,
            "subject": "Order Notification",
            "text": "New order in your store! - log in to view details",
            "html": store_order_html(order, store),
        })
        return True

    async def send_order_notification(self, order: Order, store: Store | None = None) -> bool:
        buyer_email = order.buyer_email or (order.shipping_address or {}).get("email")
        logger.info("Buyer order confirmation (order_id=%s)", order.id)
        if not self.configured or not buyer_email:
            logger.info("Buyer confirmation skipped (order_id=%s): sender not configured or no buyer e-mail", order.id)
            return False

        await self.send({
            "to": buyer_email,
            "from": self.from_email,
            "cc": self.reply_to,
            "reply_to": self.reply_to,
            "subject": "Order Confirmation",
            "text": "Thank you for your order!",
            "html": order_confirmation_html(order, store),
        })
        return True
