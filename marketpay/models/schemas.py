"""
Data models / type definitions shared across modules.
Plain dataclasses keep things light; there is no ORM.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string (the format used inside extra)."""
    return datetime.now(timezone.utc).isoformat()


def format_minor(amount_minor: int) -> str:
    """Render minor units as a 2-decimal display string: 363 -> '3.63'."""
    return f"{(amount_minor or 0) / 100:.2f}"


@dataclass
class FeeConfig:
    percent_fee_decimal: float
    base_fee_minor: int
    max_fee_minor: int
    fee_minimum_minor: Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Store:
    id: int
    slug: str
    title: Optional[str] = None
    connected_account_id: Optional[str] = None
    settings: dict = field(default_factory=dict)
    fee_overrides: Optional[dict] = None
    users: list = field(default_factory=list)

    @classmethod
    def from_doc(cls, doc: dict | None) -> Optional["Store"]:
        if not doc:
            return None
        return cls(
            id=doc["id"],
            slug=doc.get("slug") or "",
            title=doc.get("title"),
            connected_account_id=doc.get("connected_account_id") or None,
            settings=doc.get("settings") or {},
            fee_overrides=doc.get("fee_overrides"),
            users=doc.get("users") or [],
        )

    def notification_emails(self) -> list[str]:
        """Confirmed store-user e-mails plus the store's support address."""
        emails = []
        for user in self.users:
            email = user.get("email")
            if user.get("confirmed") and email and email not in emails:
                emails.append(email)
        support = self.settings.get("support_email") or self.settings.get("reply_to_email")
        if support and support not in emails:
            emails.append(support)
        return emails


@dataclass
class PriceEntry:
    stripe_id: str
    amount_minor: int = 0
    currency: str = "usd"
    inventory: Optional[int] = None
    name: Optional[str] = None


@dataclass
class LineItem:
    name: str
    product_id: Optional[int]
    quantity: int
    unit_price_minor: int
    total_price_minor: int
    stripe_price_id: Optional[str] = None


@dataclass
class PaymentAttempt:
    timestamp: str
    buyer_email: Optional[str]
    status: str
    reason: str = ""
    session_id: Optional[str] = None


@dataclass
class Order:
    id: int
    amount_minor: int
    currency: str = "USD"
    status: str = "open"
    store_id: Optional[int] = None
    stripe_payment_id: Optional[str] = None
    payment_attempts: list = field(default_factory=list)
    line_items: list = field(default_factory=list)
    shipping_address: dict = field(default_factory=dict)
    buyer_email: Optional[str] = None
    extra: dict = field(default_factory=dict)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    published_at: Optional[str] = None

    @classmethod
    def from_doc(cls, doc: dict | None) -> Optional["Order"]:
        if not doc:
            return None
        return cls(
            id=doc["id"],
            amount_minor=doc.get("amount") or 0,
            currency=doc.get("currency") or "USD",
            status=doc.get("status") or "open",
            store_id=doc.get("store_id"),
            stripe_payment_id=doc.get("stripe_payment_id"),
            payment_attempts=doc.get("payment_attempts") or [],
            line_items=doc.get("line_items") or [],
            shipping_address=doc.get("shipping_address") or {},
            buyer_email=doc.get("buyer_email"),
            extra=doc.get("extra") or {},
            created_at=doc.get("created_at"),
            updated_at=doc.get("updated_at"),
            published_at=doc.get("published_at"),
        )

    def to_dict(self) -> dict:
        return asdict(self)


# ── Sub-records of Order.extra ────────────────────────────
#
# extra is an open bag other writers extend too. Each record below owns a
# fixed set of keys and is written through merge_extra(), never by
# replacing the whole bag.


@dataclass
class FeeInfo:
    application_fee_minor: int
    processor_fee_estimate_minor: int
    net_to_seller_minor: int
    config_source: str
    fee_config: dict
    processing_fees: dict
    breakdown: dict
    connected_account_id: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["application_fee_display"] = format_minor(self.application_fee_minor)
        data["processor_fee_estimate_display"] = format_minor(self.processor_fee_estimate_minor)
        data["net_to_seller_display"] = format_minor(self.net_to_seller_minor)
        return data

    def to_extra(self) -> dict:
        return {"connect_fee_info": self.to_dict()}


@dataclass
class ActualFees:
    fees_minor: int
    net_minor: int
    amount_minor: int
    retrieved_at: str = field(default_factory=utc_now_iso)
    source: str = "balance_transaction"

    def to_dict(self) -> dict:
        return {
            "fees_minor": self.fees_minor,
            "fees_display": format_minor(self.fees_minor),
            "net_minor": self.net_minor,
            "net_display": format_minor(self.net_minor),
            "amount_minor": self.amount_minor,
            "amount_display": format_minor(self.amount_minor),
            "retrieved_at": self.retrieved_at,
            "source": self.source,
        }

    def to_extra(self) -> dict:
        return {
            "stripe_actual_fees": self.to_dict(),
            "fees_retrieval_status": "success",
        }


@dataclass
class FeeRetrievalFailure:
    error: str
    attempted_at: str = field(default_factory=utc_now_iso)

    def to_extra(self) -> dict:
        return {
            "fees_retrieval_status": "failed",
            "fees_retrieval_error": self.error,
            "fees_retrieval_attempted_at": self.attempted_at,
        }


@dataclass
class InventoryMarker:
    decremented_at: str = field(default_factory=utc_now_iso)

    def to_extra(self) -> dict:
        return {
            "inventory_decremented": True,
            "inventory_decremented_at": self.decremented_at,
        }


def merge_extra(existing: dict | None, *patches: Any) -> dict:
    """
    Merge patches into a copy of an extra bag.

    Each patch is either a dict or a record with to_extra(). Keys are merged
    shallowly, later patches win, keys no patch mentions are kept as-is.
    None patches are skipped.
    """
    merged = dict(existing or {})
    for patch in patches:
        if patch is None:
            continue
        if hasattr(patch, "to_extra"):
            patch = patch.to_extra()
        merged.update(patch)
    return merged
