"""Inbound webhook payloads from Kirvano (checkout) and Evolution (WhatsApp)."""

from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .engine import FunnelEngine
from .models import JID_SUFFIX, phone_to_jid

SALE_APPROVED = "SALE_APPROVED"
PIX_GENERATED = "PIX_GENERATED"
DEFAULT_PRODUCT = "CS"


def _mapping(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


@dataclass
class KirvanoEvent:
    event: Optional[str]
    status: Optional[str]
    order_code: Optional[str]
    customer_name: Optional[str]
    customer_phone: Optional[str]
    product_type: str
    total_price: Any

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "KirvanoEvent":
        customer = _mapping(data.get("customer"))
        products = data.get("products")
        first_product = _mapping(products[0]) if isinstance(products, list) and products else {}
        fiscal = _mapping(data.get("fiscal"))
        phone = customer.get("phone_number")
        return cls(
            event=data.get("event"),
            status=data.get("status"),
            order_code=data.get("sale_id") or data.get("checkout_id"),
            customer_name=customer.get("name"),
            customer_phone=str(phone) if phone else None,
            product_type=first_product.get("offer_name") or DEFAULT_PRODUCT,
            total_price=fiscal.get("total_value") or data.get("total_price"),
        )

    @property
    def remote_jid(self) -> Optional[str]:
        if not self.customer_phone:
            return None
        remote_jid = phone_to_jid(self.customer_phone)
        return None if remote_jid == JID_SUFFIX else remote_jid

    @property
    def is_approved(self) -> bool:
        return self.event == SALE_APPROVED and self.status == "APPROVED"

    @property
    def is_pix(self) -> bool:
        return self.event == PIX_GENERATED

    def funnel_id(self) -> Optional[str]:
        prefix = "FAB" if self.product_type == "FAB" else "CS"
        if self.is_approved:
            return f"{prefix}_APROVADA"
        if self.is_pix:
            return f"{prefix}_PIX"
        return None


async def process_kirvano_event(engine: FunnelEngine, event: KirvanoEvent) -> Optional[str]:
    """Start the funnel matching ``event`` and return its id, or ``None`` when ignored."""

    remote_jid = event.remote_jid
    funnel_id = event.funnel_id()
    if remote_jid is None or funnel_id is None:
        return None

    engine.cancel_pix_timeout(remote_jid)
    await engine.start_funnel(
        remote_jid, funnel_id, event.order_code, event.customer_name, event.product_type, event.total_price
    )
    if event.is_pix:
        engine.arm_pix_timeout(remote_jid, event.order_code)
    return funnel_id


def token_matches(expected: Optional[str], received: Optional[str]) -> bool:
    if not expected:
        return True
    return hmac.compare_digest(expected.encode("utf-8"), (received or "").encode("utf-8"))


@dataclass
class IncomingMessage:
    remote_jid: str
    from_me: bool

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> Optional["IncomingMessage"]:
        message = _mapping(data.get("data"))
        key = _mapping(message.get("key"))
        remote_jid = key.get("remoteJid")
        if not key or not remote_jid:
            return None
        return cls(remote_jid=str(remote_jid), from_me=bool(key.get("fromMe")))
