"""Funnel definitions, API payloads and the conversation record."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from .events import utc_now_iso

JID_SUFFIX = "@s.whatsapp.net"

StepType = Literal["text", "image", "image+text", "video", "video+text", "audio", "delay", "typing"]
MESSAGE_TYPES = ("text", "image", "image+text", "video", "video+text", "audio")


class FunnelNotFoundError(LookupError):
    """The requested funnel id is not registered."""


class FunnelStep(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    type: StepType
    text: Optional[str] = None
    mediaUrl: Optional[str] = None
    waitForReply: bool = False
    delayBefore: Optional[int] = Field(default=None, ge=0)
    delaySeconds: Optional[int] = Field(default=None, ge=0)
    typingSeconds: Optional[int] = Field(default=None, ge=0)
    showTyping: bool = False
    timeoutMinutes: Optional[float] = Field(default=None, gt=0)
    nextOnReply: Optional[int] = Field(default=None, ge=0)
    nextOnTimeout: Optional[int] = Field(default=None, ge=0)

    @property
    def is_message(self) -> bool:
        return self.type in MESSAGE_TYPES


class Funnel(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    name: str = ""
    steps: List[FunnelStep] = Field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


@dataclass
class Conversation:
    """State of one customer walking through a funnel.

    Keys are camelCase because the file format and the admin API share them.
    """

    remoteJid: str
    funnelId: str
    instanceName: str
    stepIndex: int = 0
    orderCode: Optional[str] = None
    customerName: Optional[str] = None
    productType: Optional[str] = None
    totalPrice: Optional[Any] = None
    waiting_for_response: bool = False
    conversationId: str = field(default_factory=lambda: uuid4().hex)
    lastSystemMessage: str = field(default_factory=utc_now_iso)
    createdAt: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Conversation":
        known = {name for name in cls.__dataclass_fields__}
        return cls(**{key: value for key, value in payload.items() if key in known})


def phone_to_jid(phone: str) -> str:
    digits = "".join(ch for ch in str(phone) if ch.isdigit())
    return digits + JID_SUFFIX


def jid_to_number(remote_jid: str) -> str:
    return remote_jid.replace(JID_SUFFIX, "")
