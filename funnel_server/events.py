"""In-memory journal of funnel activity, exposed through ``/api/logs``."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 100

_ERROR_TYPES = {"ERROR", "SEND_ERROR", "KIRVANO_ERROR", "EVOLUTION_ERROR"}
_WARNING_TYPES = {"WARNING"}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


@dataclass
class Event:
    type: str
    message: str
    data: Optional[Any] = None
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "type": self.type,
            "message": self.message,
            "data": self.data,
        }


class EventLog:
    """Bounded event journal. Every entry is also forwarded to :mod:`logging`."""

    def __init__(self, capacity: int = 500) -> None:
        self._events: Deque[Event] = deque(maxlen=capacity)

    def add(self, type_: str, message: str, data: Optional[Any] = None, echo: bool = True) -> Event:
        event = Event(type=type_, message=message, data=data)
        self._events.append(event)
        if echo:
            level = logging.INFO
            if type_ in _ERROR_TYPES:
                level = logging.ERROR
            elif type_ in _WARNING_TYPES:
                level = logging.WARNING
            if data is not None:
                logger.log(level, "%s: %s | %s", type_, message, data)
            else:
                logger.log(level, "%s: %s", type_, message)
        return event

    def recent(self, limit: int = DEFAULT_LIMIT) -> List[Dict[str, Any]]:
        if limit <= 0:
            limit = DEFAULT_LIMIT
        limit = max(1, min(limit, self.capacity))
        return [event.to_dict() for event in list(self._events)[-limit:]]

    def types(self) -> List[str]:
        return [event.type for event in self._events]

    @property
    def capacity(self) -> int:
        return self._events.maxlen or 0

    def __len__(self) -> int:
        return len(self._events)
