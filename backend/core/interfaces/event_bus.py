# core/interfaces/event_bus.py
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Any

from core.base import utcnow


@dataclass
class Event:
    event_type: str     # e.g. "license.created", "payment.completed"
    source_module: str  # e.g. "licenses", "policy"
    data: dict
    event_id: str = field(default_factory=lambda: f"evt_{uuid.uuid4().hex}")
    occurred_at: datetime = field(default_factory=utcnow)


class EventBus(ABC):
    """Central pub/sub for cross-module communication."""

    @abstractmethod
    def publish(self, event: Event) -> None: ...

    @abstractmethod
    def subscribe(self, event_type: str, handler: Callable[[Event], Any]) -> None: ...

    @abstractmethod
    def unsubscribe(self, event_type: str, handler: Callable) -> None: ...
