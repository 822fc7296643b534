"""Committed-operation events and the sink interface that receives them."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List


class EventKind(Enum):
    POOL_CREATED = "pool_created"
    POOL_UPDATED = "pool_updated"
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    BORROW = "borrow"
    REPAY = "repay"
    LIQUIDATE = "liquidate"


@dataclass
class LedgerEvent:
    kind: EventKind
    asset: str
    user: str | None
    amount: int
    timestamp: int
    loan_id: int | None = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data


class EventSink(ABC):
    @abstractmethod
    async def publish(self, event: LedgerEvent) -> None:
        """Receive an event for an operation that has already committed."""
        pass


class MemoryEventSink(EventSink):
    """Keeps every event in order; used by tests and the demo service."""

    def __init__(self):
        self.events: List[LedgerEvent] = []

    async def publish(self, event: LedgerEvent) -> None:
        self.events.append(event)

    def of_kind(self, kind: EventKind) -> List[LedgerEvent]:
        return [e for e in self.events if e.kind is kind]
