"""Collaborator interfaces consumed by the ledger.

The ledger never moves assets or reads the time itself. It is given an
``AssetTransferService`` that custodies and releases tokens, and a ``Clock``
that supplies integer timestamps in seconds.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod


class AssetTransferService(ABC):
    @property
    @abstractmethod
    def custody_account(self) -> str:
        """Holder name of the ledger's own balance."""
        pass

    @abstractmethod
    async def transfer_in(self, asset: str, sender: str, amount: int) -> bool:
        """Move ``amount`` of ``asset`` from ``sender`` into custody."""
        pass

    @abstractmethod
    async def transfer_out(self, asset: str, recipient: str, amount: int) -> bool:
        """Move ``amount`` of ``asset`` from custody to ``recipient``."""
        pass


class Clock(ABC):
    @abstractmethod
    def now(self) -> int:
        pass

    def __call__(self) -> int:
        return self.now()


class SystemClock(Clock):
    def now(self) -> int:
        return int(time.time())


class ManualClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, start: int = 0):
        self._now = start

    def now(self) -> int:
        return self._now

    def advance(self, seconds: int) -> int:
        if seconds < 0:
            raise ValueError("ManualClock cannot move backwards")
        self._now += seconds
        return self._now

    def set(self, timestamp: int) -> None:
        self._now = timestamp
