"""In-process custody for running the ledger without an external settlement layer.

Balances are tracked per (asset, holder). A transfer that would overdraw the
payer returns False instead of raising, which is how a real transfer layer
reports a refused movement to the ledger.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Tuple

from lendledger.services.base import AssetTransferService

logger = logging.getLogger(__name__)


@dataclass
class TransferRecord:
    asset: str
    sender: str
    recipient: str
    amount: int


class InMemoryCustody(AssetTransferService):
    def __init__(self, custody_account: str = "ledger"):
        self._custody_account = custody_account
        self._balances: Dict[Tuple[str, str], int] = defaultdict(int)
        self.history: List[TransferRecord] = []

    @property
    def custody_account(self) -> str:
        return self._custody_account

    def balance_of(self, asset: str, holder: str) -> int:
        return self._balances.get((asset, holder), 0)

    def custody_balance(self, asset: str) -> int:
        return self.balance_of(asset, self._custody_account)

    def mint(self, asset: str, holder: str, amount: int) -> None:
        """Credit ``holder`` out of thin air (funding wallets, seeding bonus reserves)."""
        if amount < 0:
            raise ValueError(f"Cannot mint a negative amount: {amount}")
        self._balances[(asset, holder)] += amount

    def _move(self, asset: str, sender: str, recipient: str, amount: int) -> bool:
        if amount < 0:
            return False
        available = self.balance_of(asset, sender)
        if available < amount:
            logger.warning(
                f"Transfer of {amount} {asset} from {sender} refused: balance {available}"
            )
            return False
        self._balances[(asset, sender)] = available - amount
        self._balances[(asset, recipient)] += amount
        self.history.append(TransferRecord(asset, sender, recipient, amount))
        return True

    async def transfer_in(self, asset: str, sender: str, amount: int) -> bool:
        return self._move(asset, sender, self._custody_account, amount)

    async def transfer_out(self, asset: str, recipient: str, amount: int) -> bool:
        return self._move(asset, self._custody_account, recipient, amount)
