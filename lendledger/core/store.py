"""In-memory record store owned by the ledger.

Records are handed out as copies through the ``checkout_*`` methods; changes
become visible only when the copies are passed back to ``commit``.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Dict, Iterable, List, Tuple

from lendledger.core.errors import InvalidInput, PoolUnavailable
from lendledger.core.models import DepositAccount, LoanAccount, Pool


class LedgerStore:
    def __init__(self):
        self._pools: Dict[str, Pool] = {}
        self._deposits: Dict[Tuple[str, str], DepositAccount] = {}
        self._loans: Dict[Tuple[str, int], LoanAccount] = {}
        self._next_loan_id: Dict[str, int] = {}

    # Pools

    def add_pool(self, pool: Pool) -> None:
        if pool.asset in self._pools:
            raise InvalidInput(
                f"Pool for {pool.asset} already exists",
                {"check": "pool_unique", "asset": pool.asset},
            )
        self._pools[pool.asset] = replace(pool)

    def get_pool(self, asset: str) -> Pool:
        pool = self._pools.get(asset)
        if pool is None:
            raise PoolUnavailable(
                f"No pool for asset {asset}", {"check": "pool_exists", "asset": asset}
            )
        return pool

    def checkout_pool(self, asset: str) -> Pool:
        return replace(self.get_pool(asset))

    def pools(self) -> List[Pool]:
        return list(self._pools.values())

    # Deposit accounts

    def get_deposit(self, user: str, asset: str) -> DepositAccount | None:
        return self._deposits.get((user, asset))

    def checkout_deposit(self, user: str, asset: str, now: int) -> DepositAccount:
        """Copy of the user's account, or a fresh one starting at ``now``."""
        account = self._deposits.get((user, asset))
        if account is None:
            return DepositAccount(user=user, asset=asset, last_update_time=now)
        return replace(account)

    def deposits_for_asset(self, asset: str) -> List[DepositAccount]:
        return [a for (_, a_asset), a in self._deposits.items() if a_asset == asset]

    # Loans

    def get_loan(self, user: str, loan_id: int) -> LoanAccount:
        loan = self._loans.get((user, loan_id))
        if loan is None:
            raise InvalidInput(
                f"Unknown loan {loan_id} for {user}",
                {"check": "loan_exists", "user": user, "loan_id": loan_id},
            )
        return loan

    def checkout_loan(self, user: str, loan_id: int) -> LoanAccount:
        return replace(self.get_loan(user, loan_id))

    def peek_loan_id(self, user: str) -> int:
        return self._next_loan_id.get(user, 0)

    def loans_for(self, user: str) -> List[LoanAccount]:
        return sorted(
            (loan for (owner, _), loan in self._loans.items() if owner == user),
            key=lambda loan: loan.loan_id,
        )

    def active_loans(self, asset: str | None = None) -> List[LoanAccount]:
        return [
            loan
            for loan in self._loans.values()
            if loan.active and (asset is None or loan.borrow_asset == asset)
        ]

    # Commit

    def commit(
        self,
        pools: Iterable[Pool] = (),
        deposits: Iterable[DepositAccount] = (),
        loans: Iterable[LoanAccount] = (),
    ) -> None:
        for pool in pools:
            self._pools[pool.asset] = pool
        for account in deposits:
            self._deposits[(account.user, account.asset)] = account
        for loan in loans:
            key = (loan.user, loan.loan_id)
            if key not in self._loans:
                self._next_loan_id[loan.user] = max(
                    self.peek_loan_id(loan.user), loan.loan_id + 1
                )
            self._loans[key] = loan
