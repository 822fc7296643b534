"""Lifecycle orchestrator for the lending ledger.

Every state-changing operation follows the same shape while holding the
ledger lock:

1. read the clock once and check out working copies of the touched records,
2. settle accrued interest on those copies,
3. run every precondition check and compute the resulting amounts,
4. perform the asset transfers (reversing any already done if one fails),
5. commit the copies to the store and publish the event.

Nothing reaches the store before step 5, so a rejected operation or failed
transfer leaves no trace.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List

from lendledger.core import deposits, loans
from lendledger.core.errors import InvalidInput, LoanNotLiquidatable, PoolUnavailable, TransferFailed
from lendledger.core.events import EventKind, EventSink, LedgerEvent
from lendledger.core.loans import LoanPosition
from lendledger.core.models import LoanAccount, LoanStatus, Pool, RiskParameters
from lendledger.core.pool import (
    PoolSummary,
    draw_reserves,
    record_borrow,
    record_repayment,
    require_liquidity,
    summarize,
)
from lendledger.core.rates import validate_rate_params
from lendledger.core.store import LedgerStore
from lendledger.services.base import AssetTransferService, Clock, SystemClock
from lendledger.services.metrics import track_operation

logger = logging.getLogger(__name__)


@dataclass
class Transfer:
    direction: str  # "in" (party -> custody) or "out" (custody -> party)
    asset: str
    party: str
    amount: int

    def reversed(self) -> Transfer:
        return Transfer(
            direction="out" if self.direction == "in" else "in",
            asset=self.asset,
            party=self.party,
            amount=self.amount,
        )


@dataclass
class LiquidationResult:
    loan: LoanPosition
    liquidator: str
    debt_repaid: int
    collateral_paid: int  # Posted collateral plus bonus
    bonus_paid: int
    collateral_ratio: int  # Ratio that made the loan eligible


def _require_amount(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInput(
            f"{name} must be an integer amount, got {value!r}",
            {"check": "amount_integer", "field": name, "value": repr(value)},
        )
    if value <= 0:
        raise InvalidInput(
            f"{name} must be positive, got {value}",
            {"check": "amount_positive", "field": name, "value": value},
        )
    return value


def _require_active(pool: Pool) -> None:
    if not pool.active:
        raise PoolUnavailable(
            f"Pool for {pool.asset} is not active",
            {"check": "pool_active", "asset": pool.asset},
        )


def _pool_details(pool: Pool) -> Dict[str, Any]:
    summary = summarize(pool)
    return {
        "asset": summary.asset,
        "total_deposits": summary.total_deposits,
        "total_borrows": summary.total_borrows,
        "total_shares": summary.total_shares,
        "utilization": summary.utilization,
        "borrow_rate": summary.borrow_rate,
        "supply_rate": summary.supply_rate,
    }


class LendingLedger:
    """Pools, deposit accounts and loans behind a single serializing lock."""

    def __init__(
        self,
        transfers: AssetTransferService,
        clock: Clock | None = None,
        risk: RiskParameters | None = None,
        sinks: Iterable[EventSink] = (),
        store: LedgerStore | None = None,
    ):
        self._transfers = transfers
        self._clock = clock or SystemClock()
        self._risk = risk or RiskParameters()
        self._sinks: List[EventSink] = list(sinks)
        self._store = store or LedgerStore()
        self._lock = asyncio.Lock()
        self._last_now = 0

    @property
    def risk(self) -> RiskParameters:
        return self._risk

    @property
    def store(self) -> LedgerStore:
        return self._store

    def add_sink(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    def _now(self) -> int:
        now = int(self._clock())
        if now < self._last_now:
            logger.warning(
                f"Clock moved backwards ({now} < {self._last_now}); using last observed time"
            )
            return self._last_now
        self._last_now = now
        return now

    def _require_party(self, role: str, name: str) -> None:
        """Parties must be named and must not be the custody account itself."""
        if not name:
            raise InvalidInput(f"{role} must not be empty", {"check": "party_name", "role": role})
        if name == self._transfers.custody_account:
            raise InvalidInput(
                f"{role} cannot be the custody account {name!r}",
                {"check": "party_not_custody", "role": role, "party": name},
            )

    # ------------------------------------------------------------------
    # Transfers and events
    # ------------------------------------------------------------------

    async def _execute(self, transfer: Transfer) -> bool:
        try:
            if transfer.direction == "in":
                return await self._transfers.transfer_in(
                    transfer.asset, transfer.party, transfer.amount
                )
            return await self._transfers.transfer_out(
                transfer.asset, transfer.party, transfer.amount
            )
        except Exception as e:
            logger.error(
                f"Transfer {transfer.direction} of {transfer.amount} {transfer.asset} "
                f"for {transfer.party} raised: {e}"
            )
            return False

    async def _run_transfers(self, operation: str, transfers: List[Transfer]) -> None:
        """Execute transfers in order; on failure undo the completed ones and raise."""
        completed: List[Transfer] = []
        for transfer in transfers:
            if transfer.amount == 0:
                continue
            if await self._execute(transfer):
                completed.append(transfer)
                continue

            for done in reversed(completed):
                if not await self._execute(done.reversed()):
                    logger.error(
                        f"Could not reverse {done.direction} transfer of {done.amount} "
                        f"{done.asset} for {done.party} during failed {operation}"
                    )
            raise TransferFailed(
                f"{operation}: transfer {transfer.direction} of {transfer.amount} "
                f"{transfer.asset} for {transfer.party} failed",
                {
                    "check": "transfer",
                    "operation": operation,
                    "direction": transfer.direction,
                    "asset": transfer.asset,
                    "party": transfer.party,
                    "amount": transfer.amount,
                    "reversed": len(completed),
                },
            )

    async def _publish(self, event: LedgerEvent) -> None:
        for sink in self._sinks:
            try:
                await sink.publish(event)
            except Exception as e:
                logger.error(f"Event sink {type(sink).__name__} failed on {event.kind.value}: {e}")

    # ------------------------------------------------------------------
    # Pool administration
    # ------------------------------------------------------------------

    async def create_pool(
        self,
        asset: str,
        base_rate: int,
        multiplier: int,
        jump_multiplier: int,
        optimal_utilization: int,
        reserve_factor: int | None = None,
    ) -> PoolSummary:
        if reserve_factor is None:
            reserve_factor = self._risk.default_reserve_factor
        if not asset:
            raise InvalidInput("Asset name must not be empty", {"check": "asset_name"})
        try:
            validate_rate_params(
                base_rate, multiplier, jump_multiplier, optimal_utilization, reserve_factor
            )
        except ValueError as e:
            raise InvalidInput(str(e), {"check": "rate_params", "asset": asset}) from e

        async with self._lock:
            now = self._now()
            pool = Pool(
                asset=asset,
                base_rate=base_rate,
                multiplier=multiplier,
                jump_multiplier=jump_multiplier,
                optimal_utilization=optimal_utilization,
                reserve_factor=reserve_factor,
                created_at=now,
            )
            self._store.add_pool(pool)
            logger.info(f"Created pool {asset}")
            await self._publish(
                LedgerEvent(
                    kind=EventKind.POOL_CREATED,
                    asset=asset,
                    user=None,
                    amount=0,
                    timestamp=now,
                    details={"pool": _pool_details(pool)},
                )
            )
        return summarize(pool)

    async def update_rate_params(
        self,
        asset: str,
        base_rate: int | None = None,
        multiplier: int | None = None,
        jump_multiplier: int | None = None,
        optimal_utilization: int | None = None,
        reserve_factor: int | None = None,
    ) -> PoolSummary:
        """Change a pool's curve; unspecified parameters keep their values."""
        async with self._lock:
            now = self._now()
            pool = self._store.checkout_pool(asset)
            if base_rate is not None:
                pool.base_rate = base_rate
            if multiplier is not None:
                pool.multiplier = multiplier
            if jump_multiplier is not None:
                pool.jump_multiplier = jump_multiplier
            if optimal_utilization is not None:
                pool.optimal_utilization = optimal_utilization
            if reserve_factor is not None:
                pool.reserve_factor = reserve_factor
            try:
                validate_rate_params(
                    pool.base_rate,
                    pool.multiplier,
                    pool.jump_multiplier,
                    pool.optimal_utilization,
                    pool.reserve_factor,
                )
            except ValueError as e:
                raise InvalidInput(str(e), {"check": "rate_params", "asset": asset}) from e

            self._store.commit(pools=[pool])
            logger.info(f"Updated rate parameters for pool {asset}")
            await self._publish(
                LedgerEvent(
                    kind=EventKind.POOL_UPDATED,
                    asset=asset,
                    user=None,
                    amount=0,
                    timestamp=now,
                    details={"pool": _pool_details(pool)},
                )
            )
        return summarize(pool)

    async def set_pool_active(self, asset: str, active: bool) -> PoolSummary:
        async with self._lock:
            now = self._now()
            pool = self._store.checkout_pool(asset)
            pool.active = active
            self._store.commit(pools=[pool])
            logger.info(f"Pool {asset} {'activated' if active else 'deactivated'}")
            await self._publish(
                LedgerEvent(
                    kind=EventKind.POOL_UPDATED,
                    asset=asset,
                    user=None,
                    amount=0,
                    timestamp=now,
                    details={"active": active, "pool": _pool_details(pool)},
                )
            )
        return summarize(pool)

    # ------------------------------------------------------------------
    # Deposits
    # ------------------------------------------------------------------

    @track_operation("deposit")
    async def deposit(self, user: str, asset: str, amount: int) -> deposits.DepositPosition:
        self._require_party("user", user)
        _require_amount("amount", amount)
        async with self._lock:
            now = self._now()
            pool = self._store.checkout_pool(asset)
            _require_active(pool)
            account = self._store.checkout_deposit(user, asset, now)

            settled = deposits.settle(account, pool, now, self._risk.seconds_per_year)
            shares = deposits.mint_shares(account, pool, amount)

            await self._run_transfers("deposit", [Transfer("in", asset, user, amount)])

            self._store.commit(pools=[pool], deposits=[account])
            logger.info(f"Deposit: {user} supplied {amount} {asset} for {shares} shares")
            await self._publish(
                LedgerEvent(
                    kind=EventKind.DEPOSIT,
                    asset=asset,
                    user=user,
                    amount=amount,
                    timestamp=now,
                    details={
                        "shares": shares,
                        "interest_settled": settled,
                        "pool": _pool_details(pool),
                    },
                )
            )
            return deposits.project(account, pool, now, self._risk.seconds_per_year)

    @track_operation("withdraw")
    async def withdraw(self, user: str, asset: str, amount: int) -> deposits.DepositPosition:
        self._require_party("user", user)
        _require_amount("amount", amount)
        async with self._lock:
            now = self._now()
            pool = self._store.checkout_pool(asset)
            if self._store.get_deposit(user, asset) is None:
                raise InvalidInput(
                    f"{user} has no {asset} deposit",
                    {"check": "deposit_exists", "user": user, "asset": asset},
                )
            account = self._store.checkout_deposit(user, asset, now)

            settled = deposits.settle(account, pool, now, self._risk.seconds_per_year)
            shares = deposits.burn_shares(account, pool, amount)

            await self._run_transfers("withdraw", [Transfer("out", asset, user, amount)])

            self._store.commit(pools=[pool], deposits=[account])
            logger.info(f"Withdraw: {user} took {amount} {asset}, burning {shares} shares")
            await self._publish(
                LedgerEvent(
                    kind=EventKind.WITHDRAW,
                    asset=asset,
                    user=user,
                    amount=amount,
                    timestamp=now,
                    details={
                        "shares": shares,
                        "interest_settled": settled,
                        "pool": _pool_details(pool),
                    },
                )
            )
            return deposits.project(account, pool, now, self._risk.seconds_per_year)

    # ------------------------------------------------------------------
    # Loans
    # ------------------------------------------------------------------

    @track_operation("borrow")
    async def borrow(
        self,
        user: str,
        borrow_asset: str,
        borrow_amount: int,
        collateral_asset: str,
        collateral_amount: int,
    ) -> LoanPosition:
        self._require_party("user", user)
        _require_amount("borrow_amount", borrow_amount)
        _require_amount("collateral_amount", collateral_amount)
        loans.validate_borrow_request(
            borrow_asset, borrow_amount, collateral_asset, collateral_amount
        )
        async with self._lock:
            now = self._now()
            pool = self._store.checkout_pool(borrow_asset)
            _require_active(pool)
            _require_active(self._store.get_pool(collateral_asset))
            require_liquidity(pool, borrow_amount, "borrow")
            ratio = loans.require_opening_ratio(borrow_amount, collateral_amount, self._risk)

            loan = LoanAccount(
                user=user,
                loan_id=self._store.peek_loan_id(user),
                borrow_asset=borrow_asset,
                principal=borrow_amount,
                collateral_asset=collateral_asset,
                collateral_amount=collateral_amount,
                borrow_time=now,
                last_update_time=now,
            )
            record_borrow(pool, borrow_amount)

            await self._run_transfers(
                "borrow",
                [
                    Transfer("in", collateral_asset, user, collateral_amount),
                    Transfer("out", borrow_asset, user, borrow_amount),
                ],
            )

            self._store.commit(pools=[pool], loans=[loan])
            logger.info(
                f"Borrow: {user} loan {loan.loan_id} took {borrow_amount} {borrow_asset} "
                f"against {collateral_amount} {collateral_asset} ({ratio} bps)"
            )
            await self._publish(
                LedgerEvent(
                    kind=EventKind.BORROW,
                    asset=borrow_asset,
                    user=user,
                    amount=borrow_amount,
                    timestamp=now,
                    loan_id=loan.loan_id,
                    details={
                        "collateral_asset": collateral_asset,
                        "collateral_amount": collateral_amount,
                        "collateral_ratio": ratio,
                        "pool": _pool_details(pool),
                    },
                )
            )
            return loans.describe(loan, pool, now, self._risk.seconds_per_year)

    def _checkout_active_loan(self, user: str, loan_id: int) -> LoanAccount:
        loan = self._store.checkout_loan(user, loan_id)
        if not loan.active:
            raise InvalidInput(
                f"Loan {loan_id} for {user} is already {loan.status.value}",
                {"check": "loan_active", "user": user, "loan_id": loan_id,
                 "status": loan.status.value},
            )
        return loan

    @track_operation("repay")
    async def repay_loan(self, user: str, loan_id: int) -> LoanPosition:
        """Repay principal plus live interest and release the collateral in full."""
        self._require_party("user", user)
        async with self._lock:
            now = self._now()
            loan = self._checkout_active_loan(user, loan_id)
            pool = self._store.checkout_pool(loan.borrow_asset)

            interest = loans.settle_loan(loan, pool, now, self._risk.seconds_per_year)
            debt = loan.principal + interest
            record_repayment(pool, loan.principal, interest)
            loans.close_loan(loan, LoanStatus.REPAID, now)

            await self._run_transfers(
                "repay",
                [
                    Transfer("in", loan.borrow_asset, user, debt),
                    Transfer("out", loan.collateral_asset, user, loan.collateral_amount),
                ],
            )

            self._store.commit(pools=[pool], loans=[loan])
            logger.info(
                f"Repay: {user} loan {loan_id} paid {debt} {loan.borrow_asset} "
                f"({interest} interest)"
            )
            await self._publish(
                LedgerEvent(
                    kind=EventKind.REPAY,
                    asset=loan.borrow_asset,
                    user=user,
                    amount=debt,
                    timestamp=now,
                    loan_id=loan_id,
                    details={
                        "principal": loan.principal,
                        "interest": interest,
                        "collateral_asset": loan.collateral_asset,
                        "collateral_returned": loan.collateral_amount,
                        "pool": _pool_details(pool),
                    },
                )
            )
            return loans.describe(loan, pool, now, self._risk.seconds_per_year)

    @track_operation("liquidate")
    async def liquidate(self, liquidator: str, borrower: str, loan_id: int) -> LiquidationResult:
        """Repay an undercollateralized loan on the borrower's behalf for a collateral bonus."""
        self._require_party("liquidator", liquidator)
        self._require_party("borrower", borrower)
        if liquidator == borrower:
            raise InvalidInput(
                "A borrower cannot liquidate their own loan",
                {"check": "liquidator_distinct", "user": borrower, "loan_id": loan_id},
            )
        async with self._lock:
            now = self._now()
            loan = self._checkout_active_loan(borrower, loan_id)
            pool = self._store.checkout_pool(loan.borrow_asset)

            ratio = loans.collateral_ratio(loan, pool, now, self._risk.seconds_per_year)
            if ratio >= self._risk.liquidation_threshold:
                raise LoanNotLiquidatable(
                    f"Loan {loan_id} for {borrower} is at {ratio} bps, not below "
                    f"{self._risk.liquidation_threshold} bps",
                    {
                        "check": "liquidation_threshold",
                        "ratio": ratio,
                        "threshold": self._risk.liquidation_threshold,
                        "user": borrower,
                        "loan_id": loan_id,
                    },
                )

            interest = loans.settle_loan(loan, pool, now, self._risk.seconds_per_year)
            debt = loan.principal + interest
            record_repayment(pool, loan.principal, interest)
            loans.close_loan(loan, LoanStatus.LIQUIDATED, now)

            # Bonus is paid out of the collateral pool's reserves, capped at what they hold
            collateral_pool = self._store.checkout_pool(loan.collateral_asset)
            wanted = loans.liquidation_bonus(loan, self._risk)
            bonus = draw_reserves(collateral_pool, wanted)
            if bonus < wanted:
                logger.warning(
                    f"Liquidation bonus on {borrower} loan {loan_id} capped at {bonus} "
                    f"{loan.collateral_asset}: reserves cannot cover {wanted}"
                )
            payout = loan.collateral_amount + bonus

            await self._run_transfers(
                "liquidate",
                [
                    Transfer("in", loan.borrow_asset, liquidator, debt),
                    Transfer("out", loan.collateral_asset, liquidator, payout),
                ],
            )

            self._store.commit(pools=[pool, collateral_pool], loans=[loan])
            logger.info(
                f"Liquidate: {liquidator} repaid {debt} {loan.borrow_asset} on {borrower} "
                f"loan {loan_id} at {ratio} bps for {payout} {loan.collateral_asset}"
            )
            await self._publish(
                LedgerEvent(
                    kind=EventKind.LIQUIDATE,
                    asset=loan.borrow_asset,
                    user=borrower,
                    amount=debt,
                    timestamp=now,
                    loan_id=loan_id,
                    details={
                        "liquidator": liquidator,
                        "principal": loan.principal,
                        "interest": interest,
                        "collateral_ratio": ratio,
                        "collateral_asset": loan.collateral_asset,
                        "collateral_paid": payout,
                        "bonus_paid": bonus,
                        "collateral_reserves": collateral_pool.total_reserves,
                        "pool": _pool_details(pool),
                    },
                )
            )
            return LiquidationResult(
                loan=loans.describe(loan, pool, now, self._risk.seconds_per_year),
                liquidator=liquidator,
                debt_repaid=debt,
                collateral_paid=payout,
                bonus_paid=bonus,
                collateral_ratio=ratio,
            )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_supported_assets(self) -> List[str]:
        return sorted(pool.asset for pool in self._store.pools() if pool.active)

    def get_pool_summary(self, asset: str) -> PoolSummary:
        return summarize(self._store.get_pool(asset))

    def get_deposit(self, user: str, asset: str) -> deposits.DepositPosition:
        pool = self._store.get_pool(asset)
        now = self._now()
        account = self._store.get_deposit(user, asset)
        if account is None:
            account = self._store.checkout_deposit(user, asset, now)
        return deposits.project(account, pool, now, self._risk.seconds_per_year)

    def get_loan(self, user: str, loan_id: int) -> LoanPosition:
        loan = self._store.get_loan(user, loan_id)
        pool = self._store.get_pool(loan.borrow_asset)
        return loans.describe(loan, pool, self._now(), self._risk.seconds_per_year)

    def list_loans(self, user: str) -> List[LoanPosition]:
        now = self._now()
        return [
            loans.describe(loan, self._store.get_pool(loan.borrow_asset), now,
                           self._risk.seconds_per_year)
            for loan in self._store.loans_for(user)
        ]

    def get_loan_interest(self, user: str, loan_id: int) -> int:
        loan = self._store.get_loan(user, loan_id)
        pool = self._store.get_pool(loan.borrow_asset)
        return loans.debt_interest(loan, pool, self._now(), self._risk.seconds_per_year)

    def get_collateral_ratio(self, user: str, loan_id: int) -> int:
        loan = self._store.get_loan(user, loan_id)
        if not loan.active:
            return 0
        pool = self._store.get_pool(loan.borrow_asset)
        return loans.collateral_ratio(loan, pool, self._now(), self._risk.seconds_per_year)

    def find_liquidatable_loans(self) -> List[LoanPosition]:
        now = self._now()
        found = []
        for loan in self._store.active_loans():
            pool = self._store.get_pool(loan.borrow_asset)
            if loans.is_liquidatable(loan, pool, now, self._risk):
                found.append(loans.describe(loan, pool, now, self._risk.seconds_per_year))
        return sorted(found, key=lambda p: p.collateral_ratio)
