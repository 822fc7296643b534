"""Deposit accounts: share-based positions with lazy interest settlement.

Settlement realizes the supply-rate interest earned since the account was last
touched, folding it into both the account's principal and the pool's deposits.
No shares are minted for interest, so the pool's share price drifts upward as
interest is realized.

Functions that take an account and pool mutate them in place; the ledger
calls them on working copies and only stores the copies once every check and
transfer has succeeded.
"""

from __future__ import annotations

from dataclasses import dataclass
from fractions import Fraction

from lendledger.core.errors import InvalidInput
from lendledger.core.models import DepositAccount, Pool
from lendledger.core.pool import (
    record_deposit,
    record_interest,
    record_withdrawal,
    require_liquidity,
    share_price,
    shares_for_deposit,
)
from lendledger.core.rates import accrue, supply_rate


@dataclass
class DepositPosition:
    """Read-only view of a deposit account as of a given time."""
    user: str
    asset: str
    principal_amount: int
    share_units: int
    accrued_interest: int
    pending_interest: int   # Earned since last_update_time, not yet settled
    last_update_time: int
    share_price: Fraction
    supply_rate: int

    @property
    def balance(self) -> int:
        return self.principal_amount + self.pending_interest


def pending_interest(
    account: DepositAccount, pool: Pool, now: int, seconds_per_year: int
) -> int:
    elapsed = now - account.last_update_time
    return accrue(account.principal_amount, supply_rate(pool), elapsed, seconds_per_year)


def settle(
    account: DepositAccount, pool: Pool, now: int, seconds_per_year: int
) -> int:
    """Realize interest up to ``now``. Returns the amount settled."""
    interest = pending_interest(account, pool, now, seconds_per_year)
    if interest > 0:
        account.accrued_interest += interest
        account.principal_amount += interest
        record_interest(pool, interest)
    account.last_update_time = max(account.last_update_time, now)
    return interest


def mint_shares(account: DepositAccount, pool: Pool, amount: int) -> int:
    """Credit ``amount`` to a settled account. Returns the shares minted."""
    if amount <= 0:
        raise InvalidInput(
            f"Deposit amount must be positive, got {amount}",
            {"check": "amount_positive", "amount": amount},
        )
    shares = shares_for_deposit(pool, amount)
    if shares <= 0:
        raise InvalidInput(
            f"Deposit of {amount} {pool.asset} is too small to mint a share",
            {
                "check": "shares_minted",
                "amount": amount,
                "total_deposits": pool.total_deposits,
                "total_shares": pool.total_shares,
            },
        )
    account.principal_amount += amount
    account.share_units += shares
    record_deposit(pool, amount, shares)
    return shares


def burn_shares(account: DepositAccount, pool: Pool, amount: int) -> int:
    """Debit ``amount`` from a settled account. Returns the shares burned."""
    if amount <= 0:
        raise InvalidInput(
            f"Withdrawal amount must be positive, got {amount}",
            {"check": "amount_positive", "amount": amount},
        )
    if account.principal_amount < amount:
        raise InvalidInput(
            f"Withdrawal of {amount} {pool.asset} exceeds deposit balance "
            f"{account.principal_amount}",
            {
                "check": "deposit_balance",
                "requested": amount,
                "balance": account.principal_amount,
            },
        )
    require_liquidity(pool, amount, "withdrawal")

    if amount == account.principal_amount:
        shares = account.share_units
    else:
        shares = amount * account.share_units // account.principal_amount

    account.principal_amount -= amount
    account.share_units -= shares
    record_withdrawal(pool, amount, shares)
    return shares


def project(
    account: DepositAccount, pool: Pool, now: int, seconds_per_year: int
) -> DepositPosition:
    """Describe ``account`` at ``now`` without settling it."""
    return DepositPosition(
        user=account.user,
        asset=account.asset,
        principal_amount=account.principal_amount,
        share_units=account.share_units,
        accrued_interest=account.accrued_interest,
        pending_interest=pending_interest(account, pool, now, seconds_per_year),
        last_update_time=account.last_update_time,
        share_price=share_price(pool),
        supply_rate=supply_rate(pool),
    )
