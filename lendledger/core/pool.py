"""Pool ledger: aggregate deposits, borrows and share supply per asset.

Mutators here never validate; the ledger checks every precondition first and
only then applies these paired updates.
"""

from dataclasses import dataclass
from fractions import Fraction

from lendledger.core.errors import InsufficientLiquidity
from lendledger.core.models import BPS, Pool
from lendledger.core.rates import borrow_rate, supply_rate, utilization


def share_price(pool: Pool) -> Fraction:
    """Deposited units per share unit (1 before the first deposit)."""
    if pool.total_shares <= 0 or pool.total_deposits <= 0:
        return Fraction(1)
    return Fraction(pool.total_deposits, pool.total_shares)


def shares_for_deposit(pool: Pool, amount: int) -> int:
    """Share units minted for ``amount`` at the current share price."""
    if pool.total_deposits <= 0 or pool.total_shares <= 0:
        return amount
    return amount * pool.total_shares // pool.total_deposits


def require_liquidity(pool: Pool, amount: int, operation: str) -> None:
    available = pool.available_liquidity
    if amount > available:
        raise InsufficientLiquidity(
            f"{operation} of {amount} {pool.asset} exceeds available liquidity {available}",
            {
                "check": "available_liquidity",
                "asset": pool.asset,
                "requested": amount,
                "available": available,
            },
        )


def is_solvent(pool: Pool) -> bool:
    return 0 <= pool.total_borrows <= pool.total_deposits


def record_deposit(pool: Pool, amount: int, shares: int) -> None:
    pool.total_deposits += amount
    pool.total_shares += shares


def record_interest(pool: Pool, amount: int) -> None:
    """Fold depositor interest into the pool without minting shares."""
    pool.total_deposits += amount


def record_withdrawal(pool: Pool, amount: int, shares: int) -> None:
    pool.total_deposits -= amount
    pool.total_shares -= shares


def record_borrow(pool: Pool, amount: int) -> None:
    pool.total_borrows += amount


def record_repayment(pool: Pool, principal: int, interest: int) -> None:
    """Release the principal from borrows; interest is yield and never touches them."""
    pool.total_borrows -= principal
    pool.total_interest_paid += interest
    pool.total_reserves += interest * pool.reserve_factor // BPS


def draw_reserves(pool: Pool, amount: int) -> int:
    """Take up to ``amount`` out of the protocol reserves. Returns what was drawn."""
    drawn = min(amount, max(pool.total_reserves, 0))
    pool.total_reserves -= drawn
    return drawn


@dataclass
class PoolSummary:
    asset: str
    active: bool
    total_deposits: int
    total_borrows: int
    available_liquidity: int
    utilization: int
    borrow_rate: int
    supply_rate: int
    total_shares: int
    share_price: Fraction
    total_reserves: int
    total_interest_paid: int
    base_rate: int
    multiplier: int
    jump_multiplier: int
    optimal_utilization: int
    reserve_factor: int


def summarize(pool: Pool) -> PoolSummary:
    return PoolSummary(
        asset=pool.asset,
        active=pool.active,
        total_deposits=pool.total_deposits,
        total_borrows=pool.total_borrows,
        available_liquidity=pool.available_liquidity,
        utilization=utilization(pool),
        borrow_rate=borrow_rate(pool),
        supply_rate=supply_rate(pool),
        total_shares=pool.total_shares,
        share_price=share_price(pool),
        total_reserves=pool.total_reserves,
        total_interest_paid=pool.total_interest_paid,
        base_rate=pool.base_rate,
        multiplier=pool.multiplier,
        jump_multiplier=pool.jump_multiplier,
        optimal_utilization=pool.optimal_utilization,
        reserve_factor=pool.reserve_factor,
    )
