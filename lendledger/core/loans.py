"""Loan accounts: interest projection, collateral health and closing.

Interest on a loan is projected at read time from the pool's current borrow
rate and the time since the loan was last settled. Projection never touches
``last_update_time``; only ``settle_loan`` does, and the ledger calls it
solely when a repayment or liquidation is being committed.
"""

from __future__ import annotations

from dataclasses import dataclass

from lendledger.core.errors import InsufficientCollateral, InvalidInput
from lendledger.core.models import BPS, LoanAccount, LoanStatus, Pool, RiskParameters
from lendledger.core.rates import accrue, borrow_rate


@dataclass
class LoanPosition:
    """Read-only view of a loan as of a given time."""
    user: str
    loan_id: int
    borrow_asset: str
    principal: int
    collateral_asset: str
    collateral_amount: int
    interest: int           # Stored plus projected interest
    collateral_ratio: int   # bps, 0 when nothing is owed
    borrow_rate: int
    status: LoanStatus
    borrow_time: int
    last_update_time: int

    @property
    def debt(self) -> int:
        return self.principal + self.interest

    @property
    def active(self) -> bool:
        return self.status is LoanStatus.ACTIVE


def debt_interest(loan: LoanAccount, pool: Pool, now: int, seconds_per_year: int) -> int:
    """Stored interest plus interest accrued since the last settlement."""
    if not loan.active:
        return loan.accrued_interest
    elapsed = now - loan.last_update_time
    return loan.accrued_interest + accrue(
        loan.principal, borrow_rate(pool), elapsed, seconds_per_year
    )


def live_debt(loan: LoanAccount, pool: Pool, now: int, seconds_per_year: int) -> int:
    return loan.principal + debt_interest(loan, pool, now, seconds_per_year)


def ratio_bps(collateral_amount: int, debt: int) -> int:
    """Collateral over debt in bps, assuming 1:1 prices. 0 when debt is 0."""
    if debt <= 0:
        return 0
    return collateral_amount * BPS // debt


def collateral_ratio(loan: LoanAccount, pool: Pool, now: int, seconds_per_year: int) -> int:
    return ratio_bps(loan.collateral_amount, live_debt(loan, pool, now, seconds_per_year))


def is_liquidatable(
    loan: LoanAccount, pool: Pool, now: int, risk: RiskParameters
) -> bool:
    if not loan.active:
        return False
    ratio = collateral_ratio(loan, pool, now, risk.seconds_per_year)
    return ratio < risk.liquidation_threshold


def validate_borrow_request(
    borrow_asset: str,
    borrow_amount: int,
    collateral_asset: str,
    collateral_amount: int,
) -> None:
    if borrow_amount <= 0 or collateral_amount <= 0:
        raise InvalidInput(
            "Borrow and collateral amounts must be positive",
            {
                "check": "amount_positive",
                "borrow_amount": borrow_amount,
                "collateral_amount": collateral_amount,
            },
        )
    if borrow_asset == collateral_asset:
        raise InvalidInput(
            f"Collateral asset must differ from borrowed asset {borrow_asset}",
            {"check": "distinct_assets", "asset": borrow_asset},
        )


def require_opening_ratio(
    borrow_amount: int, collateral_amount: int, risk: RiskParameters
) -> int:
    """Returns the opening collateral ratio in bps."""
    ratio = ratio_bps(collateral_amount, borrow_amount)
    if ratio < risk.min_collateral_ratio:
        raise InsufficientCollateral(
            f"Collateral ratio {ratio} bps is below the required "
            f"{risk.min_collateral_ratio} bps",
            {
                "check": "min_collateral_ratio",
                "ratio": ratio,
                "required": risk.min_collateral_ratio,
                "borrow_amount": borrow_amount,
                "collateral_amount": collateral_amount,
            },
        )
    return ratio


def liquidation_bonus(loan: LoanAccount, risk: RiskParameters) -> int:
    """Bonus owed to a liquidator on top of the posted collateral."""
    return loan.collateral_amount * risk.liquidation_bonus // BPS


def settle_loan(loan: LoanAccount, pool: Pool, now: int, seconds_per_year: int) -> int:
    """Store interest accrued up to ``now``. Returns the total interest owed."""
    loan.accrued_interest = debt_interest(loan, pool, now, seconds_per_year)
    loan.last_update_time = max(loan.last_update_time, now)
    return loan.accrued_interest


def close_loan(loan: LoanAccount, status: LoanStatus, now: int) -> None:
    """Terminal transition; a closed loan is never reopened."""
    loan.interest_paid = loan.accrued_interest
    loan.status = status
    loan.closed_at = now


def describe(
    loan: LoanAccount, pool: Pool, now: int, seconds_per_year: int
) -> LoanPosition:
    interest = debt_interest(loan, pool, now, seconds_per_year)
    return LoanPosition(
        user=loan.user,
        loan_id=loan.loan_id,
        borrow_asset=loan.borrow_asset,
        principal=loan.principal,
        collateral_asset=loan.collateral_asset,
        collateral_amount=loan.collateral_amount,
        interest=interest,
        collateral_ratio=ratio_bps(loan.collateral_amount, loan.principal + interest)
        if loan.active
        else 0,
        borrow_rate=borrow_rate(pool),
        status=loan.status,
        borrow_time=loan.borrow_time,
        last_update_time=loan.last_update_time,
    )
