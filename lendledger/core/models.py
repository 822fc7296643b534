"""Ledger records: pools, deposit accounts and loans.

All amounts are integers in the asset's smallest unit. Rates, ratios and
factors are integer basis points (10000 = 100%).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from lendledger.config import Settings

BPS = 10_000


@dataclass
class RiskParameters:
    """Ledger-wide collateral rules and accrual constants."""
    min_collateral_ratio: int = 15_000   # Required to open a loan
    liquidation_threshold: int = 12_000  # Liquidatable strictly below this
    liquidation_bonus: int = 500         # Paid on top of posted collateral
    default_reserve_factor: int = 1_000
    seconds_per_year: int = 31_536_000

    @classmethod
    def from_settings(cls, settings: Settings) -> RiskParameters:
        return cls(
            min_collateral_ratio=settings.min_collateral_ratio_bps,
            liquidation_threshold=settings.liquidation_threshold_bps,
            liquidation_bonus=settings.liquidation_bonus_bps,
            default_reserve_factor=settings.default_reserve_factor_bps,
            seconds_per_year=settings.seconds_per_year,
        )


@dataclass
class Pool:
    """Aggregate state and rate parameters for one supported asset."""
    asset: str
    base_rate: int
    multiplier: int
    jump_multiplier: int
    optimal_utilization: int
    reserve_factor: int = 1_000
    total_deposits: int = 0
    total_borrows: int = 0
    total_shares: int = 0          # Sum of every depositor's share_units
    total_reserves: int = 0        # Protocol cut of interest repaid
    total_interest_paid: int = 0
    active: bool = True
    created_at: int = 0

    @property
    def available_liquidity(self) -> int:
        return self.total_deposits - self.total_borrows


@dataclass
class DepositAccount:
    user: str
    asset: str
    principal_amount: int = 0
    share_units: int = 0
    accrued_interest: int = 0      # Running total of interest folded into principal
    last_update_time: int = 0


class LoanStatus(Enum):
    ACTIVE = "active"
    REPAID = "repaid"
    LIQUIDATED = "liquidated"


@dataclass
class LoanAccount:
    user: str
    loan_id: int
    borrow_asset: str
    principal: int
    collateral_asset: str
    collateral_amount: int
    borrow_time: int
    last_update_time: int
    accrued_interest: int = 0
    status: LoanStatus = LoanStatus.ACTIVE
    interest_paid: int = 0
    closed_at: int | None = None

    @property
    def active(self) -> bool:
        return self.status is LoanStatus.ACTIVE
