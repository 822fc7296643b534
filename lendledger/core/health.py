from dataclasses import dataclass, field
from enum import Enum
from typing import List

from lendledger.core.loans import LoanPosition
from lendledger.core.models import BPS


class HealthStatus(Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    LIQUIDATABLE = "liquidatable"


@dataclass
class ActionRecommendation:
    action_type: str  # "repay"
    description: str
    amount: int
    asset: str | None = None
    priority: int = 1  # 1 = highest


@dataclass
class LoanHealthAssessment:
    status: HealthStatus
    collateral_ratio: int  # bps
    normalized_score: float  # 0-100 score
    message: str
    collateral_drop_to_liquidation: int | None = None  # bps of collateral value
    recommendations: List[ActionRecommendation] = field(default_factory=list)


def calculate_normalized_score(
    collateral_ratio: int,
    liquidation_threshold: int = 12_000,
    safe_ratio: int = 30_000,
) -> float:
    """Convert a collateral ratio to a 0-100 score.

    At or below the liquidation threshold the score is 0; at or above
    ``safe_ratio`` it is 100. In between it is linear.
    """
    if collateral_ratio <= liquidation_threshold:
        return 0.0
    if collateral_ratio >= safe_ratio:
        return 100.0
    span = safe_ratio - liquidation_threshold
    return (collateral_ratio - liquidation_threshold) * 100.0 / span


def calculate_collateral_drop_to_liquidation(
    position: LoanPosition,
    liquidation_threshold: int = 12_000,
) -> int | None:
    """Collateral value drop, in bps, that would make the loan liquidatable.

    Returns None for closed loans and 0 for loans already below the threshold.
    """
    if not position.active or position.debt <= 0:
        return None
    if position.collateral_ratio < liquidation_threshold:
        return 0

    # Liquidatable once collateral * (1 - drop) * BPS / debt < threshold
    # drop = 1 - threshold * debt / (collateral * BPS)
    floor_value = liquidation_threshold * position.debt
    drop = BPS - floor_value // position.collateral_amount
    return max(0, drop)


def assess_loan_health(
    position: LoanPosition,
    liquidation_threshold: int = 12_000,
    warning_ratio: int = 15_000,
    critical_ratio: int = 13_000,
) -> LoanHealthAssessment:
    """Assess an active loan's collateral health with recommendations."""
    ratio = position.collateral_ratio
    normalized = calculate_normalized_score(ratio, liquidation_threshold)
    drop = calculate_collateral_drop_to_liquidation(position, liquidation_threshold)
    recommendations = []

    if ratio < liquidation_threshold:
        status = HealthStatus.LIQUIDATABLE
        message = (
            f"Loan {position.loan_id} is liquidatable at {ratio / 100:.2f}%! "
            f"Immediate repayment required."
        )
        recommendations = [
            ActionRecommendation(
                action_type="repay",
                description=f"Repay {position.debt} {position.borrow_asset} before a liquidator does",
                amount=position.debt,
                asset=position.borrow_asset,
                priority=1,
            ),
        ]
    elif ratio <= critical_ratio:
        status = HealthStatus.CRITICAL
        message = (
            f"Critical: collateral ratio at {ratio / 100:.2f}%. High liquidation risk!"
        )
        recommendations = [
            ActionRecommendation(
                action_type="repay",
                description=f"Repay {position.debt} {position.borrow_asset} to recover "
                f"{position.collateral_amount} {position.collateral_asset}",
                amount=position.debt,
                asset=position.borrow_asset,
                priority=1,
            ),
        ]
    elif ratio <= warning_ratio:
        status = HealthStatus.WARNING
        message = f"Warning: collateral ratio at {ratio / 100:.2f}%. Interest is eroding the margin."
    else:
        status = HealthStatus.HEALTHY
        message = f"Healthy: collateral ratio at {ratio / 100:.2f}%."

    return LoanHealthAssessment(
        status=status,
        collateral_ratio=ratio,
        normalized_score=normalized,
        message=message,
        collateral_drop_to_liquidation=drop,
        recommendations=recommendations,
    )


def count_by_status(assessments: List[LoanHealthAssessment]) -> dict:
    counts = {status: 0 for status in HealthStatus}
    for assessment in assessments:
        counts[assessment.status] += 1
    return counts
