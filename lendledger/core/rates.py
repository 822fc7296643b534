"""Utilization-driven interest rate model.

Kinked (jump) curve: the borrow rate ramps gently from the base rate up to the
optimal utilization, then steeply with the jump multiplier above it. Depositors
earn the borrow rate scaled by utilization, minus the protocol reserve cut.

All values are integer basis points; every division truncates toward zero.
"""

from lendledger.core.models import BPS, Pool


def utilization(pool: Pool) -> int:
    """Share of deposits currently lent out, in bps (0 for an empty pool)."""
    if pool.total_deposits <= 0:
        return 0
    u = pool.total_borrows * BPS // pool.total_deposits
    return max(0, min(BPS, u))


def borrow_rate(pool: Pool) -> int:
    """Annualized borrow rate in bps."""
    u = utilization(pool)
    optimal = pool.optimal_utilization

    # optimal == 0 has no ramp segment: every utilization is in the jump regime
    if optimal > 0 and u <= optimal:
        return pool.base_rate + u * pool.multiplier // optimal

    excess = u - optimal
    headroom = BPS - optimal
    jump = excess * pool.jump_multiplier // headroom if headroom > 0 else 0
    return pool.base_rate + pool.multiplier + jump


def supply_rate(pool: Pool) -> int:
    """Annualized depositor rate in bps, after the reserve factor."""
    u = utilization(pool)
    rate = borrow_rate(pool) * u * (BPS - pool.reserve_factor) // (BPS * BPS)
    return min(rate, borrow_rate(pool))


def accrue(amount: int, rate: int, elapsed: int, seconds_per_year: int) -> int:
    """Simple interest on ``amount`` at ``rate`` bps/year over ``elapsed`` seconds."""
    if amount <= 0 or rate <= 0 or elapsed <= 0:
        return 0
    return amount * rate * elapsed // (BPS * seconds_per_year)


def validate_rate_params(
    base_rate: int,
    multiplier: int,
    jump_multiplier: int,
    optimal_utilization: int,
    reserve_factor: int,
) -> None:
    """Raise ValueError for parameters the rate curve cannot use."""
    for name, value in (
        ("base_rate", base_rate),
        ("multiplier", multiplier),
        ("jump_multiplier", jump_multiplier),
    ):
        if not isinstance(value, int) or value < 0:
            raise ValueError(f"{name} must be a non-negative integer, got {value!r}")
    if not isinstance(optimal_utilization, int) or not 0 < optimal_utilization <= BPS:
        raise ValueError(
            f"optimal_utilization must be in (0, {BPS}], got {optimal_utilization!r}"
        )
    if not isinstance(reserve_factor, int) or not 0 <= reserve_factor <= BPS:
        raise ValueError(f"reserve_factor must be in [0, {BPS}], got {reserve_factor!r}")
