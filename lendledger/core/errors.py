"""Exception hierarchy for ledger operations.

Every error is raised before the failing operation commits anything, so
catching one never leaves the ledger half-updated. ``details`` names the
check that failed and the values it compared.
"""

from __future__ import annotations

from typing import Any, Dict


class LedgerError(Exception):
    """Base class for rejected ledger operations."""

    kind = "ledger_error"

    def __init__(self, message: str, details: Dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.kind, "message": self.message, "details": self.details}


class InvalidInput(LedgerError):
    """Zero or negative amounts, identical assets, unknown or closed loans."""

    kind = "invalid_input"


class PoolUnavailable(LedgerError):
    """The referenced asset has no pool, or its pool is not active."""

    kind = "pool_unavailable"


class InsufficientLiquidity(LedgerError):
    kind = "insufficient_liquidity"


class InsufficientCollateral(LedgerError):
    kind = "insufficient_collateral"


class LoanNotLiquidatable(LedgerError):
    kind = "loan_not_liquidatable"


class TransferFailed(LedgerError):
    """The asset transfer service refused or failed a transfer."""

    kind = "transfer_failed"
