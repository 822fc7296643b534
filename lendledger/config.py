from pydantic_settings import BaseSettings
from pydantic import BaseModel, Field, model_validator
from functools import lru_cache
from typing import List, Self


class PoolConfig(BaseModel):
    """Rate parameters for a pool created at startup."""
    asset: str
    base_rate: int = Field(ge=0)
    multiplier: int = Field(ge=0)
    jump_multiplier: int = Field(ge=0)
    optimal_utilization: int = Field(gt=0, le=10_000)
    reserve_factor: int | None = Field(default=None, ge=0, le=10_000)


class Settings(BaseSettings):
    database_url: str = Field(
        default="sqlite+aiosqlite:///./lendledger.db",
        description="Database connection URL for the event journal",
    )

    # Accrual
    seconds_per_year: int = Field(
        default=31_536_000, gt=0, description="Seconds in an interest year"
    )

    # Risk parameters (basis points, 10000 = 100%)
    min_collateral_ratio_bps: int = Field(
        default=15_000, description="Collateral ratio required to open a loan"
    )
    liquidation_threshold_bps: int = Field(
        default=12_000, description="Collateral ratio below which a loan is liquidatable"
    )
    liquidation_bonus_bps: int = Field(
        default=500, ge=0, description="Extra collateral paid to the liquidator"
    )
    default_reserve_factor_bps: int = Field(
        default=1_000, ge=0, le=10_000, description="Protocol cut of borrower interest"
    )

    # Health classification
    health_warning_ratio_bps: int = Field(
        default=15_000, description="Collateral ratio at or below which a loan is flagged"
    )
    health_critical_ratio_bps: int = Field(
        default=13_000, description="Collateral ratio at or below which a loan is critical"
    )

    monitoring_interval_seconds: int = Field(
        default=60, description="Interval between liquidation monitor cycles"
    )

    api_host: str = Field(default="0.0.0.0", description="HTTP API bind address")
    api_port: int = Field(default=8080, description="HTTP API and metrics port")

    custody_account: str = Field(
        default="ledger", description="Holder name of the ledger's custody balance"
    )
    supported_pools: List[PoolConfig] = Field(
        default_factory=list, description="Pools created at startup (JSON list)"
    )

    @model_validator(mode="after")
    def check_risk_parameters(self) -> Self:
        """Liquidation must trigger strictly below the opening requirement."""
        if self.liquidation_threshold_bps >= self.min_collateral_ratio_bps:
            raise ValueError(
                "liquidation_threshold_bps must be lower than min_collateral_ratio_bps"
            )
        if self.health_critical_ratio_bps > self.health_warning_ratio_bps:
            raise ValueError(
                "health_critical_ratio_bps must not exceed health_warning_ratio_bps"
            )
        return self

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "LENDLEDGER_",
    }


@lru_cache
def get_settings() -> Settings:
    return Settings()
