"""Liquidation monitor for ledger loans.

This module implements a periodic loop that re-projects every active loan's
collateral ratio, classifies its health and reports loans that have fallen
below the liquidation threshold. Each cycle also snapshots pool aggregates to
the database when one is configured.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List

from lendledger.config import Settings, get_settings
from lendledger.core.health import HealthStatus, LoanHealthAssessment, assess_loan_health, count_by_status
from lendledger.core.ledger import LendingLedger
from lendledger.core.loans import LoanPosition
from lendledger.core.pool import is_solvent
from lendledger.database import Database, record_pool_snapshots
from lendledger.services.metrics import MonitoringCycleTimer, record_pool_metrics, update_loan_counts

logger = logging.getLogger(__name__)


@dataclass
class MonitorReport:
    cycle: int
    assessments: Dict[tuple, LoanHealthAssessment] = field(default_factory=dict)
    liquidatable: List[LoanPosition] = field(default_factory=list)
    insolvent_pools: List[str] = field(default_factory=list)

    def count(self, status: HealthStatus) -> int:
        return count_by_status(list(self.assessments.values()))[status]


class LiquidationMonitor:
    def __init__(
        self,
        ledger: LendingLedger,
        database: Database | None = None,
        settings: Settings | None = None,
    ):
        self._ledger = ledger
        self._db = database
        self._settings = settings or get_settings()
        self._running = False
        self._cycle_count = 0
        self._last_report: MonitorReport | None = None

    @property
    def last_report(self) -> MonitorReport | None:
        return self._last_report

    async def start(self):
        self._running = True
        logger.info("Liquidation monitor started")

        while self._running:
            try:
                await self.run_cycle()
            except Exception as e:
                logger.error(f"Error in monitoring cycle: {e}")

            await asyncio.sleep(self._settings.monitoring_interval_seconds)

    async def stop(self):
        self._running = False
        logger.info("Liquidation monitor stopped")

    async def run_cycle(self) -> MonitorReport:
        with MonitoringCycleTimer():
            self._cycle_count += 1
            report = MonitorReport(cycle=self._cycle_count)
            risk = self._ledger.risk

            users = {loan.user for loan in self._ledger.store.active_loans()}
            for user in sorted(users):
                for position in self._ledger.list_loans(user):
                    if not position.active:
                        continue
                    assessment = assess_loan_health(
                        position,
                        liquidation_threshold=risk.liquidation_threshold,
                        warning_ratio=self._settings.health_warning_ratio_bps,
                        critical_ratio=self._settings.health_critical_ratio_bps,
                    )
                    report.assessments[(position.user, position.loan_id)] = assessment
                    if assessment.status is HealthStatus.LIQUIDATABLE:
                        report.liquidatable.append(position)
                        logger.warning(assessment.message)

            summaries = []
            for asset in self._ledger.get_supported_assets():
                summary = self._ledger.get_pool_summary(asset)
                summaries.append(summary)
                record_pool_metrics(
                    asset=summary.asset,
                    total_deposits=summary.total_deposits,
                    total_borrows=summary.total_borrows,
                    utilization=summary.utilization,
                    borrow_rate=summary.borrow_rate,
                    supply_rate=summary.supply_rate,
                )

            for pool in self._ledger.store.pools():
                if not is_solvent(pool):
                    report.insolvent_pools.append(pool.asset)
                    logger.error(
                        f"Pool {pool.asset} violates borrows <= deposits: "
                        f"{pool.total_borrows} > {pool.total_deposits}"
                    )

            update_loan_counts(
                active=len(report.assessments),
                liquidatable=len(report.liquidatable),
            )

            if self._db is not None:
                try:
                    await record_pool_snapshots(self._db, summaries)
                except Exception as e:
                    logger.error(f"Failed to record pool snapshots: {e}")

            logger.debug(
                f"Monitor cycle {report.cycle}: {len(report.assessments)} active loans, "
                f"{len(report.liquidatable)} liquidatable"
            )
            self._last_report = report
            return report
