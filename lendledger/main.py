"""Main entry point for the lending ledger service.

This module initializes and runs all application components:
- Database initialization for the event journal
- Ledger with in-process custody and the configured pools
- HTTP API with Prometheus metrics
- Liquidation monitor

Usage:
    python -m lendledger.main
"""

import asyncio
import logging
import signal
from aiohttp import web

from lendledger.api import create_app
from lendledger.config import Settings, get_settings
from lendledger.core.ledger import LendingLedger
from lendledger.core.models import RiskParameters
from lendledger.core.monitor import LiquidationMonitor
from lendledger.database import Database, EventJournal
from lendledger.services.custody import InMemoryCustody
from lendledger.services.metrics import MetricsEventSink

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=logging.INFO,
)
logger = logging.getLogger(__name__)


async def build_ledger(settings: Settings, database: Database | None = None) -> LendingLedger:
    """Create a ledger wired to custody, metrics and (optionally) the journal."""
    sinks = [MetricsEventSink()]
    if database is not None:
        sinks.append(EventJournal(database))

    ledger = LendingLedger(
        transfers=InMemoryCustody(custody_account=settings.custody_account),
        risk=RiskParameters.from_settings(settings),
        sinks=sinks,
    )
    for pool in settings.supported_pools:
        await ledger.create_pool(
            asset=pool.asset,
            base_rate=pool.base_rate,
            multiplier=pool.multiplier,
            jump_multiplier=pool.jump_multiplier,
            optimal_utilization=pool.optimal_utilization,
            reserve_factor=pool.reserve_factor,
        )
    return ledger


async def run_monitor(monitor: LiquidationMonitor):
    try:
        await monitor.start()
    except asyncio.CancelledError:
        await monitor.stop()
        raise


async def run_api_server(ledger: LendingLedger, host: str = "0.0.0.0", port: int = 8080):
    """Run the HTTP API server."""
    runner = web.AppRunner(create_app(ledger))
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info(f"Ledger API running on http://{host}:{port}")
    return runner


async def main():
    logger.info("Starting lending ledger...")
    settings = get_settings()

    database = Database(settings.database_url)
    await database.init_db()
    logger.info("Database initialized")

    ledger = await build_ledger(settings, database)
    logger.info(f"Ledger ready with pools: {', '.join(ledger.get_supported_assets()) or 'none'}")

    api_runner = await run_api_server(ledger, host=settings.api_host, port=settings.api_port)

    monitor = LiquidationMonitor(ledger, database=database, settings=settings)
    monitor_task = asyncio.create_task(run_monitor(monitor))

    # Setup graceful shutdown
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def signal_handler():
        logger.info("Shutdown signal received")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    await shutdown_event.wait()

    logger.info("Shutting down...")
    monitor_task.cancel()
    try:
        await monitor_task
    except asyncio.CancelledError:
        pass

    await api_runner.cleanup()
    await database.dispose()

    logger.info("Shutdown complete")


def main_sync():
    asyncio.run(main())


if __name__ == "__main__":
    main_sync()
