import pytest

from lendledger.config import get_settings
from lendledger.core.events import MemoryEventSink
from lendledger.core.ledger import LendingLedger
from lendledger.core.models import RiskParameters
from lendledger.services.base import ManualClock
from lendledger.services.custody import InMemoryCustody

START_TIME = 1_700_000_000
SECONDS_PER_YEAR = 31_536_000

# Worked-example curve: base 2%, slope 10%, jump 50%, kink at 80%, reserve 10%
POOL_PARAMS = dict(
    base_rate=200,
    multiplier=1000,
    jump_multiplier=5000,
    optimal_utilization=8000,
    reserve_factor=1000,
)


@pytest.fixture(autouse=True)
def reset_settings_cache():
    """Reset the cached Settings between tests so env overrides don't leak."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def clock():
    return ManualClock(start=START_TIME)


@pytest.fixture
def custody():
    return InMemoryCustody(custody_account="ledger")


@pytest.fixture
def sink():
    return MemoryEventSink()


@pytest.fixture
async def ledger(clock, custody, sink):
    ledger = LendingLedger(
        transfers=custody,
        clock=clock,
        risk=RiskParameters(seconds_per_year=SECONDS_PER_YEAR),
        sinks=[sink],
    )
    await ledger.create_pool("USDC", **POOL_PARAMS)
    await ledger.create_pool("ETH", **POOL_PARAMS)
    return ledger
