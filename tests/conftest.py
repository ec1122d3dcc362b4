from typing import Dict, List, Optional, Tuple

import pytest

from core.signal_intake import SignalTracker
from core.types import BuyResult, SellResult, ExecutionAdapter
from data.price_service import PriceOracle, PriceQuote
from db.position_store import PositionStore
from db.store import MemoryStore
from utils.config import Config
from utils.logger import TradingLogger

START = 1_700_000_000.0


class FakeClock:
    def __init__(self, start: float = START):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class ScriptedOracle(PriceOracle):
    """Returns whatever price the test last set for a mint"""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.prices: Dict[str, Optional[float]] = {}
        self.migrated: Dict[str, bool] = {}
        self.calls: List[str] = []

    def set(self, mint: str, price: Optional[float], migrated: bool = False):
        self.prices[mint] = price
        self.migrated[mint] = migrated

    async def get_price(self, mint: str) -> PriceQuote:
        self.calls.append(mint)
        return PriceQuote(mint, self.prices.get(mint), self.migrated.get(mint, False), 'scripted', self.clock())


class RecordingExecutor(ExecutionAdapter):
    """Fills at the oracle price and records every order"""

    simulated = True

    def __init__(self, oracle: ScriptedOracle):
        self.oracle = oracle
        self.buys: List[Tuple[str, float]] = []
        self.sells: List[Tuple[str, float]] = []
        self.fail_buys = False
        self.fail_sells = False
        self.closed = False

    async def buy(self, mint: str, base_amount: float, venue_hint: str = "") -> BuyResult:
        self.buys.append((mint, base_amount))
        price = self.oracle.prices.get(mint)
        if self.fail_buys or not price:
            return BuyResult.failed("buy rejected", simulated=True)
        return BuyResult(True, 'test', base_amount / price, price, base_amount, f"buy-{len(self.buys)}",
                         simulated=True)

    async def sell(self, mint: str, quantity: float, venue_hint: str = "") -> SellResult:
        self.sells.append((mint, quantity))
        price = self.oracle.prices.get(mint)
        if self.fail_sells or not price:
            return SellResult.failed("sell rejected", simulated=True)
        return SellResult(True, 'test', quantity * price, quantity, f"sell-{len(self.sells)}", simulated=True)

    async def close(self):
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def logger():
    return TradingLogger("copy_bot_test", file_output=False)


@pytest.fixture
def store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def positions(store, clock, logger):
    return PositionStore(store, network_fee=0.000005, clock=clock, logger=logger)


@pytest.fixture
def tracker(store, logger):
    return SignalTracker(store, ttl_seconds=600, logger=logger)


@pytest.fixture
def oracle(clock):
    return ScriptedOracle(clock)


@pytest.fixture
def executor(oracle):
    return RecordingExecutor(oracle)


@pytest.fixture
def config():
    return Config(config_path=None, env={}, load_env_file=False)
