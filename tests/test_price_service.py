import pytest

from data.price_service import PriceService
from data.rpc_rate_limiter import RPCRateLimiter, RateLimitError, is_rate_limit_error
from execution.bonding_curve import BondingCurveAccount


class FakeSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


@pytest.fixture
def sleeper():
    return FakeSleep()


@pytest.fixture
def limiter(sleeper, clock, logger):
    return RPCRateLimiter(max_per_second=100, max_retries=3, base_delay=2, max_delay=30, max_jitter=0,
                          sleep=sleeper, clock=clock, logger=logger)


def test_rate_limit_detection():
    assert is_rate_limit_error(Exception("HTTP 429 Too Many Requests"))
    assert is_rate_limit_error(Exception("rate limit exceeded"))
    assert not is_rate_limit_error(Exception("connection reset"))


def test_backoff_is_exponential_and_capped(limiter):
    assert [limiter.backoff_delay(n) for n in (1, 2, 3, 4, 5)] == [2, 4, 8, 16, 30]


@pytest.mark.asyncio
async def test_retries_rate_limits_then_succeeds(limiter, sleeper):
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise Exception("429")
        return "ok"

    assert await limiter.request(flaky) == "ok"
    assert sleeper.delays == [2, 4]
    assert limiter.stats['throttled'] == 2


@pytest.mark.asyncio
async def test_gives_up_after_max_retries(limiter):
    async def always_limited():
        raise Exception("Too Many Requests")

    with pytest.raises(RateLimitError):
        await limiter.request(always_limited)


@pytest.mark.asyncio
async def test_other_errors_propagate_immediately(limiter, sleeper):
    async def broken():
        raise ValueError("bad account")

    with pytest.raises(ValueError):
        await limiter.request(broken)
    assert sleeper.delays == []


@pytest.mark.asyncio
async def test_results_are_cached(limiter, clock):
    calls = []

    async def fetch():
        calls.append(1)
        return len(calls)

    assert await limiter.request(fetch, cache_key="acct") == 1
    assert await limiter.request(fetch, cache_key="acct") == 1
    clock.advance(3)
    assert await limiter.request(fetch, cache_key="acct") == 2


def make_curve(complete=False, vsol=30_000_000_000, vtok=1_000_000_000_000):
    return BondingCurveAccount(
        virtual_token_reserves=vtok,
        virtual_sol_reserves=vsol,
        real_token_reserves=0,
        real_sol_reserves=0,
        token_total_supply=0,
        complete=complete,
    )


class StubbedPriceService(PriceService):
    def __init__(self, *args, curve=None, aggregator=None, quote=None, **kwargs):
        super().__init__(None, *args, **kwargs)
        self.curve = curve
        self.aggregator = aggregator
        self.quote = quote
        self.curve_reads = 0

    async def _read_curve(self, mint):
        self.curve_reads += 1
        if isinstance(self.curve, Exception):
            raise self.curve
        return self.curve

    async def _aggregator_price(self, mint):
        if isinstance(self.aggregator, Exception):
            raise self.aggregator
        return self.aggregator

    async def _aggregator_quote(self, mint, decimals=6):
        return self.quote


@pytest.fixture
def make_service(limiter, clock, logger):
    def build(**kwargs):
        return StubbedPriceService(limiter, cache_seconds=15, clock=clock, logger=logger, **kwargs)
    return build


@pytest.mark.asyncio
async def test_curve_price_preferred(make_service):
    service = make_service(curve=make_curve(), aggregator=1.0)
    quote = await service.get_price("M")
    assert quote.price == pytest.approx(0.00003)
    assert not quote.migrated
    assert quote.source == "bonding_curve"


@pytest.mark.asyncio
async def test_completed_curve_falls_back_to_aggregator(make_service):
    quote = await make_service(curve=make_curve(complete=True), aggregator=0.00005).get_price("M")
    assert quote.price == 0.00005
    assert quote.migrated


@pytest.mark.asyncio
async def test_quote_used_when_price_api_fails(make_service):
    service = make_service(curve=None, aggregator=RuntimeError("down"), quote=0.00004)
    quote = await service.get_price("M")
    assert quote.price == 0.00004
    assert quote.migrated


@pytest.mark.asyncio
async def test_total_failure_is_unknown_and_not_cached(make_service):
    service = make_service(curve=RuntimeError("rpc"), aggregator=None, quote=None)
    quote = await service.get_price("M")
    assert quote.price is None
    assert not quote.known

    service.aggregator = 0.0001
    assert (await service.get_price("M")).price == 0.0001
    assert service.curve_reads == 2


@pytest.mark.asyncio
async def test_known_prices_cached_until_expiry(make_service, clock):
    service = make_service(curve=make_curve())
    await service.get_price("M")
    await service.get_price("M")
    assert service.curve_reads == 1
    clock.advance(15)
    await service.get_price("M")
    assert service.curve_reads == 2

    service.invalidate("M")
    await service.get_price("M")
    assert service.curve_reads == 3


@pytest.mark.asyncio
async def test_position_value(make_service):
    value = await make_service(curve=make_curve()).get_position_value("M", 1000)
    assert value.total_value == pytest.approx(0.03)
    unknown = await make_service(curve=None).get_position_value("M", 1000)
    assert unknown.unit_price is None
    assert unknown.total_value is None
