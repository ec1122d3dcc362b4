import asyncio
import json

import pytest

from core.signal_intake import (
    SignalQueue, SignalValidationError, normalize_signal, BUY, SELL,
)

NOW = 1_700_000_000.0


def test_normalize_accepts_alternate_spellings():
    signal = normalize_signal({
        'mint': ' MintA ',
        'walletAddress': 'walletA',
        'txType': 'BUY',
        'solAmount': '0.5',
        'timestamp': 1_700_000_123_000,
        'upvotes': 3,
        'dex': 'pump',
    }, now=NOW)
    assert signal.mint == 'MintA'
    assert signal.wallet == 'walletA'
    assert signal.tx_type == BUY
    assert signal.amount_base == 0.5
    assert signal.timestamp == 1_700_000_123.0
    assert signal.corroboration_count == 3
    assert signal.venue == 'pump'


def test_normalize_defaults_and_json():
    signal = normalize_signal(json.dumps({'mint': 'M', 'user': 'w', 'is_buy': False}), now=NOW)
    assert signal.tx_type == SELL
    assert signal.amount_base == 0.0
    assert signal.timestamp == NOW
    assert signal.corroboration_count == 1
    assert signal.venue == 'unknown'


@pytest.mark.parametrize("payload", [
    "not json",
    [1, 2],
    {'wallet': 'w', 'txType': 'buy'},
    {'mint': 'M', 'txType': 'buy'},
    {'mint': 'M', 'wallet': 'w', 'txType': 'hold'},
])
def test_normalize_rejects_bad_payloads(payload):
    with pytest.raises(SignalValidationError):
        normalize_signal(payload, now=NOW)


def test_with_count_floors_at_one():
    signal = normalize_signal({'mint': 'M', 'wallet': 'w', 'side': 'buy'}, now=NOW)
    assert signal.with_count(0).corroboration_count == 1
    assert signal.with_count(4).corroboration_count == 4


@pytest.mark.asyncio
async def test_tracker_counts_distinct_wallets(tracker, clock):
    first = normalize_signal({'mint': 'M', 'wallet': 'a', 'txType': 'buy'}, now=clock())
    second = normalize_signal({'mint': 'M', 'wallet': 'b', 'txType': 'buy'}, now=clock())
    assert await tracker.record_buy(first) == 1
    assert await tracker.record_buy(first) == 1
    assert await tracker.record_buy(second) == 2

    clock.advance(601)
    assert await tracker.record_buy(first) == 1


@pytest.mark.asyncio
async def test_seller_count_filters_by_time_and_wallet(tracker, clock):
    entry = clock()
    early = normalize_signal({'mint': 'M', 'wallet': 'early', 'txType': 'sell', 'timestamp': entry - 10}, now=entry)
    source = normalize_signal({'mint': 'M', 'wallet': 'source', 'txType': 'sell', 'timestamp': entry + 5}, now=entry)
    other = normalize_signal({'mint': 'M', 'wallet': 'other', 'txType': 'sell', 'timestamp': entry + 6}, now=entry)
    for signal in (early, source, other):
        await tracker.record_sell(signal)

    assert await tracker.seller_count('M') == 3
    assert await tracker.seller_count('M', since=entry) == 2
    assert await tracker.seller_count('M', since=entry, exclude='source') == 1
    assert await tracker.wallet_sell_time('M', 'source') == entry + 5
    assert await tracker.wallet_sell_time('M', '') is None

    await tracker.clear_sells('M')
    assert await tracker.seller_count('M') == 0


@pytest.mark.asyncio
async def test_tracked_wallets(tracker):
    assert await tracker.add_tracked_wallets(['a', 'b', '', 'a']) == 2
    assert await tracker.tracked_wallets() == {'a', 'b'}
    assert await tracker.add_tracked_wallets([]) == 0


@pytest.mark.asyncio
async def test_queue_consume_drains_in_order(store, logger):
    queue = SignalQueue(store, logger=logger)
    await queue.publish({'mint': 'A', 'wallet': 'w', 'txType': 'buy'})
    await queue.publish({'mint': 'B', 'wallet': 'w', 'txType': 'sell'})
    assert await queue.depth() == 2

    seen = []
    stop = asyncio.Event()

    async def handler(raw):
        seen.append(json.loads(raw)['mint'])
        if len(seen) == 2:
            stop.set()

    await asyncio.wait_for(queue.consume(handler, stop, poll_interval=0.01), timeout=2)
    assert seen == ['A', 'B']
    assert await queue.depth() == 0


@pytest.mark.asyncio
async def test_queue_survives_handler_errors(store, logger):
    queue = SignalQueue(store, logger=logger)
    await queue.publish({'mint': 'A'})
    await queue.publish({'mint': 'B'})
    seen = []
    stop = asyncio.Event()

    async def handler(raw):
        mint = json.loads(raw)['mint']
        seen.append(mint)
        if mint == 'A':
            raise RuntimeError("boom")
        stop.set()

    await asyncio.wait_for(queue.consume(handler, stop, poll_interval=0.01), timeout=2)
    assert seen == ['A', 'B']
