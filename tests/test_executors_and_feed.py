import base64
import json
import struct

import base58
import pytest

from core.signal_intake import SignalQueue, normalize_signal
from execution.dry_run_executor import DryRunExecutor
from data.wallet_feed import WalletFeed, decode_trade_event, extract_trade_events
from utils.notifications import Notifier, LogNotifier, TelegramNotifier, create_notifier

MINT_BYTES = bytes(range(32))
USER_BYTES = bytes(range(32, 64))
MINT = base58.b58encode(MINT_BYTES).decode()
USER = base58.b58encode(USER_BYTES).decode()


@pytest.mark.asyncio
async def test_dry_run_fills_with_slippage(oracle, logger):
    executor = DryRunExecutor(oracle, slippage_bps=100, logger=logger)
    oracle.set("M", 0.001)

    bought = await executor.buy("M", 0.5)
    assert bought.success and bought.simulated
    assert bought.effective_price == pytest.approx(0.00101)
    assert bought.quantity_received == pytest.approx(0.5 / 0.00101)
    assert bought.signature.startswith("sim-buy-")

    sold = await executor.sell("M", 1000)
    assert sold.base_received == pytest.approx(1000 * 0.00099)
    assert sold.quantity_sold == 1000


@pytest.mark.asyncio
async def test_dry_run_reports_failures(oracle, logger):
    executor = DryRunExecutor(oracle, logger=logger)
    assert not (await executor.buy("M", 0)).success
    oracle.set("M", None)
    result = await executor.sell("M", 10)
    assert not result.success
    assert result.error == "Price unavailable"


def trade_event_data(is_buy=True, sol=500_000_000, tokens=2_000_000_000, timestamp=1_700_000_000):
    data = b"\x00" * 8 + MINT_BYTES + struct.pack("<QQ", sol, tokens) + bytes([1 if is_buy else 0])
    data += USER_BYTES + struct.pack("<QQQQQ", timestamp, 30_000_000_000, 10 ** 15, 0, 0)
    return base64.b64encode(data).decode()


def notification(*logs, err=None):
    return {
        'jsonrpc': '2.0',
        'method': 'transactionNotification',
        'params': {'result': {
            'signature': 'sig1',
            'transaction': {'meta': {'err': err, 'logMessages': list(logs)}},
        }},
    }


def test_decode_trade_event():
    event = decode_trade_event(trade_event_data(), "sig1")
    assert event.mint == MINT
    assert event.user == USER
    assert event.is_buy
    assert event.sol_amount == 0.5
    assert event.token_amount == 2000.0
    assert event.price == 0.00025
    assert event.blocktime == 1_700_000_000

    signal = normalize_signal(event.to_signal_payload())
    assert signal.tx_type == "buy"
    assert signal.wallet == USER
    assert signal.amount_base == 0.5


def test_decode_rejects_short_or_invalid_data():
    assert decode_trade_event(base64.b64encode(b"short").decode()) is None
    assert decode_trade_event("***") is None
    assert decode_trade_event(trade_event_data(tokens=0)) is None
    assert decode_trade_event(trade_event_data(timestamp=5)) is None


def test_extract_skips_failed_transactions():
    logs = ("Program log: Instruction: Sell", f"Program data: {trade_event_data(is_buy=False)}")
    events = extract_trade_events(notification(*logs))
    assert len(events) == 1
    assert not events[0].is_buy
    assert extract_trade_events(notification(*logs, err={'InstructionError': [0, 'Custom']})) == []
    assert extract_trade_events({'jsonrpc': '2.0', 'result': 42, 'id': 1}) == []


@pytest.mark.asyncio
async def test_feed_publishes_tracked_wallet_trades(store, logger):
    queue = SignalQueue(store, logger=logger)
    feed = WalletFeed("wss://example", queue, [USER], logger=logger)
    msg = json.dumps(notification(f"Program data: {trade_event_data()}"))

    assert await feed.process_message(msg) == 1
    payload = json.loads(await queue.pop())
    assert payload['wallet'] == USER
    assert payload['txType'] == 'buy'

    other = WalletFeed("wss://example", queue, ["someoneElse"], logger=logger)
    assert await other.process_message(msg) == 0
    assert await feed.process_message("not json") == 0
    assert feed.subscribe_message()['params'][0]['accountInclude'] == [USER]


def test_feed_backoff(store, logger):
    feed = WalletFeed("wss://example", SignalQueue(store), [USER], base_delay=1, max_delay=10, logger=logger)
    delays = []
    for attempt in range(1, 6):
        feed.attempts = attempt
        delays.append(feed.backoff_delay())
    assert delays == [1, 2, 4, 8, 10]


class FailingNotifier(Notifier):
    async def send(self, message):
        raise RuntimeError("telegram down")


@pytest.mark.asyncio
async def test_notifier_failures_are_swallowed(logger):
    notifier = FailingNotifier(logger)
    notifier.notify("hello")
    await notifier.close()
    assert not notifier._pending


def test_create_notifier_needs_both_credentials(logger):
    assert isinstance(create_notifier(None, "chat", logger), LogNotifier)
    assert isinstance(create_notifier("token", "chat", logger), TelegramNotifier)
