import asyncio
import json

import pytest

from core.copy_trading_system import TradingSystem
from db.position_store import PositionNotOpen
from risk.risk_manager import LOW_CORROBORATION, COOLDOWN
from strategies.copy_trading_strategy import MANUAL

MINT = "MintS"


@pytest.fixture
def system(config, store, oracle, executor, clock, logger):
    config.trading.auto_trading = True
    config.trading.position_size_sol = 0.5
    config.admission.min_wallets_to_buy = 1
    return TradingSystem(config, store, oracle, executor, clock=clock, logger=logger)


def buy_payload(wallet="walletA", mint=MINT):
    return {'mint': mint, 'wallet': wallet, 'txType': 'buy', 'amountBase': 1.0}


@pytest.mark.asyncio
async def test_buy_signal_opens_position(system, oracle, executor):
    oracle.set(MINT, 0.001)
    outcome = await system.handle_signal(buy_payload())
    assert outcome.action == "bought"
    assert executor.buys == [(MINT, 0.5)]

    position = await system.positions.get_position(MINT)
    assert position.wallet_source == "walletA"
    assert position.token_amount == pytest.approx(500.0)
    assert position.simulated
    assert await system.tracker.cooldown_active(MINT)


@pytest.mark.asyncio
async def test_second_wallet_corroborates_in_live_mode(system, oracle, executor):
    system.risk_manager.dry_run = False
    system.config.admission.min_wallets_to_buy = 2
    oracle.set(MINT, 0.001)

    first = await system.handle_signal(buy_payload("walletA"))
    assert first.action == "rejected"
    assert first.reason == LOW_CORROBORATION
    assert executor.buys == []

    second = await system.handle_signal(buy_payload("walletB"))
    assert second.action == "bought"
    assert second.confidence == 70


@pytest.mark.asyncio
async def test_auto_trading_switch_blocks_live_buys(system, oracle, executor):
    system.dry_run = False
    system.config.trading.auto_trading = False
    oracle.set(MINT, 0.001)
    outcome = await system.handle_signal(buy_payload())
    assert outcome.reason == "auto_trading_disabled"
    assert executor.buys == []


@pytest.mark.asyncio
async def test_failed_buy_opens_nothing_and_sets_no_cooldown(system, oracle, executor):
    oracle.set(MINT, 0.001)
    executor.fail_buys = True
    outcome = await system.handle_signal(buy_payload())
    assert outcome.action == "buy_failed"
    assert not await system.positions.is_open(MINT)
    assert not await system.tracker.cooldown_active(MINT)


@pytest.mark.asyncio
async def test_cooldown_after_close(system, oracle):
    oracle.set(MINT, 0.001)
    await system.handle_signal(buy_payload())
    await system.manual_exit(MINT)
    outcome = await system.handle_signal(buy_payload("walletB"))
    assert outcome.reason == COOLDOWN


@pytest.mark.asyncio
async def test_sell_signal_is_recorded(system, clock):
    outcome = await system.handle_signal({'mint': MINT, 'wallet': 'walletA', 'txType': 'sell'})
    assert outcome.action == "recorded"
    assert await system.tracker.wallet_sell_time(MINT, 'walletA') == clock()


@pytest.mark.asyncio
async def test_invalid_and_untracked_signals(system, oracle, executor):
    assert (await system.handle_signal("{bad json")).action == "invalid"

    await system.tracker.add_tracked_wallets(["walletA"])
    oracle.set(MINT, 0.001)
    outcome = await system.handle_signal(buy_payload("stranger"))
    assert outcome.action == "ignored"
    assert outcome.reason == "untracked_wallet"
    assert executor.buys == []


@pytest.mark.asyncio
async def test_manual_exit_and_exit_all(system, oracle):
    oracle.set(MINT, 0.001)
    oracle.set("Other", 0.002)
    await system.handle_signal(buy_payload())
    await system.handle_signal(buy_payload(mint="Other"))

    oracle.set(MINT, 0.002)
    summary = await system.manual_exit(MINT)
    assert summary.reason == MANUAL
    assert summary.pnl_pct == pytest.approx(100.0)
    with pytest.raises(PositionNotOpen):
        await system.manual_exit(MINT)

    results = await system.exit_all()
    assert list(results) == ["Other"]
    assert await system.positions.count_open() == 0


@pytest.mark.asyncio
async def test_status_and_diagnostics(system, oracle, store):
    oracle.set(MINT, 0.001)
    await system.handle_signal(buy_payload())
    await system.queue.publish(buy_payload("walletB", "Queued"))
    await store.sadd("open_positions", "Ghost")

    status = await system.status()
    assert status['open_positions'] == 1
    assert status['pending_signals'] == 1
    assert status['positions'][0]['mint'] == MINT
    assert json.dumps(status)

    report = await system.diagnose(fix=True)
    assert report['orphan_members'] == ["Ghost"]
    assert report['removed_orphans'] == 1


@pytest.mark.asyncio
async def test_start_and_stop(system, oracle, executor, store):
    oracle.set(MINT, 0.001)
    await system.start(["walletA"])
    assert system.is_running
    await system.queue.publish(buy_payload())

    for _ in range(300):
        if await system.positions.is_open(MINT):
            break
        await asyncio.sleep(0.01)
    assert await system.positions.is_open(MINT)

    await system.stop(timeout=2)
    assert not system.is_running
    assert executor.closed
    outcome = await system.handle_signal(buy_payload(mint="Late"))
    assert outcome.reason == "shutting_down"
