import pytest

from risk.position import Position
from strategies.base_strategy import ExitContext
from strategies.copy_trading_strategy import (
    CopyTradingStrategy, FORCE_EXIT, GRADUATION, COPY_SELL, TAKE_PROFIT, TRAILING_STOP, STOP_LOSS,
    VOLUME_DRY_UP, TRADERS_SOLD, MAX_HOLD_TIME,
)
from utils.config import ExitParameters, PartialTakeProfitLevel

ENTRY = 1000.0


def make_position(max_price=1.0, tokens=1000.0, wallet="source"):
    return Position(
        mint="M",
        entry_price=1.0,
        base_amount=tokens,
        token_amount=tokens,
        entry_time=ENTRY,
        wallet_source=wallet,
        max_price=max_price,
    )


def ctx(price, hold=100.0, max_price=None, **kwargs):
    position = make_position(max_price=max(max_price or 1.0, price))
    return ExitContext(position=position, price=price, now=ENTRY + hold, **kwargs)


@pytest.fixture
def params():
    return ExitParameters()


@pytest.fixture
def strategy(params, logger):
    return CopyTradingStrategy(params, logger=logger)


def test_hold_when_nothing_fires(strategy):
    decision = strategy.check_exit(ctx(1.05))
    assert not decision.should_exit
    assert decision.reason is None
    assert decision.pnl_pct == pytest.approx(5.0)


def test_forced_exit_beats_everything(strategy):
    decision = strategy.check_exit(ctx(0.5, forced_reason=GRADUATION, seller_count=5))
    assert decision.reason == GRADUATION
    assert strategy.check_exit(ctx(2.0, forced_reason="operator")).reason == FORCE_EXIT


def test_mirror_phase_one_copies_any_sell(strategy):
    decision = strategy.check_exit(ctx(1.5, hold=30, source_sell_time=ENTRY + 10))
    assert decision.reason == COPY_SELL
    assert decision.details['phase'] == 1


def test_mirror_phase_two_only_copies_losing_sells(strategy):
    assert not strategy.check_exit(ctx(1.05, hold=300, source_sell_time=ENTRY + 250)).should_exit
    decision = strategy.check_exit(ctx(0.95, hold=300, source_sell_time=ENTRY + 250))
    assert decision.reason == COPY_SELL
    assert decision.details['phase'] == 2


def test_mirror_ignores_sells_after_phase_two_and_before_entry(strategy):
    assert not strategy.check_exit(ctx(0.95, hold=700, source_sell_time=ENTRY + 650)).should_exit
    assert not strategy.check_exit(ctx(0.95, hold=10, source_sell_time=ENTRY - 5)).should_exit


def test_take_profit_deferred_inside_grace(strategy):
    assert not strategy.check_exit(ctx(1.4, hold=10)).should_exit
    assert strategy.check_exit(ctx(1.4, hold=61)).reason == TAKE_PROFIT


def test_mega_pump_skips_grace(strategy):
    decision = strategy.check_exit(ctx(1.5, hold=10, max_price=1.7))
    assert decision.reason == TAKE_PROFIT
    assert decision.max_pnl_pct == pytest.approx(70.0)


def test_take_profit_beats_trailing_stop(params, strategy):
    assert strategy.check_exit(ctx(1.6, max_price=2.0)).reason == TAKE_PROFIT
    params.take_profit_enabled = False
    assert strategy.check_exit(ctx(1.6, max_price=2.0)).reason == TRAILING_STOP


def test_trailing_stop_beats_stop_loss(strategy):
    decision = strategy.check_exit(ctx(0.85, max_price=1.1))
    assert decision.reason == TRAILING_STOP
    assert decision.details['peak_price'] == 1.1


def test_trailing_stop_needs_profit_peak(strategy):
    assert not strategy.check_exit(ctx(0.9, max_price=1.0)).should_exit


def test_stop_loss(strategy):
    decision = strategy.check_exit(ctx(0.86))
    assert decision.reason == STOP_LOSS
    assert decision.pnl_pct == pytest.approx(-14.0)


def test_volume_decay_beats_sellers(strategy):
    assert strategy.check_exit(ctx(1.0, volume_decayed=True, seller_count=3)).reason == VOLUME_DRY_UP


def test_traders_sold_threshold(params, strategy):
    assert strategy.check_exit(ctx(1.0, seller_count=1)).reason == TRADERS_SOLD
    params.min_wallets_to_sell = 2
    assert not strategy.check_exit(ctx(1.0, seller_count=1)).should_exit


def test_max_hold_is_last(params, strategy):
    params.max_hold_enabled = True
    assert strategy.check_exit(ctx(1.0, hold=240)).reason == MAX_HOLD_TIME
    assert strategy.check_exit(ctx(1.0, hold=240, seller_count=1)).reason == TRADERS_SOLD
    assert not strategy.check_exit(ctx(1.0, hold=239)).should_exit


def test_disabled_rules_do_not_fire(params, strategy):
    params.stop_loss_enabled = False
    params.sellers_exit_enabled = False
    assert not strategy.check_exit(ctx(0.5, seller_count=4)).should_exit


class TestPartialTakeProfit:
    @pytest.fixture
    def partial(self, params, logger):
        params.partial_take_profit_enabled = True
        levels = [PartialTakeProfitLevel(200, 25), PartialTakeProfitLevel(100, 25), PartialTakeProfitLevel(-5, 10)]
        return CopyTradingStrategy(params, levels, logger=logger)

    def test_levels_sorted_and_filtered(self, partial):
        assert [lvl.pnl_pct for lvl in partial.partial_levels] == [100, 200]

    def test_next_stage(self, partial):
        plan = partial.next_partial_sell(make_position(), 150.0, current_stage=0)
        assert plan.stage == 1
        assert plan.tokens_to_sell == 250
        assert partial.next_partial_sell(make_position(), 150.0, current_stage=1) is None
        assert partial.next_partial_sell(make_position(), 250.0, current_stage=1).stage == 2
        assert partial.next_partial_sell(make_position(), 250.0, current_stage=2) is None

    def test_skips_dust(self, partial):
        assert partial.next_partial_sell(make_position(tokens=3), 150.0, current_stage=0) is None

    def test_disabled(self, params, partial):
        params.partial_take_profit_enabled = False
        assert partial.next_partial_sell(make_position(), 500.0, current_stage=0) is None
