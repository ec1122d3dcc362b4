import math
from dataclasses import dataclass
from typing import List, Optional

from risk.position import Position
from strategies.base_strategy import BaseStrategy, ExitContext, ExitDecision
from utils.config import ExitParameters, PartialTakeProfitLevel
from utils.logger import TradingLogger

FORCE_EXIT = "force_exit"
GRADUATION = "graduation"
COPY_SELL = "copy_sell"
TAKE_PROFIT = "take_profit"
TRAILING_STOP = "trailing_stop"
STOP_LOSS = "stop_loss"
VOLUME_DRY_UP = "volume_dry_up"
TRADERS_SOLD = "traders_sold"
MAX_HOLD_TIME = "max_hold_time"
MANUAL = "manual"
PARTIAL_TAKE_PROFIT = "partial_take_profit"


@dataclass
class PartialSellPlan:
    stage: int                  # 1-based level index
    level: PartialTakeProfitLevel
    tokens_to_sell: float


class CopyTradingStrategy(BaseStrategy):
    """Fixed-priority exit ladder for copied positions.

    Order: forced exit, wallet mirror, take profit (with early grace),
    trailing stop, stop loss, volume decay, corroborated sellers, max hold.
    The first rule that fires wins.
    """

    name = "copy"

    def __init__(self,
                 params: ExitParameters,
                 partial_levels: Optional[List[PartialTakeProfitLevel]] = None,
                 logger: Optional[TradingLogger] = None):
        self.params = params
        self.partial_levels = sorted(
            [lvl for lvl in (partial_levels or []) if lvl.pnl_pct > 0 and lvl.sell_pct > 0],
            key=lambda lvl: lvl.pnl_pct,
        )
        self.logger = logger or TradingLogger("copy_strategy")

    def check_exit(self, context: ExitContext) -> ExitDecision:
        params = self.params
        position = context.position
        price = context.price

        pnl = position.pnl_percent(price)
        max_pnl = max(position.max_pnl_percent(), pnl)
        hold = position.hold_seconds(context.now)

        def decide(reason: Optional[str], **details) -> ExitDecision:
            return ExitDecision(reason is not None, reason, pnl, max_pnl, hold, details)

        if context.forced_reason:
            reason = GRADUATION if context.forced_reason == GRADUATION else FORCE_EXIT
            return decide(reason, flag=context.forced_reason)

        if params.wallet_mirror_enabled and self._source_sold_after_entry(context):
            if hold < params.mirror_phase1_seconds:
                return decide(COPY_SELL, phase=1)
            if hold < params.mirror_phase2_seconds:
                if pnl < 0:
                    return decide(COPY_SELL, phase=2)
                self.logger.debug(f"{position.mint}: source sold in phase 2 at {pnl:+.2f}%, holding")

        if params.take_profit_enabled and pnl >= params.take_profit_pct:
            mega_pump = max_pnl >= params.take_profit_pct * params.mega_pump_multiplier
            if hold >= params.take_profit_grace_seconds or mega_pump:
                return decide(TAKE_PROFIT, target=params.take_profit_pct)
            self.logger.debug(f"{position.mint}: take profit deferred at {pnl:+.2f}% after {hold:.0f}s")

        if params.trailing_stop_enabled and max_pnl > 0:
            peak = max(position.max_price, price)
            if price <= peak * (1 - params.trailing_stop_pct / 100):
                return decide(TRAILING_STOP, peak_price=peak)

        if params.stop_loss_enabled and pnl <= -params.stop_loss_pct:
            return decide(STOP_LOSS, threshold=-params.stop_loss_pct)

        if context.volume_decayed:
            return decide(VOLUME_DRY_UP)

        if (params.sellers_exit_enabled and params.min_wallets_to_sell > 0
                and context.seller_count >= params.min_wallets_to_sell):
            return decide(TRADERS_SOLD, sellers=context.seller_count)

        if params.max_hold_enabled and hold >= params.max_hold_seconds:
            return decide(MAX_HOLD_TIME, limit=params.max_hold_seconds)

        return decide(None)

    @staticmethod
    def _source_sold_after_entry(context: ExitContext) -> bool:
        sold_at = context.source_sell_time
        return sold_at is not None and sold_at >= context.position.entry_time

    def next_partial_sell(self, position: Position, pnl_pct: float, current_stage: int) -> Optional[PartialSellPlan]:
        """Next take-profit level above ``current_stage`` whose threshold is reached"""
        if not self.params.partial_take_profit_enabled:
            return None
        for index, level in enumerate(self.partial_levels, start=1):
            if index <= current_stage or pnl_pct < level.pnl_pct:
                continue
            tokens = math.floor(position.token_amount * level.sell_pct / 100)
            if tokens <= 0 or tokens >= position.token_amount:
                return None
            return PartialSellPlan(stage=index, level=level, tokens_to_sell=float(tokens))
        return None
