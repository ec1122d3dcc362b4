import asyncio
from typing import List, Optional

from data.price_service import PriceOracle
from db.position_store import PositionStore
from strategies.copy_trading_strategy import GRADUATION
from utils.config import GraduationParameters
from utils.logger import TradingLogger
from utils.notifications import Notifier, LogNotifier


class GraduationHandler:
    """Detects positions whose token migrated off the bonding curve.

    It never sells. Migrated positions are flagged in the store and, when
    auto-sell is on and the PnL floor is met, a forced exit flag is set for
    the monitor to act on.
    """

    def __init__(self,
                 positions: PositionStore,
                 oracle: PriceOracle,
                 params: GraduationParameters,
                 notifier: Optional[Notifier] = None,
                 logger: Optional[TradingLogger] = None):
        self.positions = positions
        self.oracle = oracle
        self.params = params
        self.logger = logger or TradingLogger("graduation_handler")
        self.notifier = notifier or LogNotifier(self.logger)

    async def run(self, stop_event: asyncio.Event):
        self.logger.info(f"Graduation handler started (interval={self.params.check_interval_seconds}s, "
                         f"auto_sell={'on' if self.params.auto_sell else 'off'})")
        while not stop_event.is_set():
            try:
                await self.check_positions()
            except Exception as e:
                self.logger.error(f"Graduation check failed: {str(e)}")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.params.check_interval_seconds)
            except asyncio.TimeoutError:
                pass

    async def check_positions(self) -> List[str]:
        """Returns the mints that received a forced exit flag"""
        flagged = []
        for position in await self.positions.get_open_positions():
            quote = await self.oracle.get_price(position.mint)
            if not quote.known or not quote.migrated:
                continue

            if await self.positions.mark_graduated(position.mint):
                self.logger.info(f"Position {position.mint} graduated to the secondary market")
                self.notifier.notify(f"{position.symbol or position.mint[:8]} graduated")

            if not self.params.auto_sell:
                continue

            pnl = position.pnl_percent(quote.price)
            if pnl >= self.params.min_profit_pct:
                await self.positions.set_forced_exit(position.mint, GRADUATION, self.params.forced_exit_ttl_seconds)
                self.logger.info(f"Forced exit set for {position.mint} at {pnl:+.2f}%")
                flagged.append(position.mint)
            else:
                self.logger.debug(f"{position.mint} graduated at {pnl:+.2f}%, below {self.params.min_profit_pct}%")
        return flagged
