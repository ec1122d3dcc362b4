import time
from dataclasses import dataclass
from typing import Callable, Optional

from core.signal_intake import CopySignal, SignalTracker
from db.position_store import PositionStore
from utils.config import AdmissionParameters
from utils.logger import TradingLogger

APPROVED = "approved"
LOW_CORROBORATION = "low_corroboration"
REBUY_BLOCKED = "rebuy_blocked"
COOLDOWN = "cooldown"
DUPLICATE_POSITION = "duplicate_position"
MAX_POSITIONS = "max_positions"


@dataclass
class AdmissionDecision:
    admit: bool
    reason: str
    confidence: int = 0


def confidence_for(count: int) -> int:
    """Confidence grows with the number of wallets backing the buy"""
    if count >= 3:
        return 95
    if count == 2:
        return 70
    if count == 1:
        return 30
    return 0


class RiskManager:
    def __init__(self,
                 positions: PositionStore,
                 tracker: SignalTracker,
                 risk_params: AdmissionParameters,
                 dry_run: bool = False,
                 clock: Callable[[], float] = time.time,
                 logger: Optional[TradingLogger] = None):
        self.positions = positions
        self.tracker = tracker
        self.risk_params = risk_params
        self.dry_run = dry_run
        self.clock = clock
        self.logger = logger or TradingLogger("risk_manager")

    async def evaluate_buy(self, signal: CopySignal) -> AdmissionDecision:
        """Run the admission checks in order and stop at the first failure"""
        params = self.risk_params

        if not self.dry_run and signal.corroboration_count < params.min_wallets_to_buy:
            self.logger.debug(f"{signal.mint}: {signal.corroboration_count}/{params.min_wallets_to_buy} wallets")
            return AdmissionDecision(False, LOW_CORROBORATION)

        if params.block_rebuys and await self.is_rebuy(signal):
            self.logger.debug(f"{signal.mint}: rebuy blocked for wallet {signal.wallet}")
            return AdmissionDecision(False, REBUY_BLOCKED)

        if await self.tracker.cooldown_active(signal.mint):
            return AdmissionDecision(False, COOLDOWN)

        if await self.positions.is_open(signal.mint):
            return AdmissionDecision(False, DUPLICATE_POSITION)

        open_count = await self.positions.count_open()
        if open_count >= params.max_positions:
            self.logger.debug(f"Max positions reached: {open_count}")
            return AdmissionDecision(False, MAX_POSITIONS)

        return AdmissionDecision(True, APPROVED, confidence_for(signal.corroboration_count))

    async def is_rebuy(self, signal: CopySignal) -> bool:
        """True if this wallet already holds the mint through us or closed it within the rebuy window"""
        position = await self.positions.get_position(signal.mint)
        if position is not None and position.is_open and position.wallet_source == signal.wallet:
            return True

        window = self.risk_params.rebuy_window_seconds
        if window <= 0:
            return False

        now = self.clock()
        for trade in await self.positions.get_recent_trades(self.risk_params.rebuy_lookback_days):
            if trade.mint != signal.mint or trade.wallet_source != signal.wallet:
                continue
            if now - trade.exit_time < window:
                return True
        return False
