import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from core.signal_intake import SignalTracker
from core.types import ExecutionAdapter, SellResult
from data.price_service import PriceOracle
from db.position_store import PositionStore, PositionNotOpen, InvalidPositionError
from risk.monitoring import HeartbeatMonitor
from risk.position import Position, ClosedSummary
from strategies.base_strategy import ExitContext, ExitDecision
from strategies.copy_trading_strategy import CopyTradingStrategy, PARTIAL_TAKE_PROFIT
from strategies.volume_tracker import VolumeTracker
from utils.config import MonitorParameters
from utils.keyed_lock import KeyedLock
from utils.logger import TradingLogger
from utils.notifications import Notifier, LogNotifier

HOLD = "hold"
SKIP = "skip"
EXIT = "exit"
EXIT_FAILED = "exit_failed"
PARTIAL = "partial"
PARTIAL_FAILED = "partial_failed"
ERROR = "error"


@dataclass
class CycleOutcome:
    mint: str
    action: str
    reason: Optional[str] = None
    pnl_pct: Optional[float] = None
    details: Dict[str, Any] = field(default_factory=dict)


class PositionMonitor:
    """Evaluates every open position once per cycle and carries out the chosen exit.

    A cycle takes a snapshot of the open set, processes positions with
    bounded concurrency and finishes before the next one starts.
    """

    def __init__(self,
                 positions: PositionStore,
                 oracle: PriceOracle,
                 executor: ExecutionAdapter,
                 strategy: CopyTradingStrategy,
                 tracker: SignalTracker,
                 volume_tracker: VolumeTracker,
                 params: MonitorParameters,
                 dry_run: bool = False,
                 forced_exit_ttl: int = 120,
                 strategy_tag: str = "copy",
                 notifier: Optional[Notifier] = None,
                 heartbeat: Optional[HeartbeatMonitor] = None,
                 clock: Callable[[], float] = time.time,
                 logger: Optional[TradingLogger] = None):
        self.positions = positions
        self.oracle = oracle
        self.executor = executor
        self.strategy = strategy
        self.tracker = tracker
        self.volume_tracker = volume_tracker
        self.params = params
        self.dry_run = dry_run
        self.forced_exit_ttl = forced_exit_ttl
        self.strategy_tag = strategy_tag
        self.logger = logger or TradingLogger("position_monitor")
        self.notifier = notifier or LogNotifier(self.logger)
        self.heartbeat = heartbeat
        self.clock = clock
        self.exit_locks = KeyedLock()
        self.is_running = False
        self.last_cycle: List[CycleOutcome] = []

    async def run(self, stop_event: asyncio.Event):
        """Run cycles until ``stop_event`` is set; a cycle in progress always completes"""
        self.is_running = True
        self.logger.info(f"Position monitor started (interval={self.params.interval_seconds}s, "
                         f"concurrency={self.params.max_concurrency})")
        try:
            while not stop_event.is_set():
                started = time.monotonic()
                try:
                    self.last_cycle = await self.run_cycle()
                except Exception as e:
                    self.logger.error(f"Monitor cycle failed: {str(e)}")
                elapsed = time.monotonic() - started
                if self.heartbeat:
                    self.heartbeat.beat(elapsed)

                remaining = max(self.params.interval_seconds - elapsed, 0.0)
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    pass
        finally:
            self.is_running = False
            self.logger.info("Position monitor stopped")

    async def run_cycle(self) -> List[CycleOutcome]:
        # Positions opened under another strategy tag are left to their own exits
        positions = [p for p in await self.positions.get_open_positions() if p.strategy_tag == self.strategy_tag]
        if not positions:
            return []

        semaphore = asyncio.Semaphore(self.params.max_concurrency)

        async def guarded(position: Position) -> CycleOutcome:
            async with semaphore:
                try:
                    return await self.evaluate_position(position)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self.logger.error(f"Error evaluating {position.mint}: {str(e)}")
                    return CycleOutcome(position.mint, ERROR, details={'error': str(e)})

        return list(await asyncio.gather(*(guarded(p) for p in positions)))

    async def evaluate_position(self, position: Position) -> CycleOutcome:
        mint = position.mint

        try:
            quote = await asyncio.wait_for(self.oracle.get_price(mint), timeout=self.params.price_timeout_seconds)
        except asyncio.TimeoutError:
            self.logger.warning(f"Price fetch timed out for {mint}, skipping this cycle")
            return CycleOutcome(mint, SKIP, 'price_timeout')
        except Exception as e:
            self.logger.warning(f"Price fetch failed for {mint}: {str(e)}")
            return CycleOutcome(mint, SKIP, 'price_error')

        if not quote.known:
            self.logger.debug(f"Price unknown for {mint}, skipping this cycle")
            return CycleOutcome(mint, SKIP, 'price_unknown')

        price = quote.price
        refreshed = await self.positions.record_price(mint, price)
        if refreshed is None:
            # Closed by another path since the snapshot
            return CycleOutcome(mint, SKIP, 'not_open')

        now = self.clock()
        hold = refreshed.hold_seconds(now)
        pnl = refreshed.pnl_percent(price)

        velocity = None
        if self.volume_tracker.params.enabled:
            velocity = await self.volume_tracker.update(mint, price, now)

        forced = await self.positions.consume_forced_exit(mint)
        if forced:
            decision = self.strategy.check_exit(ExitContext(refreshed, price, now, forced_reason=forced))
            return await self._exit(refreshed, decision, price, rearm_flag=forced)

        if not self.dry_run:
            stage = await self.positions.get_tp_stage(mint)
            plan = self.strategy.next_partial_sell(refreshed, pnl, stage)
            if plan is not None:
                return await self._partial_sell(refreshed, plan, price, pnl)

        context = ExitContext(
            position=refreshed,
            price=price,
            now=now,
            source_sell_time=await self.tracker.wallet_sell_time(mint, refreshed.wallet_source),
            seller_count=await self.tracker.seller_count(
                mint, since=refreshed.entry_time, exclude=refreshed.wallet_source or None),
            velocity=velocity,
            volume_decayed=self.volume_tracker.has_decayed(velocity, hold),
        )
        decision = self.strategy.check_exit(context)
        if not decision.should_exit:
            return CycleOutcome(mint, HOLD, pnl_pct=decision.pnl_pct)

        return await self._exit(refreshed, decision, price)

    async def _exit(self, position: Position, decision: ExitDecision, price: float,
                    rearm_flag: Optional[str] = None) -> CycleOutcome:
        self.logger.info(f"Exit signal {position.mint}: reason={decision.reason}, pnl={decision.pnl_pct:+.2f}%, "
                         f"max={decision.max_pnl_pct:+.2f}%, hold={decision.hold_seconds:.0f}s {decision.details}")
        summary = await self.execute_exit(position, decision.reason, price)
        if summary is None:
            if rearm_flag and await self.positions.is_open(position.mint):
                await self.positions.set_forced_exit(position.mint, rearm_flag, self.forced_exit_ttl)
            return CycleOutcome(position.mint, EXIT_FAILED, decision.reason, decision.pnl_pct)
        return CycleOutcome(position.mint, EXIT, decision.reason, summary.pnl_pct,
                            details={'pnl_base': summary.pnl_base})

    async def _sell(self, mint: str, quantity: float, venue: str) -> SellResult:
        try:
            return await asyncio.wait_for(
                self.executor.sell(mint, quantity, venue),
                timeout=self.params.execution_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return SellResult.failed(f"Sell timed out after {self.params.execution_timeout_seconds}s")
        except Exception as e:
            return SellResult.failed(f"Executor raised {type(e).__name__}: {str(e)}")

    async def execute_exit(self, position: Position, reason: str, price: Optional[float]) -> Optional[ClosedSummary]:
        """Sell the full position and close it in the store.

        Returns None when the sell failed or the position was already closed;
        in both cases nothing is written. Sells for one mint never overlap,
        whichever path (monitor, manual, exit-all) asked for them.
        """
        mint = position.mint
        async with self.exit_locks.hold(mint):
            current = await self.positions.get_position(mint)
            if current is None or not current.is_open or not await self.positions.is_open(mint):
                self.logger.info(f"{mint} already closed, skipping {reason} exit")
                return None

            result = await self._sell(mint, current.token_amount, current.venue)
            if not result.success:
                self.logger.warning(f"Sell failed for {mint} ({reason}), position stays open: {result.error}")
                return None

            close_price = price
            if close_price is None or close_price <= 0:
                close_price = result.base_received / result.quantity_sold if result.quantity_sold > 0 else None

            try:
                summary = await self.positions.close(
                    mint, close_price, result.quantity_sold, result.base_received, reason, result.signature
                )
            except PositionNotOpen as e:
                self.logger.warning(f"Sell executed but close rejected for {mint}: {str(e)}")
                return None

        await self.tracker.clear_sells(mint)
        await self.volume_tracker.clear(mint)

        label = position.symbol or mint[:8]
        self.notifier.notify(
            f"{'[SIM] ' if result.simulated else ''}Closed {label}: {reason}, "
            f"PnL {summary.pnl_pct:+.2f}% ({summary.pnl_base:+.4f} SOL), held {summary.hold_seconds:.0f}s"
        )
        return summary

    async def _partial_sell(self, position: Position, plan, price: float, pnl: float) -> CycleOutcome:
        mint = position.mint
        self.logger.info(f"Partial take profit {mint}: stage {plan.stage} at {pnl:+.2f}% "
                         f"(level {plan.level.pnl_pct}%), selling {plan.tokens_to_sell:.0f} tokens")
        async with self.exit_locks.hold(mint):
            if not await self.positions.is_open(mint):
                return CycleOutcome(mint, SKIP, 'not_open')

            result = await self._sell(mint, plan.tokens_to_sell, position.venue)
            if not result.success:
                self.logger.warning(f"Partial sell failed for {mint}: {result.error}")
                return CycleOutcome(mint, PARTIAL_FAILED, PARTIAL_TAKE_PROFIT, pnl)

            try:
                updated = await self.positions.apply_partial_sell(
                    mint, result.quantity_sold, result.base_received, plan.stage)
            except (PositionNotOpen, InvalidPositionError) as e:
                self.logger.warning(f"Partial sell executed but not recorded for {mint}: {str(e)}")
                return CycleOutcome(mint, PARTIAL_FAILED, PARTIAL_TAKE_PROFIT, pnl)

        self.notifier.notify(
            f"Partial TP {position.symbol or mint[:8]} stage {plan.stage}: sold {result.quantity_sold:.0f} tokens "
            f"for {result.base_received:.4f} SOL at {pnl:+.2f}%"
        )
        return CycleOutcome(mint, PARTIAL, PARTIAL_TAKE_PROFIT, pnl,
                            details={'stage': plan.stage, 'remaining': updated.token_amount})
