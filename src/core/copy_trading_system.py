import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from core.graduation_handler import GraduationHandler
from core.position_monitor import PositionMonitor
from core.signal_intake import (
    CopySignal, SignalQueue, SignalTracker, SignalValidationError, normalize_signal, SELL,
)
from core.types import BuyResult, ExecutionAdapter
from data.price_service import PriceOracle
from db.position_store import PositionStore, PositionNotOpen, InvalidPositionError
from db.store import KeyValueStore
from risk.monitoring import HeartbeatMonitor
from risk.position import ClosedSummary
from risk.risk_manager import RiskManager, AdmissionDecision
from strategies.copy_trading_strategy import CopyTradingStrategy, MANUAL
from strategies.volume_tracker import VolumeTracker
from utils.config import Config
from utils.keyed_lock import KeyedLock
from utils.logger import TradingLogger
from utils.notifications import Notifier, LogNotifier


@dataclass
class SignalOutcome:
    mint: str
    wallet: str
    tx_type: str
    action: str                 # recorded, rejected, ignored, bought, buy_failed, invalid
    reason: str = ""
    confidence: int = 0


class TradingSystem:
    """Wires signal intake, admission, the position monitor and graduation checks around one store"""

    def __init__(self,
                 config: Config,
                 store: KeyValueStore,
                 oracle: PriceOracle,
                 executor: ExecutionAdapter,
                 notifier: Optional[Notifier] = None,
                 heartbeat: Optional[HeartbeatMonitor] = None,
                 feed: Optional[Any] = None,
                 clock: Callable[[], float] = time.time,
                 logger: Optional[TradingLogger] = None):
        self.config = config
        self.store = store
        self.oracle = oracle
        self.executor = executor
        self.feed = feed
        self.clock = clock
        self.logger = logger or TradingLogger("trading_system")
        self.notifier = notifier or LogNotifier(self.logger)
        self.heartbeat = heartbeat
        self.dry_run = config.trading.dry_run

        self.positions = PositionStore(
            store,
            network_fee=config.trading.network_fee_sol,
            tp_stage_ttl=config.monitor.tp_stage_ttl_seconds,
            clock=clock,
            logger=self.logger.child("positions"),
        )
        self.tracker = SignalTracker(store, config.admission.signal_ttl_seconds, logger=self.logger.child("signals"))
        self.queue = SignalQueue(store, logger=self.logger.child("queue"))
        self.risk_manager = RiskManager(
            self.positions, self.tracker, config.admission,
            dry_run=self.dry_run, clock=clock, logger=self.logger.child("risk"),
        )
        self.strategy = CopyTradingStrategy(config.exit, config.partial_levels, logger=self.logger.child("strategy"))
        self.volume_tracker = VolumeTracker(store, config.volume)
        self.monitor = PositionMonitor(
            self.positions, oracle, executor, self.strategy, self.tracker, self.volume_tracker,
            config.monitor,
            dry_run=self.dry_run,
            forced_exit_ttl=config.graduation.forced_exit_ttl_seconds,
            strategy_tag=config.trading.strategy_tag,
            notifier=self.notifier,
            heartbeat=heartbeat,
            clock=clock,
            logger=self.logger.child("monitor"),
        )
        self.graduation = GraduationHandler(
            self.positions, oracle, config.graduation, notifier=self.notifier, logger=self.logger.child("graduation"),
        )

        self.position_locks = KeyedLock()
        self.is_running = False
        self.is_accepting_new_trades = True
        self.stop_event = asyncio.Event()
        self.tasks: List[asyncio.Task] = []

    # Signal handling

    async def handle_signal(self, payload: Any) -> SignalOutcome:
        """Normalize one inbound payload and route it to seller tracking or admission"""
        try:
            signal = normalize_signal(payload, now=self.clock())
        except SignalValidationError as e:
            self.logger.warning(f"Dropping invalid signal: {str(e)}")
            return SignalOutcome("", "", "", "invalid", str(e))

        tracked = await self.tracker.tracked_wallets()
        if tracked and signal.wallet not in tracked:
            return SignalOutcome(signal.mint, signal.wallet, signal.tx_type, "ignored", "untracked_wallet")

        if signal.tx_type == SELL:
            sellers = await self.tracker.record_sell(signal)
            self.logger.info(f"Sell signal {signal.mint} from {signal.wallet} ({sellers} sellers)")
            return SignalOutcome(signal.mint, signal.wallet, SELL, "recorded", f"sellers={sellers}")

        buyers = await self.tracker.record_buy(signal)
        signal = signal.with_count(max(buyers, signal.corroboration_count))

        async with self.position_locks.hold(signal.mint):
            return await self._handle_buy(signal)

    async def _handle_buy(self, signal: CopySignal) -> SignalOutcome:
        if not self.is_accepting_new_trades:
            self.logger.info("System is in shutdown mode - no new positions allowed")
            return SignalOutcome(signal.mint, signal.wallet, signal.tx_type, "ignored", "shutting_down")

        decision: AdmissionDecision = await self.risk_manager.evaluate_buy(signal)
        if not decision.admit:
            self.logger.info(f"Buy rejected {signal.mint} from {signal.wallet}: {decision.reason}")
            return SignalOutcome(signal.mint, signal.wallet, signal.tx_type, "rejected", decision.reason)

        if not self.dry_run and not self.config.trading.auto_trading:
            self.logger.info(f"Buy admitted for {signal.mint} but auto trading is disabled")
            return SignalOutcome(signal.mint, signal.wallet, signal.tx_type, "ignored", "auto_trading_disabled",
                                 decision.confidence)

        self.logger.info(f"Buy admitted {signal.mint} from {signal.wallet} "
                         f"(wallets={signal.corroboration_count}, confidence={decision.confidence})")
        result = await self._buy(signal)
        if not result.success:
            self.logger.warning(f"Buy failed for {signal.mint}: {result.error}")
            return SignalOutcome(signal.mint, signal.wallet, signal.tx_type, "buy_failed", result.error or "",
                                 decision.confidence)

        try:
            position = await self.positions.open(
                signal.mint,
                result.effective_price,
                result.base_spent,
                result.quantity_received,
                {
                    'wallet_source': signal.wallet,
                    'symbol': signal.symbol,
                    'venue': result.venue,
                    'signature': result.signature,
                    'simulated': result.simulated,
                    'strategy_tag': self.config.trading.strategy_tag,
                },
            )
        except InvalidPositionError as e:
            self.logger.error(f"Buy executed but position rejected for {signal.mint}: {str(e)}")
            return SignalOutcome(signal.mint, signal.wallet, signal.tx_type, "buy_failed", str(e), decision.confidence)

        await self.tracker.set_cooldown(signal.mint, self.config.admission.cooldown_seconds)
        self.notifier.notify(
            f"{'[SIM] ' if result.simulated else ''}Bought {signal.symbol or signal.mint[:8]}: "
            f"{position.base_amount:.4f} SOL @ {position.entry_price:.10f}, copying {signal.wallet[:8]}"
        )
        return SignalOutcome(signal.mint, signal.wallet, signal.tx_type, "bought", decision.reason, decision.confidence)

    async def _buy(self, signal: CopySignal) -> BuyResult:
        try:
            return await asyncio.wait_for(
                self.executor.buy(signal.mint, self.config.trading.position_size_sol, signal.venue),
                timeout=self.config.monitor.execution_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return BuyResult.failed("Buy timed out")
        except Exception as e:
            return BuyResult.failed(f"Executor raised {type(e).__name__}: {str(e)}")

    async def _consume(self, raw: str):
        await self.handle_signal(raw)

    # Lifecycle

    async def start(self, tracked_wallets: Optional[List[str]] = None):
        """Start intake, monitor and graduation tasks"""
        try:
            if tracked_wallets:
                added = await self.tracker.add_tracked_wallets(tracked_wallets)
                self.logger.info(f"Tracking {len(tracked_wallets)} wallets ({added} new)")

            self.is_running = True
            self.is_accepting_new_trades = True
            self.stop_event.clear()
            self.logger.critical(f"Copy trading system starting: mode={'DRY RUN' if self.dry_run else 'LIVE'}")

            if self.heartbeat:
                self.heartbeat.start_monitoring()

            self.tasks = [
                asyncio.create_task(self.queue.consume(self._consume, self.stop_event), name="signal_intake"),
                asyncio.create_task(self.monitor.run(self.stop_event), name="position_monitor"),
            ]
            if self.config.graduation.enabled:
                self.tasks.append(asyncio.create_task(self.graduation.run(self.stop_event), name="graduation"))
            if self.feed is not None:
                self.tasks.append(asyncio.create_task(self.feed.start(), name="wallet_feed"))
        except Exception as e:
            self.logger.critical(f"Failed to start trading system: {str(e)}")
            self.is_running = False
            raise

    async def stop(self, timeout: float = 30.0):
        """Stop taking signals, let running cycles finish, then release connections"""
        self.logger.critical("Initiating trading system shutdown")
        self.is_accepting_new_trades = False
        self.stop_event.set()

        if self.feed is not None:
            await self.feed.stop()

        if self.tasks:
            done, pending = await asyncio.wait(self.tasks, timeout=timeout)
            for task in pending:
                self.logger.warning(f"Task {task.get_name()} did not finish in {timeout}s, cancelling")
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                if not task.cancelled() and task.exception():
                    self.logger.error(f"Task {task.get_name()} ended with error: {task.exception()}")
        self.tasks = []

        if self.heartbeat:
            self.heartbeat.stop_monitoring()

        await self.notifier.close()
        await self.executor.close()
        await self.oracle.close()
        await self.store.close()
        self.is_running = False
        self.logger.info("Trading system stopped successfully")

    # Operational surface

    async def status(self) -> Dict[str, Any]:
        now = self.clock()
        positions = await self.positions.get_open_positions()
        status = {
            'mode': 'dry_run' if self.dry_run else 'live',
            'running': self.is_running,
            'open_positions': len(positions),
            'max_positions': self.config.admission.max_positions,
            'tracked_wallets': await self.tracker.tracked_count(),
            'pending_signals': await self.queue.depth(),
            'positions': [p.summary(now) for p in positions],
        }
        if self.heartbeat:
            status['health'] = self.heartbeat.get_status()
        return status

    async def manual_exit(self, mint: str) -> Optional[ClosedSummary]:
        """Sell one position now. Raises PositionNotOpen if there is nothing to sell."""
        position = await self.positions.get_position(mint)
        if position is None or not position.is_open or not await self.positions.is_open(mint):
            raise PositionNotOpen(f"No open position for {mint}")

        quote = await self.oracle.get_price(mint)
        self.logger.info(f"Manual exit requested for {mint}")
        return await self.monitor.execute_exit(position, MANUAL, quote.price if quote.known else None)

    async def exit_all(self) -> Dict[str, Optional[ClosedSummary]]:
        results = {}
        for position in await self.positions.get_open_positions():
            try:
                results[position.mint] = await self.manual_exit(position.mint)
            except PositionNotOpen:
                self.logger.info(f"{position.mint} already closed")
                results[position.mint] = None
        return results

    async def diagnose(self, fix: bool = False) -> Dict[str, Any]:
        report = await self.positions.diagnose(self.config.monitor.stale_position_hours)
        result = report.as_dict()
        result['pending_signals'] = await self.queue.depth()
        result['tracked_wallets'] = await self.tracker.tracked_count()
        if fix:
            result['removed_orphans'] = await self.positions.reconcile(report)
        for mint in report.orphan_members + report.unlisted_open + report.closed_in_set:
            self.logger.warning(f"Store inconsistency for {mint}")
        return result
