import argparse
import asyncio
import json
import signal
import sys
from typing import List, Optional

from solana.rpc.async_api import AsyncClient

from analysis.trade_analytics import TradeAnalytics
from core.copy_trading_system import TradingSystem
from data.price_service import PriceService
from data.rpc_rate_limiter import RPCRateLimiter
from data.wallet_feed import WalletFeed
from db.position_store import PositionNotOpen
from db.store import create_store
from execution.bonding_curve import BondingCurveReader
from execution.dry_run_executor import DryRunExecutor
from execution.live_run_executor import LiveRunExecutor
from execution.wallet import load_keypair
from risk.monitoring import HeartbeatMonitor
from utils.config import Config, ConfigurationError
from utils.logger import TradingLogger
from utils.notifications import create_notifier


def build_system(config: Config, logger: TradingLogger, with_feed: bool = False) -> TradingSystem:
    """Assemble the trading system from configuration"""
    conn = config.connection
    store = create_store(conn.store_backend, conn.redis_url, logger=logger.child("store"))
    rate_limiter = RPCRateLimiter(logger=logger.child("rate_limiter"))

    curve_reader = None
    if conn.rpc_url:
        curve_reader = BondingCurveReader(AsyncClient(conn.rpc_url), rate_limiter, logger=logger.child("curve"))
    oracle = PriceService(
        curve_reader,
        rate_limiter,
        price_api_url=conn.price_api_url,
        quote_api_url=conn.quote_api_url,
        cache_seconds=config.monitor.price_cache_seconds,
        timeout_seconds=config.monitor.price_timeout_seconds,
        logger=logger.child("prices"),
    )

    if config.trading.dry_run:
        executor = DryRunExecutor(oracle, config.trading.simulated_slippage_bps, logger=logger.child("executor"))
    else:
        executor = LiveRunExecutor(
            load_keypair(conn.private_key),
            conn.rpc_url,
            logger=logger.child("executor"),
            slippage=config.trading.slippage,
            quote_api_url=conn.quote_api_url,
            swap_api_url=conn.swap_api_url,
            confirm_timeout=config.monitor.execution_timeout_seconds,
        )

    system = TradingSystem(
        config,
        store,
        oracle,
        executor,
        notifier=create_notifier(conn.telegram_bot_token, conn.telegram_chat_id, logger.child("notifier")),
        heartbeat=HeartbeatMonitor(logger.child("heartbeat")),
        logger=logger,
    )
    if with_feed and conn.ws_url:
        system.feed = WalletFeed(
            conn.ws_url,
            system.queue,
            config.load_tracked_wallets(),
            stale_seconds=config.monitor.feed_stale_seconds,
            logger=logger.child("feed"),
        )
    return system


class InitTradingSystem:
    def __init__(self, config: Config, logger: TradingLogger):
        self.config = config
        self.logger = logger
        self.trading_bot: Optional[TradingSystem] = None
        self._shutdown_event = asyncio.Event()

    def handle_shutdown(self, signum):
        """Handle shutdown signals"""
        self.logger.info(f"Received signal {signum}. Starting graceful shutdown...")
        self._shutdown_event.set()

    async def run_trading_system(self) -> None:
        """Run trading system until a shutdown signal arrives"""
        tracked_wallets = self.config.load_tracked_wallets()
        self.logger.info(f"Loaded {len(tracked_wallets)} tracked wallets")

        self.trading_bot = build_system(self.config, self.logger, with_feed=True)
        try:
            await self.trading_bot.start(tracked_wallets)
            self.logger.info("Trading system started successfully")
            await self._shutdown_event.wait()
        finally:
            await self.shutdown()

    async def shutdown(self, shutdown_timeout: float = 30.0):
        """Gracefully shutdown the trading system"""
        if not (self.trading_bot and self.trading_bot.is_running):
            return
        self.logger.info("Shutting down trading system...")
        try:
            await asyncio.wait_for(self.trading_bot.stop(), timeout=shutdown_timeout)
        except asyncio.TimeoutError:
            self.logger.error(f"Shutdown timed out after {shutdown_timeout} seconds")
        finally:
            self.trading_bot.is_running = False


def _print(data) -> None:
    print(json.dumps(data, indent=2, default=str))


async def run_command(args: argparse.Namespace, config: Config, logger: TradingLogger) -> int:
    if args.command == 'run':
        init_system = InitTradingSystem(config, logger)
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, init_system.handle_shutdown, sig)
        await init_system.run_trading_system()
        return 0

    system = build_system(config, logger)
    try:
        if args.command == 'status':
            _print(await system.status())
        elif args.command == 'positions':
            _print((await system.status())['positions'])
        elif args.command == 'sell':
            try:
                summary = await system.manual_exit(args.mint)
            except PositionNotOpen as e:
                print(str(e))
                return 1
            if summary is None:
                print(f"Sell failed for {args.mint}, position remains open")
                return 1
            _print(summary)
        elif args.command == 'sell-all':
            results = await system.exit_all()
            _print({mint: (s.pnl_pct if s else None) for mint, s in results.items()})
            if any(s is None for s in results.values()):
                return 1
        elif args.command == 'stats':
            analytics = await TradeAnalytics.from_store(system.positions, args.days)
            _print(analytics.report())
            if args.export:
                rows = analytics.to_csv(args.export)
                print(f"Exported {rows} trades to {args.export}")
        elif args.command == 'diagnose':
            _print(await system.diagnose(fix=args.fix))
    finally:
        await system.notifier.close()
        await system.executor.close()
        await system.oracle.close()
        await system.store.close()
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Wallet copy-trading bot")
    parser.add_argument('--config', default='config.yaml', help="YAML configuration file")
    parser.add_argument('--console', action='store_true', help="Also log to the console")
    sub = parser.add_subparsers(dest='command', required=True)

    sub.add_parser('run', help="Start intake, monitor and graduation loops")
    sub.add_parser('status', help="Show system status")
    sub.add_parser('positions', help="List open positions")
    sell = sub.add_parser('sell', help="Manually exit one position")
    sell.add_argument('mint')
    sub.add_parser('sell-all', help="Manually exit every open position")
    stats = sub.add_parser('stats', help="Closed-trade statistics")
    stats.add_argument('--days', type=int, default=7)
    stats.add_argument('--export', help="Write raw trades to this CSV file")
    diagnose = sub.add_parser('diagnose', help="Check store consistency")
    diagnose.add_argument('--fix', action='store_true', help="Remove orphaned open-set members")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        config = Config(args.config)
        config.validate()
    except ConfigurationError as e:
        print(f"Configuration error: {str(e)}", file=sys.stderr)
        return 2

    logger = TradingLogger("copy_bot", log_dir=config.connection.log_dir, console_output=args.console)
    logger.info(f"Configuration: {json.dumps(config.summary(), default=str)}")
    try:
        return asyncio.run(run_command(args, config, logger))
    except Exception as e:
        logger.critical(f"Fatal error: {str(e)}")
        raise
    finally:
        logger.info("Trading system shutdown complete")


if __name__ == "__main__":
    sys.exit(main())
