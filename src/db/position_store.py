import json
import time
from dataclasses import dataclass, field
from datetime import timedelta, datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from db.store import KeyValueStore
from risk.position import Position, ClosedSummary, TradeRecord, ledger_date, OPEN, CLOSED
from utils.keyed_lock import KeyedLock
from utils.logger import TradingLogger
from utils.safe_number import safe_number, safe_divide

OPEN_POSITIONS_KEY = "open_positions"


def position_key(mint: str) -> str:
    return f"position:{mint}"


def trades_key(date: str) -> str:
    return f"trades:{date}"


def tp_stage_key(mint: str) -> str:
    return f"tp_stage:{mint}"


def forced_exit_key(mint: str) -> str:
    return f"force_exit:{mint}"


class InvalidPositionError(ValueError):
    """Raised when position input fails validation; nothing is stored"""
    pass


class PositionNotOpen(Exception):
    """Raised when a mutation targets a position that is closed or absent"""
    pass


@dataclass
class StoreDiagnostics:
    open_count: int = 0
    orphan_members: List[str] = field(default_factory=list)     # In the open set, no record
    unlisted_open: List[str] = field(default_factory=list)      # Record says open, not in the set
    closed_in_set: List[str] = field(default_factory=list)      # Record says closed, still in the set
    stale_positions: List[str] = field(default_factory=list)    # Open longer than the threshold
    trades_today: int = 0

    @property
    def healthy(self) -> bool:
        return not (self.orphan_members or self.unlisted_open or self.closed_in_set)

    def as_dict(self) -> Dict[str, Any]:
        return {
            'open_count': self.open_count,
            'orphan_members': self.orphan_members,
            'unlisted_open': self.unlisted_open,
            'closed_in_set': self.closed_in_set,
            'stale_positions': self.stale_positions,
            'trades_today': self.trades_today,
            'healthy': self.healthy,
        }


class PositionStore:
    """Single writer for position records, the open set and the trade ledger.

    Every mutation for a mint runs under that mint's lock and writes through
    one atomic store batch, so the open set and the per-mint record are never
    observed out of step.
    """

    def __init__(self,
                 store: KeyValueStore,
                 network_fee: float = 0.000005,
                 tp_stage_ttl: int = 86_400,
                 clock: Callable[[], float] = time.time,
                 logger: Optional[TradingLogger] = None):
        self.store = store
        self.network_fee = network_fee
        self.tp_stage_ttl = tp_stage_ttl
        self.clock = clock
        self.logger = logger or TradingLogger("position_store")
        self.position_locks = KeyedLock()

    def _lock(self, mint: str):
        return self.position_locks.hold(mint)

    # Reads

    async def is_open(self, mint: str) -> bool:
        return await self.store.sismember(OPEN_POSITIONS_KEY, mint)

    async def count_open(self) -> int:
        return await self.store.scard(OPEN_POSITIONS_KEY)

    async def get_position(self, mint: str) -> Optional[Position]:
        return Position.from_record(await self.store.hgetall(position_key(mint)))

    async def get_open_positions(self) -> List[Position]:
        """Snapshot of open positions; members without a usable record are skipped"""
        positions = []
        for mint in sorted(await self.store.smembers(OPEN_POSITIONS_KEY)):
            position = await self.get_position(mint)
            if position is None:
                self.logger.warning(f"Open set member {mint} has no position record")
                continue
            if not position.is_open:
                self.logger.warning(f"Open set member {mint} has status {position.status}")
                continue
            positions.append(position)
        return positions

    async def get_tp_stage(self, mint: str) -> int:
        return int(safe_number(await self.store.get(tp_stage_key(mint)), 0))

    # Lifecycle

    async def open(self,
                   mint: str,
                   entry_price: Any,
                   base_amount: Any,
                   token_amount: Any,
                   metadata: Optional[Dict[str, Any]] = None) -> Position:
        """Create an open position and add it to the open set in one batch"""
        price = safe_number(entry_price, None)
        quantity = safe_number(token_amount, None)
        spent = safe_number(base_amount, None)
        if not mint:
            raise InvalidPositionError("Mint is required")
        if price is None or price <= 0:
            raise InvalidPositionError(f"Invalid entry price for {mint}: {entry_price!r}")
        if quantity is None or quantity <= 0:
            raise InvalidPositionError(f"Invalid token amount for {mint}: {token_amount!r}")
        if spent is None or spent < 0:
            raise InvalidPositionError(f"Invalid base amount for {mint}: {base_amount!r}")

        meta = metadata or {}
        async with self._lock(mint):
            if await self.is_open(mint):
                raise InvalidPositionError(f"Position already open for {mint}")

            position = Position(
                mint=mint,
                entry_price=price,
                base_amount=spent,
                token_amount=quantity,
                entry_time=safe_number(meta.get('entry_time'), None) or self.clock(),
                strategy_tag=meta.get('strategy_tag', 'copy'),
                symbol=meta.get('symbol', ''),
                wallet_source=meta.get('wallet_source', ''),
                venue=meta.get('venue', ''),
                entry_signature=meta.get('signature', ''),
                simulated=bool(meta.get('simulated', False)),
                original_base_amount=spent,
                original_token_amount=quantity,
                max_price=price,
                last_price=price,
            )
            position.last_price_time = position.entry_time

            await (self.store.pipeline()
                   .delete(position_key(mint), tp_stage_key(mint), forced_exit_key(mint))
                   .hset(position_key(mint), position.to_record())
                   .sadd(OPEN_POSITIONS_KEY, mint)
                   .execute())

        self.logger.info(f"Opened position {mint}: price={price:.10f}, base={spent:.6f}, "
                         f"tokens={quantity:.2f}, source={position.wallet_source or '-'}")
        return position

    async def ratchet_max_price(self, mint: str, observed_price: Any) -> None:
        """Raise the running max if the observed price exceeds it"""
        price = safe_number(observed_price, None)
        if price is None or price <= 0:
            return
        async with self._lock(mint):
            position = await self.get_position(mint)
            if position is None or not position.is_open:
                return
            if price > position.max_price:
                await self.store.hset(position_key(mint), {'max_price': str(price)})

    async def record_price(self, mint: str, observed_price: Any) -> Optional[Position]:
        """Ratchet the max, cache the last price and update PnL extremes.

        Returns the refreshed position, or None if it is no longer open.
        """
        price = safe_number(observed_price, None)
        if price is None or price <= 0:
            return None
        async with self._lock(mint):
            position = await self.get_position(mint)
            if position is None or not position.is_open:
                return None

            now = self.clock()
            position.max_price = max(position.max_price, position.entry_price, price)
            position.last_price = price
            position.last_price_time = now
            pnl = position.pnl_percent(price)
            position.max_pnl_pct = max(position.max_pnl_pct, pnl)
            position.min_pnl_pct = min(position.min_pnl_pct, pnl)

            await self.store.hset(position_key(mint), {
                'max_price': str(position.max_price),
                'last_price': str(price),
                'last_price_time': str(now),
                'max_pnl_pct': str(position.max_pnl_pct),
                'min_pnl_pct': str(position.min_pnl_pct),
            })
            return position

    async def apply_partial_sell(self, mint: str, tokens_sold: Any, base_received: Any, stage: int) -> Position:
        """Shrink quantity and cost basis proportionally and advance the take-profit stage"""
        sold = safe_number(tokens_sold, None)
        received = max(safe_number(base_received, 0.0), 0.0)
        async with self._lock(mint):
            if not await self.is_open(mint):
                raise PositionNotOpen(f"Position {mint} is not open")
            position = await self.get_position(mint)
            if position is None:
                raise PositionNotOpen(f"Position {mint} has no record")
            if sold is None or sold <= 0 or sold >= position.token_amount:
                raise InvalidPositionError(
                    f"Partial sell of {tokens_sold!r} invalid for {mint} holding {position.token_amount}")

            fraction = sold / position.token_amount
            position.token_amount -= sold
            position.base_amount *= (1 - fraction)
            position.partial_sells += 1
            position.partial_realized_base += received

            await (self.store.pipeline()
                   .hset(position_key(mint), {
                       'token_amount': str(position.token_amount),
                       'base_amount': str(position.base_amount),
                       'partial_sells': str(position.partial_sells),
                       'partial_realized_base': str(position.partial_realized_base),
                   })
                   .set(tp_stage_key(mint), str(stage), ex=self.tp_stage_ttl)
                   .execute())

        self.logger.info(f"Partial sell {mint}: stage={stage}, sold={sold:.2f}, received={received:.6f}, "
                         f"remaining={position.token_amount:.2f}")
        return position

    async def close(self,
                    mint: str,
                    close_price: Any,
                    quantity_sold: Any,
                    realized_base_amount: Any,
                    reason: str,
                    execution_ref: str = "") -> ClosedSummary:
        """Close an open position and append its trade record.

        Raises PositionNotOpen when the mint is not in the open set, so a
        second close for the same mint never touches the ledger again.
        """
        async with self._lock(mint):
            if not await self.is_open(mint):
                raise PositionNotOpen(f"Position {mint} is not open")
            position = await self.get_position(mint)
            if position is None:
                raise PositionNotOpen(f"Position {mint} is in the open set without a record")

            now = self.clock()
            held = position.token_amount
            requested = safe_number(quantity_sold, 0.0)
            sold = held if requested <= 0 else min(requested, held)

            avg_entry = position.avg_entry_price
            cost_basis = avg_entry * sold

            price = safe_number(close_price, None)
            received = safe_number(realized_base_amount, None)
            if received is None or received < 0:
                received = (price or 0.0) * sold
            if price is None or price <= 0:
                price = safe_divide(received, sold, 0.0)

            # Partial take-profit legs: their share of the original cost and their proceeds
            partial_cost = 0.0
            if position.partial_sells > 0:
                partial_cost = max(position.original_base_amount - position.base_amount, 0.0)
            total_cost = cost_basis + partial_cost

            fees = 0.0 if position.simulated else self.network_fee
            realized = max(received - fees, 0.0)
            pnl_base = realized + position.partial_realized_base - total_cost
            pnl_pct = safe_divide(pnl_base, total_cost, 0.0) * 100

            trade = TradeRecord(
                mint=mint,
                symbol=position.symbol,
                wallet_source=position.wallet_source,
                strategy_tag=position.strategy_tag,
                venue=position.venue,
                mode='simulated' if position.simulated else 'live',
                entry_time=position.entry_time,
                exit_time=now,
                entry_price=position.entry_price,
                avg_entry_price=avg_entry,
                exit_price=price,
                base_spent=position.original_base_amount,
                base_received=realized,
                tokens_sold=sold,
                cost_basis=total_cost,
                estimated_fees=fees,
                pnl_base=pnl_base,
                pnl_pct=pnl_pct,
                reason=reason,
                signature=execution_ref or "",
                simulated=position.simulated,
                partial_sells=position.partial_sells,
                partial_realized_base=position.partial_realized_base,
            )

            await (self.store.pipeline()
                   .srem(OPEN_POSITIONS_KEY, mint)
                   .hset(position_key(mint), {
                       'status': CLOSED,
                       'close_price': str(price),
                       'close_time': str(now),
                       'realized_base': str(realized),
                       'pnl_base': str(pnl_base),
                       'pnl_pct': str(pnl_pct),
                       'close_reason': reason,
                       'close_signature': execution_ref or "",
                   })
                   .rpush(trades_key(ledger_date(now)), json.dumps(trade.to_dict()))
                   .delete(tp_stage_key(mint), forced_exit_key(mint))
                   .execute())

        self.logger.info(f"Closed position {mint}: reason={reason}, pnl={pnl_base:+.6f} ({pnl_pct:+.2f}%), "
                         f"received={realized:.6f}, fees={fees}")
        return ClosedSummary(
            mint=mint,
            reason=reason,
            close_price=price,
            tokens_sold=sold,
            base_received=realized,
            cost_basis=total_cost,
            estimated_fees=fees,
            pnl_base=pnl_base,
            pnl_pct=pnl_pct,
            hold_seconds=position.hold_seconds(now),
        )

    async def mark_graduated(self, mint: str) -> bool:
        """Flag an open position as migrated; returns True on the first transition"""
        async with self._lock(mint):
            position = await self.get_position(mint)
            if position is None or not position.is_open or position.graduated:
                return False
            await self.store.hset(position_key(mint), {'graduated': '1'})
            return True

    # Forced exit flag

    async def set_forced_exit(self, mint: str, reason: str, ttl: int = 120) -> None:
        await self.store.set(forced_exit_key(mint), reason, ex=ttl)

    async def consume_forced_exit(self, mint: str) -> Optional[str]:
        """Read and clear the forced exit flag"""
        return await self.store.getdel(forced_exit_key(mint))

    # Ledger

    async def get_trades(self, date: Optional[str] = None) -> List[TradeRecord]:
        date = date or ledger_date(self.clock())
        trades = []
        for raw in await self.store.lrange(trades_key(date), 0, -1):
            try:
                trades.append(TradeRecord.from_dict(json.loads(raw)))
            except (ValueError, TypeError) as e:
                self.logger.warning(f"Skipping malformed ledger entry on {date}: {str(e)}")
        return trades

    async def get_recent_trades(self, days: int) -> List[TradeRecord]:
        """Trades from today and the previous ``days`` UTC dates"""
        today = datetime.fromtimestamp(self.clock(), tz=timezone.utc)
        trades = []
        for offset in range(days + 1):
            date = (today - timedelta(days=offset)).strftime('%Y-%m-%d')
            trades.extend(await self.get_trades(date))
        return trades

    # Diagnostics

    async def diagnose(self, stale_after_hours: float = 24.0) -> StoreDiagnostics:
        report = StoreDiagnostics()
        now = self.clock()
        members = await self.store.smembers(OPEN_POSITIONS_KEY)
        report.open_count = len(members)

        for mint in sorted(members):
            position = await self.get_position(mint)
            if position is None:
                report.orphan_members.append(mint)
            elif not position.is_open:
                report.closed_in_set.append(mint)
            elif position.hold_seconds(now) > stale_after_hours * 3600:
                report.stale_positions.append(mint)

        for key in await self.store.scan_keys("position:*"):
            mint = key.split(":", 1)[1]
            if mint in members:
                continue
            if await self.store.hget(key, 'status') == OPEN:
                report.unlisted_open.append(mint)

        report.trades_today = await self.store.llen(trades_key(ledger_date(now)))
        return report

    async def reconcile(self, report: StoreDiagnostics) -> int:
        """Drop open-set members that have no record at all; other findings stay for manual review"""
        removed = 0
        for mint in report.orphan_members:
            async with self._lock(mint):
                if await self.store.exists(position_key(mint)):
                    continue
                removed += await self.store.srem(OPEN_POSITIONS_KEY, mint)
                self.logger.warning(f"Removed orphan open-set member {mint}")
        return removed
