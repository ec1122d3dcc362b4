import asyncio
import json
import time
from dataclasses import dataclass, asdict
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, Optional, Set, Union

from db.store import KeyValueStore
from utils.logger import TradingLogger
from utils.safe_number import safe_number

BUY = "buy"
SELL = "sell"

SIGNAL_QUEUE_KEY = "copy_signals"
TRACKED_WALLETS_KEY = "tracked_wallets"

# Payload spellings seen from the feed, webhooks and manual injection
_WALLET_FIELDS = ('wallet', 'walletAddress', 'wallet_address', 'user', 'trader')
_TYPE_FIELDS = ('txType', 'tx_type', 'type', 'side', 'action')
_AMOUNT_FIELDS = ('amountBase', 'amount_base', 'solAmount', 'sol_amount', 'amount')
_TIME_FIELDS = ('timestamp', 'blocktime', 'blockTime', 'time')
_COUNT_FIELDS = ('corroborationCount', 'corroboration_count', 'upvotes')
_VENUE_FIELDS = ('venue', 'dex', 'venueHint')


class SignalValidationError(ValueError):
    """Raised when an inbound payload cannot be turned into a signal"""
    pass


@dataclass(frozen=True)
class CopySignal:
    """Validated wallet activity observation"""
    mint: str
    wallet: str
    tx_type: str
    amount_base: float
    timestamp: float
    corroboration_count: int = 1
    venue: str = "unknown"
    signature: str = ""
    symbol: str = ""

    @property
    def is_buy(self) -> bool:
        return self.tx_type == BUY

    def with_count(self, count: int) -> "CopySignal":
        return CopySignal(**{**asdict(self), 'corroboration_count': max(count, 1)})

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)


def _first(payload: Mapping[str, Any], names: Iterable[str]) -> Any:
    for name in names:
        value = payload.get(name)
        if value is not None and value != "":
            return value
    return None


def normalize_signal(payload: Union[Mapping[str, Any], str, bytes], now: Optional[float] = None) -> CopySignal:
    """Coerce a loosely typed payload into a CopySignal.

    Missing optional fields take defaults: amount 0, count 1, venue
    "unknown", timestamp ``now``. Millisecond timestamps are converted to
    seconds. Missing mint, wallet or side raise SignalValidationError.
    """
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except ValueError as e:
            raise SignalValidationError(f"Signal is not valid JSON: {str(e)}") from e
    if not isinstance(payload, Mapping):
        raise SignalValidationError(f"Signal payload must be a mapping, got {type(payload).__name__}")

    mint = str(payload.get('mint') or '').strip()
    if not mint:
        raise SignalValidationError("Signal has no mint")

    wallet = str(_first(payload, _WALLET_FIELDS) or '').strip()
    if not wallet:
        raise SignalValidationError(f"Signal for {mint} has no wallet")

    raw_type = _first(payload, _TYPE_FIELDS)
    if raw_type is None and 'is_buy' in payload:
        raw_type = BUY if payload['is_buy'] else SELL
    tx_type = str(raw_type or '').strip().lower()
    if tx_type not in (BUY, SELL):
        raise SignalValidationError(f"Signal for {mint} has unknown side {raw_type!r}")

    amount = max(safe_number(_first(payload, _AMOUNT_FIELDS), 0.0), 0.0)

    now = time.time() if now is None else now
    timestamp = safe_number(_first(payload, _TIME_FIELDS), None)
    if timestamp is None or timestamp <= 0:
        timestamp = now
    elif timestamp > 1e12:
        timestamp = timestamp / 1000.0

    count = int(max(safe_number(_first(payload, _COUNT_FIELDS), 1), 1))

    return CopySignal(
        mint=mint,
        wallet=wallet,
        tx_type=tx_type,
        amount_base=amount,
        timestamp=timestamp,
        corroboration_count=count,
        venue=str(_first(payload, _VENUE_FIELDS) or 'unknown'),
        signature=str(payload.get('signature') or ''),
        symbol=str(payload.get('symbol') or ''),
    )


class SignalTracker:
    """Per-mint buyer/seller sets, wallet sell times and cooldown markers, all TTL-bound in the store"""

    def __init__(self, store: KeyValueStore, ttl_seconds: int = 600, logger: Optional[TradingLogger] = None):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.logger = logger or TradingLogger("signal_tracker")

    @staticmethod
    def buyers_key(mint: str) -> str:
        return f"upvotes:{mint}:buyers"

    @staticmethod
    def sellers_key(mint: str) -> str:
        return f"upvotes:{mint}:sellers"

    @staticmethod
    def wallet_sells_key(mint: str) -> str:
        return f"wallet_sells:{mint}"

    @staticmethod
    def cooldown_key(mint: str) -> str:
        return f"copy_cooldown:{mint}"

    async def record_buy(self, signal: CopySignal) -> int:
        """Add the buyer and return the number of distinct buyers in the window"""
        key = self.buyers_key(signal.mint)
        await self.store.pipeline().sadd(key, signal.wallet).expire(key, self.ttl_seconds).execute()
        return await self.store.scard(key)

    async def record_sell(self, signal: CopySignal) -> int:
        """Add the seller, remember when it sold, and return the distinct seller count"""
        sellers = self.sellers_key(signal.mint)
        sells = self.wallet_sells_key(signal.mint)
        previous = safe_number(await self.store.hget(sells, signal.wallet), 0.0)
        await (self.store.pipeline()
               .sadd(sellers, signal.wallet)
               .expire(sellers, self.ttl_seconds)
               .hset(sells, {signal.wallet: str(max(previous, signal.timestamp))})
               .expire(sells, self.ttl_seconds)
               .execute())
        return await self.store.scard(sellers)

    async def wallet_sell_time(self, mint: str, wallet: str) -> Optional[float]:
        if not wallet:
            return None
        return safe_number(await self.store.hget(self.wallet_sells_key(mint), wallet), None)

    async def seller_count(self, mint: str, since: Optional[float] = None, exclude: Optional[str] = None) -> int:
        """Distinct wallets that sold, optionally only at or after ``since`` and without ``exclude``"""
        if since is None and exclude is None:
            return await self.store.scard(self.sellers_key(mint))
        sells = await self.store.hgetall(self.wallet_sells_key(mint))
        return sum(
            1 for wallet, ts in sells.items()
            if wallet != exclude and (since is None or safe_number(ts, 0.0) >= since)
        )

    async def clear_sells(self, mint: str) -> None:
        await self.store.delete(self.sellers_key(mint), self.wallet_sells_key(mint))

    async def set_cooldown(self, mint: str, seconds: int) -> None:
        if seconds > 0:
            await self.store.set(self.cooldown_key(mint), "1", ex=int(seconds))

    async def cooldown_active(self, mint: str) -> bool:
        return await self.store.exists(self.cooldown_key(mint))

    async def add_tracked_wallets(self, wallets: Iterable[str]) -> int:
        wallets = [w for w in wallets if w]
        if not wallets:
            return 0
        return await self.store.sadd(TRACKED_WALLETS_KEY, *wallets)

    async def tracked_wallets(self) -> Set[str]:
        return await self.store.smembers(TRACKED_WALLETS_KEY)

    async def tracked_count(self) -> int:
        return await self.store.scard(TRACKED_WALLETS_KEY)


class SignalQueue:
    """Inbound signal list in the store; delivery is at-least-once"""

    def __init__(self, store: KeyValueStore, key: str = SIGNAL_QUEUE_KEY, logger: Optional[TradingLogger] = None):
        self.store = store
        self.key = key
        self.logger = logger or TradingLogger("signal_queue")

    async def publish(self, payload: Union[Mapping[str, Any], CopySignal]) -> int:
        if isinstance(payload, CopySignal):
            payload = payload.to_payload()
        return await self.store.rpush(self.key, json.dumps(dict(payload)))

    async def depth(self) -> int:
        return await self.store.llen(self.key)

    async def pop(self) -> Optional[str]:
        return await self.store.lpop(self.key)

    async def consume(self,
                      handler: Callable[[str], Awaitable[None]],
                      stop_event: asyncio.Event,
                      poll_interval: float = 0.25) -> None:
        """Drain the queue into ``handler`` until ``stop_event`` is set"""
        while not stop_event.is_set():
            try:
                raw = await self.pop()
                if raw is None:
                    try:
                        await asyncio.wait_for(stop_event.wait(), timeout=poll_interval)
                    except asyncio.TimeoutError:
                        pass
                    continue
                await handler(raw)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error(f"Error consuming signal: {str(e)}")
                await asyncio.sleep(poll_interval)
