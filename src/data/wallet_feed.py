import asyncio
import base64
import json
import struct
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Set

import base58
import websockets
import websockets.exceptions

from core.signal_intake import BUY, SELL, SignalQueue
from execution.constants import PUMP_PROGRAM_ID
from utils.logger import TradingLogger

# discriminator + mint + sol/token amounts + is_buy + user + timestamp/reserves
TRADE_EVENT_LENGTH = 8 + 32 + 16 + 1 + 32 + 40
MIN_TIMESTAMP = 1577836800   # 2020-01-01
MAX_TIMESTAMP = 2524608000   # 2050-01-01


@dataclass
class TradeEvent:
    mint: str
    sol_amount: float
    token_amount: float
    is_buy: bool
    user: str
    virtual_sol_reserves: float
    virtual_token_reserves: float
    signature: str
    blocktime: int

    @property
    def price(self) -> float:
        return self.sol_amount / self.token_amount if self.token_amount > 0 else 0.0

    def to_signal_payload(self) -> Dict[str, Any]:
        return {
            'mint': self.mint,
            'wallet': self.user,
            'txType': BUY if self.is_buy else SELL,
            'amountBase': self.sol_amount,
            'timestamp': self.blocktime,
            'venue': 'bonding_curve',
            'signature': self.signature,
        }


def decode_trade_event(program_data: str, signature: str = "unknown") -> Optional[TradeEvent]:
    """Decode a base64 ``Program data:`` payload; returns None for anything that is not a trade"""
    try:
        data = base64.b64decode(program_data)
    except (ValueError, TypeError):
        return None
    if len(data) < TRADE_EVENT_LENGTH:
        return None

    offset = 8
    mint = base58.b58encode(data[offset:offset + 32]).decode('utf-8')
    offset += 32
    sol_amount, token_amount = struct.unpack("<QQ", data[offset:offset + 16])
    offset += 16
    is_buy = data[offset] == 1
    offset += 1
    user = base58.b58encode(data[offset:offset + 32]).decode('utf-8')
    offset += 32
    timestamp, v_sol, v_token, _, _ = struct.unpack("<QQQQQ", data[offset:offset + 40])

    if token_amount == 0:
        return None
    if timestamp < MIN_TIMESTAMP or timestamp > MAX_TIMESTAMP:
        return None

    return TradeEvent(
        mint=mint,
        sol_amount=sol_amount / 1_000_000_000,
        token_amount=token_amount / 1_000_000,
        is_buy=is_buy,
        user=user,
        virtual_sol_reserves=v_sol / 1_000_000_000,
        virtual_token_reserves=v_token / 1_000_000,
        signature=signature,
        blocktime=timestamp,
    )


def extract_trade_events(message: Dict[str, Any]) -> List[TradeEvent]:
    """Pull every pump trade event out of one transactionSubscribe notification"""
    result = message.get('params', {}).get('result')
    if not isinstance(result, dict) or 'transaction' not in result:
        return []

    signature = result.get('signature', 'unknown')
    meta = result['transaction'].get('meta') or {}
    if meta.get('err') is not None:
        return []

    events = []
    for log in meta.get('logMessages') or []:
        if not log.startswith("Program data: "):
            continue
        event = decode_trade_event(log[len("Program data: "):], signature)
        if event is not None:
            events.append(event)
    return events


class WalletFeed:
    """Streams tracked-wallet trades from a websocket and publishes them as copy signals.

    Reconnects with exponential backoff. A watchdog forces a reconnect when
    nothing has arrived for ``stale_seconds``.
    """

    def __init__(self,
                 ws_url: str,
                 queue: SignalQueue,
                 tracked_wallets: Iterable[str],
                 program_id: str = PUMP_PROGRAM_ID,
                 stale_seconds: float = 90.0,
                 base_delay: float = 1.0,
                 max_delay: float = 60.0,
                 logger: Optional[TradingLogger] = None):
        self.ws_url = ws_url
        self.queue = queue
        self.tracked: Set[str] = set(tracked_wallets)
        self.program_id = program_id
        self.stale_seconds = stale_seconds
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.logger = logger or TradingLogger("wallet_feed")

        self.ws = None
        self.is_running = False
        self.attempts = 0
        self.last_message_time: Optional[float] = None
        self.message_health = {
            'messages_received': 0,
            'signals_published': 0,
            'processing_errors': 0,
            'reconnects': 0,
        }

    def subscribe_message(self) -> Dict[str, Any]:
        return {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "transactionSubscribe",
            "params": [
                {
                    "vote": False,
                    "failed": False,
                    "accountInclude": sorted(self.tracked),
                    "accountRequired": [self.program_id],
                },
                {
                    "commitment": "processed",
                    "encoding": "jsonParsed",
                    "transactionDetails": "full",
                    "showRewards": False,
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        }

    def backoff_delay(self) -> float:
        return min(self.base_delay * (2 ** max(self.attempts - 1, 0)), self.max_delay)

    async def start(self):
        """Run until ``stop`` is called"""
        self.is_running = True
        if not self.tracked:
            self.logger.warning("No tracked wallets, wallet feed not started")
            return

        while self.is_running:
            try:
                self.logger.info(f"Connecting to wallet feed at {self.ws_url} ({len(self.tracked)} wallets)")
                async with websockets.connect(self.ws_url) as ws:
                    self.ws = ws
                    await ws.send(json.dumps(self.subscribe_message()))
                    self.attempts = 0
                    self.last_message_time = time.monotonic()
                    watchdog = asyncio.create_task(self._watchdog(ws))
                    try:
                        async for msg in ws:
                            self.last_message_time = time.monotonic()
                            self.message_health['messages_received'] += 1
                            await self.process_message(msg)
                    finally:
                        watchdog.cancel()
            except asyncio.CancelledError:
                raise
            except websockets.exceptions.ConnectionClosed as e:
                self.logger.error(f"Wallet feed disconnected. Code: {e.code}")
            except Exception as e:
                self.logger.error(f"Wallet feed connection error: {str(e)}")
            finally:
                self.ws = None

            if not self.is_running:
                break
            self.attempts += 1
            self.message_health['reconnects'] += 1
            delay = self.backoff_delay()
            self.logger.info(f"Reconnecting wallet feed in {delay:.1f}s (attempt {self.attempts})")
            await asyncio.sleep(delay)

    async def _watchdog(self, ws):
        while True:
            await asyncio.sleep(max(self.stale_seconds / 3, 1.0))
            silent = time.monotonic() - (self.last_message_time or time.monotonic())
            if silent > self.stale_seconds:
                self.logger.warning(f"Wallet feed silent for {silent:.0f}s, forcing reconnect")
                await ws.close()
                return

    async def stop(self):
        self.is_running = False
        if self.ws is not None:
            await self.ws.close()

    async def process_message(self, msg: str) -> int:
        """Publish signals for tracked-wallet trades in ``msg``; returns how many were published"""
        try:
            data = json.loads(msg)
        except ValueError:
            self.message_health['processing_errors'] += 1
            self.logger.debug(f"Ignoring non-JSON feed message: {msg[:200]}")
            return 0

        if 'result' in data and 'params' not in data:
            self.logger.debug(f"Subscription confirmed: {data.get('result')}")
            return 0

        published = 0
        for event in extract_trade_events(data):
            if event.user not in self.tracked:
                continue
            try:
                await self.queue.publish(event.to_signal_payload())
                published += 1
            except Exception as e:
                self.message_health['processing_errors'] += 1
                self.logger.error(f"Failed to publish signal for {event.mint}: {str(e)}")
                continue
            self.logger.info(f"{'BUY' if event.is_buy else 'SELL'} {event.mint} by {event.user} "
                             f"({event.sol_amount:.4f} SOL)")
        self.message_health['signals_published'] += published
        return published
