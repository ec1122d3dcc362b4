from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Dict, Optional, Any

from utils.safe_number import safe_number, safe_divide, safe_percent_change

OPEN = "open"
CLOSED = "closed"


def _flag(value: Any) -> bool:
    return str(value).lower() in ("1", "true")


@dataclass
class Position:
    """Represents a copy-traded position as persisted in the store"""
    mint: str
    entry_price: float
    base_amount: float          # Cost basis still held (shrinks on partial sells)
    token_amount: float         # Quantity still held
    entry_time: float           # Epoch seconds
    status: str = OPEN
    strategy_tag: str = "copy"
    symbol: str = ""
    wallet_source: str = ""
    venue: str = ""
    entry_signature: str = ""
    simulated: bool = False
    graduated: bool = False
    original_base_amount: float = 0.0
    original_token_amount: float = 0.0
    max_price: float = 0.0
    last_price: float = 0.0
    last_price_time: float = 0.0
    max_pnl_pct: float = 0.0
    min_pnl_pct: float = 0.0
    partial_sells: int = 0
    partial_realized_base: float = 0.0
    close_price: Optional[float] = None
    close_time: Optional[float] = None
    realized_base: Optional[float] = None
    pnl_base: Optional[float] = None
    pnl_pct: Optional[float] = None
    close_reason: Optional[str] = None
    close_signature: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.status == OPEN

    @property
    def avg_entry_price(self) -> float:
        """Average entry price from cost basis over quantity held"""
        return safe_divide(self.base_amount, self.token_amount, self.entry_price)

    def hold_seconds(self, now: float) -> float:
        return max(now - self.entry_time, 0.0)

    def pnl_percent(self, price: float) -> float:
        return safe_percent_change(price, self.avg_entry_price, 0.0)

    def max_pnl_percent(self) -> float:
        """PnL% at the running max price"""
        return safe_percent_change(self.max_price, self.avg_entry_price, 0.0)

    def to_record(self) -> Dict[str, str]:
        """Flatten to the string hash layout used by the store"""
        record = {}
        for key, value in asdict(self).items():
            if value is None:
                continue
            if isinstance(value, bool):
                record[key] = "1" if value else "0"
            else:
                record[key] = str(value)
        return record

    @classmethod
    def from_record(cls, record: Dict[str, str]) -> Optional["Position"]:
        """Parse a stored hash, returning None when required fields are unusable"""
        if not record or not record.get('mint'):
            return None

        entry_price = safe_number(record.get('entry_price'), 0.0)
        token_amount = safe_number(record.get('token_amount'), 0.0)
        base_amount = safe_number(record.get('base_amount'), 0.0)

        def optional_number(key: str) -> Optional[float]:
            return safe_number(record.get(key), None)

        return cls(
            mint=record['mint'],
            entry_price=entry_price,
            base_amount=base_amount,
            token_amount=token_amount,
            entry_time=safe_number(record.get('entry_time'), 0.0),
            status=record.get('status', OPEN),
            strategy_tag=record.get('strategy_tag', 'copy'),
            symbol=record.get('symbol', ''),
            wallet_source=record.get('wallet_source', ''),
            venue=record.get('venue', ''),
            entry_signature=record.get('entry_signature', ''),
            simulated=_flag(record.get('simulated')),
            graduated=_flag(record.get('graduated')),
            original_base_amount=safe_number(record.get('original_base_amount'), base_amount),
            original_token_amount=safe_number(record.get('original_token_amount'), token_amount),
            max_price=safe_number(record.get('max_price'), entry_price),
            last_price=safe_number(record.get('last_price'), 0.0),
            last_price_time=safe_number(record.get('last_price_time'), 0.0),
            max_pnl_pct=safe_number(record.get('max_pnl_pct'), 0.0),
            min_pnl_pct=safe_number(record.get('min_pnl_pct'), 0.0),
            partial_sells=int(safe_number(record.get('partial_sells'), 0)),
            partial_realized_base=safe_number(record.get('partial_realized_base'), 0.0),
            close_price=optional_number('close_price'),
            close_time=optional_number('close_time'),
            realized_base=optional_number('realized_base'),
            pnl_base=optional_number('pnl_base'),
            pnl_pct=optional_number('pnl_pct'),
            close_reason=record.get('close_reason'),
            close_signature=record.get('close_signature'),
        )

    def summary(self, now: float) -> Dict[str, Any]:
        return {
            'mint': self.mint,
            'symbol': self.symbol,
            'wallet_source': self.wallet_source,
            'entry_price': self.entry_price,
            'avg_entry_price': self.avg_entry_price,
            'last_price': self.last_price,
            'pnl_pct': self.pnl_percent(self.last_price) if self.last_price > 0 else None,
            'max_pnl_pct': self.max_pnl_pct,
            'base_amount': self.base_amount,
            'token_amount': self.token_amount,
            'hold_seconds': self.hold_seconds(now),
            'graduated': self.graduated,
            'partial_sells': self.partial_sells,
        }


@dataclass
class ClosedSummary:
    """Result of closing a position"""
    mint: str
    reason: str
    close_price: float
    tokens_sold: float
    base_received: float
    cost_basis: float
    estimated_fees: float
    pnl_base: float
    pnl_pct: float
    hold_seconds: float


@dataclass
class TradeRecord:
    """Immutable ledger entry appended once per closed position"""
    mint: str
    symbol: str
    wallet_source: str
    strategy_tag: str
    venue: str
    mode: str
    entry_time: float
    exit_time: float
    entry_price: float
    avg_entry_price: float
    exit_price: float
    base_spent: float
    base_received: float
    tokens_sold: float
    cost_basis: float
    estimated_fees: float
    pnl_base: float
    pnl_pct: float
    reason: str
    signature: str
    simulated: bool
    partial_sells: int = 0
    partial_realized_base: float = 0.0

    @property
    def exit_date(self) -> str:
        return ledger_date(self.exit_time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TradeRecord":
        known = cls.__dataclass_fields__
        return cls(**{k: v for k, v in data.items() if k in known})


def ledger_date(timestamp: float) -> str:
    """UTC date key for the trade ledger"""
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime('%Y-%m-%d')
