from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from risk.position import Position
from strategies.volume_tracker import VelocityState


@dataclass
class ExitContext:
    """Everything an exit strategy may look at for one position in one cycle"""
    position: Position
    price: float
    now: float
    forced_reason: Optional[str] = None
    source_sell_time: Optional[float] = None
    seller_count: int = 0
    velocity: Optional[VelocityState] = None
    volume_decayed: bool = False


@dataclass
class ExitDecision:
    should_exit: bool
    reason: Optional[str] = None
    pnl_pct: float = 0.0
    max_pnl_pct: float = 0.0
    hold_seconds: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict)


class BaseStrategy:
    """Base class for exit strategies"""

    name = "base"

    def check_exit(self, context: ExitContext) -> ExitDecision:
        """Return at most one exit decision for the position in ``context``"""
        raise NotImplementedError
