from dataclasses import dataclass
from typing import Optional


@dataclass
class BuyResult:
    success: bool
    venue: str = ""
    quantity_received: float = 0.0
    effective_price: float = 0.0
    base_spent: float = 0.0
    signature: str = ""
    error: Optional[str] = None
    simulated: bool = False

    @classmethod
    def failed(cls, error: str, venue: str = "", simulated: bool = False) -> "BuyResult":
        return cls(success=False, venue=venue, error=error or "unknown error", simulated=simulated)


@dataclass
class SellResult:
    success: bool
    venue: str = ""
    base_received: float = 0.0
    quantity_sold: float = 0.0
    signature: str = ""
    error: Optional[str] = None
    simulated: bool = False

    @classmethod
    def failed(cls, error: str, venue: str = "", simulated: bool = False) -> "SellResult":
        return cls(success=False, venue=venue, error=error or "unknown error", simulated=simulated)


class ExecutionAdapter:
    """Places orders. Implementations report failure through the result, never by raising."""

    simulated = False

    async def buy(self, mint: str, base_amount: float, venue_hint: str = "") -> BuyResult:
        raise NotImplementedError

    async def sell(self, mint: str, quantity: float, venue_hint: str = "") -> SellResult:
        raise NotImplementedError

    async def close(self) -> None:
        pass
