import uuid
from typing import Optional

from core.types import BuyResult, SellResult, ExecutionAdapter
from data.price_service import PriceOracle
from utils.logger import TradingLogger
from utils.safe_number import safe_number

SIMULATED_VENUE = "simulated"


class DryRunExecutor(ExecutionAdapter):
    """Synthetic fills at the oracle price, confirmed immediately"""

    simulated = True

    def __init__(self, oracle: PriceOracle, slippage_bps: int = 0, logger: Optional[TradingLogger] = None):
        self.oracle = oracle
        self.slippage_bps = slippage_bps
        self.logger = logger or TradingLogger("dry_run_executor")

    @staticmethod
    def _signature(side: str) -> str:
        return f"sim-{side}-{uuid.uuid4().hex[:16]}"

    async def buy(self, mint: str, base_amount: float, venue_hint: str = "") -> BuyResult:
        """
        Simulate buy transaction
        Execution price is the oracle price worsened by the simulated slippage.
        """
        amount = safe_number(base_amount, None)
        if amount is None or amount <= 0:
            return BuyResult.failed("Invalid base amount", SIMULATED_VENUE, simulated=True)

        try:
            quote = await self.oracle.get_price(mint)
        except Exception as e:
            return BuyResult.failed(f"Price lookup failed: {str(e)}", SIMULATED_VENUE, simulated=True)
        if not quote.known:
            return BuyResult.failed("Price unavailable", SIMULATED_VENUE, simulated=True)

        execution_price = quote.price * (1 + (self.slippage_bps / 10000))
        token_amount = amount / execution_price

        self.logger.info(f"[DRY RUN] BUY {mint}: {amount} SOL -> {token_amount:.2f} tokens @ {execution_price:.10f}")
        return BuyResult(
            success=True,
            venue=venue_hint or ("aggregator" if quote.migrated else "bonding_curve"),
            quantity_received=token_amount,
            effective_price=execution_price,
            base_spent=amount,
            signature=self._signature("buy"),
            simulated=True,
        )

    async def sell(self, mint: str, quantity: float, venue_hint: str = "") -> SellResult:
        """
        Simulate sell transaction
        """
        tokens = safe_number(quantity, None)
        if tokens is None or tokens <= 0:
            return SellResult.failed("Invalid token quantity", SIMULATED_VENUE, simulated=True)

        try:
            quote = await self.oracle.get_price(mint)
        except Exception as e:
            return SellResult.failed(f"Price lookup failed: {str(e)}", SIMULATED_VENUE, simulated=True)
        if not quote.known:
            return SellResult.failed("Price unavailable", SIMULATED_VENUE, simulated=True)

        # Lower price due to sell slippage
        execution_price = quote.price * (1 - (self.slippage_bps / 10000))
        base_amount = tokens * execution_price

        self.logger.info(f"[DRY RUN] SELL {mint}: {tokens:.2f} tokens -> {base_amount:.6f} SOL")
        return SellResult(
            success=True,
            venue=venue_hint or ("aggregator" if quote.migrated else "bonding_curve"),
            base_received=base_amount,
            quantity_sold=tokens,
            signature=self._signature("sell"),
            simulated=True,
        )
