import asyncio
import base64
from typing import Any, Dict, Optional

import aiohttp
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TxOpts
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from spl.token.instructions import get_associated_token_address

from core.types import BuyResult, SellResult, ExecutionAdapter
from execution.constants import SOL_MINT, SOL_DECIMALS, PUMP_TOKEN_DECIMALS
from utils.logger import TradingLogger
from utils.safe_number import safe_number, safe_divide, sol_to_lamports, slippage_to_bps, DEFAULT_SLIPPAGE

AGGREGATOR_VENUE = "jupiter"


class TransactionError(Exception):
    """Raised when transaction-related operations fail"""
    pass


class NetworkError(Exception):
    """Raised when network-related operations fail"""
    pass


class InsufficientFundsError(Exception):
    """Raised when wallet lacks sufficient funds"""
    pass


class LiveRunExecutor(ExecutionAdapter):
    """Swaps through the aggregator API, signed locally and confirmed over RPC"""

    def __init__(self,
                 wallet: Keypair,
                 rpc_url: str,
                 logger: Optional[TradingLogger] = None,
                 slippage: float = DEFAULT_SLIPPAGE,
                 quote_api_url: str = "https://lite-api.jup.ag/swap/v1/quote",
                 swap_api_url: str = "https://lite-api.jup.ag/swap/v1/swap",
                 priority_fee_lamports: int = 250_000,
                 confirm_timeout: float = 60.0,
                 http_timeout: float = 15.0,
                 client: Optional[AsyncClient] = None):
        self.wallet = wallet
        self.client = client or AsyncClient(rpc_url)
        self.logger = logger or TradingLogger("live_executor")
        self.slippage_bps = slippage_to_bps(slippage)
        self.quote_api_url = quote_api_url
        self.swap_api_url = swap_api_url
        self.priority_fee_lamports = priority_fee_lamports
        self.confirm_timeout = confirm_timeout
        self.http_timeout = aiohttp.ClientTimeout(total=http_timeout)
        self.session: Optional[aiohttp.ClientSession] = None
        self.decimals_cache: Dict[str, int] = {}

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=self.http_timeout)
        return self.session

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()
        await self.client.close()

    async def buy(self, mint: str, base_amount: float, venue_hint: str = "") -> BuyResult:
        """Swap ``base_amount`` SOL into ``mint`` and wait for confirmation"""
        try:
            lamports = sol_to_lamports(base_amount, "buy amount")
            if lamports <= 0:
                raise ValueError("Buy amount must be positive")

            balance = await self.get_sol_balance()
            if balance < base_amount:
                raise InsufficientFundsError(f"Insufficient SOL. Required: {base_amount}, Available: {balance}")

            quote = await self._get_quote(SOL_MINT, mint, lamports)
            signature = await self._execute_swap(quote)

            decimals = await self.get_token_decimals(mint)
            tokens = safe_number(quote.get('outAmount'), 0.0) / 10 ** decimals
            if tokens <= 0:
                raise TransactionError("Quote returned no output amount")

            self.logger.info(f"BUY confirmed {mint}: {base_amount} SOL -> {tokens:.2f} tokens, sig={signature}")
            return BuyResult(
                success=True,
                venue=AGGREGATOR_VENUE,
                quantity_received=tokens,
                effective_price=safe_divide(base_amount, tokens, 0.0),
                base_spent=float(base_amount),
                signature=signature,
            )
        except Exception as e:
            self.logger.error(f"Buy failed for {mint}: {type(e).__name__}: {str(e)}")
            return BuyResult.failed(f"{type(e).__name__}: {str(e)}", AGGREGATOR_VENUE)

    async def sell(self, mint: str, quantity: float, venue_hint: str = "") -> SellResult:
        """Swap ``quantity`` tokens into SOL, capped at the on-chain balance"""
        try:
            tokens = safe_number(quantity, None)
            if tokens is None or tokens <= 0:
                raise ValueError(f"Invalid sell quantity: {quantity!r}")

            decimals = await self.get_token_decimals(mint)
            raw_amount = int(tokens * 10 ** decimals)
            raw_balance = await self.get_token_balance_raw(mint)
            if raw_balance <= 0:
                raise InsufficientFundsError(f"No token balance for {mint}")
            raw_amount = min(raw_amount, raw_balance)

            quote = await self._get_quote(mint, SOL_MINT, raw_amount)
            signature = await self._execute_swap(quote)

            received = safe_number(quote.get('outAmount'), 0.0) / 10 ** SOL_DECIMALS
            sold = raw_amount / 10 ** decimals
            self.logger.info(f"SELL confirmed {mint}: {sold:.2f} tokens -> {received:.6f} SOL, sig={signature}")
            return SellResult(
                success=True,
                venue=AGGREGATOR_VENUE,
                base_received=received,
                quantity_sold=sold,
                signature=signature,
            )
        except Exception as e:
            self.logger.error(f"Sell failed for {mint}: {type(e).__name__}: {str(e)}")
            return SellResult.failed(f"{type(e).__name__}: {str(e)}", AGGREGATOR_VENUE)

    async def _get_quote(self, input_mint: str, output_mint: str, amount: int) -> Dict[str, Any]:
        session = await self._get_session()
        params = {
            'inputMint': input_mint,
            'outputMint': output_mint,
            'amount': str(amount),
            'slippageBps': str(self.slippage_bps),
            'onlyDirectRoutes': 'false',
        }
        try:
            async with session.get(self.quote_api_url, params=params) as response:
                if response.status != 200:
                    raise NetworkError(f"Quote failed with HTTP {response.status}: {await response.text()}")
                quote = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise NetworkError(f"Quote request failed: {str(e)}") from e

        if not quote or 'outAmount' not in quote:
            raise TransactionError("No route found")
        return quote

    async def _execute_swap(self, quote: Dict[str, Any]) -> str:
        session = await self._get_session()
        payload = {
            'quoteResponse': quote,
            'userPublicKey': str(self.wallet.pubkey()),
            'wrapAndUnwrapSol': True,
            'dynamicSlippage': False,
            'prioritizationFeeLamports': self.priority_fee_lamports,
        }
        try:
            async with session.post(self.swap_api_url, json=payload) as response:
                if response.status != 200:
                    raise NetworkError(f"Swap build failed with HTTP {response.status}: {await response.text()}")
                swap = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise NetworkError(f"Swap request failed: {str(e)}") from e

        raw_tx = (swap or {}).get('swapTransaction')
        if not raw_tx:
            raise TransactionError("Swap transaction missing")

        unsigned = VersionedTransaction.from_bytes(base64.b64decode(raw_tx))
        signed = VersionedTransaction(unsigned.message, [self.wallet])

        try:
            sent = await self.client.send_raw_transaction(
                bytes(signed), opts=TxOpts(skip_preflight=False, max_retries=3)
            )
        except Exception as e:
            raise TransactionError(f"Failed to send transaction: {str(e)}") from e

        await self._confirm(sent.value)
        return str(sent.value)

    async def _confirm(self, signature: Signature):
        try:
            response = await asyncio.wait_for(
                self.client.confirm_transaction(signature, commitment=Confirmed, sleep_seconds=0.5),
                timeout=self.confirm_timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransactionError(f"Confirmation timed out after {self.confirm_timeout}s: {signature}") from e

        statuses = getattr(response, 'value', None) or []
        status = statuses[0] if statuses else None
        if status is None:
            raise TransactionError(f"No status for transaction {signature}")
        if status.err:
            raise TransactionError(f"Transaction {signature} failed: {status.err}")

    async def get_sol_balance(self) -> float:
        """Get SOL balance in wallet"""
        response = await self.client.get_balance(self.wallet.pubkey())
        return response.value / 10 ** SOL_DECIMALS

    async def get_token_decimals(self, mint: str) -> int:
        if mint not in self.decimals_cache:
            try:
                response = await self.client.get_token_supply(Pubkey.from_string(mint))
                self.decimals_cache[mint] = int(response.value.decimals)
            except Exception as e:
                self.logger.warning(f"Could not read decimals for {mint}, assuming {PUMP_TOKEN_DECIMALS}: {str(e)}")
                return PUMP_TOKEN_DECIMALS
        return self.decimals_cache[mint]

    async def get_token_balance_raw(self, mint: str) -> int:
        """Raw token balance of the wallet's associated token account"""
        ata = get_associated_token_address(self.wallet.pubkey(), Pubkey.from_string(mint))
        try:
            response = await self.client.get_token_account_balance(ata)
        except Exception as e:
            if "could not find account" in str(e).lower():
                return 0
            raise
        return int(response.value.amount)
