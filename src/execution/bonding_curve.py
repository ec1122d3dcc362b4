from dataclasses import dataclass
from typing import Optional

from construct import Struct, Int64ul, Flag
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solders.pubkey import Pubkey
from spl.token.instructions import get_associated_token_address

from data.rpc_rate_limiter import RPCRateLimiter
from execution.constants import PUMP_PROGRAM, SOL_DECIMALS, PUMP_TOKEN_DECIMALS
from utils.logger import TradingLogger
from utils.safe_number import validate_curve_reserves

CURVE_STRUCT = Struct(
    "virtual_token_reserves" / Int64ul,
    "virtual_sol_reserves" / Int64ul,
    "real_token_reserves" / Int64ul,
    "real_sol_reserves" / Int64ul,
    "token_total_supply" / Int64ul,
    "complete" / Flag
)


@dataclass
class BondingCurveAccount:
    virtual_token_reserves: int
    virtual_sol_reserves: int
    real_token_reserves: int
    real_sol_reserves: int
    token_total_supply: int
    complete: bool

    @classmethod
    def from_buffer(cls, data: bytes) -> "BondingCurveAccount":
        """Parse account data after the 8-byte discriminator"""
        parsed = CURVE_STRUCT.parse(data[8:])
        return cls(
            virtual_token_reserves=parsed.virtual_token_reserves,
            virtual_sol_reserves=parsed.virtual_sol_reserves,
            real_token_reserves=parsed.real_token_reserves,
            real_sol_reserves=parsed.real_sol_reserves,
            token_total_supply=parsed.token_total_supply,
            complete=bool(parsed.complete),
        )

    @property
    def is_valid(self) -> bool:
        return validate_curve_reserves(self.virtual_sol_reserves, self.virtual_token_reserves)

    def unit_price(self) -> Optional[float]:
        """SOL per whole token from the virtual reserves"""
        if not self.is_valid:
            return None
        sol = self.virtual_sol_reserves / 10 ** SOL_DECIMALS
        tokens = self.virtual_token_reserves / 10 ** PUMP_TOKEN_DECIMALS
        return sol / tokens


def get_bonding_curve_pda(mint: Pubkey, program_id: Pubkey = PUMP_PROGRAM) -> Pubkey:
    """Derive the bonding curve PDA for a given mint"""
    pda, _ = Pubkey.find_program_address([b"bonding-curve", bytes(mint)], program_id)
    return pda


def get_associated_bonding_curve(mint: Pubkey, bonding_curve_pda: Pubkey) -> Pubkey:
    """Token account holding the curve's token reserves"""
    return get_associated_token_address(bonding_curve_pda, mint)


class BondingCurveReader:
    """Reads launch-platform bonding curve accounts through the rate limiter"""

    def __init__(self, client: AsyncClient, rate_limiter: RPCRateLimiter, logger: Optional[TradingLogger] = None):
        self.client = client
        self.rate_limiter = rate_limiter
        self.logger = logger or TradingLogger("bonding_curve")

    async def fetch(self, mint: str) -> Optional[BondingCurveAccount]:
        """Return the parsed curve, or None if the account is missing or unparsable"""
        mint_pubkey = Pubkey.from_string(mint)
        bonding_curve_pda = get_bonding_curve_pda(mint_pubkey)

        account_info = await self.rate_limiter.request(
            lambda: self.client.get_account_info(bonding_curve_pda, commitment=Confirmed),
            cache_key=f"curve:{mint}",
        )

        if not account_info.value or not account_info.value.data:
            self.logger.debug(f"Bonding curve account not found for mint {mint}")
            return None

        try:
            return BondingCurveAccount.from_buffer(bytes(account_info.value.data))
        except Exception as e:
            self.logger.error(f"Error parsing bonding curve data for mint {mint}: {str(e)}")
            return None
