from solders.pubkey import Pubkey

# Launch platform
PUMP_PROGRAM = Pubkey.from_string("6EF8rrecthR5Dkzon8Nwu78hRvfCKubJ14M5uBEwF6P")
PUMP_PROGRAM_ID = str(PUMP_PROGRAM)

# Base currency
SOL_MINT = "So11111111111111111111111111111111111111112"
SOL_DECIMALS = 9
PUMP_TOKEN_DECIMALS = 6

NETWORK_FEE_SOL = 0.000005
FALLBACK_QUOTE_SLIPPAGE_BPS = 1500
