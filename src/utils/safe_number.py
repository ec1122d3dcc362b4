import math
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

LAMPORTS_PER_SOL = 1_000_000_000

DEFAULT_SLIPPAGE = 0.15
MAX_SLIPPAGE = 0.5
MIN_SLIPPAGE = 0.0001


def safe_number(value: Any, fallback: Optional[float] = 0.0) -> Optional[float]:
    """Coerce untrusted input into a finite float.

    Accepts ints, floats, Decimals and numeric strings (surrounding whitespace
    is ignored). Anything else, including booleans, NaN and infinities,
    resolves to ``fallback``.
    """
    if value is None or isinstance(value, bool):
        return fallback

    if isinstance(value, Decimal):
        try:
            value = float(value)
        except (InvalidOperation, OverflowError):
            return fallback

    if isinstance(value, (int, float)):
        try:
            result = float(value)
        except OverflowError:
            return fallback
        return result if math.isfinite(result) else fallback

    if isinstance(value, (str, bytes)):
        text = value.decode() if isinstance(value, bytes) else value
        text = text.strip()
        if not text:
            return fallback
        try:
            result = float(text)
        except ValueError:
            return fallback
        return result if math.isfinite(result) else fallback

    return fallback


def safe_int(value: Any, fallback: int = 0) -> int:
    result = safe_number(value, None)
    if result is None:
        return fallback
    return int(result)


def safe_divide(numerator: Any, denominator: Any, fallback: Optional[float] = 0.0) -> Optional[float]:
    """Divide two numbers, returning ``fallback`` instead of NaN, inf or ZeroDivisionError."""
    num = safe_number(numerator, None)
    den = safe_number(denominator, None)
    if num is None or den is None or den == 0:
        return fallback

    result = num / den
    return result if math.isfinite(result) else fallback


def safe_percent_change(current: Any, reference: Any, fallback: Optional[float] = 0.0) -> Optional[float]:
    """Percent change of ``current`` relative to ``reference``."""
    cur = safe_number(current, None)
    ref = safe_number(reference, None)
    if cur is None or ref is None or ref <= 0:
        return fallback
    change = safe_divide(cur - ref, ref, None)
    return fallback if change is None else change * 100


def clamp_slippage(value: Any, default: float = DEFAULT_SLIPPAGE) -> float:
    """Validate a slippage fraction.

    Non-numeric, non-positive or below-epsilon values give ``default``.
    Values above the maximum clamp to the maximum.
    """
    slippage = safe_number(value, None)
    if slippage is None or slippage <= 0:
        return default
    if slippage > MAX_SLIPPAGE:
        return MAX_SLIPPAGE
    if slippage < MIN_SLIPPAGE:
        return default
    return slippage


def slippage_to_bps(value: Any, default: float = DEFAULT_SLIPPAGE) -> int:
    return int(math.floor(clamp_slippage(value, default) * 10_000))


def sol_to_lamports(amount: Any, context: str = "amount") -> int:
    """Convert SOL to lamports, raising on anything that is not a finite non-negative number."""
    sol = safe_number(amount, None)
    if sol is None:
        raise ValueError(f"Invalid SOL value for {context}: {amount!r}")
    if sol < 0:
        raise ValueError(f"Negative SOL value for {context}: {sol}")
    return int(round(sol * LAMPORTS_PER_SOL))


def lamports_to_sol(lamports: Any) -> float:
    return safe_divide(lamports, LAMPORTS_PER_SOL, 0.0)


def validate_curve_reserves(virtual_sol: Any, virtual_token: Any) -> bool:
    """Both virtual reserves must be finite and strictly positive."""
    sol = safe_number(virtual_sol, None)
    token = safe_number(virtual_token, None)
    return sol is not None and token is not None and sol > 0 and token > 0
