from dataclasses import dataclass
from typing import Optional

from db.store import KeyValueStore
from utils.config import VolumeDecayParameters
from utils.safe_number import safe_number, safe_divide

MIN_PRICE = 1e-9
MIN_DT = 1e-3


@dataclass
class VelocityState:
    velocity: float
    peak_velocity: float
    peak_time: float
    updated_at: float


class VolumeTracker:
    """Price velocity per mint as a stand-in for trading activity.

    Velocity is the relative price change per second between consecutive
    observations. State lives in the store under ``volume:{mint}``.
    """

    def __init__(self, store: KeyValueStore, params: VolumeDecayParameters, ttl_seconds: int = 86_400):
        self.store = store
        self.params = params
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def key(mint: str) -> str:
        return f"volume:{mint}"

    async def update(self, mint: str, price: float, now: float) -> VelocityState:
        state = await self.store.hgetall(self.key(mint))
        last_price = safe_number(state.get('last_price'), None)
        last_time = safe_number(state.get('last_time'), None)
        peak_velocity = safe_number(state.get('peak_velocity'), 0.0)
        peak_time = safe_number(state.get('peak_time'), now)

        velocity = 0.0
        if last_price is not None and last_time is not None:
            dt = max(now - last_time, MIN_DT)
            velocity = abs(price - last_price) / max(last_price, MIN_PRICE) / dt

        if velocity > peak_velocity:
            peak_velocity = velocity
            peak_time = now

        await (self.store.pipeline()
               .hset(self.key(mint), {
                   'last_price': str(price),
                   'last_time': str(now),
                   'velocity': str(velocity),
                   'peak_velocity': str(peak_velocity),
                   'peak_time': str(peak_time),
               })
               .expire(self.key(mint), self.ttl_seconds)
               .execute())
        return VelocityState(velocity, peak_velocity, peak_time, now)

    def has_decayed(self, state: Optional[VelocityState], hold_seconds: float) -> bool:
        """Velocity fell far enough below its peak, long enough ago, after the minimum hold"""
        params = self.params
        if not params.enabled or state is None:
            return False
        if hold_seconds < params.min_hold_seconds or state.peak_velocity <= 0:
            return False
        drop_ratio = safe_divide(state.velocity, state.peak_velocity, 1.0)
        since_peak = state.updated_at - state.peak_time
        return drop_ratio <= 1 - params.drop_pct / 100 and since_peak >= params.window_seconds

    async def clear(self, mint: str) -> None:
        await self.store.delete(self.key(mint))
