import pandas as pd
import numpy as np
from typing import Dict, List, Any

from db.position_store import PositionStore
from risk.position import TradeRecord

HOLD_BUCKETS = [0, 60, 180, 300, 600, np.inf]
HOLD_LABELS = ['<1m', '1-3m', '3-5m', '5-10m', '10m+']


class TradeAnalytics:
    def __init__(self, trades: List[TradeRecord]):
        """Build a frame from closed-trade ledger records"""
        self.df = pd.DataFrame([t.to_dict() for t in trades])
        if self.df.empty:
            return

        self.df['pnl_base'] = pd.to_numeric(self.df['pnl_base'])
        self.df['pnl_pct'] = pd.to_numeric(self.df['pnl_pct'])
        self.df['entry_dt'] = pd.to_datetime(self.df['entry_time'], unit='s', utc=True)
        self.df['exit_dt'] = pd.to_datetime(self.df['exit_time'], unit='s', utc=True)
        self.df['date'] = self.df['exit_dt'].dt.strftime('%Y-%m-%d')
        self.df['entry_hour'] = self.df['entry_dt'].dt.hour
        self.df['hold_seconds'] = (self.df['exit_time'] - self.df['entry_time']).clip(lower=0)
        self.df['hold_bucket'] = pd.cut(self.df['hold_seconds'], bins=HOLD_BUCKETS, labels=HOLD_LABELS, right=False)
        self.df['is_win'] = self.df['pnl_base'] >= 0

    @classmethod
    async def from_store(cls, positions: PositionStore, days: int = 7) -> "TradeAnalytics":
        return cls(await positions.get_recent_trades(days))

    @property
    def empty(self) -> bool:
        return self.df.empty

    @staticmethod
    def _summarize(frame: pd.DataFrame) -> Dict[str, Any]:
        wins = frame[frame['is_win']]
        losses = frame[~frame['is_win']]
        total = len(frame)
        return {
            'total': total,
            'wins': len(wins),
            'losses': len(losses),
            'winRate': round(len(wins) / total * 100, 2) if total else 0.0,
            'totalPnl': float(frame['pnl_base'].sum()),
            'avgPnl': float(frame['pnl_base'].mean()) if total else 0.0,
            'avgPnlPct': float(frame['pnl_pct'].mean()) if total else 0.0,
            'biggestWin': float(wins['pnl_base'].max()) if len(wins) else 0.0,
            'biggestLoss': float(losses['pnl_base'].min()) if len(losses) else 0.0,
        }

    def daily_stats(self) -> Dict[str, Dict[str, Any]]:
        """Per UTC exit date"""
        if self.empty:
            return {}
        return {date: self._summarize(group) for date, group in self.df.groupby('date')}

    def overall_stats(self) -> Dict[str, Any]:
        if self.empty:
            return {'total': 0, 'wins': 0, 'losses': 0, 'winRate': 0.0, 'totalPnl': 0.0, 'avgPnl': 0.0,
                    'avgPnlPct': 0.0, 'biggestWin': 0.0, 'biggestLoss': 0.0, 'profitFactor': 0.0,
                    'avgHoldSeconds': 0.0}

        stats = self._summarize(self.df)
        gross_win = self.df.loc[self.df['pnl_base'] > 0, 'pnl_base'].sum()
        gross_loss = abs(self.df.loc[self.df['pnl_base'] < 0, 'pnl_base'].sum())
        stats['profitFactor'] = float(gross_win / gross_loss) if gross_loss > 0 else float('inf') if gross_win > 0 else 0.0
        stats['avgHoldSeconds'] = float(self.df['hold_seconds'].mean())
        return stats

    def by_exit_reason(self) -> Dict[str, Dict[str, Any]]:
        if self.empty:
            return {}
        return {reason: self._summarize(group) for reason, group in self.df.groupby('reason')}

    def by_hour(self) -> Dict[int, Dict[str, Any]]:
        """Performance by UTC entry hour"""
        if self.empty:
            return {}
        return {int(hour): self._summarize(group) for hour, group in self.df.groupby('entry_hour')}

    def hold_buckets(self) -> Dict[str, Dict[str, Any]]:
        if self.empty:
            return {}
        result = {}
        for label in HOLD_LABELS:
            group = self.df[self.df['hold_bucket'] == label]
            if len(group):
                result[label] = self._summarize(group)
        return result

    def report(self) -> Dict[str, Any]:
        return {
            'overall': self.overall_stats(),
            'daily': self.daily_stats(),
            'by_reason': self.by_exit_reason(),
            'by_hour': self.by_hour(),
            'hold_time': self.hold_buckets(),
        }

    def to_csv(self, path: str) -> int:
        """Export raw trades; returns the number of rows written"""
        columns = [c for c in self.df.columns if c not in ('entry_dt', 'exit_dt', 'is_win')]
        self.df[columns].to_csv(path, index=False)
        return len(self.df)
