# services/trademind/intel/analytics.py
"""Analytics calculations for the journal views."""

from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

import pytz

from .models import COMMON_MISTAKES, Trade

DEFAULT_TZ = "Asia/Kolkata"

DAY_NAMES = ['Sunday', 'Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday']

# Session windows in local hours, [start, end)
TIME_SLOTS = [
    ('9:15-10:00', 9.25, 10),
    ('10:00-12:00', 10, 12),
    ('12:00-14:00', 12, 14),
    ('14:00-15:30', 14, 15.5),
]


@dataclass
class DashboardStats:
    total: int = 0
    net_profit: float = 0.0
    win_rate: float = 0.0
    best_trade: float = 0.0
    worst_trade: float = 0.0

    def to_dict(self) -> dict:
        d = asdict(self)
        return {
            'total': d['total'],
            'netProfit': d['net_profit'],
            'winRate': d['win_rate'],
            'bestTrade': d['best_trade'],
            'worstTrade': d['worst_trade'],
        }


def risk_reward(entry: Optional[float], stop_loss: Optional[float],
                target: Optional[float]) -> float:
    """Reward/risk ratio for the trade entry form, rounded to 2 places."""
    if not entry or not stop_loss or not target:
        return 0
    risk = abs(entry - stop_loss)
    reward = abs(target - entry)
    return 0 if risk == 0 else round(reward / risk, 2)


class JournalAnalytics:
    """Performance analytics over a user's trade list."""

    def __init__(self, tz_name: str = DEFAULT_TZ, time_slots=None):
        self.tz = pytz.timezone(tz_name)
        self.time_slots = time_slots or TIME_SLOTS

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'JournalAnalytics':
        slots = config.get('time_slots')
        if slots:
            slots = [(s['label'], float(s['start']), float(s['end'])) for s in slots]
        return cls(config.get('TRADEMIND_TZ', DEFAULT_TZ), slots)

    def local_time(self, timestamp: str) -> datetime:
        dt = datetime.fromisoformat(timestamp.replace('Z', '+00:00'))
        if dt.tzinfo is None:
            dt = pytz.utc.localize(dt)
        return dt.astimezone(self.tz)

    # ==================== Dashboard ====================

    def summary(self, trades: List[Trade]) -> Optional[DashboardStats]:
        """None when there is nothing to summarize."""
        if not trades:
            return None

        pnls = [t.pnl for t in trades]
        wins = sum(1 for p in pnls if p > 0)
        return DashboardStats(
            total=len(trades),
            net_profit=sum(pnls),
            win_rate=wins / len(trades) * 100,
            best_trade=max(pnls),
            worst_trade=min(pnls),
        )

    def equity_curve(self, trades: List[Trade]) -> List[Dict[str, Any]]:
        points = []
        balance = 0.0
        for trade in sorted(trades, key=lambda t: self.local_time(t.timestamp)):
            balance += trade.pnl
            points.append({
                'date': self.local_time(trade.timestamp).date().isoformat(),
                'pnl': trade.pnl,
                'equity': balance,
            })
        return points

    @staticmethod
    def win_loss_split(stats: Optional[DashboardStats]) -> List[Dict[str, Any]]:
        if stats is None:
            return []
        return [
            {'name': 'Wins', 'value': stats.win_rate},
            {'name': 'Losses', 'value': 100 - stats.win_rate},
        ]

    # ==================== Analysis ====================

    @staticmethod
    def mistake_breakdown(trades: Iterable[Trade]) -> List[Dict[str, Any]]:
        """Counts for the known mistake tags, most frequent first."""
        counts = {m: 0 for m in COMMON_MISTAKES}
        for trade in trades:
            for mistake in trade.mistakes or []:
                if mistake in counts:
                    counts[mistake] += 1
        return sorted(
            ({'name': name, 'value': value} for name, value in counts.items()),
            key=lambda row: row['value'],
            reverse=True,
        )

    def day_of_week(self, trades: Iterable[Trade]) -> List[Dict[str, Any]]:
        days = [{'day': name, 'pnl': 0.0, 'trades': 0, 'wins': 0} for name in DAY_NAMES]
        for trade in trades:
            # Sunday first, as in DAY_NAMES
            idx = (self.local_time(trade.timestamp).weekday() + 1) % 7
            pnl = trade.pnl
            days[idx]['pnl'] += pnl
            days[idx]['trades'] += 1
            if pnl > 0:
                days[idx]['wins'] += 1

        return [
            {**d, 'winRate': d['wins'] / d['trades'] * 100}
            for d in days if d['trades'] > 0
        ]

    def weekly(self, trades: Iterable[Trade]) -> List[Dict[str, Any]]:
        """P&L per week starting Sunday. Trades arrive newest first, so the
        insertion order is reversed to read oldest first."""
        weeks: Dict[str, Dict[str, Any]] = {}
        for trade in trades:
            local = self.local_time(trade.timestamp)
            week_start = local.date() - timedelta(days=(local.weekday() + 1) % 7)
            key = week_start.strftime('%b %d')
            bucket = weeks.setdefault(key, {'week': key, 'pnl': 0.0, 'count': 0})
            bucket['pnl'] += trade.pnl
            bucket['count'] += 1
        return list(reversed(list(weeks.values())))

    def time_slots_pnl(self, trades: List[Trade]) -> List[Dict[str, Any]]:
        rows = []
        for label, start, end in self.time_slots:
            pnl = 0.0
            for trade in trades:
                local = self.local_time(trade.timestamp)
                hours = local.hour + local.minute / 60
                if start <= hours < end:
                    pnl += trade.pnl
            rows.append({'name': label, 'pnl': pnl})
        return rows

    @staticmethod
    def best_day(day_stats: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if not day_stats:
            return None
        return max(day_stats, key=lambda d: d['winRate'])

    # ==================== Calendar / strategies ====================

    def daily_pnl(self, trades: Iterable[Trade]) -> Dict[str, Dict[str, Any]]:
        days: Dict[str, Dict[str, Any]] = {}
        for trade in trades:
            key = self.local_time(trade.timestamp).strftime('%Y-%m-%d')
            bucket = days.setdefault(key, {'pnl': 0.0, 'count': 0})
            bucket['pnl'] += trade.pnl
            bucket['count'] += 1
        return days

    @staticmethod
    def strategy_breakdown(trades: Iterable[Trade]) -> Dict[str, Dict[str, Any]]:
        stats: Dict[str, Dict[str, Any]] = {}
        for trade in trades:
            bucket = stats.setdefault(trade.strategy_id or 'none',
                                      {'trades': 0, 'pnl': 0.0, 'wins': 0})
            pnl = trade.pnl
            bucket['trades'] += 1
            bucket['pnl'] += pnl
            if pnl > 0:
                bucket['wins'] += 1
        return stats

    # ==================== View bundles ====================

    def dashboard(self, trades: List[Trade]) -> Dict[str, Any]:
        stats = self.summary(trades)
        return {
            'stats': stats.to_dict() if stats else None,
            'equity': self.equity_curve(trades),
            'winLoss': self.win_loss_split(stats),
        }

    def analysis(self, trades: List[Trade]) -> Dict[str, Any]:
        days = self.day_of_week(trades)
        return {
            'mistakes': self.mistake_breakdown(trades),
            'days': days,
            'weekly': self.weekly(trades),
            'timeSlots': self.time_slots_pnl(trades),
            'bestDay': self.best_day(days),
        }
