# file: papertrader/analytics/performance.py

"""
Performance metrics over the closed-trade history.

Snapshots are a read model: recomputed on demand from the positions
table, never the source of truth.
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict, Optional

from papertrader.analytics.ledger import Ledger
from papertrader.utils.logger import setup_logger
from papertrader.utils.timeutils import days_ago, to_iso, utcnow

logger = setup_logger(__name__)


@dataclass
class PerformanceSnapshot:
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0
    net_pnl: float = 0.0
    total_fees: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    profit_factor: float = 0.0
    max_drawdown: float = 0.0
    starting_balance: float = 0.0
    ending_balance: float = 0.0
    total_return: float = 0.0
    period_start: str = ""
    period_end: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class PerformanceCalculator:
    """
    Win rate, profit factor, average win/loss and maximum drawdown over a
    trailing window, using the Ledger's balance trajectory.

    - winning trade: net_pnl > 0; losing trade: net_pnl <= 0
    - avg_loss is the mean absolute net loss
    - profit_factor = avg_win / avg_loss, 0 when avg_loss is 0
    - max_drawdown is a fraction of the running peak
    """

    def __init__(self, ledger: Ledger):
        self.ledger = ledger

    def snapshot(self, window_days: float = 30, symbol: Optional[str] = None,
                 now: Optional[datetime] = None) -> PerformanceSnapshot:
        if window_days <= 0:
            raise ValueError(f"window_days must be positive, got {window_days}")

        end = now or utcnow()
        start = days_ago(window_days, end)

        curve = self.ledger.balance_curve(symbol, since=start, until=end)
        starting_balance = self.ledger.balance(symbol, before=start)

        snap = PerformanceSnapshot(
            starting_balance=starting_balance,
            ending_balance=starting_balance,
            period_start=to_iso(start),
            period_end=to_iso(end),
        )
        if curve.empty:
            return snap

        net = curve["net_pnl"].astype(float)
        wins = net[net > 0]
        losses = net[net <= 0]

        snap.total_trades = int(len(net))
        snap.winning_trades = int(len(wins))
        snap.losing_trades = int(len(losses))
        snap.win_rate = snap.winning_trades / snap.total_trades
        snap.total_pnl = float(curve["gross_pnl"].astype(float).sum())
        snap.net_pnl = float(net.sum())
        snap.total_fees = float(curve["fees"].astype(float).sum())
        snap.avg_win = float(wins.mean()) if len(wins) else 0.0
        snap.avg_loss = float(losses.abs().mean()) if len(losses) else 0.0
        snap.profit_factor = snap.avg_win / snap.avg_loss if snap.avg_loss > 0 else 0.0
        snap.max_drawdown = self.ledger.max_drawdown(curve)
        snap.ending_balance = starting_balance + snap.net_pnl
        snap.total_return = snap.net_pnl / starting_balance if starting_balance > 0 else 0.0

        logger.debug(
            f"[PERF] {symbol or 'ALL'} {window_days}d: trades={snap.total_trades} "
            f"win_rate={snap.win_rate:.2%} pf={snap.profit_factor:.2f} dd={snap.max_drawdown:.2%}"
        )
        return snap
