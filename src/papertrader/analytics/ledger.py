# file: papertrader/analytics/ledger.py

from datetime import datetime
from typing import Optional

import pandas as pd

from papertrader.config.config_loader import EngineConfig
from papertrader.storage.database import DatabaseManager
from papertrader.utils.timeutils import to_iso


class Ledger:
    """
    Realized balance and exposure derived from the position history.

    balance = initial_balance + sum(net_pnl of closed positions in scope).
    Open positions are not marked to market.
    """

    def __init__(self, cfg: EngineConfig, db: DatabaseManager):
        self.cfg = cfg
        self.db = db

    def balance(self, symbol: Optional[str] = None, before: Optional[datetime] = None) -> float:
        realized = self.db.sum_closed_net_pnl(symbol, before=to_iso(before) if before else None)
        return self.cfg.initial_balance + realized

    def exposure(self, symbol: Optional[str] = None) -> float:
        """Entry notional currently committed to open positions."""
        return self.db.open_notional(symbol)

    def balance_curve(self, symbol: Optional[str] = None, since: Optional[datetime] = None,
                      until: Optional[datetime] = None) -> pd.DataFrame:
        """
        Closed trades replayed in order of closure with the running balance,
        its running peak and the drawdown from that peak.

        The curve starts from the scope's balance just before `since`, so a
        windowed curve continues the all-time one instead of restarting at
        the initial balance.
        """
        trades = self.db.closed_positions_frame(
            symbol,
            since=to_iso(since) if since else None,
            until=to_iso(until) if until else None,
        )
        start = self.balance(symbol, before=since) if since else self.cfg.initial_balance

        if trades.empty:
            empty = pd.Series(dtype=float)
            return trades.assign(balance=empty, peak=empty, drawdown=empty)

        balance = start + trades["net_pnl"].astype(float).cumsum()
        peak = balance.cummax().clip(lower=start)
        drawdown = ((peak - balance) / peak).where(peak > 0, 0.0)
        trades["balance"] = balance
        trades["peak"] = peak
        trades["drawdown"] = drawdown.clip(lower=0.0)
        return trades

    @staticmethod
    def max_drawdown(curve: pd.DataFrame) -> float:
        if curve.empty:
            return 0.0
        return float(curve["drawdown"].max())
