# file: papertrader/core/engine.py

import time
from datetime import datetime
from typing import Any, Dict, Optional, Union

from papertrader.analytics.ledger import Ledger
from papertrader.analytics.performance import PerformanceSnapshot
from papertrader.config.config_loader import AppConfig, EngineConfig
from papertrader.data.forecasts import PredictionFeed
from papertrader.data.market_data import PriceFeed
from papertrader.errors import EngineError, PersistenceFailure
from papertrader.execution.closure_evaluator import ClosureEvaluator
from papertrader.execution.order_model import Position
from papertrader.execution.position_manager import MANUAL, PositionManager
from papertrader.execution.risk_manager import RiskManager
from papertrader.notifications.telegram_notifier import TelegramNotifier
from papertrader.storage.database import DatabaseManager
from papertrader.strategy.signal_generator import SignalGenerator
from papertrader.utils.logger import setup_logger
from papertrader.utils.timeutils import utcnow

logger = setup_logger(__name__)


class TradingEngine:
    """
    Wires the components around one EngineConfig and runs the cycles
    triggered from outside (scheduler, CLI, HTTP).

    Each cycle fetches its inputs first; if the price or the prediction
    cannot be obtained the cycle aborts before any transition.
    """

    def __init__(
        self,
        engine_cfg: EngineConfig,
        db: DatabaseManager,
        price_feed: PriceFeed,
        notifier: Optional[TelegramNotifier] = None,
    ):
        self.cfg = engine_cfg
        self.db = db
        self.price_feed = price_feed
        self.notifier = notifier

        self.risk = RiskManager(engine_cfg)
        self.ledger = Ledger(engine_cfg, db)
        self.predictions = PredictionFeed(db)
        self.signals = SignalGenerator(engine_cfg, db, self.risk)
        self.positions = PositionManager(
            engine_cfg,
            db,
            ledger=self.ledger,
            risk=self.risk,
            evaluator=ClosureEvaluator(engine_cfg),
            notifier=notifier,
        )

    @classmethod
    def from_config(cls, cfg: AppConfig, db: Optional[DatabaseManager] = None) -> "TradingEngine":
        db = db or DatabaseManager(cfg.db_path)
        engine_cfg = cfg.engine_config(db.get_config())
        notifier = TelegramNotifier(cfg.telegram_token, cfg.telegram_chat_id)
        price_feed = PriceFeed(cfg.get_client(), db)
        return cls(engine_cfg, db, price_feed, notifier)

    # ========== HELPERS ==========

    def _log_cycle(self, level: str, message: str, context: Dict[str, Any], started: float) -> None:
        elapsed_ms = (time.perf_counter() - started) * 1000
        try:
            self.db.insert_log(level, "automation", message, context, execution_time_ms=elapsed_ms)
        except PersistenceFailure as e:
            logger.warning(f"[DB] Could not log cycle: {e}")

    def _abort(self, cycle: str, symbol: str, error: EngineError, started: float) -> None:
        logger.error(f"[ENGINE] {cycle} cycle for {symbol} aborted: {error}")
        self._log_cycle("ERROR", f"{cycle} cycle aborted",
                        {"symbol": symbol, "action": cycle, "reason": type(error).__name__,
                         "error": str(error)}, started)

    # ========== CYCLES ==========

    def run_trading_cycle(self, symbol: str,
                          prediction_payload: Optional[Union[dict, str]] = None) -> Dict[str, Any]:
        """
        Automation cycle:
          1) current price (abort if unavailable)
          2) optional new forecast from the payload
          3) signal, low-confidence review, stop/target exits, then execution
        """
        started = time.perf_counter()
        symbol = symbol.upper()
        try:
            price = self.price_feed.get_price(symbol)
            if prediction_payload is not None:
                self.predictions.record(prediction_payload)
        except EngineError as e:
            self._abort("trading", symbol, e, started)
            raise

        try:
            signal = self.signals.generate_signal(symbol, price.price)
            low_conf_closed = self.positions.review_low_confidence(signal)
            exits = self.positions.check_exits_and_close(price.price, symbol)
            trade = self.positions.execute_signal(signal)
        except EngineError as e:
            self._abort("trading", symbol, e, started)
            raise

        result = {
            "symbol": symbol,
            "current_price": price.price,
            "signal": signal.to_dict(),
            "trade": trade.to_dict() if trade else None,
            "exits": [p.to_dict() for p in exits],
            "low_confidence_closed": [p.to_dict() for p in low_conf_closed],
            "balance": self.positions.get_balance(symbol),
        }
        self._log_cycle("INFO", "Trading cycle completed",
                        {"symbol": symbol, "action": signal.action, "price": price.price,
                         "opened": trade.id if trade else None,
                         "closed": [p.id for p in exits + low_conf_closed]}, started)
        logger.info(f"[ENGINE] Trading cycle {symbol}: {signal.action} at {price.price}")
        return result

    def run_monitoring_cycle(self, symbol: str) -> Dict[str, Any]:
        """Light monitoring: latest stored forecast + current price -> intelligent closures."""
        started = time.perf_counter()
        symbol = symbol.upper()
        try:
            price = self.price_feed.get_price(symbol)
            prediction = self.predictions.latest(symbol)
        except EngineError as e:
            self._abort("monitoring", symbol, e, started)
            raise

        try:
            report = self.positions.check_intelligent_closures(prediction, price.price)
        except EngineError as e:
            self._abort("monitoring", symbol, e, started)
            raise

        age_minutes = round((utcnow() - prediction.timestamp).total_seconds() / 60)
        result = {
            "symbol": symbol,
            "current_price": price.price,
            "positions_checked": report.checked,
            "positions_closed": report.closed_count,
            "closures": report.to_dict()["closures"],
            "prediction_used": {
                "id": prediction.id,
                "timestamp": prediction.timestamp.isoformat(),
                "age_minutes": age_minutes,
                "confidence": prediction.confidence_score,
            },
        }
        self._log_cycle("INFO", "Light monitoring completed",
                        {"symbol": symbol, "price": price.price,
                         "positions_checked": report.checked,
                         "positions_closed": report.closed_count,
                         "prediction_age_minutes": age_minutes}, started)
        return result

    def check_exits(self, symbol: str) -> Dict[str, Any]:
        symbol = symbol.upper()
        price = self.price_feed.get_price(symbol)
        closed = self.positions.check_exits_and_close(price.price, symbol)
        return {"symbol": symbol, "current_price": price.price, "closed": [p.to_dict() for p in closed]}

    def close_manually(self, position_id: int, price: Optional[float] = None) -> Optional[Position]:
        """Manual close at `price`, or at the fetched market price of the position's symbol."""
        if price is None:
            pos = self.db.get_position(position_id)
            if pos is None:
                return None
            price = self.price_feed.get_price(pos.symbol).price
        return self.positions.close_position(position_id, price, MANUAL)

    def run_daily_report(self, symbol: Optional[str] = None,
                         now: Optional[datetime] = None) -> PerformanceSnapshot:
        """24h snapshot, stored in performance_metrics and sent to Telegram."""
        snap = self.positions.get_performance(1, symbol, now=now)
        self.db.insert_performance(snap.to_dict(), symbol=symbol, period_type="daily")

        if self.notifier is not None:
            self.notifier.send(
                f"📊 Daily report {symbol or 'ALL'}\n"
                f"• Trades: {snap.total_trades} (win rate {snap.win_rate * 100:.1f}%)\n"
                f"• Net PnL: {snap.net_pnl:,.2f}\n"
                f"• Profit factor: {snap.profit_factor:.2f}\n"
                f"• Max drawdown: {snap.max_drawdown * 100:.2f}%\n"
                f"• Balance: {snap.ending_balance:,.2f}"
            )
        return snap

