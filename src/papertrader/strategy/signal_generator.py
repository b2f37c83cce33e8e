# file: papertrader/strategy/signal_generator.py

from typing import Optional, Tuple

from papertrader.config.config_loader import EngineConfig
from papertrader.data.forecasts import PredictionFeed
from papertrader.data.models import Prediction
from papertrader.errors import NoPredictionAvailable, PersistenceFailure
from papertrader.execution.order_model import BUY, HOLD, SELL, TradingSignal
from papertrader.execution.risk_manager import RiskManager
from papertrader.storage.database import DatabaseManager
from papertrader.utils.logger import setup_logger

logger = setup_logger(__name__)


def price_divergence(prediction: Prediction, price: float) -> float:
    """|predicted_price - price| / price"""
    return abs(prediction.predicted_price - price) / price


def decide_action(prediction: Prediction, price: float, cfg: EngineConfig) -> str:
    """
    buy/sell only when the forecast is confident enough AND the predicted
    price diverges enough from `price`; the sign of the predicted return
    picks the direction.
    """
    if price <= 0:
        raise ValueError(f"Reference price must be positive, got {price}")

    confident = prediction.confidence_score >= cfg.min_confidence
    diverges = price_divergence(prediction, price) >= cfg.min_price_divergence
    if not (confident and diverges):
        return HOLD

    if prediction.predicted_return > cfg.min_predicted_return:
        return BUY
    if prediction.predicted_return < -cfg.min_predicted_return:
        return SELL
    return HOLD


class SignalGenerator:
    """
    Turns the latest stored Prediction for a symbol plus a reference price
    into a TradingSignal.
    """

    def __init__(self, cfg: EngineConfig, db: DatabaseManager, risk: Optional[RiskManager] = None):
        self.cfg = cfg
        self.db = db
        self.risk = risk or RiskManager(cfg)
        self.forecasts = PredictionFeed(db)

    def reference_price(self, symbol: str, prediction: Prediction,
                        current_price: Optional[float] = None) -> Tuple[float, str]:
        """
        Price used for the decision and where it came from:
        the caller's price, else the last stored market price, else the
        predicted price itself (degraded mode).
        """
        if current_price is not None and current_price > 0:
            return float(current_price), "caller"

        latest = self.db.get_latest_price(symbol)
        if latest is not None:
            return latest.price, "market_data"

        logger.warning(f"[SIGNAL] No market price for {symbol}, using predicted price {prediction.predicted_price}")
        return prediction.predicted_price, "predicted"

    def generate_signal(self, symbol: str, current_price: Optional[float] = None) -> TradingSignal:
        try:
            prediction = self.forecasts.latest(symbol)
        except NoPredictionAvailable as e:
            logger.warning(f"[SIGNAL] {e}; holding")
            self._audit("WARN", "No prediction available, signal forced to hold",
                        {"symbol": symbol, "action": "generate_signal", "reason": "no_prediction"})
            return TradingSignal(symbol=symbol, action=HOLD, confidence=0.0, price=current_price or 0.0)

        price, source = self.reference_price(symbol, prediction, current_price)
        return self.signal_from_prediction(prediction, price, source=source)

    def signal_from_prediction(self, prediction: Prediction, price: float, source: str = "caller") -> TradingSignal:
        conf = prediction.confidence_score
        ret = prediction.predicted_return

        action = decide_action(prediction, price, self.cfg)
        should_close_low_conf = (
            conf < self.cfg.low_confidence_flag_below
            and abs(ret) < self.cfg.low_confidence_flag_return
        )
        stop_loss, take_profit = self.risk.protective_levels(action, price)

        signal = TradingSignal(
            symbol=prediction.symbol,
            action=action,
            confidence=conf,
            price=price,
            predicted_return=ret,
            predicted_price=prediction.predicted_price,
            price_difference_percent=price_divergence(prediction, price) * 100,
            stop_loss=stop_loss,
            take_profit=take_profit,
            should_close_low_confidence=should_close_low_conf,
            prediction_id=prediction.id,
        )

        logger.info(
            f"[SIGNAL] {signal.symbol} {action.upper()} conf={conf:.2f} ret={ret:+.4f} "
            f"diff={signal.price_difference_percent:.2f}% price={price} ({source})"
        )
        return signal

    def _audit(self, level: str, message: str, context: dict) -> None:
        try:
            self.db.insert_log(level, "signals", message, context)
        except PersistenceFailure as e:
            logger.warning(f"[DB] Could not write audit entry: {e}")
