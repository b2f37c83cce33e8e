# file: papertrader/execution/closure_evaluator.py

from typing import List, Optional

from papertrader.config.config_loader import EngineConfig
from papertrader.data.models import Prediction
from papertrader.execution.order_model import LONG, ClosureVerdict, Position, opposite_action
from papertrader.strategy.signal_generator import decide_action

STOP_LOSS = "stop_loss"
TAKE_PROFIT = "take_profit"
LOW_CONFIDENCE = "low_confidence"
LOW_PROFIT_PROBABILITY = "low_profit_probability"
NEGATIVE_OUTLOOK = "negative_outlook"
OPPOSITE_SIGNAL = "opposite_signal"


class ClosureEvaluator:
    """
    Decides whether an open position should be closed given the latest
    forecast and price. Never touches the store; PositionManager applies
    the verdict.
    """

    def __init__(self, cfg: EngineConfig):
        self.cfg = cfg

    @staticmethod
    def exit_trigger(position: Position, price: float) -> Optional[str]:
        """Stop-loss or take-profit hit at `price`. Stop-loss is checked first."""
        sl = position.stop_loss_price
        tp = position.take_profit_price

        if position.side == LONG:
            if sl and price <= sl:
                return STOP_LOSS
            if tp and price >= tp:
                return TAKE_PROFIT
        else:
            if sl and price >= sl:
                return STOP_LOSS
            if tp and price <= tp:
                return TAKE_PROFIT
        return None

    def profit_probability(self, position: Position, prediction: Prediction, current_price: float) -> float:
        """
        Heuristic chance of reaching take-profit:

            p = confidence * w_conf + return_factor * w_ret + time_decay * w_time

        return_factor is the direction-aligned predicted return over the
        distance still to travel to the target, capped; 0 when the forecast
        points against the position. Clamped to [0, 1].
        """
        cfg = self.cfg
        tp = position.take_profit_price
        if not tp:
            return cfg.neutral_probability

        if position.side == LONG:
            distance = (tp - current_price) / current_price
        else:
            distance = (current_price - tp) / current_price

        aligned = prediction.predicted_return * position.direction
        if aligned <= 0:
            return_factor = 0.0
        elif distance <= 0:
            # target already reached or passed
            return_factor = cfg.return_factor_cap
        else:
            return_factor = min(aligned / distance, cfg.return_factor_cap)

        probability = (
            prediction.confidence_score * cfg.confidence_weight
            + return_factor * cfg.return_weight
            + cfg.time_decay_factor * cfg.time_weight
        )
        return max(0.0, min(1.0, probability))

    def evaluate(self, position: Position, prediction: Prediction, current_price: float) -> ClosureVerdict:
        if current_price <= 0:
            raise ValueError(f"Current price must be positive, got {current_price}")
        if prediction.symbol != position.symbol:
            raise ValueError(
                f"Prediction for {prediction.symbol} cannot evaluate position on {position.symbol}"
            )

        cfg = self.cfg
        reasons: List[str] = []

        sl, tp = position.stop_loss_price, position.take_profit_price
        if position.side == LONG:
            hit_sl = bool(sl) and current_price <= sl
            hit_tp = bool(tp) and current_price >= tp
        else:
            hit_sl = bool(sl) and current_price >= sl
            hit_tp = bool(tp) and current_price <= tp
        if hit_sl:
            reasons.append(STOP_LOSS)
        if hit_tp:
            reasons.append(TAKE_PROFIT)

        if prediction.confidence_score < cfg.close_min_confidence:
            reasons.append(LOW_CONFIDENCE)

        probability = self.profit_probability(position, prediction, current_price)
        if probability < cfg.min_profit_probability:
            reasons.append(LOW_PROFIT_PROBABILITY)

        expected = prediction.predicted_return * position.direction
        if expected < cfg.negative_outlook_threshold:
            reasons.append(NEGATIVE_OUTLOOK)

        if decide_action(prediction, current_price, cfg) == opposite_action(position.side):
            reasons.append(OPPOSITE_SIGNAL)

        return ClosureVerdict(should_close=bool(reasons), reasons=reasons, profit_probability=probability)
