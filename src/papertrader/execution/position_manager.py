# file: papertrader/execution/position_manager.py

from datetime import datetime
from typing import List, Optional, Tuple

from papertrader.analytics.ledger import Ledger
from papertrader.analytics.performance import PerformanceCalculator, PerformanceSnapshot
from papertrader.config.config_loader import EngineConfig
from papertrader.data.models import Prediction
from papertrader.errors import PersistenceFailure
from papertrader.execution.closure_evaluator import LOW_CONFIDENCE, ClosureEvaluator
from papertrader.execution.order_model import (
    HOLD,
    LONG,
    Closure,
    ClosureReport,
    Position,
    TradingSignal,
    side_for_action,
)
from papertrader.execution.risk_manager import RiskManager
from papertrader.notifications.telegram_notifier import TelegramNotifier
from papertrader.storage.database import DatabaseManager
from papertrader.utils.logger import setup_logger
from papertrader.utils.timeutils import to_iso

logger = setup_logger(__name__)

SIGNAL_CHANGE = "signal_change"
MANUAL = "manual"


class PositionManager:
    """
    Owner of the position state machine (open -> closed).

    - opens positions from non-hold signals, one open position per symbol
    - reverses on an opposite signal, ignores same-direction signals
    - applies stop-loss / take-profit and intelligent closure verdicts
    - every transition is a single conditional commit in the store;
      closing an already closed position is a no-op
    """

    def __init__(
        self,
        cfg: EngineConfig,
        db: DatabaseManager,
        ledger: Optional[Ledger] = None,
        risk: Optional[RiskManager] = None,
        evaluator: Optional[ClosureEvaluator] = None,
        notifier: Optional[TelegramNotifier] = None,
    ):
        self.cfg = cfg
        self.db = db
        self.ledger = ledger or Ledger(cfg, db)
        self.risk = risk or RiskManager(cfg)
        self.evaluator = evaluator or ClosureEvaluator(cfg)
        self.performance = PerformanceCalculator(self.ledger)
        self.notifier = notifier

    # ========== HELPERS ==========

    def _fmt_price(self, value: Optional[float]) -> str:
        if value is None:
            return "-"
        return f"{float(value):,.2f}"

    def _fmt_msg_open(self, pos: Position) -> str:
        is_long = pos.side == LONG
        emoji_side = "🟩" if is_long else "🟥"
        return (
            f"🚀 {pos.side.upper()} OPENED {emoji_side}\n"
            f"• Symbol: {pos.symbol}\n"
            f"• Entry: {self._fmt_price(pos.entry_price)}\n"
            f"• Quantity: {pos.quantity:.6f}\n"
            f"• Stop Loss 🛑: {self._fmt_price(pos.stop_loss_price)}\n"
            f"• Take Profit 🎯: {self._fmt_price(pos.take_profit_price)}\n"
            f"• Time ⏰: {pos.opened_at}"
        )

    def _fmt_msg_close(self, pos: Position) -> str:
        emoji_side = "🟩" if pos.side == LONG else "🟥"
        return (
            f"🏁 POSITION CLOSED {emoji_side}\n"
            f"• Reason: {pos.exit_reason}\n"
            f"• Symbol: {pos.symbol}\n"
            f"• Side: {pos.side.upper()}\n"
            f"• Exit: {self._fmt_price(pos.exit_price)}\n"
            f"• Net PnL: {self._fmt_price(pos.net_pnl)}\n"
            f"• Time ⏰: {pos.closed_at}"
        )

    def _notify(self, text: str) -> None:
        if self.notifier is not None:
            self.notifier.send(text)

    def _audit(self, level: str, message: str, **context) -> None:
        """Audit entry in system_logs. A failing audit write never masks the caller's outcome."""
        try:
            self.db.insert_log(level, "trading", message, context)
        except PersistenceFailure as e:
            logger.warning(f"[DB] Could not write audit entry '{message}': {e}")

    def _fail(self, action: str, symbol: str, reason: str, error: Exception) -> None:
        logger.error(f"[TRANSITION] {action} {symbol} failed ({reason}): {error}")
        self._audit("ERROR", "Transition failed", symbol=symbol, action=action, reason=reason, error=str(error))
        if self.notifier is not None:
            self.notifier.send_system_alert("ERROR", "trading", f"{action} {symbol} failed: {error}")

    # ========== OPEN ==========

    def execute_signal(self, signal: TradingSignal) -> Optional[Position]:
        """
        Opens a position for a buy/sell signal.
        Returns None for hold, for a same-direction signal, or when a
        concurrent invocation opened the symbol first.
        """
        if signal.action == HOLD:
            return None
        if signal.price <= 0:
            raise ValueError(f"Signal price must be positive, got {signal.price}")

        side = side_for_action(signal.action)
        existing = self.db.get_open_position(signal.symbol)

        if existing is not None:
            if existing.side == side:
                logger.info(f"Position already open in same direction ({signal.symbol} {side})")
                return None
            self.close_position(existing.id, signal.price, SIGNAL_CHANGE, closed_at=signal.timestamp)

        balance = self.ledger.balance(signal.symbol)
        quantity = self.risk.get_position_size(balance, signal.price)
        if quantity <= 0:
            logger.warning(f"[RISK] No balance left for {signal.symbol} (balance={balance:.2f})")
            self._audit("WARN", "Open skipped, no available balance",
                        symbol=signal.symbol, action="open", reason="no_balance", balance=balance)
            return None

        notional = quantity * signal.price
        position = Position(
            symbol=signal.symbol,
            side=side,
            quantity=quantity,
            entry_price=signal.price,
            opened_at=to_iso(signal.timestamp),
            stop_loss_price=signal.stop_loss,
            take_profit_price=signal.take_profit,
            fees=self.risk.fee_for(notional),
            prediction_id=signal.prediction_id,
            signal_confidence=signal.confidence,
        )

        try:
            stored = self.db.insert_open_position(position)
        except PersistenceFailure as e:
            self._fail("open", signal.symbol, "persistence_failure", e)
            raise

        if stored is None:
            logger.info(f"Position already open in same direction ({signal.symbol}, concurrent open)")
            return None

        logger.info(
            f"[OPEN] #{stored.id} {stored.side.upper()} {stored.quantity:.6f} {stored.symbol} "
            f"@ {stored.entry_price} sl={stored.stop_loss_price} tp={stored.take_profit_price}"
        )
        self._audit("INFO", "Position opened", symbol=stored.symbol, action="open",
                    position_id=stored.id, side=stored.side, entry_price=stored.entry_price,
                    quantity=stored.quantity, fees=stored.fees, confidence=signal.confidence)
        self._notify(self._fmt_msg_open(stored))
        return stored

    # ========== CLOSE ==========

    def _close(self, position_id: int, exit_price: float, reason: str,
               closed_at: Optional[datetime] = None) -> Tuple[Optional[Position], bool]:
        """Returns (stored position, whether this call performed the close)."""
        if exit_price <= 0:
            raise ValueError(f"Exit price must be positive, got {exit_price}")

        pos = self.db.get_position(position_id)
        if pos is None:
            logger.warning(f"No position found with id {position_id}")
            return None, False
        if not pos.is_open:
            logger.info(f"Position #{position_id} already closed, nothing to do")
            return pos, False

        gross_pnl = (exit_price - pos.entry_price) * pos.quantity * pos.direction
        exit_fees = self.risk.fee_for(exit_price * pos.quantity)
        fees = pos.fees + exit_fees
        net_pnl = gross_pnl - fees

        try:
            updated = self.db.close_position_row(
                position_id, exit_price, gross_pnl, fees, net_pnl, reason, to_iso(closed_at)
            )
        except PersistenceFailure as e:
            self._fail("close", pos.symbol, reason, e)
            raise

        stored = self.db.get_position(position_id)
        if not updated:
            logger.info(f"Position #{position_id} was closed concurrently, nothing to do")
            return stored, False

        logger.info(
            f"[CLOSE] #{stored.id} {stored.side.upper()} {stored.symbol} @ {exit_price} "
            f"({reason}) net={net_pnl:.2f}"
        )
        self._audit("INFO", "Position closed", symbol=stored.symbol, action="close",
                    position_id=stored.id, reason=reason, exit_price=exit_price,
                    gross_pnl=gross_pnl, fees=fees, net_pnl=net_pnl)
        self._notify(self._fmt_msg_close(stored))
        return stored, True

    def close_position(self, position_id: int, exit_price: float, reason: str = MANUAL,
                       closed_at: Optional[datetime] = None) -> Optional[Position]:
        """
        Closes an open position at `exit_price`.
        Already closed -> returned unchanged. Unknown id -> None.
        """
        pos, _ = self._close(position_id, exit_price, reason, closed_at)
        return pos

    # ========== MONITORING ==========

    def check_exits_and_close(self, current_price: float, symbol: Optional[str] = None) -> List[Position]:
        """Closes every open position (of `symbol`, if given) whose stop or target is hit."""
        closed: List[Position] = []
        for pos in self.db.get_open_positions(symbol):
            trigger = self.evaluator.exit_trigger(pos, current_price)
            if trigger is None:
                continue
            logger.info(f"[EXIT] #{pos.id} {pos.symbol} {trigger} hit at {current_price}")
            stored, performed = self._close(pos.id, current_price, trigger)
            if performed:
                closed.append(stored)
        return closed

    def check_intelligent_closures(self, prediction: Prediction, current_price: float) -> ClosureReport:
        """Evaluates every open position of the prediction's symbol and closes the flagged ones."""
        positions = self.db.get_open_positions(prediction.symbol)
        report = ClosureReport(checked=len(positions))

        for pos in positions:
            verdict = self.evaluator.evaluate(pos, prediction, current_price)
            if not verdict.should_close:
                continue

            stored, performed = self._close(pos.id, current_price, ",".join(verdict.reasons))
            if not performed:
                continue

            report.closed_count += 1
            report.closures.append(
                Closure(
                    id=stored.id,
                    symbol=stored.symbol,
                    side=stored.side,
                    reasons=verdict.reasons,
                    net_pnl=stored.net_pnl,
                    profit_probability=verdict.profit_probability,
                )
            )
            self._audit("INFO", "Intelligent position closure", symbol=stored.symbol,
                        action="intelligent_close", position_id=stored.id, side=stored.side,
                        entry_price=stored.entry_price, exit_price=current_price,
                        reasons=verdict.reasons, pnl=stored.net_pnl,
                        profit_probability=verdict.profit_probability)

        logger.info(f"[MONITOR] {prediction.symbol}: {report.closed_count}/{report.checked} positions closed")
        return report

    def review_low_confidence(self, signal: TradingSignal) -> List[Position]:
        """
        Review triggered by a low-confidence signal: closes the symbol's open
        positions when confidence is below `low_confidence_close_below`.
        """
        if not signal.should_close_low_confidence:
            return []

        positions = self.db.get_open_positions(signal.symbol)
        closed: List[Position] = []
        close_all = signal.confidence < self.cfg.low_confidence_close_below and signal.price > 0

        if close_all:
            logger.info(f"Low confidence ({signal.confidence}), closing all positions for {signal.symbol}")
            for pos in positions:
                stored, performed = self._close(pos.id, signal.price, LOW_CONFIDENCE, signal.timestamp)
                if performed:
                    closed.append(stored)

        self._audit("INFO", "Low confidence position check", symbol=signal.symbol,
                    action="low_confidence_review", confidence=signal.confidence,
                    open_positions=len(positions),
                    outcome="positions_closed" if close_all and positions else "no_action")
        return closed

    # ========== READ SIDE ==========

    def get_active_positions(self, symbol: Optional[str] = None) -> List[Position]:
        return self.db.get_open_positions(symbol)

    def get_balance(self, symbol: Optional[str] = None) -> float:
        return self.ledger.balance(symbol)

    def get_performance(self, window_days: float = 30, symbol: Optional[str] = None,
                        now: Optional[datetime] = None) -> PerformanceSnapshot:
        return self.performance.snapshot(window_days, symbol, now=now)

    def get_recent_trades(self, limit: int = 10, symbol: Optional[str] = None) -> List[Position]:
        return self.db.get_recent_trades(limit, symbol)
