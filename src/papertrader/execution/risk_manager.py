# file: papertrader/execution/risk_manager.py

from papertrader.config.config_loader import EngineConfig
from papertrader.execution.order_model import BUY, SELL
from papertrader.utils.logger import setup_logger

logger = setup_logger(__name__)


class RiskManager:
    """
    Position sizing, fees and protective levels.
    Pure arithmetic over EngineConfig; balances come from the Ledger.
    """

    def __init__(self, cfg: EngineConfig):
        self.cfg = cfg

    def get_position_size(self, available_balance: float, price: float) -> float:
        """
        Quantity bought with `max_position_fraction` of the available balance.
        Zero when there is nothing left to allocate.
        """
        if price <= 0:
            raise ValueError(f"Price must be positive, got {price}")
        notional = max(available_balance, 0.0) * self.cfg.max_position_fraction
        size = notional / price

        logger.debug(f"Position size: {size} (balance={available_balance:.2f}, price={price})")
        return size

    def fee_for(self, notional: float) -> float:
        """Per-side fee in quote currency."""
        return notional * self.cfg.fee_bps / 10_000

    def protective_levels(self, action: str, price: float):
        """(stop_loss, take_profit) around `price`, mirrored for shorts; (None, None) for hold."""
        stop = self.cfg.stop_loss_pct / 100
        target = self.cfg.take_profit_pct / 100
        if action == BUY:
            return price * (1 - stop), price * (1 + target)
        if action == SELL:
            return price * (1 + stop), price * (1 - target)
        return None, None
