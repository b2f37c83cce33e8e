# file: papertrader/data/forecasts.py

from typing import Union

from papertrader.data.models import Prediction
from papertrader.errors import InvalidPayload, NoPredictionAvailable
from papertrader.storage.database import DatabaseManager
from papertrader.utils.logger import setup_logger

logger = setup_logger(__name__)


class PredictionFeed:
    """
    Entry point for forecasts produced by the external forecasting service.
    Payloads are validated before they are stored; the model internals stay
    opaque to the engine.
    """

    def __init__(self, db: DatabaseManager):
        self.db = db

    def record(self, payload: Union[dict, str, bytes, Prediction]) -> Prediction:
        if isinstance(payload, Prediction):
            prediction = payload
        else:
            try:
                prediction = Prediction.parse(payload)
            except InvalidPayload:
                logger.warning("[FORECAST] Rejected malformed prediction payload")
                self.db.insert_log("WARN", "forecasts", "Rejected malformed prediction payload",
                                   {"payload": payload if isinstance(payload, dict) else str(payload)[:500]})
                raise

        stored = self.db.insert_prediction(prediction)
        logger.info(
            f"[FORECAST] #{stored.id} {stored.symbol} price={stored.predicted_price} "
            f"ret={stored.predicted_return:+.4f} conf={stored.confidence_score:.2f}"
        )
        return stored

    def latest(self, symbol: str) -> Prediction:
        prediction = self.db.get_latest_prediction(symbol)
        if prediction is None:
            raise NoPredictionAvailable(symbol)
        return prediction
