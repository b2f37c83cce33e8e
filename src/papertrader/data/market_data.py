# file: papertrader/data/market_data.py

from typing import Optional

from binance.client import Client

from papertrader.data.models import MarketPrice
from papertrader.errors import InvalidPayload, PriceUnavailable
from papertrader.storage.database import DatabaseManager
from papertrader.utils.logger import setup_logger

logger = setup_logger(__name__)


class PriceFeed:
    """Latest traded price from the Binance ticker, recorded in market_data."""

    def __init__(self, client: Client, db: Optional[DatabaseManager] = None):
        self.client = client
        self.db = db

    def get_price(self, symbol: str) -> MarketPrice:
        """
        Fetches and validates the ticker for `symbol`.
        Any failure (network, API, malformed payload) raises PriceUnavailable.
        """
        try:
            ticker = self.client.get_symbol_ticker(symbol=symbol)
        except Exception as e:
            logger.error(f"[PRICE] Ticker request for {symbol} failed: {e}")
            raise PriceUnavailable(symbol, str(e)) from e

        try:
            price = MarketPrice.parse({"symbol": ticker.get("symbol", symbol), "price": ticker.get("price")})
        except (InvalidPayload, AttributeError) as e:
            logger.error(f"[PRICE] Malformed ticker for {symbol}: {ticker!r}")
            raise PriceUnavailable(symbol, "malformed ticker payload") from e

        logger.debug(f"[PRICE] {price.symbol} = {price.price}")
        if self.db is not None:
            self.db.insert_market_price(price)
        return price
