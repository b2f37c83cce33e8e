import unittest
from unittest.mock import MagicMock

from papertrader.api.server import create_app
from papertrader.config.config_loader import EngineConfig
from papertrader.core.engine import TradingEngine
from papertrader.data.market_data import PriceFeed
from papertrader.storage.database import DatabaseManager

BUY_PAYLOAD = {
    "symbol": "ETHUSDT",
    "predicted_price": 103.0,
    "predicted_return": 0.02,
    "confidence_score": 0.65,
}


class ApiServerTest(unittest.TestCase):
    def setUp(self):
        self.db = DatabaseManager(":memory:")
        self.client_api = MagicMock()
        self.client_api.get_symbol_ticker.return_value = {"symbol": "ETHUSDT", "price": "100.00"}
        engine = TradingEngine(EngineConfig(initial_balance=1000.0), self.db, PriceFeed(self.client_api, self.db))
        self.app = create_app(engine)
        self.client = self.app.test_client()

    def tearDown(self):
        self.db.close()

    def _open_position(self) -> dict:
        self.client.post("/api/predictions", json=BUY_PAYLOAD)
        resp = self.client.post("/api/trading/signal", json={"symbol": "ETHUSDT"})
        return resp.get_json()["trade"]

    def test_health(self):
        resp = self.client.get("/api/health")

        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.get_json()["success"])

    def test_prediction_ingestion(self):
        resp = self.client.post("/api/predictions", json=BUY_PAYLOAD)

        self.assertEqual(resp.status_code, 201)
        self.assertIsNotNone(resp.get_json()["prediction"]["id"])

        latest = self.client.get("/api/predictions/latest?symbol=ethusdt").get_json()
        self.assertAlmostEqual(latest["prediction"]["confidence_score"], 0.65)

    def test_malformed_prediction_is_400(self):
        resp = self.client.post("/api/predictions", json={**BUY_PAYLOAD, "confidence_score": 3})

        self.assertEqual(resp.status_code, 400)
        self.assertFalse(resp.get_json()["success"])
        self.assertEqual(len(self.db.get_logs(component="forecasts", level="WARN")), 1)

    def test_missing_prediction_is_404(self):
        resp = self.client.get("/api/predictions/latest?symbol=BTCUSDT")

        self.assertEqual(resp.status_code, 404)

    def test_signal_opens_and_lists_position(self):
        trade = self._open_position()

        self.assertEqual(trade["side"], "long")
        positions = self.client.get("/api/trading/positions?symbol=ETHUSDT").get_json()
        self.assertEqual(positions["count"], 1)

    def test_price_unavailable_is_503(self):
        self.client_api.get_symbol_ticker.side_effect = ConnectionError("down")

        resp = self.client.post("/api/automation/run-full-cycle", json={"symbol": "ETHUSDT"})

        self.assertEqual(resp.status_code, 503)

    def test_manual_close_and_history(self):
        trade = self._open_position()

        resp = self.client.post(f"/api/trading/positions/{trade['id']}/close", json={"price": 110})

        self.assertEqual(resp.status_code, 200)
        self.assertAlmostEqual(resp.get_json()["trade"]["net_pnl"], 98.32)
        history = self.client.get("/api/trading/history").get_json()
        self.assertEqual(history["count"], 1)
        balance = self.client.get("/api/trading/balance?symbol=ETHUSDT").get_json()
        self.assertAlmostEqual(balance["balance"], 1098.32)

    def test_close_unknown_position_is_404(self):
        resp = self.client.post("/api/trading/positions/42/close", json={"price": 100})

        self.assertEqual(resp.status_code, 404)

    def test_metrics(self):
        trade = self._open_position()
        self.client.post(f"/api/trading/positions/{trade['id']}/close", json={"price": 110})

        metrics = self.client.get("/api/trading/metrics?days=7").get_json()["metrics"]

        self.assertEqual(metrics["total_trades"], 1)
        self.assertEqual(metrics["win_rate"], 1.0)

    def test_light_monitoring_without_prediction_is_404(self):
        resp = self.client.post("/api/automation/light-monitoring", json={"symbol": "ETHUSDT"})

        self.assertEqual(resp.status_code, 404)

    def test_system_logs(self):
        self._open_position()

        logs = self.client.get("/api/logs/system?component=trading").get_json()

        self.assertGreaterEqual(logs["count"], 1)
        self.assertTrue(all(entry["component"] == "trading" for entry in logs["logs"]))


if __name__ == "__main__":
    unittest.main()
