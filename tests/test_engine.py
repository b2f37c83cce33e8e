import unittest
from unittest.mock import MagicMock, patch

from papertrader.config.config_loader import AppConfig, EngineConfig
from papertrader.core.engine import TradingEngine
from papertrader.data.market_data import PriceFeed
from papertrader.errors import InvalidPayload, NoPredictionAvailable, PriceUnavailable
from papertrader.execution.order_model import BUY, TradingSignal
from papertrader.storage.database import DatabaseManager

BUY_PAYLOAD = {
    "symbol": "ETHUSDT",
    "predicted_price": 103.0,
    "predicted_return": 0.02,
    "confidence_score": 0.65,
}


class TradingEngineTest(unittest.TestCase):
    def setUp(self):
        self.db = DatabaseManager(":memory:")
        self.client = MagicMock()
        self.client.get_symbol_ticker.return_value = {"symbol": "ETHUSDT", "price": "100.00"}
        self.notifier = MagicMock()
        self.engine = TradingEngine(
            EngineConfig(initial_balance=1000.0),
            self.db,
            PriceFeed(self.client, self.db),
            self.notifier,
        )

    def tearDown(self):
        self.db.close()

    def test_trading_cycle_opens_position(self):
        result = self.engine.run_trading_cycle("ethusdt", prediction_payload=BUY_PAYLOAD)

        self.assertEqual(result["signal"]["action"], "buy")
        self.assertIsNotNone(result["trade"])
        self.assertAlmostEqual(result["trade"]["quantity"], 10.0)
        self.assertEqual(len(self.engine.positions.get_active_positions("ETHUSDT")), 1)
        self.assertAlmostEqual(self.db.get_latest_price("ETHUSDT").price, 100.0)
        cycle_logs = self.db.get_logs(component="automation")
        self.assertEqual(cycle_logs[0]["level"], "INFO")
        self.assertIsNotNone(cycle_logs[0]["execution_time_ms"])

    def test_cycle_without_prediction_holds(self):
        result = self.engine.run_trading_cycle("ETHUSDT")

        self.assertEqual(result["signal"]["action"], "hold")
        self.assertIsNone(result["trade"])

    def test_cycle_without_prediction_still_sweeps_stops(self):
        pos = self.engine.positions.execute_signal(
            TradingSignal(symbol="BTCUSDT", action=BUY, confidence=0.7, price=100.0,
                          stop_loss=95.0, take_profit=115.0)
        )
        self.client.get_symbol_ticker.return_value = {"symbol": "BTCUSDT", "price": "94.00"}

        result = self.engine.run_trading_cycle("BTCUSDT")

        self.assertEqual(result["signal"]["action"], "hold")
        self.assertIsNone(result["trade"])
        self.assertEqual([p["id"] for p in result["exits"]], [pos.id])
        self.assertEqual(result["exits"][0]["exit_reason"], "stop_loss")
        self.assertEqual(self.engine.positions.get_active_positions("BTCUSDT"), [])

    def test_price_unavailable_aborts_before_any_transition(self):
        self.engine.run_trading_cycle("ETHUSDT", prediction_payload=BUY_PAYLOAD)
        self.client.get_symbol_ticker.side_effect = ConnectionError("timeout")

        with self.assertRaises(PriceUnavailable):
            self.engine.run_trading_cycle("ETHUSDT", prediction_payload={**BUY_PAYLOAD, "confidence_score": 0.1})

        self.assertEqual(len(self.engine.positions.get_active_positions("ETHUSDT")), 1)
        self.assertAlmostEqual(self.db.get_latest_prediction("ETHUSDT").confidence_score, 0.65)
        errors = self.db.get_logs(component="automation", level="ERROR")
        self.assertEqual(errors[0]["context_data"]["reason"], "PriceUnavailable")

    def test_malformed_ticker_is_price_unavailable(self):
        self.client.get_symbol_ticker.return_value = {"symbol": "ETHUSDT", "price": "NaN"}

        with self.assertRaises(PriceUnavailable):
            self.engine.run_trading_cycle("ETHUSDT")

    def test_malformed_prediction_aborts_cycle(self):
        with self.assertRaises(InvalidPayload):
            self.engine.run_trading_cycle("ETHUSDT", prediction_payload={"symbol": "ETHUSDT"})

        self.assertEqual(self.engine.positions.get_active_positions(), [])

    def test_monitoring_requires_prediction(self):
        with self.assertRaises(NoPredictionAvailable):
            self.engine.run_monitoring_cycle("ETHUSDT")

    def test_monitoring_closes_on_low_confidence(self):
        self.engine.run_trading_cycle("ETHUSDT", prediction_payload=BUY_PAYLOAD)
        self.engine.predictions.record({**BUY_PAYLOAD, "confidence_score": 0.25})
        self.client.get_symbol_ticker.return_value = {"symbol": "ETHUSDT", "price": "101.00"}

        result = self.engine.run_monitoring_cycle("ETHUSDT")

        self.assertEqual(result["positions_checked"], 1)
        self.assertEqual(result["positions_closed"], 1)
        self.assertIn("low_confidence", result["closures"][0]["reasons"])
        self.assertAlmostEqual(result["prediction_used"]["confidence"], 0.25)

    def test_check_exits_fetches_price(self):
        self.engine.run_trading_cycle("ETHUSDT", prediction_payload=BUY_PAYLOAD)
        self.client.get_symbol_ticker.return_value = {"symbol": "ETHUSDT", "price": "116.00"}

        result = self.engine.check_exits("ETHUSDT")

        self.assertEqual(result["closed"][0]["exit_reason"], "take_profit")

    def test_manual_close_uses_market_price(self):
        opened = self.engine.run_trading_cycle("ETHUSDT", prediction_payload=BUY_PAYLOAD)["trade"]
        self.client.get_symbol_ticker.return_value = {"symbol": "ETHUSDT", "price": "110.00"}

        closed = self.engine.close_manually(opened["id"])

        self.assertEqual(closed.exit_reason, "manual")
        self.assertAlmostEqual(closed.net_pnl, 98.32)
        self.assertIsNone(self.engine.close_manually(12345))

    def test_daily_report_is_stored_and_sent(self):
        opened = self.engine.run_trading_cycle("ETHUSDT", prediction_payload=BUY_PAYLOAD)["trade"]
        self.engine.positions.close_position(opened["id"], 110.0)

        snap = self.engine.run_daily_report("ETHUSDT")

        self.assertEqual(snap.total_trades, 1)
        history = self.db.get_performance_history()
        self.assertEqual(history[0]["symbol"], "ETHUSDT")
        self.assertEqual(history[0]["total_trades"], 1)
        self.notifier.send.assert_called()

    def test_from_config_applies_stored_overrides(self):
        self.db.set_config("fee_bps", "4")
        cfg = AppConfig(
            binance_api_key="",
            binance_api_secret="",
            telegram_token="",
            telegram_chat_id="",
        )

        with patch("papertrader.config.config_loader.Client") as client_cls:
            engine = TradingEngine.from_config(cfg, db=self.db)

        client_cls.assert_called_once_with(None, None)

        self.assertAlmostEqual(engine.cfg.fee_bps, 4.0)
        self.assertIs(engine.db, self.db)


if __name__ == "__main__":
    unittest.main()
