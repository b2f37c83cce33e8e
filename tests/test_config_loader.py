import os
from pathlib import Path
from tempfile import TemporaryDirectory
import unittest
from unittest.mock import patch

from papertrader.config.config_loader import AppConfig, EngineConfig


class ConfigLoaderTest(unittest.TestCase):
    def test_reads_key_value_file(self):
        with TemporaryDirectory() as tmp:
            cfg_path = Path(tmp) / "config.txt"
            cfg_path.write_text(
                "\n".join(
                    [
                        "# comment line",
                        "binance_api_key=FILE_KEY",
                        "binance_api_secret=FILE_SECRET",
                        "telegram_token=FILE_TG",
                        "telegram_chat_id=123",
                        "initial_balance=2500",
                        "symbols=btcusdt, ETHUSDT",
                        "mode=monitor",
                        "fee_bps=10",
                    ]
                ),
                encoding="utf-8",
            )

            cfg = AppConfig.from_sources(str(cfg_path))

            self.assertEqual(cfg.binance_api_key, "FILE_KEY")
            self.assertEqual(cfg.binance_api_secret, "FILE_SECRET")
            self.assertEqual(cfg.telegram_token, "FILE_TG")
            self.assertEqual(cfg.telegram_chat_id, "123")
            self.assertEqual(cfg.symbols, ["BTCUSDT", "ETHUSDT"])
            self.assertEqual(cfg.mode, "monitor")
            self.assertAlmostEqual(cfg.engine.initial_balance, 2500)
            self.assertAlmostEqual(cfg.engine.fee_bps, 10)
            self.assertAlmostEqual(cfg.engine.stop_loss_pct, 5)

    def test_environment_overrides_file(self):
        with TemporaryDirectory() as tmp, patch.dict(
            os.environ,
            {
                "BINANCE_API_KEY": "ENV_KEY",
                "PAPERTRADER_MODE": "serve",
                "SYMBOLS": "ADAUSDT",
                "PAPERTRADER_TAKE_PROFIT_PCT": "20",
            },
            clear=False,
        ):
            cfg_path = Path(tmp) / "config.txt"
            cfg_path.write_text(
                "\n".join(
                    [
                        "binance_api_key=FILE_KEY",
                        "binance_api_secret=FILE_SECRET",
                        "telegram_token=FILE_TG",
                        "telegram_chat_id=123",
                        "take_profit_pct=12",
                    ]
                ),
                encoding="utf-8",
            )

            cfg = AppConfig.from_sources(str(cfg_path))

            self.assertEqual(cfg.binance_api_key, "ENV_KEY")
            self.assertEqual(cfg.mode, "serve")
            self.assertEqual(cfg.symbols, ["ADAUSDT"])
            self.assertAlmostEqual(cfg.engine.take_profit_pct, 20.0)

    def test_invalid_numeric_value_is_rejected(self):
        with TemporaryDirectory() as tmp:
            cfg_path = Path(tmp) / "config.txt"
            cfg_path.write_text("fee_bps=cheap", encoding="utf-8")

            with self.assertRaises(ValueError):
                AppConfig.from_sources(str(cfg_path))

    def test_table_overrides_win(self):
        with TemporaryDirectory() as tmp:
            cfg_path = Path(tmp) / "config.txt"
            cfg_path.write_text("fee_bps=10", encoding="utf-8")
            cfg = AppConfig.from_sources(str(cfg_path))

        engine = cfg.engine_config({"fee_bps": "4", "unknown_key": "1"})

        self.assertAlmostEqual(engine.fee_bps, 4.0)
        self.assertFalse(hasattr(engine, "unknown_key"))


class EngineConfigTest(unittest.TestCase):
    def test_defaults(self):
        cfg = EngineConfig()

        self.assertAlmostEqual(cfg.fee_bps, 8)
        self.assertAlmostEqual(cfg.max_position_fraction, 1.0)
        self.assertAlmostEqual(cfg.stop_loss_pct, 5)
        self.assertAlmostEqual(cfg.take_profit_pct, 15)
        self.assertAlmostEqual(cfg.min_confidence, 0.6)
        self.assertAlmostEqual(cfg.confidence_weight + cfg.return_weight + cfg.time_weight, 1.0)

    def test_rejects_out_of_range_values(self):
        with self.assertRaises(ValueError):
            EngineConfig(initial_balance=0)
        with self.assertRaises(ValueError):
            EngineConfig(max_position_fraction=1.5)
        with self.assertRaises(ValueError):
            EngineConfig(min_confidence=1.2)
        with self.assertRaises(ValueError):
            EngineConfig(fee_bps=-1)

    def test_overrides_return_new_instance(self):
        base = EngineConfig()
        changed = base.with_overrides({"stop_loss_pct": 3})

        self.assertAlmostEqual(base.stop_loss_pct, 5)
        self.assertAlmostEqual(changed.stop_loss_pct, 3)
        self.assertIs(base.with_overrides({}), base)


if __name__ == "__main__":
    unittest.main()
