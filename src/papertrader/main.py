# file: papertrader/main.py
import os
import sys
from pathlib import Path

from papertrader.api.server import ApiServer
from papertrader.config.config_loader import AppConfig
from papertrader.core.engine import TradingEngine
from papertrader.errors import EngineError
from papertrader.utils.logger import setup_logger

logger = setup_logger(__name__)


def _default_config_path() -> Path:
    """
    Resolves config.txt: PAPERTRADER_CONFIG first, then config.txt in the
    CWD, finally the repository root (parent of src/).
    """
    env_path = os.getenv("PAPERTRADER_CONFIG")
    if env_path:
        return Path(env_path)

    cwd_candidate = Path.cwd() / "config.txt"
    if cwd_candidate.exists():
        return cwd_candidate

    return Path(__file__).resolve().parents[2] / "config.txt"


def main() -> int:
    cfg_path = _default_config_path()
    cfg = AppConfig.from_sources(str(cfg_path))

    logger.info(f"Starting paper trader in mode: {cfg.mode.upper()} ({', '.join(cfg.symbols)})")
    engine = TradingEngine.from_config(cfg)

    if cfg.mode == "serve":
        ApiServer(engine, cfg.api_host, cfg.api_port).serve_forever()
        return 0

    if cfg.mode not in ("cycle", "monitor", "report"):
        logger.error(f"Invalid mode in config.txt: {cfg.mode}")
        raise ValueError(f"Invalid mode: {cfg.mode}")

    # one trigger per run; the external scheduler re-invokes on failure
    failures = 0
    for symbol in cfg.symbols:
        try:
            if cfg.mode == "cycle":
                engine.run_trading_cycle(symbol)
            elif cfg.mode == "monitor":
                engine.run_monitoring_cycle(symbol)
            else:
                engine.run_daily_report(symbol)
        except EngineError as e:
            logger.error(f"{cfg.mode} failed for {symbol}: {e}")
            failures += 1

    if cfg.mode == "report":
        engine.db.export_trades_csv("trades.csv")

    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
