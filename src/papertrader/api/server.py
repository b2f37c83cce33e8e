# file: papertrader/api/server.py

import math
from typing import Any

from flask import Flask, jsonify, request

from papertrader.core.engine import TradingEngine
from papertrader.errors import (
    EngineError,
    InvalidPayload,
    NoPredictionAvailable,
    PersistenceFailure,
    PriceUnavailable,
)
from papertrader.utils.logger import setup_logger
from papertrader.utils.timeutils import to_iso

logger = setup_logger(__name__)

ERROR_STATUS = {
    InvalidPayload: 400,
    NoPredictionAvailable: 404,
    PriceUnavailable: 503,
    PersistenceFailure: 500,
}


def _sanitize_json(data: Any) -> Any:
    """Recursively replace NaN/Infinity with None to ensure valid JSON."""
    if isinstance(data, dict):
        return {k: _sanitize_json(v) for k, v in data.items()}
    if isinstance(data, list):
        return [_sanitize_json(v) for v in data]
    if isinstance(data, float) and (math.isnan(data) or math.isinf(data)):
        return None
    return data


def _ok(**payload):
    payload["success"] = True
    payload["timestamp"] = to_iso()
    return jsonify(_sanitize_json(payload))


def create_app(engine: TradingEngine) -> Flask:
    """
    HTTP surface over the engine:
      - /api/trading/*     signals, positions, metrics, history
      - /api/automation/*  scheduled cycles (cron / uptime pingers)
      - /api/predictions   forecast ingestion
    """
    app = Flask(__name__)

    @app.errorhandler(EngineError)
    def handle_engine_error(e: EngineError):
        status = next((code for kind, code in ERROR_STATUS.items() if isinstance(e, kind)), 500)
        logger.warning(f"[API] {request.method} {request.path} -> {status}: {e}")
        return jsonify({"success": False, "error": str(e), "timestamp": to_iso()}), status

    @app.errorhandler(ValueError)
    def handle_value_error(e: ValueError):
        return jsonify({"success": False, "error": str(e), "timestamp": to_iso()}), 400

    def _body() -> dict:
        return request.get_json(silent=True) or {}

    def _symbol(default_from_body: bool = False) -> str:
        raw = _body().get("symbol") if default_from_body else request.args.get("symbol")
        return raw.upper() if raw else None

    # ------------- HEALTH -------------
    @app.route("/api/health")
    def api_health():
        return _ok(status="alive", open_positions=len(engine.positions.get_active_positions()))

    # ------------- PREDICTIONS -------------
    @app.route("/api/predictions", methods=["POST"])
    def api_record_prediction():
        payload = request.get_json(silent=True)
        if payload is None:
            raise InvalidPayload("Request body must be a JSON object")
        prediction = engine.predictions.record(payload)
        return _ok(prediction=prediction.model_dump(mode="json")), 201

    @app.route("/api/predictions/latest")
    def api_latest_prediction():
        symbol = _symbol() or "ETHUSDT"
        prediction = engine.predictions.latest(symbol)
        return _ok(prediction=prediction.model_dump(mode="json"))

    # ------------- TRADING -------------
    @app.route("/api/trading/signal", methods=["POST"])
    def api_trading_signal():
        symbol = _symbol(default_from_body=True) or "ETHUSDT"
        result = engine.run_trading_cycle(symbol, prediction_payload=_body().get("prediction"))
        return _ok(**result)

    @app.route("/api/trading/positions")
    def api_positions():
        positions = engine.positions.get_active_positions(_symbol())
        return _ok(positions=[p.to_dict() for p in positions], count=len(positions))

    @app.route("/api/trading/positions/<int:position_id>/close", methods=["POST"])
    def api_close_position(position_id: int):
        price = _body().get("price")
        trade = engine.close_manually(position_id, float(price) if price is not None else None)
        if trade is None:
            return jsonify({"success": False, "error": f"No position found with id {position_id}"}), 404
        return _ok(trade=trade.to_dict())

    @app.route("/api/trading/check-exits", methods=["POST"])
    def api_check_exits():
        symbol = _symbol(default_from_body=True) or "ETHUSDT"
        return _ok(**engine.check_exits(symbol))

    @app.route("/api/trading/metrics")
    def api_metrics():
        days = float(request.args.get("days", 30))
        symbol = _symbol()
        snap = engine.positions.get_performance(days, symbol)
        metrics = snap.to_dict()
        metrics["current_balance"] = engine.positions.get_balance(symbol)
        return _ok(metrics=metrics, period_days=days)

    @app.route("/api/trading/history")
    def api_history():
        limit = int(request.args.get("limit", 20))
        trades = engine.positions.get_recent_trades(limit, _symbol())
        return _ok(trades=[t.to_dict() for t in trades], count=len(trades))

    @app.route("/api/trading/balance")
    def api_balance():
        symbol = _symbol()
        return _ok(
            symbol=symbol,
            balance=engine.positions.get_balance(symbol),
            exposure=engine.ledger.exposure(symbol),
        )

    # ------------- AUTOMATION -------------
    @app.route("/api/automation/run-full-cycle", methods=["POST"])
    def api_full_cycle():
        symbol = _symbol(default_from_body=True) or "ETHUSDT"
        return _ok(**engine.run_trading_cycle(symbol, prediction_payload=_body().get("prediction")))

    @app.route("/api/automation/light-monitoring", methods=["POST"])
    def api_light_monitoring():
        symbol = _symbol(default_from_body=True) or "ETHUSDT"
        return _ok(**engine.run_monitoring_cycle(symbol))

    # ------------- LOGS -------------
    @app.route("/api/logs/system")
    def api_logs():
        limit = int(request.args.get("limit", 50))
        logs = engine.db.get_logs(limit, component=request.args.get("component"),
                                  level=request.args.get("level"))
        return _ok(logs=logs, count=len(logs))

    return app


class ApiServer:
    """Serves the engine over HTTP."""

    def __init__(self, engine: TradingEngine, host: str = "127.0.0.1", port: int = 8000):
        self.engine = engine
        self.host = host
        self.port = port
        self.app = create_app(engine)

    def serve_forever(self) -> None:
        logger.info(f"API listening on http://{self.host}:{self.port}")
        self.app.run(host=self.host, port=self.port, debug=False, use_reloader=False)

