# file: papertrader/storage/database.py

import json
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

import pandas as pd

from papertrader.data.models import MarketPrice, Prediction
from papertrader.errors import PersistenceFailure
from papertrader.execution.order_model import Position
from papertrader.utils.logger import setup_logger
from papertrader.utils.timeutils import to_iso

logger = setup_logger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARN", "ERROR")


class DatabaseManager:
    """
    SQLite store for positions, predictions, prices, audit logs and
    configuration overrides.

    One connection shared between threads, writes serialised by `lock`.
    Every write runs inside a transaction: it either commits fully or is
    rolled back and surfaces as PersistenceFailure.
    """

    def __init__(self, db_path: str = "papertrader.db"):
        self.db_path = db_path
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.lock = threading.RLock()
        self._create_tables()

    def _create_tables(self) -> None:
        cur = self.conn.cursor()

        cur.execute("""
        CREATE TABLE IF NOT EXISTS positions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            symbol TEXT NOT NULL,
            side TEXT NOT NULL CHECK (side IN ('long', 'short')),
            entry_price REAL NOT NULL CHECK (entry_price > 0),
            exit_price REAL,
            quantity REAL NOT NULL CHECK (quantity > 0),
            stop_loss_price REAL,
            take_profit_price REAL,
            status TEXT NOT NULL DEFAULT 'open' CHECK (status IN ('open', 'closed')),
            fees REAL NOT NULL DEFAULT 0 CHECK (fees >= 0),
            gross_pnl REAL,
            net_pnl REAL,
            exit_reason TEXT,
            opened_at TEXT NOT NULL,
            closed_at TEXT,
            prediction_id INTEGER,
            signal_confidence REAL,
            CHECK ((status = 'closed') = (closed_at IS NOT NULL))
        )
        """)

        # at most one open position per symbol, whoever writes to the file
        cur.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS ux_positions_one_open
        ON positions(symbol) WHERE status = 'open'
        """)
        cur.execute("CREATE INDEX IF NOT EXISTS idx_positions_closed ON positions(status, closed_at)")

        cur.execute("""
        CREATE TABLE IF NOT EXISTS predictions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            symbol TEXT NOT NULL,
            timestamp TEXT NOT NULL,
            horizon_hours INTEGER NOT NULL DEFAULT 24,
            predicted_price REAL NOT NULL,
            predicted_return REAL NOT NULL,
            confidence_score REAL NOT NULL,
            quantile_10 REAL,
            quantile_90 REAL,
            model_version TEXT
        )
        """)
        cur.execute("CREATE INDEX IF NOT EXISTS idx_predictions_symbol_time ON predictions(symbol, timestamp)")

        cur.execute("""
        CREATE TABLE IF NOT EXISTS market_data (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            symbol TEXT NOT NULL,
            price REAL NOT NULL,
            timestamp TEXT NOT NULL
        )
        """)
        cur.execute("CREATE INDEX IF NOT EXISTS idx_market_data_symbol_time ON market_data(symbol, timestamp)")

        cur.execute("""
        CREATE TABLE IF NOT EXISTS system_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp TEXT NOT NULL,
            level TEXT NOT NULL CHECK (level IN ('DEBUG', 'INFO', 'WARN', 'ERROR')),
            component TEXT NOT NULL,
            message TEXT NOT NULL,
            context_data TEXT,
            execution_time_ms REAL
        )
        """)

        cur.execute("""
        CREATE TABLE IF NOT EXISTS app_config (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            description TEXT,
            updated_at TEXT NOT NULL
        )
        """)

        cur.execute("""
        CREATE TABLE IF NOT EXISTS performance_metrics (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            timestamp TEXT NOT NULL,
            symbol TEXT NOT NULL DEFAULT '*',
            period_type TEXT NOT NULL DEFAULT 'daily',
            period_start TEXT NOT NULL,
            period_end TEXT NOT NULL,
            total_trades INTEGER NOT NULL,
            winning_trades INTEGER NOT NULL,
            losing_trades INTEGER NOT NULL,
            win_rate REAL NOT NULL,
            total_pnl REAL NOT NULL,
            total_fees REAL NOT NULL,
            net_pnl REAL NOT NULL,
            avg_win REAL NOT NULL,
            avg_loss REAL NOT NULL,
            profit_factor REAL NOT NULL,
            max_drawdown REAL NOT NULL,
            starting_balance REAL NOT NULL,
            ending_balance REAL NOT NULL,
            total_return REAL NOT NULL,
            UNIQUE(symbol, period_type, period_start, period_end)
        )
        """)

        self.conn.commit()

    # ========== LOW LEVEL ==========

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """Serialised transaction; sqlite errors roll back and become PersistenceFailure."""
        with self.lock:
            try:
                with self.conn:
                    yield self.conn.cursor()
            except sqlite3.Error as e:
                logger.error(f"[DB] Transaction rolled back: {e}")
                raise PersistenceFailure(str(e)) from e

    def _query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self.lock:
            try:
                return self.conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise PersistenceFailure(str(e)) from e

    def _query_one(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        rows = self._query(sql, params)
        return rows[0] if rows else None

    # ========== POSITIONS ==========

    def insert_open_position(self, position: Position) -> Optional[Position]:
        """
        Inserts `position` only if no open position exists for its symbol.
        Returns the stored row, or None when another open position won.
        """
        try:
            with self.transaction() as cur:
                cur.execute(
                    """INSERT INTO positions
                    (symbol, side, entry_price, quantity, stop_loss_price, take_profit_price,
                     status, fees, opened_at, prediction_id, signal_confidence)
                    SELECT ?, ?, ?, ?, ?, ?, 'open', ?, ?, ?, ?
                    WHERE NOT EXISTS (
                        SELECT 1 FROM positions WHERE symbol = ? AND status = 'open'
                    )""",
                    (
                        position.symbol, position.side, position.entry_price, position.quantity,
                        position.stop_loss_price, position.take_profit_price,
                        position.fees, position.opened_at, position.prediction_id,
                        position.signal_confidence, position.symbol,
                    ),
                )
                if cur.rowcount == 0:
                    return None
                new_id = cur.lastrowid
        except PersistenceFailure as e:
            if isinstance(e.__cause__, sqlite3.IntegrityError) and "UNIQUE" in str(e):
                return None
            raise
        return self.get_position(new_id)

    def close_position_row(self, position_id: int, exit_price: float, gross_pnl: float,
                           fees: float, net_pnl: float, exit_reason: str, closed_at: str) -> bool:
        """Closes the row if it is still open. Returns False when it was not."""
        with self.transaction() as cur:
            cur.execute(
                """UPDATE positions
                SET status = 'closed', exit_price = ?, gross_pnl = ?, fees = ?, net_pnl = ?,
                    exit_reason = ?, closed_at = ?
                WHERE id = ? AND status = 'open'""",
                (exit_price, gross_pnl, fees, net_pnl, exit_reason, closed_at, position_id),
            )
            return cur.rowcount == 1

    def get_position(self, position_id: int) -> Optional[Position]:
        row = self._query_one("SELECT * FROM positions WHERE id = ?", (position_id,))
        return Position.from_row(row) if row else None

    def get_open_position(self, symbol: str) -> Optional[Position]:
        row = self._query_one(
            "SELECT * FROM positions WHERE status = 'open' AND symbol = ? ORDER BY opened_at DESC LIMIT 1",
            (symbol,),
        )
        return Position.from_row(row) if row else None

    def get_open_positions(self, symbol: Optional[str] = None) -> List[Position]:
        query = "SELECT * FROM positions WHERE status = 'open'"
        params: list = []
        if symbol:
            query += " AND symbol = ?"
            params.append(symbol)
        query += " ORDER BY opened_at DESC, id DESC"
        return [Position.from_row(r) for r in self._query(query, tuple(params))]

    def count_open_positions(self, symbol: str) -> int:
        row = self._query_one(
            "SELECT COUNT(*) AS n FROM positions WHERE status = 'open' AND symbol = ?", (symbol,)
        )
        return int(row["n"])

    def get_recent_trades(self, limit: int = 10, symbol: Optional[str] = None) -> List[Position]:
        query = "SELECT * FROM positions WHERE status = 'closed'"
        params: list = []
        if symbol:
            query += " AND symbol = ?"
            params.append(symbol)
        query += " ORDER BY closed_at DESC, id DESC LIMIT ?"
        params.append(int(limit))
        return [Position.from_row(r) for r in self._query(query, tuple(params))]

    def sum_closed_net_pnl(self, symbol: Optional[str] = None, before: Optional[str] = None) -> float:
        query = "SELECT COALESCE(SUM(net_pnl), 0) AS total FROM positions WHERE status = 'closed'"
        params: list = []
        if symbol:
            query += " AND symbol = ?"
            params.append(symbol)
        if before:
            query += " AND closed_at < ?"
            params.append(before)
        row = self._query_one(query, tuple(params))
        return float(row["total"])

    def open_notional(self, symbol: Optional[str] = None) -> float:
        query = "SELECT COALESCE(SUM(entry_price * quantity), 0) AS total FROM positions WHERE status = 'open'"
        params: list = []
        if symbol:
            query += " AND symbol = ?"
            params.append(symbol)
        row = self._query_one(query, tuple(params))
        return float(row["total"])

    def closed_positions_frame(self, symbol: Optional[str] = None, since: Optional[str] = None,
                               until: Optional[str] = None) -> pd.DataFrame:
        """Closed positions in chronological order of closure."""
        query = (
            "SELECT id, symbol, side, entry_price, exit_price, quantity, fees, "
            "gross_pnl, net_pnl, exit_reason, opened_at, closed_at "
            "FROM positions WHERE status = 'closed'"
        )
        params: list = []
        if symbol:
            query += " AND symbol = ?"
            params.append(symbol)
        if since:
            query += " AND closed_at >= ?"
            params.append(since)
        if until:
            query += " AND closed_at <= ?"
            params.append(until)
        query += " ORDER BY closed_at ASC, id ASC"
        with self.lock:
            try:
                return pd.read_sql_query(query, self.conn, params=params)
            except (sqlite3.Error, pd.errors.DatabaseError) as e:
                raise PersistenceFailure(str(e)) from e

    def export_trades_csv(self, path: str = "trades.csv") -> int:
        df = self.closed_positions_frame()
        df.to_csv(path, index=False)
        logger.info(f"Closed trades exported to {path} ({len(df)} rows)")
        return len(df)

    # ========== PREDICTIONS / PRICES ==========

    def insert_prediction(self, prediction: Prediction) -> Prediction:
        with self.transaction() as cur:
            cur.execute(
                """INSERT INTO predictions
                (symbol, timestamp, horizon_hours, predicted_price, predicted_return,
                 confidence_score, quantile_10, quantile_90, model_version)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    prediction.symbol, to_iso(prediction.timestamp), prediction.horizon_hours,
                    prediction.predicted_price, prediction.predicted_return,
                    prediction.confidence_score, prediction.quantile_10,
                    prediction.quantile_90, prediction.model_version,
                ),
            )
            new_id = cur.lastrowid
        return prediction.model_copy(update={"id": new_id})

    def get_latest_prediction(self, symbol: str) -> Optional[Prediction]:
        row = self._query_one(
            "SELECT * FROM predictions WHERE symbol = ? ORDER BY timestamp DESC, id DESC LIMIT 1",
            (symbol,),
        )
        return Prediction.from_row(row) if row else None

    def insert_market_price(self, price: MarketPrice) -> None:
        with self.transaction() as cur:
            cur.execute(
                "INSERT INTO market_data (symbol, price, timestamp) VALUES (?, ?, ?)",
                (price.symbol, price.price, to_iso(price.timestamp)),
            )

    def get_latest_price(self, symbol: str) -> Optional[MarketPrice]:
        row = self._query_one(
            "SELECT symbol, price, timestamp FROM market_data WHERE symbol = ? "
            "ORDER BY timestamp DESC, id DESC LIMIT 1",
            (symbol,),
        )
        return MarketPrice.model_validate(dict(row)) if row else None

    # ========== AUDIT LOG ==========

    def insert_log(self, level: str, component: str, message: str,
                   context: Optional[Dict[str, Any]] = None,
                   execution_time_ms: Optional[float] = None) -> None:
        level = level.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"Invalid log level: {level}")
        with self.transaction() as cur:
            cur.execute(
                """INSERT INTO system_logs
                (timestamp, level, component, message, context_data, execution_time_ms)
                VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    to_iso(), level, component, message,
                    json.dumps(context, default=str) if context is not None else None,
                    execution_time_ms,
                ),
            )

    def get_logs(self, limit: int = 50, component: Optional[str] = None,
                 level: Optional[str] = None) -> List[Dict[str, Any]]:
        query = "SELECT * FROM system_logs WHERE 1 = 1"
        params: list = []
        if component:
            query += " AND component = ?"
            params.append(component)
        if level:
            query += " AND level = ?"
            params.append(level.upper())
        query += " ORDER BY id DESC LIMIT ?"
        params.append(int(limit))
        logs = []
        for row in self._query(query, tuple(params)):
            entry = dict(row)
            if entry.get("context_data"):
                entry["context_data"] = json.loads(entry["context_data"])
            logs.append(entry)
        return logs

    # ========== CONFIG ==========

    def get_config(self) -> Dict[str, str]:
        return {r["key"]: r["value"] for r in self._query("SELECT key, value FROM app_config")}

    def set_config(self, key: str, value: Any, description: Optional[str] = None) -> None:
        with self.transaction() as cur:
            cur.execute(
                """INSERT INTO app_config (key, value, description, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    description = COALESCE(excluded.description, app_config.description),
                    updated_at = excluded.updated_at""",
                (key, str(value), description, to_iso()),
            )

    # ========== PERFORMANCE REPORTS ==========

    def insert_performance(self, snapshot: Dict[str, Any], symbol: Optional[str] = None,
                           period_type: str = "daily") -> None:
        with self.transaction() as cur:
            cur.execute(
                """INSERT OR REPLACE INTO performance_metrics
                (timestamp, symbol, period_type, period_start, period_end, total_trades,
                 winning_trades, losing_trades, win_rate, total_pnl, total_fees, net_pnl,
                 avg_win, avg_loss, profit_factor, max_drawdown, starting_balance,
                 ending_balance, total_return)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    to_iso(), symbol or "*", period_type,
                    snapshot["period_start"], snapshot["period_end"],
                    snapshot["total_trades"], snapshot["winning_trades"], snapshot["losing_trades"],
                    snapshot["win_rate"], snapshot["total_pnl"], snapshot["total_fees"],
                    snapshot["net_pnl"], snapshot["avg_win"], snapshot["avg_loss"],
                    snapshot["profit_factor"], snapshot["max_drawdown"],
                    snapshot["starting_balance"], snapshot["ending_balance"],
                    snapshot["total_return"],
                ),
            )

    def get_performance_history(self, limit: int = 30) -> List[Dict[str, Any]]:
        rows = self._query("SELECT * FROM performance_metrics ORDER BY id DESC LIMIT ?", (int(limit),))
        return [dict(r) for r in rows]

    def close(self) -> None:
        with self.lock:
            self.conn.close()
