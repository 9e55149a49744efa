"""SQLite database for positions, trades, pair locks and order records."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


class SQLiteDatabase:
    """Owns the connection and schema.

    ``transaction()`` commits on success and rolls back on error. Nested calls
    join the outermost transaction, so repository writes made inside a caller's
    ``transaction()`` block land atomically together.
    """

    def __init__(self, db_path: Path) -> None:
        self._path = db_path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._path.as_posix(), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._depth = 0
        self._init_schema()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def _init_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS positions (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              symbol TEXT NOT NULL UNIQUE,
              instrument_id TEXT NOT NULL,
              shares REAL NOT NULL,
              entry_price REAL NOT NULL,
              entry_time TEXT NOT NULL,
              current_price REAL,
              pnl REAL,
              pnl_pct REAL,
              stop_loss REAL,
              trailing_stop REAL,
              take_profit REAL,
              stop_order_id TEXT,
              take_profit_order_id TEXT,
              account_type TEXT NOT NULL,
              partial_exit_count INTEGER NOT NULL DEFAULT 0,
              updated_at TEXT
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS trades (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              symbol TEXT NOT NULL,
              instrument_id TEXT NOT NULL,
              side TEXT NOT NULL,
              shares REAL NOT NULL,
              entry_price REAL NOT NULL,
              exit_price REAL,
              pnl REAL,
              pnl_pct REAL,
              entry_time TEXT NOT NULL,
              exit_time TEXT,
              exit_reason TEXT,
              stop_loss REAL,
              take_profit REAL,
              broker_order_id TEXT,
              intended_price REAL,
              slippage REAL,
              account_type TEXT NOT NULL
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_trades_symbol ON trades(symbol)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_trades_exit_time ON trades(exit_time)")
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS pair_locks (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              symbol TEXT NOT NULL,
              lock_end TEXT NOT NULL,
              reason TEXT,
              side TEXT NOT NULL DEFAULT '*',
              active INTEGER NOT NULL DEFAULT 1,
              created_at TEXT NOT NULL
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_pair_locks_symbol ON pair_locks(symbol, active, lock_end)")
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS orders (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              symbol TEXT NOT NULL,
              side TEXT NOT NULL,
              order_type TEXT NOT NULL DEFAULT 'market',
              status TEXT NOT NULL DEFAULT 'pending',
              requested_quantity REAL NOT NULL,
              filled_quantity REAL DEFAULT 0,
              requested_price REAL,
              filled_price REAL,
              stop_price REAL,
              broker_order_id TEXT,
              cancel_reason TEXT,
              order_tag TEXT,
              account_type TEXT NOT NULL,
              created_at TEXT NOT NULL,
              updated_at TEXT,
              filled_at TEXT
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status, symbol)")
        self._conn.commit()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        if self._depth > 0:
            self._depth += 1
            try:
                yield self._conn
            finally:
                self._depth -= 1
            return

        self._depth = 1
        try:
            yield self._conn
            self._conn.commit()
        except BaseException:
            self._conn.rollback()
            raise
        finally:
            self._depth = 0

    def close(self) -> None:
        self._conn.close()
