"""Repositories over the SQLite tables.

Every write goes through ``SQLiteDatabase.transaction()``; wrap several calls
in an outer ``transaction()`` to make them atomic together.
"""

from __future__ import annotations

import sqlite3
from dataclasses import asdict
from typing import Any, List, Optional

from tradecore.infrastructure.storage.sqlite_repository import SQLiteDatabase
from tradecore.infrastructure.utils.timeutils import Clock, to_iso, utc_now
from tradecore.models.trade_models import Lock, OrderRecord, Position, Trade

OPEN_ORDER_STATUSES = ("pending", "open", "partially_filled")

_POSITION_COLUMNS = (
    "symbol",
    "instrument_id",
    "shares",
    "entry_price",
    "entry_time",
    "current_price",
    "pnl",
    "pnl_pct",
    "stop_loss",
    "trailing_stop",
    "take_profit",
    "stop_order_id",
    "take_profit_order_id",
    "account_type",
    "partial_exit_count",
    "updated_at",
)

_TRADE_COLUMNS = (
    "symbol",
    "instrument_id",
    "side",
    "shares",
    "entry_price",
    "exit_price",
    "pnl",
    "pnl_pct",
    "entry_time",
    "exit_time",
    "exit_reason",
    "stop_loss",
    "take_profit",
    "broker_order_id",
    "intended_price",
    "slippage",
    "account_type",
)

_ORDER_UPDATABLE = ("status", "filled_quantity", "filled_price", "broker_order_id", "cancel_reason", "filled_at")


def _placeholders(n: int) -> str:
    return ",".join("?" for _ in range(n))


class PositionRepository:
    def __init__(self, db: SQLiteDatabase, *, clock: Clock = utc_now) -> None:
        self._db = db
        self._clock = clock

    @staticmethod
    def _row(r: sqlite3.Row) -> Position:
        return Position(**{k: r[k] for k in r.keys()})

    def get(self, symbol: str) -> Optional[Position]:
        row = self._db.connection.execute("SELECT * FROM positions WHERE symbol = ?", (symbol,)).fetchone()
        return self._row(row) if row else None

    def list_all(self) -> List[Position]:
        rows = self._db.connection.execute("SELECT * FROM positions ORDER BY id").fetchall()
        return [self._row(r) for r in rows]

    def count(self) -> int:
        row = self._db.connection.execute("SELECT COUNT(*) FROM positions").fetchone()
        return int(row[0]) if row else 0

    def upsert(self, position: Position) -> None:
        """Insert the position, or overwrite the row already held for its symbol."""
        data = asdict(position)
        data["updated_at"] = to_iso(self._clock())
        values = [data[c] for c in _POSITION_COLUMNS]
        updates = ", ".join(f"{c} = excluded.{c}" for c in _POSITION_COLUMNS if c != "symbol")
        with self._db.transaction() as conn:
            conn.execute(
                f"INSERT INTO positions({', '.join(_POSITION_COLUMNS)}) VALUES({_placeholders(len(values))}) "
                f"ON CONFLICT(symbol) DO UPDATE SET {updates}",
                values,
            )

    def update(self, symbol: str, /, **fields: Any) -> None:
        unknown = set(fields) - (set(_POSITION_COLUMNS) - {"symbol"})
        if unknown:
            raise ValueError(f"Cannot update position columns: {sorted(unknown)}")
        fields["updated_at"] = to_iso(self._clock())
        assignments = ", ".join(f"{k} = ?" for k in fields)
        with self._db.transaction() as conn:
            conn.execute(f"UPDATE positions SET {assignments} WHERE symbol = ?", (*fields.values(), symbol))

    def delete(self, symbol: str) -> None:
        with self._db.transaction() as conn:
            conn.execute("DELETE FROM positions WHERE symbol = ?", (symbol,))


class TradeRepository:
    def __init__(self, db: SQLiteDatabase) -> None:
        self._db = db

    @staticmethod
    def _row(r: sqlite3.Row) -> Trade:
        return Trade(**{k: r[k] for k in r.keys()})

    def insert(self, trade: Trade) -> int:
        data = asdict(trade)
        values = [data[c] for c in _TRADE_COLUMNS]
        with self._db.transaction() as conn:
            cur = conn.execute(
                f"INSERT INTO trades({', '.join(_TRADE_COLUMNS)}) VALUES({_placeholders(len(values))})",
                values,
            )
            return int(cur.lastrowid)

    def get(self, trade_id: int) -> Optional[Trade]:
        row = self._db.connection.execute("SELECT * FROM trades WHERE id = ?", (trade_id,)).fetchone()
        return self._row(row) if row else None

    def list_by_symbol(self, symbol: str) -> List[Trade]:
        rows = self._db.connection.execute(
            "SELECT * FROM trades WHERE symbol = ? ORDER BY id", (symbol,)
        ).fetchall()
        return [self._row(r) for r in rows]

    def list_closed(self, limit: int = 100) -> List[Trade]:
        """Closed trades, newest exit first."""
        rows = self._db.connection.execute(
            "SELECT * FROM trades WHERE exit_price IS NOT NULL ORDER BY exit_time DESC, id DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [self._row(r) for r in rows]

    def list_closed_since(self, cutoff_iso: str, *, symbol: Optional[str] = None) -> List[Trade]:
        """Closed trades with exit_time >= cutoff, oldest exit first."""
        sql = "SELECT * FROM trades WHERE exit_time IS NOT NULL AND exit_time >= ?"
        params: List[Any] = [cutoff_iso]
        if symbol is not None:
            sql += " AND symbol = ?"
            params.append(symbol)
        sql += " ORDER BY exit_time ASC, id ASC"
        rows = self._db.connection.execute(sql, params).fetchall()
        return [self._row(r) for r in rows]


class LockRepository:
    def __init__(self, db: SQLiteDatabase) -> None:
        self._db = db

    @staticmethod
    def _row(r: sqlite3.Row) -> Lock:
        return Lock(
            id=r["id"],
            scope=r["symbol"],
            lock_end=r["lock_end"],
            reason=r["reason"],
            side=r["side"],
            active=bool(r["active"]),
            created_at=r["created_at"],
        )

    def insert(self, lock: Lock) -> int:
        with self._db.transaction() as conn:
            cur = conn.execute(
                "INSERT INTO pair_locks(symbol, lock_end, reason, side, active, created_at) VALUES(?,?,?,?,?,?)",
                (lock.scope, lock.lock_end, lock.reason, lock.side, int(lock.active), lock.created_at),
            )
            return int(cur.lastrowid)

    def list_active(self, now_iso: str, *, scope: Optional[str] = None) -> List[Lock]:
        """Active locks whose lock_end is still in the future."""
        sql = "SELECT * FROM pair_locks WHERE active = 1 AND lock_end > ?"
        params: List[Any] = [now_iso]
        if scope is not None:
            sql += " AND symbol = ?"
            params.append(scope)
        sql += " ORDER BY id"
        rows = self._db.connection.execute(sql, params).fetchall()
        return [self._row(r) for r in rows]

    def list_all(self) -> List[Lock]:
        rows = self._db.connection.execute("SELECT * FROM pair_locks ORDER BY id").fetchall()
        return [self._row(r) for r in rows]

    def deactivate_scope(self, scope: str) -> int:
        with self._db.transaction() as conn:
            cur = conn.execute("UPDATE pair_locks SET active = 0 WHERE symbol = ? AND active = 1", (scope,))
            return int(cur.rowcount)

    def deactivate_expired(self, now_iso: str) -> int:
        with self._db.transaction() as conn:
            cur = conn.execute("UPDATE pair_locks SET active = 0 WHERE active = 1 AND lock_end <= ?", (now_iso,))
            return int(cur.rowcount)


class OrderRepository:
    def __init__(self, db: SQLiteDatabase, *, clock: Clock = utc_now) -> None:
        self._db = db
        self._clock = clock

    @staticmethod
    def _row(r: sqlite3.Row) -> OrderRecord:
        return OrderRecord(**{k: r[k] for k in r.keys()})

    def create(self, order: OrderRecord) -> int:
        """Insert a new order record in 'pending' state. Returns its local id."""
        now = to_iso(self._clock())
        with self._db.transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO orders(
                  symbol, side, order_type, status, requested_quantity, requested_price,
                  stop_price, order_tag, account_type, created_at, updated_at
                ) VALUES(?,?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    order.symbol,
                    order.side,
                    order.order_type,
                    "pending",
                    order.requested_quantity,
                    order.requested_price,
                    order.stop_price,
                    order.order_tag,
                    order.account_type,
                    now,
                    now,
                ),
            )
            return int(cur.lastrowid)

    def update_status(self, order_id: int, /, **updates: Any) -> None:
        unknown = set(updates) - set(_ORDER_UPDATABLE)
        if unknown:
            raise ValueError(f"Cannot update order columns: {sorted(unknown)}")
        fields = {k: v for k, v in updates.items() if v is not None}
        fields["updated_at"] = to_iso(self._clock())
        assignments = ", ".join(f"{k} = ?" for k in fields)
        with self._db.transaction() as conn:
            conn.execute(f"UPDATE orders SET {assignments} WHERE id = ?", (*fields.values(), order_id))

    def get(self, order_id: int) -> Optional[OrderRecord]:
        row = self._db.connection.execute("SELECT * FROM orders WHERE id = ?", (order_id,)).fetchone()
        return self._row(row) if row else None

    def list_by_symbol(self, symbol: str) -> List[OrderRecord]:
        rows = self._db.connection.execute(
            "SELECT * FROM orders WHERE symbol = ? ORDER BY id", (symbol,)
        ).fetchall()
        return [self._row(r) for r in rows]

    def list_open(self) -> List[OrderRecord]:
        rows = self._db.connection.execute(
            f"SELECT * FROM orders WHERE status IN ({_placeholders(len(OPEN_ORDER_STATUSES))}) ORDER BY id",
            OPEN_ORDER_STATUSES,
        ).fetchall()
        return [self._row(r) for r in rows]
