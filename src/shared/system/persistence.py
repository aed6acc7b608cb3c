"""
Persistence Layer
=================
SQLite-based state management for the perps request tracker.

Features:
- Pending request recovery after restarts (including terminal history)
- Monitored position and TP/SL threshold recovery
- Price alert storage
- Per-owner-address request counters, so counters never repeat across restarts
- Atomic transactions for data consistency
"""

import sqlite3
import time
from decimal import Decimal
from pathlib import Path
from typing import Dict, Any, Optional, List
from contextlib import contextmanager
import threading

from src.perps.types import (
    AlertDirection,
    MonitoredPosition,
    PendingRequest,
    PriceAlert,
    RequestKind,
    Side,
)
from src.shared.execution.execution_result import RequestStatus
from src.shared.system.logging import Logger


def _dec(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


def _text(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


class PersistenceDB:
    """
    Singleton SQLite persistence layer.

    Thread-safe with connection pooling per thread.
    All timestamps are stored as Unix epoch (UTC).
    """

    _instance = None
    _lock = threading.Lock()

    def __new__(cls, db_path: str = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, db_path: str = None):
        if self._initialized:
            return

        if db_path is None:
            from config.settings import Settings
            db_path = Settings.DB_PATH

        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # Thread-local storage for connections
        self._local = threading.local()

        self._init_schema()
        self._initialized = True
        Logger.debug(f"[DB] Opened {self.db_path}")

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton (tests and CLI switching databases)."""
        with cls._lock:
            if cls._instance is not None and cls._instance._initialized:
                cls._instance.close()
            cls._instance = None

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if not hasattr(self._local, 'conn') or self._local.conn is None:
            self._local.conn = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False
            )
            self._local.conn.row_factory = sqlite3.Row
            # Enable WAL mode for better concurrency
            self._local.conn.execute("PRAGMA journal_mode=WAL")
            self._local.conn.execute("PRAGMA synchronous=NORMAL")
        return self._local.conn

    @contextmanager
    def _transaction(self):
        """Context manager for atomic transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def _init_schema(self):
        """Create tables if they don't exist."""
        conn = self._get_connection()

        conn.executescript("""
            -- Pending requests: every submitted request, terminal ones included
            CREATE TABLE IF NOT EXISTS pending_requests (
                request_id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                owner TEXT NOT NULL,
                market TEXT NOT NULL,
                side TEXT NOT NULL,
                kind TEXT NOT NULL,
                counter INTEGER NOT NULL,
                position_address TEXT NOT NULL,
                request_address TEXT NOT NULL,
                signature TEXT,
                status TEXT NOT NULL,
                polls INTEGER NOT NULL DEFAULT 0,
                baseline_fingerprint TEXT,
                collateral_amount INTEGER DEFAULT 0,
                size_usd INTEGER DEFAULT 0,
                price TEXT,
                take_profit_pct TEXT,
                stop_loss_pct TEXT,
                reason TEXT,
                error TEXT,
                submitted_at REAL NOT NULL,
                resolved_at REAL
            );

            -- Monitored positions: one per (owner, market, side)
            CREATE TABLE IF NOT EXISTS monitored_positions (
                owner_id TEXT NOT NULL,
                owner TEXT NOT NULL,
                market TEXT NOT NULL,
                side TEXT NOT NULL,
                entry_price TEXT NOT NULL,
                size_usd INTEGER NOT NULL DEFAULT 0,
                position_address TEXT NOT NULL,
                take_profit_pct TEXT,
                stop_loss_pct TEXT,
                opened_at REAL NOT NULL,
                PRIMARY KEY (owner_id, market, side)
            );

            -- Price alerts: one-shot notifications
            CREATE TABLE IF NOT EXISTS price_alerts (
                alert_id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                symbol TEXT NOT NULL,
                target_price TEXT NOT NULL,
                direction TEXT NOT NULL,
                created_at REAL NOT NULL
            );

            -- Request counters: next unused counter per owner address
            CREATE TABLE IF NOT EXISTS request_counters (
                owner TEXT PRIMARY KEY,
                next_counter INTEGER NOT NULL,
                updated_at REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_requests_owner ON pending_requests(owner_id);
            CREATE INDEX IF NOT EXISTS idx_requests_status ON pending_requests(status);
            CREATE INDEX IF NOT EXISTS idx_alerts_symbol ON price_alerts(symbol);
        """)
        conn.commit()

    # ═══════════════════════════════════════════════════════════════
    # PENDING REQUESTS
    # ═══════════════════════════════════════════════════════════════

    def upsert_request(self, request: PendingRequest) -> None:
        """Insert or update a pending request."""
        with self._transaction() as conn:
            conn.execute("""
                INSERT INTO pending_requests (request_id, owner_id, owner, market, side, kind,
                                              counter, position_address, request_address,
                                              signature, status, polls, baseline_fingerprint,
                                              collateral_amount, size_usd, price, take_profit_pct,
                                              stop_loss_pct, reason, error, submitted_at,
                                              resolved_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(request_id) DO UPDATE SET
                    signature = excluded.signature,
                    status = excluded.status,
                    polls = excluded.polls,
                    error = excluded.error,
                    resolved_at = excluded.resolved_at
            """, (
                request.request_id, request.owner_id, request.owner, request.market,
                request.side.name, request.kind.value, request.counter,
                request.position_address, request.request_address, request.signature,
                request.status.value, request.polls, request.baseline_fingerprint,
                request.collateral_amount, request.size_usd, _text(request.price),
                _text(request.take_profit_pct), _text(request.stop_loss_pct),
                request.reason, request.error, request.submitted_at, request.resolved_at,
            ))

    def get_requests(self, owner_id: str = None, status: RequestStatus = None) -> List[PendingRequest]:
        """Get requests, optionally filtered by owner and status."""
        query = "SELECT * FROM pending_requests WHERE 1=1"
        params: list = []
        if owner_id is not None:
            query += " AND owner_id = ?"
            params.append(owner_id)
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY submitted_at ASC"

        conn = self._get_connection()
        rows = conn.execute(query, params).fetchall()
        return [self._row_to_request(row) for row in rows]

    @staticmethod
    def _row_to_request(row: sqlite3.Row) -> PendingRequest:
        data = dict(row)
        return PendingRequest(
            request_id=data["request_id"],
            owner_id=data["owner_id"],
            owner=data["owner"],
            market=data["market"],
            side=Side[data["side"]],
            kind=RequestKind(data["kind"]),
            counter=data["counter"],
            position_address=data["position_address"],
            request_address=data["request_address"],
            signature=data["signature"],
            status=RequestStatus(data["status"]),
            polls=data["polls"],
            baseline_fingerprint=data["baseline_fingerprint"],
            collateral_amount=data["collateral_amount"],
            size_usd=data["size_usd"],
            price=_dec(data["price"]),
            take_profit_pct=_dec(data["take_profit_pct"]),
            stop_loss_pct=_dec(data["stop_loss_pct"]),
            reason=data["reason"],
            error=data["error"],
            submitted_at=data["submitted_at"],
            resolved_at=data["resolved_at"],
        )

    def max_counters(self) -> Dict[str, int]:
        """Highest counter used by any stored request, per owner address."""
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT owner, MAX(counter) AS counter FROM pending_requests GROUP BY owner"
        ).fetchall()
        return {row["owner"]: row["counter"] for row in rows}

    # ═══════════════════════════════════════════════════════════════
    # MONITORED POSITIONS
    # ═══════════════════════════════════════════════════════════════

    def upsert_position(self, position: MonitoredPosition) -> None:
        with self._transaction() as conn:
            conn.execute("""
                INSERT INTO monitored_positions (owner_id, owner, market, side, entry_price,
                                                 size_usd, position_address, take_profit_pct,
                                                 stop_loss_pct, opened_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(owner_id, market, side) DO UPDATE SET
                    entry_price = excluded.entry_price,
                    size_usd = excluded.size_usd,
                    take_profit_pct = excluded.take_profit_pct,
                    stop_loss_pct = excluded.stop_loss_pct
            """, (
                position.owner_id, position.owner, position.market, position.side.name,
                str(position.entry_price), position.size_usd, position.position_address,
                _text(position.take_profit_pct), _text(position.stop_loss_pct),
                position.opened_at,
            ))

    def delete_position(self, owner_id: str, market: str, side: Side) -> None:
        with self._transaction() as conn:
            conn.execute(
                "DELETE FROM monitored_positions WHERE owner_id = ? AND market = ? AND side = ?",
                (owner_id, market, side.name),
            )

    def get_positions(self) -> List[MonitoredPosition]:
        conn = self._get_connection()
        rows = conn.execute("SELECT * FROM monitored_positions").fetchall()
        positions = []
        for row in rows:
            data = dict(row)
            positions.append(MonitoredPosition(
                owner_id=data["owner_id"],
                owner=data["owner"],
                market=data["market"],
                side=Side[data["side"]],
                entry_price=Decimal(data["entry_price"]),
                size_usd=data["size_usd"],
                position_address=data["position_address"],
                take_profit_pct=_dec(data["take_profit_pct"]),
                stop_loss_pct=_dec(data["stop_loss_pct"]),
                opened_at=data["opened_at"],
            ))
        return positions

    # ═══════════════════════════════════════════════════════════════
    # PRICE ALERTS
    # ═══════════════════════════════════════════════════════════════

    def save_alert(self, alert: PriceAlert) -> None:
        with self._transaction() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO price_alerts
                    (alert_id, owner_id, symbol, target_price, direction, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                alert.alert_id, alert.owner_id, alert.symbol, str(alert.target_price),
                alert.direction.value, alert.created_at,
            ))

    def delete_alert(self, alert_id: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM price_alerts WHERE alert_id = ?", (alert_id,))
            return cursor.rowcount > 0

    def get_alerts(self) -> List[PriceAlert]:
        conn = self._get_connection()
        rows = conn.execute("SELECT * FROM price_alerts ORDER BY created_at ASC").fetchall()
        return [
            PriceAlert(
                alert_id=row["alert_id"],
                owner_id=row["owner_id"],
                symbol=row["symbol"],
                target_price=Decimal(row["target_price"]),
                direction=AlertDirection(row["direction"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    # ═══════════════════════════════════════════════════════════════
    # REQUEST COUNTERS
    # ═══════════════════════════════════════════════════════════════

    def load_counters(self) -> Dict[str, int]:
        conn = self._get_connection()
        rows = conn.execute("SELECT owner, next_counter FROM request_counters").fetchall()
        return {row["owner"]: row["next_counter"] for row in rows}

    def save_counter(self, owner: str, next_value: int) -> None:
        with self._transaction() as conn:
            conn.execute("""
                INSERT INTO request_counters (owner, next_counter, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(owner) DO UPDATE SET
                    next_counter = MAX(next_counter, excluded.next_counter),
                    updated_at = excluded.updated_at
            """, (owner, next_value, time.time()))

    def reserve_counter(self, owner: str, floor: int = 0) -> int:
        """
        Atomically hand out the next counter for ``owner``, never below ``floor``.

        One UPSERT statement, so processes sharing the database file can
        never reserve the same value.
        """
        with self._transaction() as conn:
            rows = conn.execute("""
                INSERT INTO request_counters (owner, next_counter, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(owner) DO UPDATE SET
                    next_counter = MAX(next_counter, excluded.next_counter - 1) + 1,
                    updated_at = excluded.updated_at
                RETURNING next_counter
            """, (owner, floor + 1, time.time())).fetchall()
        return rows[0]["next_counter"] - 1

    # ═══════════════════════════════════════════════════════════════
    # UTILITIES
    # ═══════════════════════════════════════════════════════════════

    def get_stats(self) -> Dict[str, Any]:
        """Get database statistics."""
        conn = self._get_connection()
        return {
            "requests_total": conn.execute("SELECT COUNT(*) FROM pending_requests").fetchone()[0],
            "requests_pending": conn.execute(
                "SELECT COUNT(*) FROM pending_requests WHERE status = ?",
                (RequestStatus.SUBMITTED.value,)
            ).fetchone()[0],
            "positions": conn.execute("SELECT COUNT(*) FROM monitored_positions").fetchone()[0],
            "alerts": conn.execute("SELECT COUNT(*) FROM price_alerts").fetchone()[0],
        }

    def close(self):
        """Close the database connection."""
        if hasattr(self._local, 'conn') and self._local.conn:
            self._local.conn.close()
            self._local.conn = None


# Global singleton accessor
def get_db() -> PersistenceDB:
    """Get the global persistence database instance."""
    return PersistenceDB()
