"""
CCTP Recovery - SQLite persistence for pending bridges

Write-through backing store for the PendingBridgeRegistry so recovery progress
survives restarts. One table, keyed by burn tx hash.
"""

import logging
import os
import sqlite3
from contextlib import contextmanager

from .models import PendingBridge

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS pending_bridges (
    burn_tx_hash TEXT PRIMARY KEY,
    recipient TEXT NOT NULL,
    amount TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending_attestation',
    message_hash TEXT,
    mint_tx_hash TEXT,
    created_at REAL NOT NULL,
    last_checked REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_pending_status ON pending_bridges(status);
"""

_COLUMNS = ("burn_tx_hash", "recipient", "amount", "status", "message_hash",
            "mint_tx_hash", "created_at", "last_checked")


class BridgeStore:
    def __init__(self, db_path):
        self.db_path = db_path
        self.init_db()

    def __repr__(self):
        return f"BridgeStore({self.db_path!r})"

    # ------------------------------------------------------------
    # Connection Management
    # ------------------------------------------------------------

    def get_connection(self):
        """SQLite connection with WAL mode."""
        directory = os.path.dirname(os.path.abspath(self.db_path))
        os.makedirs(directory, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    @contextmanager
    def get_db(self):
        """Context manager for database connections with auto-commit."""
        conn = self.get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_db(self):
        with self.get_db() as conn:
            conn.executescript(SCHEMA_SQL)

    # ------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------

    def save(self, bridge):
        """Insert or replace one bridge row."""
        with self.get_db() as conn:
            conn.execute(f"""
                INSERT OR REPLACE INTO pending_bridges ({", ".join(_COLUMNS)})
                VALUES ({", ".join("?" for _ in _COLUMNS)})
            """, tuple(getattr(bridge, col) for col in _COLUMNS))

    def delete(self, burn_tx_hash):
        with self.get_db() as conn:
            conn.execute("DELETE FROM pending_bridges WHERE burn_tx_hash = ?", (burn_tx_hash,))

    def get(self, burn_tx_hash):
        with self.get_db() as conn:
            row = conn.execute(
                "SELECT * FROM pending_bridges WHERE burn_tx_hash = ?", (burn_tx_hash,)
            ).fetchone()
        return _row_to_bridge(row) if row else None

    def load_all(self):
        """Every stored bridge, oldest first."""
        with self.get_db() as conn:
            rows = conn.execute("SELECT * FROM pending_bridges ORDER BY created_at").fetchall()
        bridges = [_row_to_bridge(r) for r in rows]
        logger.info("Loaded %d pending bridge(s) from %s", len(bridges), self.db_path)
        return bridges


def _row_to_bridge(row):
    return PendingBridge(**{col: row[col] for col in _COLUMNS})
