# serverpanel/services/panel_db.py
"""
SQLite persistence for server records, console logs and resource samples.

- servers: one row per managed server, status mirrored from the live supervisor
- console_logs: append-only cleaned console lines and command echoes
- server_stats: bounded per-server resource series for charting

Every call opens its own short-lived connection, so callers on the event loop
and in worker threads can share the module freely.
"""

import logging
import sqlite3
import time
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from serverpanel.core.config import DATABASE_PATH

logger = logging.getLogger(__name__)

INSTALL_NOT_INSTALLED = "NOT_INSTALLED"
INSTALL_INSTALLING = "INSTALLING"
INSTALL_INSTALLED = "INSTALLED"
INSTALL_FAILED = "FAILED"
INSTALL_STATES = (INSTALL_NOT_INSTALLED, INSTALL_INSTALLING, INSTALL_INSTALLED, INSTALL_FAILED)

# Resource samples kept per server (5s interval -> 1 hour)
STATS_RETENTION_ROWS = 720

# Columns update_server_fields() may touch
_MUTABLE_FIELDS = frozenset({
    "name", "ip", "port", "version", "max_memory", "max_players",
    "jar_path", "assets_path", "server_root", "autostart", "last_error",
})

_KEEP_PID = object()


@contextmanager
def _connect():
    """Thread-safe connection with WAL mode."""
    conn = sqlite3.connect(str(DATABASE_PATH), timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.execute("PRAGMA foreign_keys=ON")
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


def init_db():
    """Create tables and indexes if they don't exist."""
    DATABASE_PATH.parent.mkdir(parents=True, exist_ok=True)

    with _connect() as conn:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS servers (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'offline',
                pid INTEGER,
                ip TEXT NOT NULL DEFAULT '0.0.0.0',
                port INTEGER NOT NULL,
                version TEXT,
                max_memory INTEGER NOT NULL DEFAULT 1024,
                max_players INTEGER NOT NULL DEFAULT 10,
                install_state TEXT NOT NULL DEFAULT 'NOT_INSTALLED',
                last_error TEXT,
                jar_path TEXT,
                assets_path TEXT,
                server_root TEXT,
                autostart INTEGER NOT NULL DEFAULT 0,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS console_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                server_id TEXT NOT NULL REFERENCES servers(id) ON DELETE CASCADE,
                timestamp REAL NOT NULL,
                level TEXT NOT NULL,
                message TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS server_stats (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                server_id TEXT NOT NULL REFERENCES servers(id) ON DELETE CASCADE,
                timestamp REAL NOT NULL,
                cpu REAL NOT NULL,
                memory REAL NOT NULL,
                players INTEGER NOT NULL DEFAULT 0,
                max_players INTEGER NOT NULL DEFAULT 0
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_console_logs_server ON console_logs(server_id, id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_server_stats_server ON server_stats(server_id, id)")

    logger.info(f"Panel database initialized at {DATABASE_PATH}")


def _record_from_row(row: sqlite3.Row) -> Dict[str, Any]:
    record = dict(row)
    record["autostart"] = bool(record.get("autostart"))
    return record


# ─── Server records ───────────────────────────────────────────────

def create_server_record(record: Dict[str, Any]) -> Dict[str, Any]:
    now = time.time()
    with _connect() as conn:
        conn.execute(
            """INSERT INTO servers (id, name, status, ip, port, version, max_memory, max_players,
                                    install_state, server_root, autostart, created_at, updated_at)
               VALUES (?, ?, 'offline', ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                record["id"],
                record["name"],
                record.get("ip", "0.0.0.0"),
                int(record["port"]),
                record.get("version"),
                int(record.get("max_memory", 1024)),
                int(record.get("max_players", 10)),
                record.get("install_state", INSTALL_NOT_INSTALLED),
                record.get("server_root"),
                1 if record.get("autostart") else 0,
                now,
                now,
            ),
        )
    return get_server_record(record["id"])


def get_server_record(server_id: str) -> Optional[Dict[str, Any]]:
    with _connect() as conn:
        row = conn.execute("SELECT * FROM servers WHERE id = ?", (server_id,)).fetchone()
    return _record_from_row(row) if row else None


def get_all_server_records() -> List[Dict[str, Any]]:
    with _connect() as conn:
        rows = conn.execute("SELECT * FROM servers ORDER BY created_at ASC").fetchall()
    return [_record_from_row(r) for r in rows]


def update_status(server_id: str, status: str, pid=_KEEP_PID):
    """Mirror the live status. ``pid`` omitted keeps the stored value, None clears it."""
    with _connect() as conn:
        if pid is _KEEP_PID:
            conn.execute(
                "UPDATE servers SET status = ?, updated_at = ? WHERE id = ?",
                (status, time.time(), server_id),
            )
        else:
            conn.execute(
                "UPDATE servers SET status = ?, pid = ?, updated_at = ? WHERE id = ?",
                (status, pid, time.time(), server_id),
            )


def update_install_state(
    server_id: str,
    state: str,
    error: Optional[str] = None,
    jar_path: Optional[str] = None,
    assets_path: Optional[str] = None,
    server_root: Optional[str] = None,
):
    if state not in INSTALL_STATES:
        raise ValueError(f"Unknown install state: {state}")
    with _connect() as conn:
        conn.execute(
            """UPDATE servers
               SET install_state = ?, last_error = ?,
                   jar_path = COALESCE(?, jar_path),
                   assets_path = COALESCE(?, assets_path),
                   server_root = COALESCE(?, server_root),
                   updated_at = ?
               WHERE id = ?""",
            (state, error, jar_path, assets_path, server_root, time.time(), server_id),
        )


def try_start_installation(server_id: str) -> Dict[str, Any]:
    """Atomically move NOT_INSTALLED/FAILED -> INSTALLING.

    Returns {"success": True} for the single winner, otherwise
    {"success": False, "reason": ...}.
    """
    with _connect() as conn:
        # Take the write lock up front so the read below sees the winner's commit.
        conn.execute("BEGIN IMMEDIATE")
        cursor = conn.execute(
            """UPDATE servers SET install_state = ?, last_error = NULL, updated_at = ?
               WHERE id = ? AND install_state IN (?, ?)""",
            (INSTALL_INSTALLING, time.time(), server_id, INSTALL_NOT_INSTALLED, INSTALL_FAILED),
        )
        if cursor.rowcount == 1:
            return {"success": True}

        row = conn.execute("SELECT install_state FROM servers WHERE id = ?", (server_id,)).fetchone()

    if row is None:
        return {"success": False, "reason": "Server not found"}
    if row["install_state"] == INSTALL_INSTALLING:
        return {"success": False, "reason": "Installation already in progress"}
    if row["install_state"] == INSTALL_INSTALLED:
        return {"success": False, "reason": "Server is already installed"}
    return {"success": False, "reason": "Installation state changed concurrently"}


def update_server_fields(server_id: str, **fields: Any):
    unknown = set(fields) - _MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update server fields: {', '.join(sorted(unknown))}")
    if not fields:
        return
    if "autostart" in fields:
        fields["autostart"] = 1 if fields["autostart"] else 0
    assignments = ", ".join(f"{name} = ?" for name in fields)
    with _connect() as conn:
        conn.execute(
            f"UPDATE servers SET {assignments}, updated_at = ? WHERE id = ?",
            (*fields.values(), time.time(), server_id),
        )


def delete_server_record(server_id: str) -> bool:
    with _connect() as conn:
        cursor = conn.execute("DELETE FROM servers WHERE id = ?", (server_id,))
    return cursor.rowcount > 0


# ─── Console logs ─────────────────────────────────────────────────

def insert_log_entry(server_id: str, level: str, message: str, timestamp: Optional[float] = None) -> int:
    with _connect() as conn:
        cursor = conn.execute(
            "INSERT INTO console_logs (server_id, timestamp, level, message) VALUES (?, ?, ?, ?)",
            (server_id, timestamp if timestamp is not None else time.time(), level, message),
        )
    return cursor.lastrowid


def get_recent_log_entries(server_id: str, limit: int = 100) -> List[Dict[str, Any]]:
    """Newest ``limit`` entries, returned oldest first."""
    with _connect() as conn:
        rows = conn.execute(
            "SELECT * FROM console_logs WHERE server_id = ? ORDER BY id DESC LIMIT ?",
            (server_id, limit),
        ).fetchall()
    return [dict(r) for r in reversed(rows)]


# ─── Resource samples ─────────────────────────────────────────────

def insert_resource_sample(
    server_id: str,
    cpu: float,
    memory: float,
    players: int,
    max_players: int,
    timestamp: Optional[float] = None,
):
    with _connect() as conn:
        conn.execute(
            """INSERT INTO server_stats (server_id, timestamp, cpu, memory, players, max_players)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (server_id, timestamp if timestamp is not None else time.time(), cpu, memory, players, max_players),
        )
        conn.execute(
            """DELETE FROM server_stats WHERE server_id = ? AND id NOT IN (
                   SELECT id FROM server_stats WHERE server_id = ? ORDER BY id DESC LIMIT ?
               )""",
            (server_id, server_id, STATS_RETENTION_ROWS),
        )


def get_resource_samples(server_id: str, limit: int = 100) -> List[Dict[str, Any]]:
    """Newest ``limit`` samples, returned oldest first."""
    with _connect() as conn:
        rows = conn.execute(
            "SELECT * FROM server_stats WHERE server_id = ? ORDER BY id DESC LIMIT ?",
            (server_id, limit),
        ).fetchall()
    return [dict(r) for r in reversed(rows)]
