"""Shared SQLite PRAGMA helpers for consistent connection tuning."""

from __future__ import annotations

import sqlite3


def apply_read_pragmas(
    conn: sqlite3.Connection,
    *,
    cache_size_kb: int = -16384,
    busy_timeout_ms: int | None = 30000,
    query_only: bool = True,
) -> None:
    """Apply read-optimized PRAGMAs with optional overrides."""
    if busy_timeout_ms is not None:
        conn.execute(f"PRAGMA busy_timeout = {busy_timeout_ms}")
    conn.execute(f"PRAGMA cache_size = {cache_size_kb}")
    conn.execute("PRAGMA temp_store = MEMORY")
    if query_only:
        conn.execute("PRAGMA query_only = 1")


def apply_write_pragmas(
    conn: sqlite3.Connection,
    *,
    cache_size_kb: int = -16384,
    busy_timeout_ms: int = 30000,
) -> None:
    """Apply write PRAGMAs; WAL lets pollers read while a job writes."""
    conn.execute(f"PRAGMA busy_timeout = {busy_timeout_ms}")
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA synchronous = NORMAL")
    conn.execute(f"PRAGMA cache_size = {cache_size_kb}")
    conn.execute("PRAGMA temp_store = MEMORY")
