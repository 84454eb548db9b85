from __future__ import annotations

import logging
import re
import sqlite3
import threading
from pathlib import Path
from typing import Any, Mapping

LOGGER = logging.getLogger("checkmon.sqlite")

_IDENT_RE = re.compile(r"[^A-Za-z0-9_]")


def _ident(name: str) -> str:
    s = _IDENT_RE.sub("_", str(name or "").strip())
    if not s:
        raise ValueError("empty SQL identifier")
    if s[0].isdigit():
        s = "_" + s
    return s


def _column_type(value: Any) -> str:
    if isinstance(value, bool) or isinstance(value, int):
        return "INT"
    if isinstance(value, float):
        return "REAL"
    return "TEXT"


def _coerce_value(value: Any) -> Any:
    if value is None or isinstance(value, (int, float, str)):
        return int(value) if isinstance(value, bool) else value
    return str(value)


def _connect(path: str) -> sqlite3.Connection:
    p = str(path or "").strip()
    if not p:
        raise ValueError("Missing sqlite path")
    if p != ":memory:":
        Path(p).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(p, timeout=30, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000;")
    # Best-effort: WAL improves concurrency for a single-host service.
    try:
        conn.execute("PRAGMA journal_mode = WAL;")
    except Exception:
        pass
    return conn


class SQLiteSink:
    """
    Row-oriented telemetry store. One table per checker name; columns are created on
    first use, typed from the first value seen.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._conn = _connect(path)
        self._lock = threading.Lock()
        self._columns: dict[str, set[str]] = {}

    def _ensure_table(self, table: str, row: Mapping[str, Any]) -> None:
        known = self._columns.get(table)
        if known is None:
            existing = self._conn.execute(f'PRAGMA table_info("{table}")').fetchall()
            known = {r["name"] for r in existing}
            if not known:
                cols = ", ".join(f'"{c}" {_column_type(v)}' for c, v in row.items())
                self._conn.execute(f'CREATE TABLE IF NOT EXISTS "{table}" ({cols})')
                known = set(row)
            self._columns[table] = known

        for col, value in row.items():
            if col not in known:
                self._conn.execute(f'ALTER TABLE "{table}" ADD COLUMN "{col}" {_column_type(value)}')
                known.add(col)

    def add_row(self, table: str, row: Mapping[str, Any]) -> None:
        if not row:
            return
        t = _ident(table)
        clean = {_ident(k): _coerce_value(v) for k, v in row.items()}
        cols = ", ".join(f'"{c}"' for c in clean)
        marks = ", ".join("?" for _ in clean)
        with self._lock:
            self._ensure_table(t, clean)
            self._conn.execute(f'INSERT INTO "{t}" ({cols}) VALUES ({marks})', tuple(clean.values()))

    def fetch_rows(self, table: str) -> list[dict[str, Any]]:
        t = _ident(table)
        with self._lock:
            try:
                rows = self._conn.execute(f'SELECT * FROM "{t}" ORDER BY rowid').fetchall()
            except sqlite3.OperationalError:
                return []
        return [dict(r) for r in rows]

    def close(self) -> None:
        with self._lock:
            try:
                self._conn.close()
            except Exception as exc:
                LOGGER.warning("Failed to close sqlite db path=%s error=%s", self.path, exc)
