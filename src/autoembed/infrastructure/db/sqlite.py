from __future__ import annotations

import os
import sqlite3
from pathlib import Path

import sqlite_vec

DEFAULT_SQLITE_CONNECT_TIMEOUT_SECONDS = 30.0
DEFAULT_SQLITE_BUSY_TIMEOUT_MS = 30_000

SCHEMA_DIR = Path(__file__).resolve().parent
CACHE_SCHEMA_PATH = SCHEMA_DIR / "cache_schema.sql"
VECTOR_SCHEMA_PATH = SCHEMA_DIR / "vector_schema.sql"


def _read_float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _read_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _sqlite_connect_timeout_seconds() -> float:
    return _read_float_env("AUTOEMBED_SQLITE_CONNECT_TIMEOUT_SECONDS", DEFAULT_SQLITE_CONNECT_TIMEOUT_SECONDS)


def _sqlite_busy_timeout_ms() -> int:
    return _read_int_env("AUTOEMBED_SQLITE_BUSY_TIMEOUT_MS", DEFAULT_SQLITE_BUSY_TIMEOUT_MS)


def _configure_connection(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute("PRAGMA journal_mode = WAL;")
    conn.execute("PRAGMA synchronous = NORMAL;")
    conn.execute(f"PRAGMA busy_timeout = {_sqlite_busy_timeout_ms()};")


def _load_vector_extension(conn: sqlite3.Connection) -> None:
    conn.enable_load_extension(True)
    sqlite_vec.load(conn)
    conn.enable_load_extension(False)


def get_connection(
    db_path: Path,
    *,
    load_vector_extension: bool = False,
    check_same_thread: bool = True,
) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(
        db_path,
        timeout=_sqlite_connect_timeout_seconds(),
        check_same_thread=check_same_thread,
    )
    conn.row_factory = sqlite3.Row
    if load_vector_extension:
        _load_vector_extension(conn)
    _configure_connection(conn)
    return conn


def initialize_schema(db_path: Path, schema_path: Path) -> None:
    with get_connection(db_path) as conn:
        conn.executescript(schema_path.read_text(encoding="utf-8"))
        conn.commit()


def _table_exists(conn: sqlite3.Connection, table: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ? LIMIT 1",
        (table,),
    ).fetchone()
    return row is not None


def ensure_vec_table(conn: sqlite3.Connection, table: str, dimensions: int) -> None:
    if dimensions < 1:
        raise ValueError(f"dimensions must be >= 1, got {dimensions}")
    if _table_exists(conn, table):
        return
    conn.execute(
        f"""
        CREATE VIRTUAL TABLE {table} USING vec0(
            embedding float[{dimensions}] distance_metric=cosine,
            source_type text,
            session_id text,
            project_path text
        )
        """
    )
