from __future__ import annotations

import threading
import time
from pathlib import Path

from autoembed.infrastructure.db.sqlite import (
    CACHE_SCHEMA_PATH,
    VECTOR_SCHEMA_PATH,
    get_connection,
    initialize_schema,
)


def test_connection_enables_wal_and_busy_timeout(tmp_path: Path) -> None:
    db_path = tmp_path / "cache.db"
    initialize_schema(db_path=db_path, schema_path=CACHE_SCHEMA_PATH)

    with get_connection(db_path) as conn:
        journal_mode = conn.execute("PRAGMA journal_mode;").fetchone()[0]
        busy_timeout = conn.execute("PRAGMA busy_timeout;").fetchone()[0]
        foreign_keys = conn.execute("PRAGMA foreign_keys;").fetchone()[0]

    assert str(journal_mode).lower() == "wal"
    assert int(busy_timeout) >= 30_000
    assert int(foreign_keys) == 1


def test_busy_timeout_can_be_tuned_from_environment(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("AUTOEMBED_SQLITE_BUSY_TIMEOUT_MS", "1500")
    with get_connection(tmp_path / "tuned.db") as conn:
        busy_timeout = conn.execute("PRAGMA busy_timeout;").fetchone()[0]
    assert int(busy_timeout) == 1500


def test_invalid_busy_timeout_falls_back_to_default(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("AUTOEMBED_SQLITE_BUSY_TIMEOUT_MS", "not-a-number")
    with get_connection(tmp_path / "fallback.db") as conn:
        busy_timeout = conn.execute("PRAGMA busy_timeout;").fetchone()[0]
    assert int(busy_timeout) == 30_000


def test_vector_schema_loads_with_extension(tmp_path: Path) -> None:
    db_path = tmp_path / "vectors.db"
    with get_connection(db_path, load_vector_extension=True) as conn:
        conn.executescript(VECTOR_SCHEMA_PATH.read_text(encoding="utf-8"))
        version = conn.execute("SELECT vec_version()").fetchone()[0]
    assert str(version).startswith("v")


def test_schemas_create_every_column_on_a_fresh_database(tmp_path: Path) -> None:
    initialize_schema(db_path=tmp_path / "cache.db", schema_path=CACHE_SCHEMA_PATH)
    initialize_schema(db_path=tmp_path / "vectors.db", schema_path=VECTOR_SCHEMA_PATH)

    with get_connection(tmp_path / "cache.db") as conn:
        cache_columns = {row["name"] for row in conn.execute("PRAGMA table_info(embedding_cache)")}
    with get_connection(tmp_path / "vectors.db") as conn:
        vector_columns = {row["name"] for row in conn.execute("PRAGMA table_info(embeddings)")}

    assert "model_digest" in cache_columns
    assert {"content_hash", "project_path", "session_id"} <= vector_columns


def test_write_waits_for_lock_instead_of_failing_immediately(tmp_path: Path) -> None:
    db_path = tmp_path / "cache.db"
    initialize_schema(db_path=db_path, schema_path=CACHE_SCHEMA_PATH)

    with get_connection(db_path) as conn:
        conn.execute("CREATE TABLE IF NOT EXISTS lock_test (id INTEGER PRIMARY KEY, value TEXT NOT NULL);")
        conn.commit()

    writer_1 = get_connection(db_path)
    writer_1.execute("BEGIN IMMEDIATE;")
    writer_1.execute("INSERT INTO lock_test (value) VALUES (?)", ("first",))

    out: dict[str, object] = {}

    def _writer_2() -> None:
        started = time.perf_counter()
        try:
            with get_connection(db_path) as conn_2:
                conn_2.execute("INSERT INTO lock_test (value) VALUES (?)", ("second",))
                conn_2.commit()
            out["ok"] = True
        except Exception as exc:  # pragma: no cover
            out["ok"] = False
            out["error"] = str(exc)
        finally:
            out["elapsed"] = time.perf_counter() - started

    t = threading.Thread(target=_writer_2)
    t.start()
    time.sleep(0.25)
    writer_1.commit()
    writer_1.close()
    t.join(timeout=5)

    assert out.get("ok") is True, str(out.get("error"))
    assert float(out.get("elapsed", 0.0)) >= 0.2

    with get_connection(db_path) as conn:
        count = conn.execute("SELECT COUNT(*) FROM lock_test").fetchone()[0]
    assert int(count) == 2
