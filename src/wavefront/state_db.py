from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Any

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS runs (
    run_id TEXT PRIMARY KEY,
    plan_path TEXT,
    status TEXT NOT NULL DEFAULT 'running',
    started_at REAL,
    finished_at REAL,
    resumed_from TEXT
);

CREATE TABLE IF NOT EXISTS units (
    run_id TEXT NOT NULL REFERENCES runs(run_id),
    unit_id TEXT NOT NULL,
    phase INTEGER,
    status TEXT NOT NULL DEFAULT 'pending',
    attempts INTEGER NOT NULL DEFAULT 0,
    artifact_ref TEXT,
    error TEXT,
    PRIMARY KEY (run_id, unit_id)
);

CREATE TABLE IF NOT EXISTS transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL REFERENCES runs(run_id),
    kind TEXT NOT NULL,
    subject TEXT NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    at REAL NOT NULL,
    attempt INTEGER,
    detail TEXT
);

CREATE TABLE IF NOT EXISTS snapshots (
    run_id TEXT PRIMARY KEY REFERENCES runs(run_id),
    as_of REAL NOT NULL,
    payload TEXT NOT NULL
);
"""

_TRANSITION_COLUMNS = ("kind", "subject", "from_state", "to_state", "at", "attempt", "detail")


class StateDB:
    def __init__(self, db_path: Path) -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(db_path))
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(_SCHEMA)

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> StateDB:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def _upsert(self, table: str, keys: tuple[str, ...], fields: dict[str, Any]) -> None:
        cols = ", ".join(fields)
        placeholders = ", ".join(["?"] * len(fields))
        updates = [f"{c}=excluded.{c}" for c in fields if c not in keys]
        conflict = f"DO UPDATE SET {', '.join(updates)}" if updates else "DO NOTHING"
        sql = (
            f"INSERT INTO {table} ({cols}) VALUES ({placeholders}) "
            f"ON CONFLICT({', '.join(keys)}) {conflict}"
        )
        self._conn.execute(sql, list(fields.values()))
        self._conn.commit()

    # ── Runs ─────────────────────────────────────────────────────────

    def upsert_run(self, run_id: str, **kwargs: Any) -> None:
        self._upsert("runs", ("run_id",), {"run_id": run_id, **kwargs})

    def update_run(self, run_id: str, **kwargs: Any) -> None:
        if not kwargs:
            return
        set_clause = ", ".join(f"{k}=?" for k in kwargs)
        sql = f"UPDATE runs SET {set_clause} WHERE run_id=?"
        self._conn.execute(sql, [*kwargs.values(), run_id])
        self._conn.commit()

    def get_run(self, run_id: str) -> dict[str, Any] | None:
        row = self._conn.execute("SELECT * FROM runs WHERE run_id=?", (run_id,)).fetchone()
        return dict(row) if row else None

    def list_runs(self) -> list[dict[str, Any]]:
        rows = self._conn.execute("SELECT * FROM runs ORDER BY started_at").fetchall()
        return [dict(r) for r in rows]

    # ── Units ────────────────────────────────────────────────────────

    def upsert_unit(self, run_id: str, unit_id: str, **kwargs: Any) -> None:
        fields = {"run_id": run_id, "unit_id": unit_id, **kwargs}
        self._upsert("units", ("run_id", "unit_id"), fields)

    def list_units(self, run_id: str, status: str | None = None) -> list[dict[str, Any]]:
        if status is None:
            rows = self._conn.execute(
                "SELECT * FROM units WHERE run_id=? ORDER BY unit_id", (run_id,)
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM units WHERE run_id=? AND status=? ORDER BY unit_id",
                (run_id, status),
            ).fetchall()
        return [dict(r) for r in rows]

    # ── Transitions ──────────────────────────────────────────────────

    def append_transitions(self, run_id: str, events: list[dict[str, Any]]) -> None:
        if not events:
            return
        cols = ", ".join(("run_id", *_TRANSITION_COLUMNS))
        placeholders = ", ".join(["?"] * (len(_TRANSITION_COLUMNS) + 1))
        self._conn.executemany(
            f"INSERT INTO transitions ({cols}) VALUES ({placeholders})",
            [[run_id, *(e.get(c) for c in _TRANSITION_COLUMNS)] for e in events],
        )
        self._conn.commit()

    def list_transitions(self, run_id: str, kind: str | None = None) -> list[dict[str, Any]]:
        if kind is None:
            rows = self._conn.execute(
                "SELECT * FROM transitions WHERE run_id=? ORDER BY id", (run_id,)
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM transitions WHERE run_id=? AND kind=? ORDER BY id",
                (run_id, kind),
            ).fetchall()
        return [dict(r) for r in rows]

    # ── Snapshots ────────────────────────────────────────────────────

    def save_snapshot(self, run_id: str, as_of: float, payload: str) -> None:
        self._conn.execute(
            "INSERT OR REPLACE INTO snapshots (run_id, as_of, payload) VALUES (?, ?, ?)",
            (run_id, as_of, payload),
        )
        self._conn.commit()

    def get_snapshot(self, run_id: str) -> dict[str, Any] | None:
        row = self._conn.execute(
            "SELECT payload FROM snapshots WHERE run_id=?", (run_id,)
        ).fetchone()
        return json.loads(row["payload"]) if row else None
