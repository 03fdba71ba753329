from __future__ import annotations

import json
import os
import sqlite3
from dataclasses import asdict
from typing import Any

from .models import DeploymentResult, utc_now
from .settings import settings


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (e.g. a bind mount that docker
    created as a directory), the DB file is placed inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "deployrec.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS deployments (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              project TEXT,
              host TEXT,
              ref TEXT,
              revision TEXT,
              image TEXT,
              succeeded INTEGER NOT NULL,
              stage TEXT,
              exit_code INTEGER NOT NULL,
              error TEXT,
              failing_services TEXT NOT NULL DEFAULT '[]',
              rolled_back_to TEXT,
              backup_path TEXT,
              duration_s REAL NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              project TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_deployments_project ON deployments(project);
            """
        )


def log_event(level: str, message: str, project: str | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, project, message) VALUES (?, ?, ?, ?)",
            (utc_now(), level.upper(), project, message),
        )


def record_deployment(result: DeploymentResult) -> int:
    failing = json.dumps([asdict(s) for s in result.failing_services], ensure_ascii=False)
    with connect() as conn:
        cur = conn.execute(
            """
            INSERT INTO deployments (ts, project, host, ref, revision, image, succeeded, stage, exit_code,
                                     error, failing_services, rolled_back_to, backup_path, duration_s)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                result.timestamp,
                result.project,
                result.host,
                result.ref,
                result.revision,
                result.image_reference,
                1 if result.succeeded else 0,
                result.stage,
                result.exit_code,
                result.error,
                failing,
                result.rolled_back_to,
                result.backup_path,
                result.duration_s,
            ),
        )
        return int(cur.lastrowid)


def _row_to_dict(row: sqlite3.Row) -> dict[str, Any]:
    d = dict(row)
    d["succeeded"] = bool(d["succeeded"])
    d["failing_services"] = json.loads(d.get("failing_services") or "[]")
    return d


def list_deployments(limit: int = 20, project: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if project:
            rows = conn.execute(
                "SELECT * FROM deployments WHERE project=? ORDER BY id DESC LIMIT ?", (project, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM deployments ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [_row_to_dict(r) for r in rows]


def get_deployment(deployment_id: int) -> dict[str, Any] | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM deployments WHERE id=?", (deployment_id,)).fetchone()
        return _row_to_dict(row) if row else None


def last_successful_image(project: str, exclude: str | None = None) -> str | None:
    """Most recent image reference that deployed cleanly for ``project``."""
    with connect() as conn:
        if exclude:
            row = conn.execute(
                """
                SELECT image FROM deployments
                WHERE project=? AND succeeded=1 AND image IS NOT NULL AND image<>?
                ORDER BY id DESC LIMIT 1
                """,
                (project, exclude),
            ).fetchone()
        else:
            row = conn.execute(
                """
                SELECT image FROM deployments
                WHERE project=? AND succeeded=1 AND image IS NOT NULL
                ORDER BY id DESC LIMIT 1
                """,
                (project,),
            ).fetchone()
        return row["image"] if row else None


def latest_events(limit: int = 100) -> list[dict[str, Any]]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]
