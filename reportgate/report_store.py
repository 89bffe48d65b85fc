from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from reportgate.db import USE_POSTGRES, get_conn

log = logging.getLogger("uvicorn.error")

_REPORT_COLUMNS = "id, title, building_address, owner_email, created_at"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def init_db() -> None:
    if USE_POSTGRES:
        with get_conn() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS reports (
                    id SERIAL PRIMARY KEY,
                    title TEXT NOT NULL,
                    building_address TEXT NOT NULL DEFAULT '',
                    owner_email TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_reports_owner_email ON reports(owner_email)")
        return

    with get_conn() as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS reports (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                building_address TEXT NOT NULL DEFAULT '',
                owner_email TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_reports_owner_email ON reports(owner_email)")


def _row_to_dict(row: Any) -> Dict[str, Any]:
    data = dict(row)
    created_at = data.get("created_at")
    if isinstance(created_at, datetime):
        created_at = created_at.isoformat(timespec="seconds")
    return {
        "id": data.get("id"),
        "title": data.get("title", ""),
        "building_address": data.get("building_address") or "",
        "owner_email": data.get("owner_email", ""),
        "created_at": created_at,
    }


def create_report(*, title: str, owner_email: str, building_address: str = "") -> Dict[str, Any]:
    title = (title or "").strip()
    owner_email = (owner_email or "").strip().lower()
    if not title:
        raise ValueError("Report title is required")
    if not owner_email:
        raise ValueError("Report owner email is required")
    created_at = _now()
    with get_conn() as conn:
        cursor = conn.execute(
            "INSERT INTO reports (title, building_address, owner_email, created_at) VALUES (?, ?, ?, ?)",
            (title, (building_address or "").strip(), owner_email, created_at),
        )
        report_id = cursor.lastrowid
        row = conn.execute(
            f"SELECT {_REPORT_COLUMNS} FROM reports WHERE id = ?",
            (report_id,),
        ).fetchone()
    record = _row_to_dict(row) if row else {}
    log.info("Report %s created for %s", record.get("id"), owner_email)
    return record


def get_report(report_id: int) -> Optional[Dict[str, Any]]:
    with get_conn() as conn:
        row = conn.execute(
            f"SELECT {_REPORT_COLUMNS} FROM reports WHERE id = ?",
            (report_id,),
        ).fetchone()
    return _row_to_dict(row) if row else None


def list_reports(*, owner_email: Optional[str] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    sql = f"SELECT {_REPORT_COLUMNS} FROM reports"
    params: List[Any] = []
    if owner_email:
        sql += " WHERE owner_email = ?"
        params.append(owner_email.strip().lower())
    sql += " ORDER BY id DESC"
    if limit is not None:
        sql += " LIMIT ?"
        params.append(int(limit))
    with get_conn() as conn:
        rows = conn.execute(sql, tuple(params)).fetchall()
    return [_row_to_dict(row) for row in rows]


def delete_report(report_id: int) -> bool:
    """Delete a report. Its access controls go with it (ON DELETE CASCADE)."""
    with get_conn() as conn:
        cursor = conn.execute("DELETE FROM reports WHERE id = ?", (report_id,))
        deleted = (cursor.rowcount or 0) > 0
    if deleted:
        log.info("Report %s deleted", report_id)
    return deleted


__all__ = [
    "create_report",
    "delete_report",
    "get_report",
    "init_db",
    "list_reports",
]
