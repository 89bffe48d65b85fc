from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from reportgate import db
from reportgate.access_policy import AccessControlPolicy, as_utc
from reportgate.errors import NotFound, QuotaExhausted, StoreUnavailable

log = logging.getLogger("uvicorn.error")

_SELECT_SNAPSHOT = """
    SELECT r.id AS report_id,
           ac.report_id AS policy_report_id,
           ac.is_public,
           ac.expires_at,
           ac.access_password,
           ac.allowed_emails,
           ac.max_access_count,
           ac.current_access_count,
           ac.last_accessed_at,
           ac.updated_at
    FROM reports r
    LEFT JOIN report_access_controls ac ON ac.report_id = r.id
    WHERE r.id = ?
"""

_UPSERT_POLICY = """
    INSERT INTO report_access_controls (
        report_id,
        is_public,
        expires_at,
        access_password,
        allowed_emails,
        max_access_count,
        current_access_count,
        last_accessed_at,
        updated_at
    ) VALUES (?, ?, ?, ?, ?, ?, ?, NULL, ?)
    ON CONFLICT (report_id) DO UPDATE SET
        is_public = excluded.is_public,
        expires_at = excluded.expires_at,
        access_password = excluded.access_password,
        allowed_emails = excluded.allowed_emails,
        max_access_count = excluded.max_access_count,
        current_access_count = excluded.current_access_count,
        last_accessed_at = NULL,
        updated_at = excluded.updated_at
"""

_INCREMENT = """
    UPDATE report_access_controls
    SET current_access_count = current_access_count + 1,
        last_accessed_at = ?
    WHERE report_id = ?
"""

_QUOTA_GUARD = " AND (max_access_count IS NULL OR current_access_count < max_access_count)"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(moment: Optional[datetime]) -> Optional[str]:
    if moment is None:
        return None
    return as_utc(moment).isoformat()


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(text))


def _parse_emails(value: Any) -> frozenset:
    if value is None or value == "":
        return frozenset()
    if isinstance(value, str):
        value = json.loads(value)
    return frozenset(str(item) for item in value)


def _row_to_policy(row: Any) -> Optional[AccessControlPolicy]:
    data: Dict[str, Any] = dict(row)
    if data.get("policy_report_id") is None:
        return None
    max_count = data.get("max_access_count")
    return AccessControlPolicy(
        is_public=bool(data.get("is_public")),
        expires_at=_parse_timestamp(data.get("expires_at")),
        access_password=data.get("access_password"),
        allowed_emails=_parse_emails(data.get("allowed_emails")),
        max_access_count=int(max_count) if max_count is not None else None,
        current_access_count=int(data.get("current_access_count") or 0),
        last_accessed_at=_parse_timestamp(data.get("last_accessed_at")),
        updated_at=_parse_timestamp(data.get("updated_at")),
    )


def _coerce_key(report_key: Any) -> int:
    if isinstance(report_key, bool):
        raise NotFound(report_key)
    if isinstance(report_key, float) and not report_key.is_integer():
        raise NotFound(report_key)
    try:
        return int(report_key)
    except (TypeError, ValueError, OverflowError):
        raise NotFound(report_key) from None


@contextmanager
def _translate_errors(action: str, report_key: Any) -> Iterator[None]:
    try:
        yield
    except db.DB_ERRORS as exc:
        raise StoreUnavailable(f"Unable to {action} access controls for report {report_key}: {exc}") from exc


def init_db() -> None:
    """Create the access-control table. ``report_store.init_db`` must run first."""
    if db.USE_POSTGRES:
        with db.get_conn() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS report_access_controls (
                    report_id INTEGER PRIMARY KEY REFERENCES reports(id) ON DELETE CASCADE,
                    is_public BOOLEAN NOT NULL DEFAULT FALSE,
                    expires_at TIMESTAMPTZ,
                    access_password TEXT,
                    allowed_emails JSONB NOT NULL DEFAULT '[]'::jsonb,
                    max_access_count INTEGER,
                    current_access_count INTEGER NOT NULL DEFAULT 0,
                    last_accessed_at TIMESTAMPTZ,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """
            )
        return

    with db.get_conn() as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS report_access_controls (
                report_id INTEGER PRIMARY KEY REFERENCES reports(id) ON DELETE CASCADE,
                is_public INTEGER NOT NULL DEFAULT 0,
                expires_at TEXT,
                access_password TEXT,
                allowed_emails TEXT NOT NULL DEFAULT '[]',
                max_access_count INTEGER,
                current_access_count INTEGER NOT NULL DEFAULT 0,
                last_accessed_at TEXT,
                updated_at TEXT NOT NULL
            )
            """
        )


class AccessControlStore:
    """Persists one access-control snapshot per report.

    Every method is a single connection and transaction. The usage counter is
    only ever changed by :meth:`increment_access`, which runs one
    ``UPDATE ... SET current_access_count = current_access_count + 1``
    statement under the write lock, so concurrent callers cannot lose updates.
    Driver errors surface as :class:`StoreUnavailable` and are not retried.
    """

    def load(self, report_key: Any) -> Optional[AccessControlPolicy]:
        key = _coerce_key(report_key)
        with _translate_errors("load", key):
            with db.get_conn() as conn:
                row = conn.execute(_SELECT_SNAPSHOT, (key,)).fetchone()
        if row is None:
            raise NotFound(key)
        return _row_to_policy(row)

    def save(self, report_key: Any, policy: AccessControlPolicy) -> AccessControlPolicy:
        key = _coerce_key(report_key)
        updated_at = _utcnow()
        count = policy.current_access_count or 0
        with _translate_errors("save", key):
            with db.get_conn() as conn:
                db.begin_write(conn)
                if conn.execute("SELECT id FROM reports WHERE id = ?", (key,)).fetchone() is None:
                    raise NotFound(key)
                conn.execute(
                    _UPSERT_POLICY,
                    (
                        key,
                        bool(policy.is_public),
                        _to_iso(policy.expires_at),
                        policy.access_password,
                        json.dumps(sorted(policy.allowed_emails)),
                        policy.max_access_count,
                        count,
                        _to_iso(updated_at),
                    ),
                )
        log.info("Access controls saved for report %s (public=%s)", key, bool(policy.is_public))
        return replace(policy, current_access_count=count, last_accessed_at=None, updated_at=updated_at)

    def increment_access(
        self,
        report_key: Any,
        *,
        at: Optional[datetime] = None,
        within_quota: bool = False,
    ) -> Optional[int]:
        """Atomically add one to the usage counter and stamp the access time.

        Returns the new count, or ``None`` when the report has no policy.
        With ``within_quota`` the update only applies while the counter is
        below ``max_access_count``; otherwise :class:`QuotaExhausted` is raised.
        """
        key = _coerce_key(report_key)
        sql = _INCREMENT + (_QUOTA_GUARD if within_quota else "")
        params = (_to_iso(at or _utcnow()), key)
        with _translate_errors("update", key):
            with db.get_conn() as conn:
                db.begin_write(conn)
                if db.USE_POSTGRES:
                    row = conn.execute(sql + " RETURNING current_access_count", params).fetchone()
                    new_count = int(row["current_access_count"]) if row else None
                else:
                    cursor = conn.execute(sql, params)
                    new_count = None
                    if cursor.rowcount:
                        row = conn.execute(
                            "SELECT current_access_count FROM report_access_controls WHERE report_id = ?",
                            (key,),
                        ).fetchone()
                        new_count = int(row["current_access_count"])
                if new_count is not None:
                    return new_count
                snapshot = conn.execute(_SELECT_SNAPSHOT, (key,)).fetchone()
        if snapshot is None:
            raise NotFound(key)
        if dict(snapshot).get("policy_report_id") is None:
            return None
        raise QuotaExhausted(f"Access quota reached for report {key}")

    def remove(self, report_key: Any) -> bool:
        key = _coerce_key(report_key)
        with _translate_errors("remove", key):
            with db.get_conn() as conn:
                db.begin_write(conn)
                if conn.execute("SELECT id FROM reports WHERE id = ?", (key,)).fetchone() is None:
                    raise NotFound(key)
                cursor = conn.execute("DELETE FROM report_access_controls WHERE report_id = ?", (key,))
                removed = (cursor.rowcount or 0) > 0
        if removed:
            log.info("Access controls removed for report %s", key)
        return removed


__all__ = ["AccessControlStore", "init_db"]
