from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Tuple

from reportgate.access_policy import (
    AccessControlPolicy,
    AccessDecision,
    ReasonCode,
    RequestContext,
    as_utc,
    evaluate,
)
from reportgate.access_store import AccessControlStore
from reportgate.errors import InvalidPolicy, NotFound, QuotaExhausted, ReportGateError

log = logging.getLogger("uvicorn.error")

_SETTING_KEYS = {
    "is_public",
    "expires_at",
    "access_password",
    "allowed_emails",
    "max_access_count",
    "current_access_count",
}
# Present on loaded snapshots; accepted so a snapshot can be written back, then dropped.
_SERVER_KEYS = {"last_accessed_at", "updated_at", "has_password"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _optional_count(name: str, value: Any, *, default: Optional[int]) -> Optional[int]:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidPolicy(f"{name} must be an integer")
    if value < 0:
        raise InvalidPolicy(f"{name} cannot be negative")
    return value


def _parse_expiry(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            value = datetime.fromisoformat(text)
        except ValueError as exc:
            raise InvalidPolicy(f"expires_at is not an ISO-8601 timestamp: {value!r}") from exc
    if not isinstance(value, datetime):
        raise InvalidPolicy("expires_at must be a datetime")
    try:
        return as_utc(value)
    except ValueError as exc:
        raise InvalidPolicy(f"expires_at is out of range: {value!r}") from exc


def _parse_emails(value: Any) -> frozenset:
    if value is None:
        return frozenset()
    if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
        raise InvalidPolicy("allowed_emails must be a list of email addresses")
    emails = set()
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise InvalidPolicy("allowed_emails entries must be non-empty strings")
        emails.add(item.strip())
    return frozenset(emails)


def policy_from_settings(settings: Mapping[str, Any]) -> AccessControlPolicy:
    """Validate owner-supplied settings and build the snapshot to store.

    ``is_public`` defaults to ``False``. Absent restrictions are ``None`` (or an
    empty allow-list); empty strings are rejected rather than read as "no
    restriction".
    """
    if not isinstance(settings, Mapping):
        raise InvalidPolicy("Access control settings must be a mapping")
    unknown = set(settings) - _SETTING_KEYS - _SERVER_KEYS
    if unknown:
        raise InvalidPolicy(f"Unknown access control settings: {', '.join(sorted(unknown))}")

    is_public = settings.get("is_public")
    if is_public is None:
        is_public = False
    if not isinstance(is_public, bool):
        raise InvalidPolicy("is_public must be true or false")

    password = settings.get("access_password")
    if password is not None and (not isinstance(password, str) or password == ""):
        raise InvalidPolicy("access_password must be a non-empty string")

    return AccessControlPolicy(
        is_public=is_public,
        expires_at=_parse_expiry(settings.get("expires_at")),
        access_password=password,
        allowed_emails=_parse_emails(settings.get("allowed_emails")),
        max_access_count=_optional_count("max_access_count", settings.get("max_access_count"), default=None),
        current_access_count=_optional_count("current_access_count", settings.get("current_access_count"), default=0),
    )


@dataclass(frozen=True)
class RemovalOutcome:
    """Result of removing a policy; ``error`` is set when a best-effort removal failed."""

    removed: bool
    error: Optional[Exception] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


class AccessControlService:
    def __init__(
        self,
        store: Optional[AccessControlStore] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store if store is not None else AccessControlStore()
        self._clock = clock or _utcnow

    def set_policy(self, report_key: Any, settings: Mapping[str, Any]) -> AccessControlPolicy:
        policy = policy_from_settings(settings)
        return self.store.save(report_key, policy)

    def _evaluate_for(
        self,
        report_key: Any,
        requester_email: Optional[str],
        supplied_password: Optional[str],
    ) -> Tuple[AccessDecision, Optional[AccessControlPolicy]]:
        try:
            policy = self.store.load(report_key)
        except NotFound:
            return AccessDecision.deny(ReasonCode.REPORT_NOT_FOUND), None
        except Exception:
            log.exception("Error checking access for report %s", report_key)
            return AccessDecision.deny(ReasonCode.CHECK_ERROR), None
        ctx = RequestContext(
            now=self._clock(),
            requester_email=requester_email,
            supplied_password=supplied_password,
        )
        return evaluate(policy, ctx), policy

    def check_access(
        self,
        report_key: Any,
        requester_email: Optional[str] = None,
        supplied_password: Optional[str] = None,
    ) -> AccessDecision:
        """Evaluate the report's current policy. Never raises; store faults deny with ``CHECK_ERROR``."""
        decision, _ = self._evaluate_for(report_key, requester_email, supplied_password)
        if decision.allowed:
            log.info("Access granted for report %s (remaining=%s)", report_key, decision.remaining_access)
        elif decision.reason is not ReasonCode.CHECK_ERROR:
            log.info("Access denied for report %s: %s", report_key, decision.reason.value)
        return decision

    def record_access(self, report_key: Any, requester_email: Optional[str] = None) -> Optional[int]:
        """Count one granted view. Call only after ``check_access`` allowed it.

        Returns the new count, or ``None`` when the report has no policy (nothing
        is created). Store errors propagate.
        """
        count = self.store.increment_access(report_key, at=self._clock())
        if count is not None:
            log.info("Recorded access #%s for report %s by %s", count, report_key, requester_email or "anonymous")
        return count

    def access_report(
        self,
        report_key: Any,
        requester_email: Optional[str] = None,
        supplied_password: Optional[str] = None,
    ) -> AccessDecision:
        """Check access and, when allowed, count the view in one call.

        The increment is bounded by the quota in the same statement, so two
        requests racing for the last remaining view cannot both be admitted.
        """
        decision, policy = self._evaluate_for(report_key, requester_email, supplied_password)
        if not decision.allowed or policy is None:
            return decision
        try:
            count = self.store.increment_access(report_key, at=self._clock(), within_quota=True)
        except QuotaExhausted:
            log.info("Access denied for report %s: quota reached concurrently", report_key)
            return AccessDecision.deny(ReasonCode.QUOTA_EXCEEDED)
        except NotFound:
            return AccessDecision.deny(ReasonCode.REPORT_NOT_FOUND)
        except ReportGateError:
            log.exception("Failed to record access for report %s", report_key)
            return AccessDecision.deny(ReasonCode.CHECK_ERROR)
        if count is None:
            # Policy removed between check and record: the report is open again.
            return AccessDecision.allow()
        log.info("Recorded access #%s for report %s by %s", count, report_key, requester_email or "anonymous")
        remaining = None
        if policy.max_access_count is not None:
            remaining = max(policy.max_access_count - count, 0)
        return AccessDecision.allow(remaining_access=remaining)

    def get_policy(self, report_key: Any) -> Optional[AccessControlPolicy]:
        try:
            return self.store.load(report_key)
        except Exception:
            log.exception("Error getting access controls for report %s", report_key)
            return None

    def remove_policy(self, report_key: Any, *, best_effort: bool = False) -> RemovalOutcome:
        try:
            removed = self.store.remove(report_key)
        except ReportGateError as exc:
            if not best_effort:
                raise
            log.warning("Best-effort removal of access controls for report %s failed: %s", report_key, exc)
            return RemovalOutcome(removed=False, error=exc)
        return RemovalOutcome(removed=removed)


__all__ = [
    "AccessControlService",
    "RemovalOutcome",
    "policy_from_settings",
]
