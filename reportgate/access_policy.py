"""Evaluation of shared-report access policies.

Everything in this module is pure: a policy snapshot and a request context
go in, an :class:`AccessDecision` comes out. Denials are ordinary values and
are never raised.
"""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

log = logging.getLogger("uvicorn.error")


class ReasonCode(str, Enum):
    NOT_PUBLIC = "NOT_PUBLIC"
    EXPIRED = "EXPIRED"
    EMAIL_NOT_AUTHORIZED = "EMAIL_NOT_AUTHORIZED"
    INVALID_PASSWORD = "INVALID_PASSWORD"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    MALFORMED_POLICY = "MALFORMED_POLICY"
    REPORT_NOT_FOUND = "REPORT_NOT_FOUND"
    CHECK_ERROR = "CHECK_ERROR"


REASON_MESSAGES: Dict[ReasonCode, str] = {
    ReasonCode.NOT_PUBLIC: "Report is not publicly accessible",
    ReasonCode.EXPIRED: "Report access has expired",
    ReasonCode.EMAIL_NOT_AUTHORIZED: "Email not authorized for this report",
    ReasonCode.INVALID_PASSWORD: "Invalid access password",
    ReasonCode.QUOTA_EXCEEDED: "Maximum access count reached",
    ReasonCode.MALFORMED_POLICY: "Access settings for this report are invalid",
    ReasonCode.REPORT_NOT_FOUND: "Report not found",
    ReasonCode.CHECK_ERROR: "Error checking access",
}


def describe(reason: Optional[ReasonCode]) -> Optional[str]:
    if reason is None:
        return None
    return REASON_MESSAGES.get(reason, reason.value)


def as_utc(moment: datetime) -> datetime:
    """Return ``moment`` as an aware UTC datetime. Naive values are taken to be UTC."""
    if not isinstance(moment, datetime):
        raise TypeError(f"Expected datetime, got {type(moment).__name__}")
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    try:
        return moment.astimezone(timezone.utc)
    except OverflowError as exc:
        raise ValueError(f"Timestamp out of range: {moment!r}") from exc


@dataclass(frozen=True)
class AccessControlPolicy:
    is_public: bool = False
    expires_at: Optional[datetime] = None
    access_password: Optional[str] = None
    allowed_emails: FrozenSet[str] = field(default_factory=frozenset)
    max_access_count: Optional[int] = None
    current_access_count: int = 0
    last_accessed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def has_password(self) -> bool:
        return self.access_password is not None

    @property
    def remaining_access(self) -> Optional[int]:
        if self.max_access_count is None:
            return None
        return max(self.max_access_count - self.current_access_count, 0)

    def to_dict(self, *, include_password: bool = False) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "is_public": self.is_public,
            "expires_at": self.expires_at,
            "has_password": self.has_password,
            "allowed_emails": sorted(self.allowed_emails),
            "max_access_count": self.max_access_count,
            "current_access_count": self.current_access_count,
            "last_accessed_at": self.last_accessed_at,
            "updated_at": self.updated_at,
        }
        if include_password:
            data["access_password"] = self.access_password
        return data


@dataclass(frozen=True)
class RequestContext:
    now: datetime
    requester_email: Optional[str] = None
    supplied_password: Optional[str] = None


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: Optional[ReasonCode] = None
    remaining_access: Optional[int] = None

    @classmethod
    def allow(cls, remaining_access: Optional[int] = None) -> "AccessDecision":
        return cls(allowed=True, remaining_access=remaining_access)

    @classmethod
    def deny(cls, reason: ReasonCode) -> "AccessDecision":
        return cls(allowed=False, reason=reason)

    @property
    def message(self) -> Optional[str]:
        return describe(self.reason)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "remaining_access": self.remaining_access,
        }


def _passwords_match(expected: str, supplied: str) -> bool:
    return hmac.compare_digest(expected.encode("utf-8"), supplied.encode("utf-8"))


def _evaluate(policy: AccessControlPolicy, ctx: RequestContext) -> AccessDecision:
    if not isinstance(policy.is_public, bool):
        raise TypeError("is_public must be a bool")
    if not policy.is_public:
        return AccessDecision.deny(ReasonCode.NOT_PUBLIC)

    if policy.expires_at is not None and as_utc(ctx.now) > as_utc(policy.expires_at):
        return AccessDecision.deny(ReasonCode.EXPIRED)

    if policy.allowed_emails:
        if not ctx.requester_email or ctx.requester_email not in policy.allowed_emails:
            return AccessDecision.deny(ReasonCode.EMAIL_NOT_AUTHORIZED)

    if policy.access_password is not None:
        if ctx.supplied_password is None or not _passwords_match(policy.access_password, ctx.supplied_password):
            return AccessDecision.deny(ReasonCode.INVALID_PASSWORD)

    count = policy.current_access_count
    if isinstance(count, bool) or not isinstance(count, int) or count < 0:
        raise ValueError(f"current_access_count must be a non-negative integer, got {count!r}")
    if policy.max_access_count is not None:
        ceiling = policy.max_access_count
        if isinstance(ceiling, bool) or not isinstance(ceiling, int):
            raise TypeError(f"max_access_count must be an integer, got {ceiling!r}")
        if count >= ceiling:
            return AccessDecision.deny(ReasonCode.QUOTA_EXCEEDED)
        return AccessDecision.allow(remaining_access=ceiling - count)

    return AccessDecision.allow()


def evaluate(policy: Optional[AccessControlPolicy], ctx: RequestContext) -> AccessDecision:
    """Decide whether ``ctx`` may view a report guarded by ``policy``.

    Checks run in a fixed order and the first failing one supplies the
    reason: visibility, expiry, email allow-list, password, quota. A missing
    policy means open access with no counters. Malformed input is denied
    with ``MALFORMED_POLICY``.
    """
    if policy is None:
        return AccessDecision.allow()
    try:
        return _evaluate(policy, ctx)
    except (TypeError, ValueError, AttributeError) as exc:
        log.warning("Malformed access policy denied: %s", exc)
        return AccessDecision.deny(ReasonCode.MALFORMED_POLICY)


__all__ = [
    "AccessControlPolicy",
    "AccessDecision",
    "REASON_MESSAGES",
    "ReasonCode",
    "RequestContext",
    "as_utc",
    "describe",
    "evaluate",
]
