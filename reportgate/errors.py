from __future__ import annotations


class ReportGateError(Exception):
    """Base class for access-control failures."""


class NotFound(ReportGateError):
    """Raised when the parent report does not exist."""

    def __init__(self, report_key: object) -> None:
        super().__init__(f"Report {report_key} not found")
        self.report_key = report_key


class StoreUnavailable(ReportGateError):
    """Raised when the backing database cannot be reached or fails mid-operation."""


class QuotaExhausted(ReportGateError):
    """Raised by a quota-bounded increment when the policy ceiling is already reached."""


class InvalidPolicy(ReportGateError, ValueError):
    """Raised when access-control settings fail validation."""


__all__ = [
    "InvalidPolicy",
    "NotFound",
    "QuotaExhausted",
    "ReportGateError",
    "StoreUnavailable",
]
