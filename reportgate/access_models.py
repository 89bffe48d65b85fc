from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class AccessControlSettingsIn(BaseModel):
    is_public: bool = False
    expires_at: Optional[datetime] = None
    access_password: Optional[str] = None
    allowed_emails: Optional[List[str]] = None
    max_access_count: Optional[int] = Field(default=None, ge=0)
    current_access_count: int = Field(default=0, ge=0)


class AccessControlsOut(BaseModel):
    is_public: bool
    expires_at: Optional[datetime] = None
    has_password: bool = False
    allowed_emails: List[str] = []
    max_access_count: Optional[int] = None
    current_access_count: int = 0
    last_accessed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AccessControlsEnvelope(BaseModel):
    report_id: int
    access_controls: Optional[AccessControlsOut] = None


class AccessRequest(BaseModel):
    password: Optional[str] = None


class AccessDecisionOut(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    message: Optional[str] = None
    remaining_access: Optional[int] = None


class ReportCreate(BaseModel):
    title: str
    building_address: str = ""


class ReportOut(BaseModel):
    id: int
    title: str
    building_address: str = ""
    owner_email: str
    created_at: Optional[str] = None


class SharedReportOut(BaseModel):
    decision: AccessDecisionOut
    report: ReportOut


__all__ = [
    "AccessControlSettingsIn",
    "AccessControlsEnvelope",
    "AccessControlsOut",
    "AccessDecisionOut",
    "AccessRequest",
    "ReportCreate",
    "ReportOut",
    "SharedReportOut",
]
