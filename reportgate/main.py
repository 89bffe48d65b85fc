# reportgate/main.py
from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from reportgate import access_store, db, report_store
from reportgate.access_models import (
    AccessControlSettingsIn,
    AccessControlsEnvelope,
    AccessControlsOut,
    AccessDecisionOut,
    AccessRequest,
    ReportCreate,
    ReportOut,
    SharedReportOut,
)
from reportgate.access_policy import AccessControlPolicy, AccessDecision, ReasonCode
from reportgate.access_service import AccessControlService
from reportgate.auth_tokens import TokenError, decode_identity_token, requester_email
from reportgate.errors import InvalidPolicy, NotFound, StoreUnavailable

log = logging.getLogger("uvicorn.error")

CORS_ALLOW_ORIGINS = [
    origin.strip()
    for origin in (os.environ.get("CORS_ALLOW_ORIGINS") or "*").split(",")
    if origin.strip()
]

# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(title="ReportGate API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

if not os.environ.get("JWT_SECRET"):
    log.warning("JWT_SECRET not set; using insecure default. Set JWT_SECRET to the identity provider's signing secret.")

access_service = AccessControlService()

if db.USE_POSTGRES:
    log.info("Database backend: Postgres host=%s db=%s user=%s", os.environ.get("DB_HOST"), os.environ.get("DB_NAME"), os.environ.get("DB_USER"))
else:
    log.warning("Database backend: SQLite fallback at %s (DB_HOST unset).", db.DB_PATH)


@app.on_event("startup")
async def _on_startup() -> None:
    report_store.init_db()
    access_store.init_db()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _extract_bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization")
    if not header:
        return None
    parts = header.split(" ", 1)
    if len(parts) != 2:
        return None
    scheme, value = parts[0].strip(), parts[1].strip()
    if scheme.lower() != "bearer":
        return None
    return value or None


def _optional_requester(request: Request) -> Optional[str]:
    bearer = _extract_bearer_token(request)
    if not bearer:
        return None
    try:
        payload = decode_identity_token(bearer)
    except TokenError as exc:
        raise HTTPException(status_code=401, detail="Invalid authentication token") from exc
    email = requester_email(payload)
    if not email:
        raise HTTPException(status_code=401, detail="Invalid authentication token")
    return email


def _require_requester(request: Request) -> str:
    email = _optional_requester(request)
    if not email:
        raise HTTPException(status_code=401, detail="Authentication required")
    return email


def _load_report(report_id: int) -> Dict[str, Any]:
    try:
        report = report_store.get_report(report_id)
    except db.DB_ERRORS as exc:
        log.exception("Report lookup failed for %s", report_id)
        raise HTTPException(status_code=503, detail="Report store unavailable") from exc
    if not report:
        raise HTTPException(status_code=404, detail="Report not found")
    return report


def _require_owner(request: Request, report_id: int) -> Dict[str, Any]:
    email = _require_requester(request)
    report = _load_report(report_id)
    if (report.get("owner_email") or "").lower() != email.lower():
        raise HTTPException(status_code=403, detail="Only the report owner can manage access controls")
    return report


def _policy_to_out(policy: Optional[AccessControlPolicy]) -> Optional[AccessControlsOut]:
    if policy is None:
        return None
    return AccessControlsOut(**policy.to_dict())


def _decision_to_out(decision: AccessDecision) -> AccessDecisionOut:
    return AccessDecisionOut(**decision.to_dict())


def _decision_status(decision: AccessDecision) -> int:
    if decision.allowed:
        return 200
    if decision.reason is ReasonCode.REPORT_NOT_FOUND:
        return 404
    if decision.reason is ReasonCode.CHECK_ERROR:
        return 503
    return 403


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------
@app.get("/healthz")
def healthz():
    return {"ok": True}


@app.post("/api/reports", response_model=ReportOut, status_code=201)
async def create_report(request: Request, payload: ReportCreate) -> ReportOut:
    owner = _require_requester(request)
    try:
        record = report_store.create_report(
            title=payload.title,
            building_address=payload.building_address,
            owner_email=owner,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except db.DB_ERRORS as exc:
        log.exception("Report creation failed for %s", owner)
        raise HTTPException(status_code=503, detail="Report store unavailable") from exc
    return ReportOut(**record)


@app.get("/api/reports/{report_id}", response_model=ReportOut)
async def get_report(request: Request, report_id: int) -> ReportOut:
    return ReportOut(**_require_owner(request, report_id))


@app.delete("/api/reports/{report_id}", status_code=204)
async def delete_report(request: Request, report_id: int) -> Response:
    _require_owner(request, report_id)
    try:
        report_store.delete_report(report_id)
    except db.DB_ERRORS as exc:
        log.exception("Report deletion failed for %s", report_id)
        raise HTTPException(status_code=503, detail="Report store unavailable") from exc
    return Response(status_code=204)


@app.put("/api/reports/{report_id}/access-controls", response_model=AccessControlsEnvelope)
async def set_access_controls(
    request: Request,
    report_id: int,
    payload: AccessControlSettingsIn,
) -> AccessControlsEnvelope:
    _require_owner(request, report_id)
    try:
        policy = access_service.set_policy(report_id, payload.model_dump())
    except InvalidPolicy as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except NotFound as exc:
        raise HTTPException(status_code=404, detail="Report not found") from exc
    except StoreUnavailable as exc:
        log.exception("Failed to set access controls for report %s", report_id)
        raise HTTPException(status_code=503, detail="Failed to set access controls") from exc
    return AccessControlsEnvelope(report_id=report_id, access_controls=_policy_to_out(policy))


@app.get("/api/reports/{report_id}/access-controls", response_model=AccessControlsEnvelope)
async def get_access_controls(request: Request, report_id: int) -> AccessControlsEnvelope:
    _require_owner(request, report_id)
    policy = access_service.get_policy(report_id)
    return AccessControlsEnvelope(report_id=report_id, access_controls=_policy_to_out(policy))


@app.delete("/api/reports/{report_id}/access-controls", status_code=204)
async def remove_access_controls(request: Request, report_id: int) -> Response:
    _require_owner(request, report_id)
    try:
        access_service.remove_policy(report_id)
    except NotFound as exc:
        raise HTTPException(status_code=404, detail="Report not found") from exc
    except StoreUnavailable as exc:
        log.exception("Failed to remove access controls for report %s", report_id)
        raise HTTPException(status_code=503, detail="Failed to remove access controls") from exc
    return Response(status_code=204)


@app.post("/api/reports/{report_id}/access-check", response_model=AccessDecisionOut)
async def check_report_access(
    request: Request,
    report_id: int,
    payload: Optional[AccessRequest] = None,
) -> AccessDecisionOut:
    email = _optional_requester(request)
    password = payload.password if payload else None
    decision = access_service.check_access(report_id, email, password)
    return _decision_to_out(decision)


@app.post("/api/shared/{report_id}", response_model=SharedReportOut)
async def open_shared_report(
    request: Request,
    report_id: int,
    payload: Optional[AccessRequest] = None,
):
    email = _optional_requester(request)
    password = payload.password if payload else None
    decision = access_service.access_report(report_id, email, password)
    if not decision.allowed:
        return JSONResponse(
            status_code=_decision_status(decision),
            content={"decision": _decision_to_out(decision).model_dump()},
        )
    report = _load_report(report_id)
    return SharedReportOut(decision=_decision_to_out(decision), report=ReportOut(**report))


__all__ = ["app", "access_service"]
