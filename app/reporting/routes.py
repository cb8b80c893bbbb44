# ============================================================================
# CEIBA - Reporting API Routes
# ============================================================================
# Thin FastAPI layer over PipelineOrchestrator, ConfigurationStore and the
# scheduler. The acting user comes from the X-User header and is passed down
# explicitly; OperationResult kinds map to HTTP status codes.
#
# Registration via register_reporting_routes(app).
# ============================================================================

import logging
import os
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import FileResponse
from starlette.concurrency import run_in_threadpool

from .config import ConfigurationStore
from .engine import get_engine
from .models import AuditRepository
from .results import ErrorKind, OperationResult
from .scheduler import get_scheduler

logger = logging.getLogger("reporting.routes")

router = APIRouter(prefix="/api/reporting", tags=["reporting"])

STATUS_BY_KIND = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFIG_REJECTED: 422,
    ErrorKind.FATAL: 503,
    ErrorKind.CANCELLED: 409,
    ErrorKind.DEGRADED: 502,
}


# ============================================================================
# Helper utilities
# ============================================================================

def _get_user(request: Request) -> str:
    """Extract the acting user from the request header."""
    return request.headers.get("X-User", "admin")


async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        data = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body must be JSON")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return data


def _unwrap(result: OperationResult) -> Any:
    """Return the value of a successful result or raise the mapped HTTP error."""
    if result.ok:
        return result.value
    status = STATUS_BY_KIND.get(result.kind, 500)
    detail = result.errors if result.kind == ErrorKind.CONFIG_REJECTED else result.error
    raise HTTPException(status_code=status, detail=detail)


def _store() -> ConfigurationStore:
    return get_engine().config_store


# ============================================================================
# Reports  (/api/reporting/reports)
# ============================================================================

@router.get("/reports")
async def list_reports(
    skip: int = Query(0, ge=0),
    take: int = Query(50, ge=1, le=500),
    period_start: Optional[str] = None,
    period_end: Optional[str] = None,
    sent: Optional[bool] = None,
):
    reports = _unwrap(get_engine().list_reports(skip, take, period_start, period_end, sent))
    return {"ok": True, "reports": [r.to_dict() for r in reports], "count": len(reports)}


@router.get("/reports/{report_id}")
async def get_report(report_id: int):
    report = _unwrap(get_engine().get_report(report_id))
    return {"ok": True, "report": report.to_dict()}


@router.get("/reports/{report_id}/document")
async def download_document(report_id: int):
    report = _unwrap(get_engine().get_report(report_id))
    if not report.document_path or not os.path.exists(report.document_path):
        raise HTTPException(status_code=404, detail=f"Report {report_id} has no document")
    return FileResponse(report.document_path, media_type="application/pdf",
                        filename=os.path.basename(report.document_path))


@router.post("/reports/generate")
async def generate_report(request: Request):
    """Run the pipeline now.

    Expects JSON body:
    ```json
    {
        "period_start": "2024-07-01",
        "period_end": "2024-07-02",
        "template_id": null,
        "send_immediately": false
    }
    ```

    Stage failures after aggregation still return 200; the report carries
    ``last_error``.
    """
    data = await _json_body(request)
    user = _get_user(request)
    missing = [k for k in ("period_start", "period_end") if not data.get(k)]
    if missing:
        raise HTTPException(status_code=422, detail=[f"{k} is required" for k in missing])

    result = await run_in_threadpool(
        get_engine().generate,
        data["period_start"],
        data["period_end"],
        template_id=data.get("template_id"),
        send_immediately=bool(data.get("send_immediately", False)),
        actor=user,
    )
    report = _unwrap(result)
    logger.info("Report %s generated on demand by %s", report.id, user)
    return {"ok": True, "report": report.to_dict(), "warnings": report.last_error}


@router.post("/reports/{report_id}/regenerate")
async def regenerate_document(report_id: int, request: Request):
    path = _unwrap(await run_in_threadpool(
        get_engine().regenerate_document, report_id, _get_user(request)))
    return {"ok": True, "document_path": path}


@router.post("/reports/{report_id}/resend")
async def resend_report(report_id: int, request: Request):
    body = await request.body()
    data = await _json_body(request) if body else {}
    sent = _unwrap(await run_in_threadpool(
        get_engine().resend, report_id, data.get("recipients"), _get_user(request)))
    return {"ok": True, "sent": sent}


@router.delete("/reports/{report_id}")
async def delete_report(report_id: int, request: Request):
    deleted = _unwrap(get_engine().delete_report(report_id, actor=_get_user(request)))
    return {"ok": True, "deleted": deleted}


# ============================================================================
# Templates  (/api/reporting/templates)
# ============================================================================

@router.get("/templates")
async def list_templates(active_only: bool = False):
    templates = _store().list_templates(active_only=active_only)
    return {"ok": True, "templates": [t.to_dict() for t in templates]}


@router.get("/templates/{template_id}")
async def get_template(template_id: int):
    template = _unwrap(_store().get_template(template_id))
    return {"ok": True, "template": template.to_dict()}


@router.post("/templates")
async def create_template(request: Request):
    data = await _json_body(request)
    template = _unwrap(_store().create_template(data, actor=_get_user(request)))
    return {"ok": True, "template": template.to_dict()}


@router.put("/templates/{template_id}")
async def update_template(template_id: int, request: Request):
    data = await _json_body(request)
    template = _unwrap(_store().update_template(template_id, data, actor=_get_user(request)))
    return {"ok": True, "template": template.to_dict()}


@router.post("/templates/{template_id}/default")
async def set_default_template(template_id: int, request: Request):
    template = _unwrap(_store().set_default_template(template_id, actor=_get_user(request)))
    return {"ok": True, "template": template.to_dict()}


@router.delete("/templates/{template_id}")
async def delete_template(template_id: int, request: Request):
    outcome = _unwrap(_store().delete_template(template_id, actor=_get_user(request)))
    return {"ok": True, **outcome}


# ============================================================================
# Configuration  (/api/reporting/config/*)
# ============================================================================

@router.get("/config/schedule")
async def get_schedule_config():
    return {"ok": True, "config": _store().get_schedule().to_dict()}


@router.put("/config/schedule")
async def update_schedule_config(request: Request):
    data = await _json_body(request)
    cfg = _unwrap(_store().update_schedule(data, actor=_get_user(request)))
    return {"ok": True, "config": cfg.to_dict()}


@router.get("/config/ai")
async def get_ai_config():
    cfg = _store().get_ai()
    return {"ok": True, "config": cfg.to_dict() if cfg else None}


@router.put("/config/ai")
async def update_ai_config(request: Request):
    data = await _json_body(request)
    cfg = _unwrap(_store().update_ai(data, actor=_get_user(request)))
    return {"ok": True, "config": cfg.to_dict()}


@router.post("/config/ai/test")
async def test_ai_config(request: Request):
    result = _unwrap(await run_in_threadpool(
        _store().test_ai_configuration, _get_user(request), get_engine().narrative))
    return {"ok": True, "test": result.to_dict()}


@router.get("/config/email")
async def get_email_config():
    return {"ok": True, "config": _store().get_email().to_dict()}


@router.put("/config/email")
async def update_email_config(request: Request):
    data = await _json_body(request)
    cfg = _unwrap(_store().update_email(data, actor=_get_user(request)))
    return {"ok": True, "config": cfg.to_dict()}


@router.post("/config/email/test")
async def test_email_config(request: Request):
    data = await _json_body(request)
    recipient = (data.get("recipient") or "").strip()
    if not recipient:
        raise HTTPException(status_code=400, detail="Email address required")
    result = _unwrap(await run_in_threadpool(
        _store().test_email_configuration, recipient, _get_user(request), get_engine().delivery))
    return {"ok": True, "test": result.to_dict()}


# ============================================================================
# Scheduler  (/api/reporting/scheduler)
# ============================================================================

@router.get("/scheduler")
async def scheduler_status():
    return {"ok": True, "status": get_scheduler().get_status()}


@router.post("/scheduler/start")
async def scheduler_start(request: Request):
    started = get_scheduler().start(user=_get_user(request))
    if not started:
        raise HTTPException(status_code=500, detail="Scheduler failed to start")
    return {"ok": True, "status": get_scheduler().get_status()}


@router.post("/scheduler/stop")
async def scheduler_stop(request: Request):
    get_scheduler().stop(user=_get_user(request))
    return {"ok": True, "status": get_scheduler().get_status()}


# ============================================================================
# Audit log  (/api/reporting/audit)
# ============================================================================

@router.get("/audit")
async def audit_log(limit: int = Query(100, ge=1, le=1000), category: Optional[str] = None):
    entries = AuditRepository.get_recent(limit, category)
    return {"ok": True, "entries": entries}


# ============================================================================
# Registration function
# ============================================================================

def register_reporting_routes(app):
    """Create the reporting tables and include the /api/reporting router.

    The scheduler is started separately (init_scheduler) so that importing
    the application in tests does not spawn background threads.
    """
    from .models import init_database

    init_database()
    app.include_router(router)
    logger.info("Reporting module registered: /api/reporting")
