"""
Job status endpoints for asynchronous compliance reports.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from flask import Blueprint, request

from app.tasks import celery_app
from utils import ApiError, NotFoundError, err, ok

jobs_bp = Blueprint("jobs", __name__)

logger = logging.getLogger("jobs")


def _job_venue(task) -> str:
    info = task.info if isinstance(task.info, dict) else {}
    if task.state == "SUCCESS":
        return str(((info.get("report") or {}).get("venueId")) or "")
    return str(info.get("venueId") or "")


def job_status(job_id: str, venue_id: Optional[str] = None) -> dict[str, Any]:
    """
    Look up a background job.

    Returns:
        {
            "jobId": "...",
            "status": "PENDING|PROGRESS|SUCCESS|FAILURE|REVOKED",
            "progress": 50,       # If in PROGRESS state
            "result": {...},      # If completed
            "error": "..."        # If failed
        }

    When `venue_id` is given, a job known to belong to another venue is
    reported as not found.
    """
    task = celery_app.AsyncResult(job_id)

    if venue_id:
        owner = _job_venue(task)
        if owner and owner != venue_id:
            raise NotFoundError("Job not found", details={"jobId": job_id})

    out: dict[str, Any] = {"jobId": job_id, "status": task.state}

    if task.state == "PENDING":
        out["message"] = "Job is queued or unknown"
    elif task.state == "STARTED":
        out["message"] = "Job is running"
    elif task.state == "PROGRESS":
        meta = task.info or {}
        out["progress"] = meta.get("progress", 0)
        out["message"] = meta.get("status", "Processing...")
    elif task.state == "SUCCESS":
        out["result"] = task.result
    elif task.state == "FAILURE":
        out["error"] = type(task.info).__name__ if task.info else "Unknown error"
    elif task.state == "REVOKED":
        out["message"] = "Job was cancelled"

    return out


def _actor_and_db():
    from auth import assert_permission, resolve_actor
    from db import SessionLocal

    db = SessionLocal()
    try:
        auth_ctx = resolve_actor(
            db,
            user_id=request.headers.get("X-Actor-Id"),
            venue_id=request.headers.get("X-Venue-Id"),
            ip_address=request.headers.get("X-Forwarded-For", request.remote_addr or ""),
            user_agent=request.headers.get("User-Agent", ""),
        )
        assert_permission(db, auth_ctx, "COMPLIANCE_REPORT_STATUS")
        return auth_ctx, db
    except Exception:
        db.close()
        raise


@jobs_bp.get("/<job_id>")
def get_job_status(job_id: str):
    try:
        auth_ctx, db = _actor_and_db()
        db.close()
        return ok(job_status(job_id, auth_ctx.venueId))[0]
    except ApiError as e:
        return err(e.code, e.message, http_status=e.http_status, details=e.details)


@jobs_bp.delete("/<job_id>")
def cancel_job(job_id: str):
    """
    Cancel/revoke a pending or running job.
    """
    from actions.helpers import append_audit

    try:
        auth_ctx, db = _actor_and_db()
    except ApiError as e:
        return err(e.code, e.message, http_status=e.http_status, details=e.details)

    try:
        job_status(job_id, auth_ctx.venueId)
        celery_app.control.revoke(job_id, terminate=True)
        append_audit(db, auth_ctx, action="COMPLIANCE_REPORT_CANCEL", resource_type="compliance_report", resource_id=job_id)
        db.commit()
        logger.info("job revoked job_id=%s venue=%s user=%s", job_id, auth_ctx.venueId, auth_ctx.userId)
        return ok({"jobId": job_id, "status": "revoked"})[0]
    except ApiError as e:
        db.rollback()
        return err(e.code, e.message, http_status=e.http_status, details=e.details)
    finally:
        db.close()
