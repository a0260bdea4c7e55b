from __future__ import annotations

import logging

from actions.helpers import append_audit, req_str, require_auth, retention_days
from services.audit_log import purge_expired_audit, query_audit
from services.compliance import build_report, parse_report_type, run_compliance_checks
from utils import AuthContext, ValidationError, notice, parse_bool

logger = logging.getLogger("compliance")


def audit_query(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    filters = (data or {}).get("filters") or {}
    if not isinstance(filters, dict):
        raise ValidationError("filters must be an object")
    return query_audit(db, auth.venueId, filters, offset=(data or {}).get("offset"), limit=(data or {}).get("limit"))


def audit_purge(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    if not parse_bool((data or {}).get("confirm")):
        raise ValidationError("Purge must be confirmed", details={"field": "confirm"})

    days = retention_days(db, auth.venueId, cfg)
    res = purge_expired_audit(db, auth.venueId, days)
    # Written after the purge so the record of it survives.
    append_audit(db, auth, action="AUDIT_PURGE", resource_type="audit_log", details={"retentionDays": days, **res})
    logger.info("audit purge venue=%s deleted=%s cutoff=%s", auth.venueId, res["deleted"], res["cutoff"])
    return {
        **res,
        "retentionDays": days,
        "notice": notice("Audit log purged", f"{res['deleted']} entries older than {days} days removed.", "destructive"),
    }


def compliance_run(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    return run_compliance_checks(db, auth.venueId, cfg, retention_days=retention_days(db, auth.venueId, cfg))


def compliance_report(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    report_type = parse_report_type((data or {}).get("reportType"))
    report = build_report(db, auth.venueId, report_type, cfg, retention_days=retention_days(db, auth.venueId, cfg))
    append_audit(
        db,
        auth,
        action="COMPLIANCE_REPORT",
        resource_type="compliance_report",
        details={"reportType": report_type.value, "complianceScore": report["complianceScore"]},
    )
    return {"report": report}


def compliance_report_enqueue(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    report_type = parse_report_type((data or {}).get("reportType"))

    from app.tasks.compliance_reports import generate_compliance_report

    task = generate_compliance_report.apply_async(
        kwargs={"venue_id": auth.venueId, "report_type": report_type.value, "requested_by": auth.userId}
    )
    append_audit(
        db,
        auth,
        action="COMPLIANCE_REPORT_ENQUEUE",
        resource_type="compliance_report",
        resource_id=str(task.id),
        details={"reportType": report_type.value},
    )
    return {
        "jobId": str(task.id),
        "status": "queued",
        "notice": notice("Report queued", "The compliance report is being generated."),
    }


def compliance_report_status(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    job_id = req_str(data, "jobId")

    from app.routes.jobs import job_status

    return job_status(job_id, auth.venueId)
