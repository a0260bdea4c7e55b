"""
Compliance report generation off the request path.

Enqueued by COMPLIANCE_REPORT_ENQUEUE; the result (the report dict) is polled
through GET /api/jobs/<id>.
"""
from __future__ import annotations

import logging

from sqlalchemy.exc import OperationalError

from app.tasks import celery_app
from config import Config
from db import SessionLocal, get_engine, init_engine
from services.audit_log import record_audit
from services.compliance import build_report
from utils import iso_utc_now

logger = logging.getLogger("jobs")


def _ensure_engine(cfg: Config) -> None:
    if get_engine() is None:
        init_engine(cfg.DATABASE_URL, statement_timeout_s=cfg.REQUEST_TIMEOUT_SECONDS)


def _retention_days(db, venue_id: str, cfg: Config) -> int:
    from actions.helpers import retention_days

    return retention_days(db, venue_id, cfg)


@celery_app.task(bind=True, max_retries=3, default_retry_delay=30, autoretry_for=(OperationalError,), retry_backoff=True)
def generate_compliance_report(self, venue_id: str, report_type: str = "summary", requested_by: str = ""):
    cfg = Config()
    _ensure_engine(cfg)

    if not self.request.is_eager:
        self.update_state(state="PROGRESS", meta={"progress": 10, "status": "Running compliance checks...", "venueId": venue_id})

    started = iso_utc_now()
    with SessionLocal() as db:
        report = build_report(db, venue_id, report_type, cfg, retention_days=_retention_days(db, venue_id, cfg))
        record_audit(
            db,
            venue_id=venue_id,
            user_id=requested_by,
            action="COMPLIANCE_REPORT",
            resource_type="compliance_report",
            resource_id=str(self.request.id or ""),
            details={"reportType": report["reportType"], "complianceScore": report["complianceScore"], "async": True},
        )
        db.commit()

    logger.info(
        "compliance report task_id=%s venue=%s type=%s score=%s failed_checks=%s",
        self.request.id,
        venue_id,
        report["reportType"],
        report["complianceScore"],
        report["summary"]["failedChecks"],
    )
    return {"task_id": self.request.id, "startedAt": started, "completedAt": iso_utc_now(), "report": report}
