"""
Point-in-time compliance scan over a venue's candidates, staff and audit log.

Each check in COMPLIANCE_CHECKS gathers its own data and has no ordering
dependency on the others, so `run_compliance_checks` fans them out over a
thread pool and joins them under the request deadline. With one worker they
run in order under the same deadline. Every check reads through its own
SQLAlchemy session so a failing statement never aborts the caller's
transaction. A check that raises or misses the deadline is reported with
severity "error" and an `error` message; the remaining checks are still
returned.

Score convention (configurable, not a regulatory formula):

    score = BASE - HIGH_WEIGHT * high_severity_issues - ISSUE_WEIGHT * all_issues

clamped to [0, BASE]. Defaults are 100 / 10 / 2.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models import AuditLog, Candidate, StaffCertification, StaffMember
from services.audit_log import query_audit, retention_cutoff
from services.candidate_flow import CandidateStage, CandidateStatus
from utils import ValidationError, iso_utc_now, now_monotonic

logger = logging.getLogger("compliance")

_MAX_ITEMS = 100


class Severity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    ERROR = "error"


class ReportType(str, Enum):
    SUMMARY = "summary"
    DETAILED = "detailed"
    AUDIT = "audit"


@dataclass
class ComplianceCheck:
    type: str
    severity: Severity
    description: str
    count: int = 0
    items: list[dict[str, Any]] = field(default_factory=list)
    error: str = ""

    @property
    def failed(self) -> bool:
        return self.severity is Severity.ERROR

    def to_dict(self) -> dict[str, Any]:
        out = {
            "type": self.type,
            "severity": self.severity.value,
            "description": self.description,
            "count": int(self.count),
            "items": list(self.items),
        }
        if self.failed:
            out["error"] = self.error
        return out


@dataclass(frozen=True)
class CheckContext:
    venueId: str
    now: str
    retentionDays: int


@dataclass(frozen=True)
class CheckSpec:
    type: str
    severity: Severity
    description: str
    gather: Callable[[Any, CheckContext], list[dict[str, Any]]]


def _gather_background_checks(db, ctx: CheckContext) -> list[dict[str, Any]]:
    stages = [CandidateStage.DOCUMENTATION.value, CandidateStage.TRAINING.value, CandidateStage.COMPLETED.value]
    rows = db.execute(
        select(Candidate.candidateId, Candidate.name, Candidate.stage)
        .where(Candidate.venueId == ctx.venueId)
        .where(Candidate.status != CandidateStatus.REJECTED.value)
        .where(Candidate.stage.in_(stages))
        .where(Candidate.backgroundCheckCompleted == False)  # noqa: E712
        .order_by(Candidate.candidateId)
    ).all()
    return [{"id": str(cid), "name": str(name or ""), "stage": str(stage or "")} for cid, name, stage in rows]


def _gather_expired_certifications(db, ctx: CheckContext) -> list[dict[str, Any]]:
    rows = db.execute(
        select(StaffCertification.certId, StaffCertification.name, StaffCertification.expiresAt, StaffMember.staffId, StaffMember.name)
        .join(StaffMember, StaffMember.staffId == StaffCertification.staffId)
        .where(StaffCertification.venueId == ctx.venueId)
        .where(StaffMember.status == "active")
        .where(StaffCertification.expiresAt != "")
        .where(StaffCertification.expiresAt < ctx.now)
        .order_by(StaffCertification.certId)
    ).all()
    return [
        {"id": str(cert_id), "certification": str(cert_name or ""), "expiresAt": str(exp or ""), "staffId": str(sid), "staffName": str(sname or "")}
        for cert_id, cert_name, exp, sid, sname in rows
    ]


def _gather_incomplete_training(db, ctx: CheckContext) -> list[dict[str, Any]]:
    rows = db.execute(
        select(StaffMember.staffId, StaffMember.name, StaffMember.position)
        .where(StaffMember.venueId == ctx.venueId)
        .where(StaffMember.status == "active")
        .where(StaffMember.trainingCompleted == False)  # noqa: E712
        .order_by(StaffMember.staffId)
    ).all()
    return [{"id": str(sid), "name": str(name or ""), "position": str(pos or "")} for sid, name, pos in rows]


def _gather_retention_violations(db, ctx: CheckContext) -> list[dict[str, Any]]:
    cutoff = retention_cutoff(ctx.retentionDays, now=ctx.now)
    rows = db.execute(
        select(AuditLog.logId, AuditLog.action, AuditLog.timestamp)
        .where(AuditLog.venueId == ctx.venueId)
        .where(AuditLog.timestamp < cutoff)
        .order_by(AuditLog.timestamp, AuditLog.logId)
    ).all()
    return [{"id": str(lid), "action": str(action or ""), "timestamp": str(ts or "")} for lid, action, ts in rows]


COMPLIANCE_CHECKS: tuple[CheckSpec, ...] = (
    CheckSpec("background_check", Severity.HIGH, "Candidates past interview without a completed background check", _gather_background_checks),
    CheckSpec("expired_certifications", Severity.MEDIUM, "Active staff holding expired certifications", _gather_expired_certifications),
    CheckSpec("incomplete_training", Severity.MEDIUM, "Active staff with required training not completed", _gather_incomplete_training),
    CheckSpec("data_retention", Severity.LOW, "Audit entries older than the retention window", _gather_retention_violations),
)

RECOMMENDATIONS: dict[str, str] = {
    "background_check": "Complete pending background checks before candidates reach documentation or training.",
    "expired_certifications": "Schedule renewal for expired staff certifications.",
    "incomplete_training": "Assign and track required training for active staff.",
    "data_retention": "Run the audit retention purge for entries past the retention window.",
}


def _finish(spec: CheckSpec, items: list[dict[str, Any]]) -> ComplianceCheck:
    return ComplianceCheck(
        type=spec.type,
        severity=spec.severity,
        description=spec.description,
        count=len(items),
        items=items[:_MAX_ITEMS],
    )


def _failed(spec: CheckSpec, message: str) -> ComplianceCheck:
    return ComplianceCheck(type=spec.type, severity=Severity.ERROR, description=spec.description, error=message)


def _run_in_own_session(bind, spec: CheckSpec, ctx: CheckContext) -> list[dict[str, Any]]:
    with Session(bind=bind) as own:
        return spec.gather(own, ctx)


def _timed_out(spec: CheckSpec, ctx: CheckContext, timeout: float) -> ComplianceCheck:
    logger.warning("compliance check timed out venue=%s check=%s timeout=%.1fs", ctx.venueId, spec.type, timeout)
    return _failed(spec, f"TimeoutError: check did not finish within {timeout:g}s")


def _run_sequential(db, specs: list[CheckSpec], ctx: CheckContext, *, timeout: float) -> list[ComplianceCheck]:
    bind = db.get_bind()
    deadline = now_monotonic() + timeout
    out: list[ComplianceCheck] = []
    for spec in specs:
        if now_monotonic() >= deadline:
            out.append(_timed_out(spec, ctx, timeout))
            continue
        try:
            items = _run_in_own_session(bind, spec, ctx)
        except Exception as e:
            logger.exception("compliance check failed venue=%s check=%s", ctx.venueId, spec.type)
            out.append(_failed(spec, f"{type(e).__name__}: {e}"))
            continue
        if now_monotonic() > deadline:
            out.append(_timed_out(spec, ctx, timeout))
            continue
        out.append(_finish(spec, items))
    return out


def _run_concurrent(db, specs: list[CheckSpec], ctx: CheckContext, *, workers: int, timeout: float) -> list[ComplianceCheck]:
    bind = db.get_bind()
    pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="compliance")
    try:
        futures = {spec.type: pool.submit(_run_in_own_session, bind, spec, ctx) for spec in specs}
        wait(list(futures.values()), timeout=timeout)
    finally:
        pool.shutdown(wait=False, cancel_futures=True)

    out: list[ComplianceCheck] = []
    for spec in specs:
        fut = futures[spec.type]
        if not fut.done():
            out.append(_timed_out(spec, ctx, timeout))
            continue
        exc = fut.exception()
        if exc is not None:
            logger.error("compliance check failed venue=%s check=%s", ctx.venueId, spec.type, exc_info=exc)
            out.append(_failed(spec, f"{type(exc).__name__}: {exc}"))
            continue
        out.append(_finish(spec, fut.result()))
    return out


def compliance_score(checks: Iterable[ComplianceCheck], *, base: int = 100, high_weight: int = 10, issue_weight: int = 2) -> int:
    high = 0
    total = 0
    for c in checks:
        if c.failed:
            continue
        total += int(c.count)
        if c.severity is Severity.HIGH:
            high += int(c.count)
    score = int(base) - int(high_weight) * high - int(issue_weight) * total
    return max(0, min(int(base), score))


def evaluate_checks(
    db,
    venue_id: str,
    cfg,
    *,
    now: Optional[str] = None,
    retention_days: Optional[int] = None,
    checks: Optional[Iterable[CheckSpec]] = None,
) -> tuple[list[ComplianceCheck], str]:
    """Run the battery and return (results in battery order, the `now` used)."""

    specs = list(checks if checks is not None else COMPLIANCE_CHECKS)
    ctx = CheckContext(
        venueId=str(venue_id or ""),
        now=now or iso_utc_now(),
        retentionDays=int(retention_days or cfg.AUDIT_RETENTION_DAYS),
    )

    workers = max(1, min(int(cfg.COMPLIANCE_CHECK_WORKERS), len(specs) or 1))
    timeout = float(cfg.REQUEST_TIMEOUT_SECONDS)
    if workers == 1:
        results = _run_sequential(db, specs, ctx, timeout=timeout)
    else:
        results = _run_concurrent(db, specs, ctx, workers=workers, timeout=timeout)
    return results, ctx.now


def summarize_checks(results: list[ComplianceCheck], cfg, *, generated_at: str) -> dict[str, Any]:
    fired = [c for c in results if not c.failed and c.count > 0]
    return {
        "totalChecks": len(results),
        "highSeverity": sum(1 for c in fired if c.severity is Severity.HIGH),
        "mediumSeverity": sum(1 for c in fired if c.severity is Severity.MEDIUM),
        "lowSeverity": sum(1 for c in fired if c.severity is Severity.LOW),
        "failedChecks": sum(1 for c in results if c.failed),
        "checks": [c.to_dict() for c in results],
        "complianceScore": compliance_score(
            results,
            base=cfg.COMPLIANCE_SCORE_BASE,
            high_weight=cfg.COMPLIANCE_HIGH_SEVERITY_WEIGHT,
            issue_weight=cfg.COMPLIANCE_ISSUE_WEIGHT,
        ),
        "generatedAt": generated_at,
    }


def run_compliance_checks(
    db,
    venue_id: str,
    cfg,
    *,
    now: Optional[str] = None,
    retention_days: Optional[int] = None,
    checks: Optional[Iterable[CheckSpec]] = None,
) -> dict[str, Any]:
    results, at = evaluate_checks(db, venue_id, cfg, now=now, retention_days=retention_days, checks=checks)
    return summarize_checks(results, cfg, generated_at=at)


def parse_report_type(value: Any) -> ReportType:
    raw = str(value or ReportType.SUMMARY.value).strip().lower()
    try:
        return ReportType(raw)
    except ValueError:
        raise ValidationError(f"Invalid reportType: {raw}", details={"allowed": ", ".join(r.value for r in ReportType)})


def _staff_counts(db, venue_id: str) -> dict[str, int]:
    rows = db.execute(
        select(StaffMember.status, StaffMember.trainingCompleted, func.count())
        .where(StaffMember.venueId == venue_id)
        .group_by(StaffMember.status, StaffMember.trainingCompleted)
    ).all()
    out = {"total": 0, "active": 0, "trained": 0}
    for status, trained, n in rows:
        out["total"] += int(n)
        if str(status) == "active":
            out["active"] += int(n)
            if trained:
                out["trained"] += int(n)
    return out


def _candidate_counts(db, venue_id: str) -> dict[str, Any]:
    by_stage = {s.value: 0 for s in CandidateStage}
    by_status = {s.value: 0 for s in CandidateStatus}
    rows = db.execute(
        select(Candidate.stage, Candidate.status, func.count()).where(Candidate.venueId == venue_id).group_by(Candidate.stage, Candidate.status)
    ).all()
    total = 0
    for stage, status, n in rows:
        total += int(n)
        by_stage[str(stage)] = by_stage.get(str(stage), 0) + int(n)
        by_status[str(status)] = by_status.get(str(status), 0) + int(n)
    return {"total": total, "byStage": by_stage, "byStatus": by_status}


def build_report(db, venue_id: str, report_type: Any, cfg, *, now: Optional[str] = None, retention_days: Optional[int] = None) -> dict[str, Any]:
    """Same data and same `now` give the same report."""

    rtype = parse_report_type(report_type)
    results, at = evaluate_checks(db, venue_id, cfg, now=now, retention_days=retention_days)
    run = summarize_checks(results, cfg, generated_at=at)

    fired_types = [c.type for c in results if not c.failed and c.count > 0]
    recommendations = [RECOMMENDATIONS[t] for t in fired_types if t in RECOMMENDATIONS]
    failed_types = [c.type for c in results if c.failed]
    if failed_types:
        recommendations.append(f"Re-run the report; these checks could not complete: {', '.join(failed_types)}.")

    report: dict[str, Any] = {
        "venueId": str(venue_id),
        "reportType": rtype.value,
        "generatedAt": run["generatedAt"],
        "complianceScore": run["complianceScore"],
        "summary": {k: run[k] for k in ("totalChecks", "highSeverity", "mediumSeverity", "lowSeverity", "failedChecks")},
        "checks": run["checks"],
        "staff": _staff_counts(db, venue_id),
        "candidates": _candidate_counts(db, venue_id),
        "recommendations": recommendations,
    }
    if rtype is not ReportType.SUMMARY:
        audit = query_audit(db, venue_id, {"dateTo": run["generatedAt"]}, limit=cfg.RECENT_AUDIT_LIMIT)
        report["auditEntries"] = audit["entries"]
        report["auditTotalCount"] = audit["totalCount"]
    return report
