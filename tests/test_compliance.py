from __future__ import annotations

import time
from dataclasses import replace

import pytest
from sqlalchemy import func, select, text

from db import SessionLocal
from models import AuditLog, Candidate, StaffCertification, StaffMember
from services.compliance import (
    COMPLIANCE_CHECKS,
    ComplianceCheck,
    Severity,
    build_report,
    compliance_score,
    run_compliance_checks,
)
from utils import StorageError

VENUE = "venue-1"
NOW = "2024-06-01T12:00:00.000Z"


def _seed(db) -> None:
    db.add_all(
        [
            Candidate(candidateId="CAN-1", venueId=VENUE, name="Sarah Johnson", stage="documentation", status="in_progress",
                      backgroundCheckCompleted=False),
            Candidate(candidateId="CAN-2", venueId=VENUE, name="Mike Chen", stage="training", status="in_progress",
                      backgroundCheckCompleted=True),
            Candidate(candidateId="CAN-3", venueId=VENUE, name="Ana Lopez", stage="interview", status="in_progress",
                      backgroundCheckCompleted=False),
            Candidate(candidateId="CAN-4", venueId=VENUE, name="Rejected Rob", stage="training", status="rejected",
                      backgroundCheckCompleted=False),
            Candidate(candidateId="CAN-X", venueId="venue-2", name="Elsewhere", stage="training", status="in_progress",
                      backgroundCheckCompleted=False),
            StaffMember(staffId="STF-1", venueId=VENUE, name="Dana", position="Security", status="active", trainingCompleted=False),
            StaffMember(staffId="STF-2", venueId=VENUE, name="Eli", position="Bar", status="active", trainingCompleted=True),
            StaffMember(staffId="STF-3", venueId=VENUE, name="Former", position="Bar", status="inactive", trainingCompleted=False),
            StaffCertification(certId="CRT-1", staffId="STF-2", venueId=VENUE, name="First Aid", expiresAt="2024-01-01T00:00:00.000Z"),
            StaffCertification(certId="CRT-2", staffId="STF-2", venueId=VENUE, name="RSA", expiresAt="2025-01-01T00:00:00.000Z"),
            StaffCertification(certId="CRT-3", staffId="STF-3", venueId=VENUE, name="Old", expiresAt="2020-01-01T00:00:00.000Z"),
            AuditLog(logId="AUD-old", venueId=VENUE, action="CANDIDATE_CREATE", timestamp="2022-01-01T00:00:00.000Z", details={}),
            AuditLog(logId="AUD-new", venueId=VENUE, action="CANDIDATE_CREATE", timestamp="2024-05-30T00:00:00.000Z", details={}),
        ]
    )
    db.commit()


def _by_type(result: dict) -> dict:
    return {c["type"]: c for c in result["checks"]}


def test_score_convention():
    checks = [
        ComplianceCheck("background_check", Severity.HIGH, "", count=5),
        ComplianceCheck("incomplete_training", Severity.MEDIUM, "", count=15),
    ]
    # 100 - 10 * 5 - 2 * 20
    assert compliance_score(checks) == 10


def test_score_bounds():
    assert compliance_score([]) == 100
    assert compliance_score([ComplianceCheck("background_check", Severity.HIGH, "", count=40)]) == 0
    assert compliance_score([ComplianceCheck("data_retention", Severity.LOW, "", count=3)], base=50, issue_weight=1) == 47


def test_failed_checks_do_not_count_towards_score():
    checks = [ComplianceCheck("background_check", Severity.ERROR, "", count=99, error="boom")]
    assert compliance_score(checks) == 100


def test_run_checks_counts_issues(app_client):
    app, _client = app_client
    cfg = app.config["CFG"]
    with SessionLocal() as db:
        _seed(db)
        result = run_compliance_checks(db, VENUE, cfg, now=NOW, retention_days=365)

    checks = _by_type(result)
    assert [c["type"] for c in result["checks"]] == [s.type for s in COMPLIANCE_CHECKS]
    assert checks["background_check"]["count"] == 1
    assert checks["background_check"]["items"][0]["id"] == "CAN-1"
    assert checks["expired_certifications"]["count"] == 1
    assert checks["expired_certifications"]["items"][0]["staffId"] == "STF-2"
    assert checks["incomplete_training"]["count"] == 1
    assert checks["data_retention"]["count"] == 1
    assert result["totalChecks"] == 4
    assert (result["highSeverity"], result["mediumSeverity"], result["lowSeverity"]) == (1, 2, 1)
    assert result["failedChecks"] == 0
    # 100 - 10 * 1 - 2 * 4
    assert result["complianceScore"] == 82
    assert result["generatedAt"] == NOW


def test_failing_check_is_isolated(app_client):
    app, _client = app_client
    cfg = app.config["CFG"]

    def broken(_db, _ctx):
        raise StorageError("certification lookup failed", sub_step="cert_scan")

    specs = [replace(s, gather=broken) if s.type == "expired_certifications" else s for s in COMPLIANCE_CHECKS]
    with SessionLocal() as db:
        _seed(db)
        result = run_compliance_checks(db, VENUE, cfg, now=NOW, retention_days=365, checks=specs)

    checks = _by_type(result)
    assert result["failedChecks"] == 1
    assert checks["expired_certifications"]["severity"] == "error"
    assert "certification lookup failed" in checks["expired_certifications"]["error"]
    assert checks["background_check"]["count"] == 1
    assert checks["incomplete_training"]["count"] == 1
    # 100 - 10 * 1 - 2 * 3
    assert result["complianceScore"] == 84


@pytest.mark.parametrize("workers", [1, 4])
def test_concurrent_and_sequential_agree(app_client, monkeypatch, workers):
    app, _client = app_client
    cfg = app.config["CFG"]
    monkeypatch.setattr(cfg, "COMPLIANCE_CHECK_WORKERS", workers)
    with SessionLocal() as db:
        _seed(db)
        result = run_compliance_checks(db, VENUE, cfg, now=NOW, retention_days=365)
    assert result["complianceScore"] == 82
    assert result["failedChecks"] == 0


@pytest.mark.parametrize("workers", [1, 4])
def test_slow_check_times_out_without_sinking_the_run(app_client, monkeypatch, workers):
    app, _client = app_client
    cfg = app.config["CFG"]
    monkeypatch.setattr(cfg, "COMPLIANCE_CHECK_WORKERS", workers)
    monkeypatch.setattr(cfg, "REQUEST_TIMEOUT_SECONDS", 0.5)

    def slow(_db, _ctx):
        time.sleep(1.5)
        return []

    specs = [replace(s, gather=slow) if s.type == "data_retention" else s for s in COMPLIANCE_CHECKS]
    with SessionLocal() as db:
        _seed(db)
        result = run_compliance_checks(db, VENUE, cfg, now=NOW, retention_days=365, checks=specs)

    checks = _by_type(result)
    assert checks["data_retention"]["severity"] == "error"
    assert checks["data_retention"]["error"].startswith("TimeoutError")
    assert checks["background_check"]["count"] == 1


def test_report_is_deterministic_for_fixed_now(app_client):
    app, _client = app_client
    cfg = app.config["CFG"]
    with SessionLocal() as db:
        _seed(db)
        first = build_report(db, VENUE, "detailed", cfg, now=NOW, retention_days=365)
        second = build_report(db, VENUE, "detailed", cfg, now=NOW, retention_days=365)
    assert first == second
    assert first["reportType"] == "detailed"
    assert first["staff"] == {"total": 3, "active": 2, "trained": 1}
    assert first["candidates"]["total"] == 4
    assert first["candidates"]["byStatus"]["rejected"] == 1
    assert first["auditTotalCount"] == 2
    assert [e["id"] for e in first["auditEntries"]] == ["AUD-new", "AUD-old"]
    assert len(first["recommendations"]) == 4


def test_summary_report_has_no_audit_section(app_client):
    app, _client = app_client
    cfg = app.config["CFG"]
    with SessionLocal() as db:
        _seed(db)
        report = build_report(db, VENUE, "summary", cfg, now=NOW, retention_days=365)
    assert "auditEntries" not in report
    assert report["summary"]["totalChecks"] == 4
    assert report["complianceScore"] == 82


def test_broken_check_sql_leaves_caller_session_usable(app_client):
    app, _client = app_client
    cfg = app.config["CFG"]
    seen = []

    def bad_sql(db, _ctx):
        db.execute(text("SELECT * FROM no_such_table"))
        return []

    def spy(db, _ctx):
        seen.append(db)
        return []

    specs = [replace(COMPLIANCE_CHECKS[0], gather=bad_sql)] + [replace(s, gather=spy) for s in COMPLIANCE_CHECKS[1:]]
    with SessionLocal() as db:
        _seed(db)
        result = run_compliance_checks(db, VENUE, cfg, now=NOW, retention_days=365, checks=specs)
        assert all(s is not db for s in seen)
        assert db.execute(select(func.count()).select_from(StaffMember)).scalar_one() == 3

    assert result["failedChecks"] == 1
    assert result["checks"][0]["error"].startswith("OperationalError")
    assert [c["severity"] for c in result["checks"][1:]] == [s.severity.value for s in COMPLIANCE_CHECKS[1:]]
