from __future__ import annotations

import re
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.orm import selectinload

from actions.helpers import append_activity, append_audit, req_str, require_auth
from actions.staff import upsert_staff_from_candidate
from db import storage_step
from models import Candidate, OnboardingSession, StaffMember
from services.candidate_flow import (
    CandidateStage,
    CandidateStatus,
    SessionStatus,
    advance_candidate_stage,
    bump_version,
    check_version,
    complete_candidate,
    parse_candidate_status,
    parse_employment_type,
    parse_stage,
    progress,
    reject_candidate,
)
from utils import (
    AuthContext,
    ConflictError,
    NotFoundError,
    ValidationError,
    clamp_int,
    iso_utc_now,
    new_uuid,
    notice,
    parse_bool,
    parse_iso_utc,
    str_list,
    to_iso_utc,
)


_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
DOCUMENT_STATUSES = {"pending", "submitted", "approved", "rejected"}


def serialize_candidate(c: Candidate) -> dict[str, Any]:
    return {
        "id": str(c.candidateId or ""),
        "venueId": str(c.venueId or ""),
        "name": str(c.name or ""),
        "email": str(c.email or ""),
        "phone": str(c.phone or ""),
        "position": str(c.position or ""),
        "department": str(c.department or ""),
        "status": str(c.status or ""),
        "stage": str(c.stage or ""),
        "applicationDate": str(c.applicationDate or ""),
        "skills": list(c.skills or []),
        "documents": [dict(d) for d in (c.documents or [])],
        "assignedManager": str(c.assignedManager or ""),
        "startDate": str(c.startDate or ""),
        "employmentType": str(c.employmentType or ""),
        "rejectionReason": str(c.rejectionReason or ""),
        "backgroundCheckCompleted": bool(c.backgroundCheckCompleted),
        "backgroundCheckDate": str(c.backgroundCheckDate or ""),
        "trainingCompleted": bool(c.trainingCompleted),
        "trainingCompletionDate": str(c.trainingCompletionDate or ""),
        "version": int(c.version or 0),
        "updatedAt": str(c.updatedAt or ""),
    }


def load_candidate(db, venue_id: str, candidate_id: str) -> Candidate:
    row = db.execute(
        select(Candidate).where(Candidate.candidateId == candidate_id).where(Candidate.venueId == venue_id)
    ).scalar_one_or_none()
    if not row:
        raise NotFoundError("Candidate not found", details={"candidateId": candidate_id})
    return row


def _date_or_empty(value: Any, field: str) -> str:
    raw = str(value or "").strip()
    if not raw:
        return ""
    dt = parse_iso_utc(raw)
    if dt is None:
        raise ValidationError(f"Invalid {field}", details={"field": field})
    return to_iso_utc(dt)


def candidate_create(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    name = req_str(data, "name", max_len=200)
    email = req_str(data, "email", max_len=320).lower()
    if not _EMAIL_RE.match(email):
        raise ValidationError("Invalid email", details={"field": "email"})
    position = req_str(data, "position", max_len=200)
    department = req_str(data, "department", max_len=200)
    employment_type = parse_employment_type((data or {}).get("employmentType") or "full_time")

    dup = db.execute(
        select(Candidate.candidateId).where(Candidate.venueId == auth.venueId).where(func.lower(Candidate.email) == email)
    ).first()
    if dup:
        raise ConflictError("A candidate with this email already exists", details={"candidateId": str(dup[0])})

    now = iso_utc_now()
    cand = Candidate(
        candidateId=f"CAN-{new_uuid()}",
        venueId=auth.venueId,
        name=name,
        email=email,
        phone=req_str(data, "phone", required=False, max_len=40),
        position=position,
        department=department,
        status=CandidateStatus.PENDING.value,
        stage=CandidateStage.APPLICATION.value,
        applicationDate=_date_or_empty((data or {}).get("applicationDate"), "applicationDate") or now,
        skills=str_list((data or {}).get("skills")),
        documents=[],
        assignedManager=req_str(data, "assignedManager", required=False),
        startDate=_date_or_empty((data or {}).get("startDate"), "startDate"),
        employmentType=employment_type.value,
        rejectionReason="",
        backgroundCheckCompleted=False,
        backgroundCheckDate="",
        trainingCompleted=False,
        trainingCompletionDate="",
        version=1,
        createdAt=now,
        createdBy=auth.userId,
        updatedAt=now,
        updatedBy=auth.userId,
    )
    with storage_step(db, "candidate_insert"):
        db.add(cand)
    append_audit(db, auth, action="CANDIDATE_CREATE", resource_type="candidate", resource_id=cand.candidateId, details={"position": position})
    return {"candidate": serialize_candidate(cand), "notice": notice("Candidate added", f"{name} has been added.")}


def candidate_get(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    cand = load_candidate(db, auth.venueId, req_str(data, "candidateId"))
    sessions = db.execute(
        select(OnboardingSession.sessionId, OnboardingSession.templateName, OnboardingSession.status, OnboardingSession.startedAt)
        .where(OnboardingSession.candidateId == cand.candidateId)
        .order_by(OnboardingSession.startedAt.desc())
    ).all()
    return {
        "candidate": serialize_candidate(cand),
        "sessions": [
            {"id": str(sid), "templateName": str(tn or ""), "status": str(st or ""), "startedAt": str(sa or "")}
            for sid, tn, st, sa in sessions
        ],
    }


def candidate_list(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    filters = (data or {}).get("filters") or {}
    if not isinstance(filters, dict):
        filters = {}

    stmt = select(Candidate).where(Candidate.venueId == auth.venueId)
    if str(filters.get("status") or "").strip():
        stmt = stmt.where(Candidate.status == parse_candidate_status(filters.get("status")).value)
    if str(filters.get("stage") or "").strip():
        stmt = stmt.where(Candidate.stage == parse_stage(filters.get("stage")).value)
    department = str(filters.get("department") or "").strip()
    if department:
        stmt = stmt.where(Candidate.department == department)
    q = str(filters.get("q") or "").strip()
    if q:
        like = f"%{q}%"
        stmt = stmt.where(or_(Candidate.name.ilike(like), Candidate.email.ilike(like), Candidate.position.ilike(like)))

    offset = clamp_int((data or {}).get("offset"), default=0, min_v=0, max_v=1_000_000)
    limit = clamp_int((data or {}).get("limit"), default=50, min_v=1, max_v=200)
    total = int(db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one() or 0)
    rows = db.execute(stmt.order_by(Candidate.applicationDate.desc(), Candidate.candidateId).offset(offset).limit(limit)).scalars().all()
    return {"items": [serialize_candidate(c) for c in rows], "total": total, "offset": offset, "limit": limit}


def candidate_stage_advance(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    cand = load_candidate(db, auth.venueId, req_str(data, "candidateId"))
    check_version(cand, (data or {}).get("expectedVersion"))
    force = parse_bool((data or {}).get("force"))
    reason = req_str(data, "reason", required=False, max_len=1000)

    change = advance_candidate_stage(cand, req_str(data, "stage"), force=force)
    bump_version(cand, actor_id=auth.userId, at=change.at)

    details = change.to_dict()
    if reason:
        details["reason"] = reason
    append_audit(
        db,
        auth,
        action="CANDIDATE_STAGE_FORCE" if force else "CANDIDATE_STAGE_ADVANCE",
        resource_type="candidate",
        resource_id=cand.candidateId,
        details=details,
        at=change.at,
    )
    append_activity(db, auth, kind="stage", message=f"{cand.name}: {change.describe()}", candidate_id=cand.candidateId, payload=details, at=change.at)
    return {
        "candidate": serialize_candidate(cand),
        "change": change.to_dict(),
        "notice": notice("Stage updated", f"{cand.name} is now in {change.toStage.value.replace('_', ' ')}."),
    }


def candidate_reject(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    cand = load_candidate(db, auth.venueId, req_str(data, "candidateId"))
    check_version(cand, (data or {}).get("expectedVersion"))
    reason = req_str(data, "reason", max_len=1000)

    previous = reject_candidate(cand, reason)
    now = iso_utc_now()
    bump_version(cand, actor_id=auth.userId, at=now)

    details = {"fromStatus": previous.value, "stage": cand.stage, "reason": reason}
    append_audit(db, auth, action="CANDIDATE_REJECT", resource_type="candidate", resource_id=cand.candidateId, details=details, at=now)
    append_activity(db, auth, kind="rejection", message=f"{cand.name} was rejected", candidate_id=cand.candidateId, payload=details, at=now)
    return {
        "candidate": serialize_candidate(cand),
        "notice": notice("Candidate rejected", f"{cand.name} has been rejected.", "destructive"),
    }


def candidate_document_set(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    cand = load_candidate(db, auth.venueId, req_str(data, "candidateId"))
    check_version(cand, (data or {}).get("expectedVersion"))
    name = req_str(data, "name", max_len=200)
    status = req_str(data, "status", required=False).lower() or "submitted"
    if status not in DOCUMENT_STATUSES:
        raise ValidationError("Invalid document status", details={"allowed": ", ".join(sorted(DOCUMENT_STATUSES))})
    ref = req_str(data, "ref", required=False, max_len=2000)

    docs = [dict(d) for d in (cand.documents or [])]
    entry = {"name": name, "status": status, "ref": ref}
    for i, d in enumerate(docs):
        if str(d.get("name") or "") == name:
            if not ref:
                entry["ref"] = str(d.get("ref") or "")
            docs[i] = entry
            break
    else:
        docs.append(entry)
    cand.documents = docs
    bump_version(cand, actor_id=auth.userId)

    append_audit(
        db,
        auth,
        action="CANDIDATE_DOCUMENT_SET",
        resource_type="candidate",
        resource_id=cand.candidateId,
        details={"document": name, "status": status},
    )
    return {"candidate": serialize_candidate(cand), "notice": notice("Document updated", f"{name}: {status}.")}


def candidate_compliance_set(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    cand = load_candidate(db, auth.venueId, req_str(data, "candidateId"))
    check_version(cand, (data or {}).get("expectedVersion"))
    d = data or {}
    if "backgroundCheckCompleted" not in d and "trainingCompleted" not in d:
        raise ValidationError("Nothing to update")

    now = iso_utc_now()
    changes: dict[str, Any] = {}
    if "backgroundCheckCompleted" in d:
        done = parse_bool(d.get("backgroundCheckCompleted"))
        cand.backgroundCheckCompleted = done
        cand.backgroundCheckDate = (_date_or_empty(d.get("backgroundCheckDate"), "backgroundCheckDate") or now) if done else ""
        changes["backgroundCheckCompleted"] = done
    if "trainingCompleted" in d:
        done = parse_bool(d.get("trainingCompleted"))
        cand.trainingCompleted = done
        cand.trainingCompletionDate = (_date_or_empty(d.get("trainingCompletionDate"), "trainingCompletionDate") or now) if done else ""
        changes["trainingCompleted"] = done
    bump_version(cand, actor_id=auth.userId, at=now)

    append_audit(db, auth, action="CANDIDATE_COMPLIANCE_SET", resource_type="candidate", resource_id=cand.candidateId, details=changes, at=now)
    return {"candidate": serialize_candidate(cand), "notice": notice("Compliance updated", f"{cand.name} compliance flags saved.")}


def complete_onboarding(db, auth: AuthContext, cand: Candidate, *, at: str, session_id: str = "", user_id: str = "") -> dict[str, Any]:
    """
    Mark the candidate completed and upsert the matching staff member.

    Runs from CANDIDATE_COMPLETE_ONBOARDING and when the candidate's session
    finishes its last required step. Both writes land in the caller's
    transaction.
    """
    from_status, from_stage = complete_candidate(cand)
    bump_version(cand, actor_id=auth.userId, at=at)
    staff, created = upsert_staff_from_candidate(db, auth, cand, at=at, user_id=user_id)

    details = {
        "fromStatus": from_status.value,
        "fromStage": from_stage.value,
        "staffId": staff.staffId,
        "staffCreated": created,
        "sessionId": session_id,
    }
    append_audit(
        db,
        auth,
        action="CANDIDATE_COMPLETE_ONBOARDING",
        resource_type="candidate",
        resource_id=cand.candidateId,
        details=details,
        at=at,
    )
    append_activity(
        db,
        auth,
        kind="hire",
        message=f"{cand.name} joined the staff as {cand.position or 'staff'}",
        session_id=session_id,
        candidate_id=cand.candidateId,
        payload=details,
        at=at,
    )
    return {"staffId": staff.staffId, "staffCreated": created}


def candidate_complete_onboarding(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    cand = load_candidate(db, auth.venueId, req_str(data, "candidateId"))
    check_version(cand, (data or {}).get("expectedVersion"))
    user_id = req_str(data, "userId", required=False, max_len=200)

    sessions = db.execute(
        select(OnboardingSession.sessionId, OnboardingSession.status)
        .where(OnboardingSession.candidateId == cand.candidateId)
        .where(OnboardingSession.venueId == auth.venueId)
        .order_by(OnboardingSession.startedAt.desc())
    ).all()
    active = [sid for sid, st in sessions if st == SessionStatus.IN_PROGRESS.value]
    if active:
        raise ConflictError("Onboarding session is still in progress", details={"sessionId": active[0]})
    session_id = str(sessions[0][0]) if sessions else ""

    now = iso_utc_now()
    result = complete_onboarding(db, auth, cand, at=now, session_id=session_id, user_id=user_id)
    return {
        "candidate": serialize_candidate(cand),
        **result,
        "notice": notice("Onboarding complete", f"{cand.name} is now on the staff list."),
    }


def onboarding_stats(data, auth: AuthContext | None, db, cfg):
    """Venue dashboard numbers: candidates by status and stage, sessions and their average progress."""
    auth = require_auth(auth)

    by_status = {s.value: 0 for s in CandidateStatus}
    for status, n in db.execute(
        select(Candidate.status, func.count()).where(Candidate.venueId == auth.venueId).group_by(Candidate.status)
    ).all():
        by_status[str(status)] = int(n or 0)
    by_stage = {s.value: 0 for s in CandidateStage}
    for stage, n in db.execute(
        select(Candidate.stage, func.count()).where(Candidate.venueId == auth.venueId).group_by(Candidate.stage)
    ).all():
        by_stage[str(stage)] = int(n or 0)

    sessions = db.execute(
        select(OnboardingSession).where(OnboardingSession.venueId == auth.venueId).options(selectinload(OnboardingSession.steps))
    ).scalars().all()
    session_status = {s.value: 0 for s in SessionStatus}
    percents = []
    for ses in sessions:
        session_status[str(ses.status)] = session_status.get(str(ses.status), 0) + 1
        percents.append(progress(ses.steps, cfg.HOURS_PER_DAY)["percent"])

    active_staff = int(
        db.execute(
            select(func.count()).select_from(StaffMember).where(StaffMember.venueId == auth.venueId).where(StaffMember.status == "active")
        ).scalar_one()
        or 0
    )
    return {
        "candidates": {"total": sum(by_status.values()), "byStatus": by_status, "byStage": by_stage},
        "sessions": {
            "total": len(sessions),
            "byStatus": session_status,
            "averageProgress": round(sum(percents) / len(percents), 1) if percents else 0.0,
        },
        "activeStaff": active_staff,
    }
