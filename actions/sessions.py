from __future__ import annotations

from typing import Any

from sqlalchemy import select

from actions.candidates import complete_onboarding, load_candidate
from actions.helpers import append_activity, append_audit, req_str, require_auth
from db import storage_step
from models import ActivityEntry, OnboardingSession
from services.candidate_flow import (
    SessionStatus,
    bump_version,
    check_version,
    create_session,
    progress,
    transition_session_step,
)
from services.template_builder import get_template, serialize_step
from utils import AuthContext, ConflictError, NotFoundError, ValidationError, clamp_int, iso_utc_now, notice


def load_session(db, venue_id: str, session_id: str) -> OnboardingSession:
    row = db.execute(
        select(OnboardingSession).where(OnboardingSession.sessionId == session_id).where(OnboardingSession.venueId == venue_id)
    ).scalar_one_or_none()
    if not row:
        raise NotFoundError("Onboarding session not found", details={"sessionId": session_id})
    return row


def serialize_session(s: OnboardingSession, cfg, *, include_steps: bool = True) -> dict[str, Any]:
    out = {
        "id": str(s.sessionId or ""),
        "venueId": str(s.venueId or ""),
        "candidateId": str(s.candidateId or ""),
        "templateId": str(s.templateId or ""),
        "templateName": str(s.templateName or ""),
        "status": str(s.status or ""),
        "startedAt": str(s.startedAt or ""),
        "completedAt": str(s.completedAt or ""),
        "version": int(s.version or 0),
        "progress": progress(s.steps, cfg.HOURS_PER_DAY),
    }
    if include_steps:
        out["steps"] = [serialize_step(st) for st in s.steps]
    return out


def session_create(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    cand = load_candidate(db, auth.venueId, req_str(data, "candidateId"))
    tpl = get_template(db, req_str(data, "templateId"), venue_id=auth.venueId)

    active = db.execute(
        select(OnboardingSession.sessionId)
        .where(OnboardingSession.candidateId == cand.candidateId)
        .where(OnboardingSession.status == SessionStatus.IN_PROGRESS.value)
    ).first()
    if active:
        raise ConflictError("Candidate already has an onboarding session in progress", details={"sessionId": str(active[0])})

    now = iso_utc_now()
    ses = create_session(cand, tpl, actor_id=auth.userId, at=now)
    with storage_step(db, "session_insert"):
        db.add(ses)
    with storage_step(db, "template_use_count"):
        tpl.useCount = int(tpl.useCount or 0) + 1
        tpl.lastUsedAt = now

    details = {"candidateId": cand.candidateId, "templateId": tpl.templateId, "stepCount": len(ses.steps)}
    append_audit(db, auth, action="SESSION_CREATE", resource_type="onboarding_session", resource_id=ses.sessionId, details=details, at=now)
    append_activity(
        db,
        auth,
        kind="session",
        message=f"Onboarding started for {cand.name} ({tpl.name})",
        session_id=ses.sessionId,
        candidate_id=cand.candidateId,
        payload=details,
        at=now,
    )
    return {
        "session": serialize_session(ses, cfg),
        "notice": notice("Onboarding started", f"{cand.name} is onboarding with {tpl.name}."),
    }


def session_get(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    ses = load_session(db, auth.venueId, req_str(data, "sessionId"))
    return {"session": serialize_session(ses, cfg)}


def session_list(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    stmt = select(OnboardingSession).where(OnboardingSession.venueId == auth.venueId)
    candidate_id = req_str(data, "candidateId", required=False)
    if candidate_id:
        stmt = stmt.where(OnboardingSession.candidateId == candidate_id)
    status = req_str(data, "status", required=False).lower()
    if status:
        if status not in {s.value for s in SessionStatus}:
            raise ValidationError(f"Invalid status: {status}")
        stmt = stmt.where(OnboardingSession.status == status)
    limit = clamp_int((data or {}).get("limit"), default=50, min_v=1, max_v=200)
    rows = db.execute(stmt.order_by(OnboardingSession.startedAt.desc()).limit(limit)).scalars().all()
    return {"items": [serialize_session(s, cfg, include_steps=False) for s in rows]}


def session_progress(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    ses = load_session(db, auth.venueId, req_str(data, "sessionId"))
    return {"sessionId": ses.sessionId, "status": ses.status, "progress": progress(ses.steps, cfg.HOURS_PER_DAY)}


def step_status_set(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    ses = load_session(db, auth.venueId, req_str(data, "sessionId"))
    check_version(ses, (data or {}).get("expectedVersion"))
    cand = load_candidate(db, auth.venueId, ses.candidateId)
    step_id = req_str(data, "stepId")
    status = req_str(data, "status")
    note = req_str(data, "notes", required=False, max_len=2000)

    before = ses.status
    now = iso_utc_now()
    hired: dict[str, Any] = {}
    with storage_step(db, "step_status_write"):
        event = transition_session_step(ses, step_id, status, candidate=cand, actor_id=auth.userId, at=now)
        if note:
            for st in ses.steps:
                if st.stepId == event.stepId:
                    st.notes = note
        bump_version(ses, actor_id=auth.userId, at=now)

    append_audit(
        db,
        auth,
        action="STEP_STATUS_SET",
        resource_type="onboarding_session",
        resource_id=ses.sessionId,
        details=event.to_dict(),
        at=now,
    )
    append_activity(
        db,
        auth,
        kind="step",
        message=event.describe(),
        session_id=ses.sessionId,
        candidate_id=ses.candidateId,
        payload=event.to_dict(),
        at=now,
    )
    if before != ses.status and ses.status == SessionStatus.COMPLETED.value:
        append_audit(db, auth, action="SESSION_COMPLETE", resource_type="onboarding_session", resource_id=ses.sessionId, at=now)
        append_activity(
            db,
            auth,
            kind="session",
            message=f"Onboarding completed for {cand.name}",
            session_id=ses.sessionId,
            candidate_id=ses.candidateId,
            at=now,
        )
        hired = complete_onboarding(db, auth, cand, at=now, session_id=ses.sessionId)

    return {
        "event": event.to_dict(),
        "session": serialize_session(ses, cfg),
        **hired,
        "notice": notice("Step updated", event.describe()),
    }


def activity_list(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    stmt = select(ActivityEntry).where(ActivityEntry.venueId == auth.venueId)
    session_id = req_str(data, "sessionId", required=False)
    if session_id:
        stmt = stmt.where(ActivityEntry.sessionId == session_id)
    candidate_id = req_str(data, "candidateId", required=False)
    if candidate_id:
        stmt = stmt.where(ActivityEntry.candidateId == candidate_id)
    limit = clamp_int((data or {}).get("limit"), default=20, min_v=1, max_v=200)

    rows = db.execute(stmt.order_by(ActivityEntry.at.desc(), ActivityEntry.activityId.desc()).limit(limit)).scalars().all()
    return {
        "items": [
            {
                "id": str(r.activityId or ""),
                "kind": str(r.kind or ""),
                "message": str(r.message or ""),
                "sessionId": str(r.sessionId or ""),
                "candidateId": str(r.candidateId or ""),
                "payload": dict(r.payload or {}),
                "at": str(r.at or ""),
                "actorUserId": str(r.actorUserId or ""),
            }
            for r in rows
        ]
    }
