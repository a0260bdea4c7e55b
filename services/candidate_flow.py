from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Optional

from models import Candidate, OnboardingSession, OnboardingSessionStep, OnboardingTemplate
from services.step_machine import SATISFYING_STATUSES, StepEvent, StepStatus, parse_status, set_status
from services.template_builder import copy_steps, find_step
from utils import ConflictError, InvalidStageTransitionError, ValidationError, iso_utc_now, new_uuid


class CandidateStage(str, Enum):
    APPLICATION = "application"
    INTERVIEW = "interview"
    BACKGROUND_CHECK = "background_check"
    DOCUMENTATION = "documentation"
    TRAINING = "training"
    COMPLETED = "completed"


class CandidateStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REJECTED = "rejected"


class EmploymentType(str, Enum):
    FULL_TIME = "full_time"
    PART_TIME = "part_time"
    CONTRACTOR = "contractor"
    VOLUNTEER = "volunteer"


class SessionStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


STAGE_ORDER: tuple[CandidateStage, ...] = tuple(CandidateStage)

# Only the immediate next stage is a plain move; anything else needs force.
STAGE_FORWARD: dict[CandidateStage, CandidateStage] = {
    STAGE_ORDER[i]: STAGE_ORDER[i + 1] for i in range(len(STAGE_ORDER) - 1)
}


def _parse(enum_cls, value: Any, field: str):
    raw = str(value.value if isinstance(value, Enum) else value or "").strip().lower()
    try:
        return enum_cls(raw)
    except ValueError:
        raise ValidationError(
            f"Invalid {field}: {raw or '(empty)'}",
            details={"field": field, "allowed": ", ".join(m.value for m in enum_cls)},
        )


def parse_stage(value: Any) -> CandidateStage:
    return _parse(CandidateStage, value, "stage")


def parse_candidate_status(value: Any) -> CandidateStatus:
    return _parse(CandidateStatus, value, "status")


def parse_employment_type(value: Any) -> EmploymentType:
    return _parse(EmploymentType, value, "employmentType")


def check_version(row, expected: Any) -> None:
    """Optional compare-and-swap: a supplied expectedVersion must match the stored version."""

    if expected is None or str(expected).strip() == "":
        return
    try:
        want = int(expected)
    except (TypeError, ValueError):
        raise ValidationError("expectedVersion must be an integer")
    have = int(row.version or 0)
    if want != have:
        raise ConflictError(
            "Record was changed by someone else; reload and retry",
            details={"expectedVersion": want, "currentVersion": have},
        )


def bump_version(row, *, actor_id: str, at: Optional[str] = None) -> None:
    row.version = int(row.version or 0) + 1
    row.updatedAt = at or iso_utc_now()
    row.updatedBy = actor_id


@dataclass(frozen=True)
class StageChange:
    candidateId: str
    fromStage: CandidateStage
    toStage: CandidateStage
    fromStatus: CandidateStatus
    toStatus: CandidateStatus
    forced: bool
    at: str

    def describe(self) -> str:
        verb = "forced to" if self.forced else "moved to"
        return f"Candidate {verb} {self.toStage.value.replace('_', ' ')}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "candidateId": self.candidateId,
            "fromStage": self.fromStage.value,
            "toStage": self.toStage.value,
            "fromStatus": self.fromStatus.value,
            "toStatus": self.toStatus.value,
            "forced": self.forced,
            "at": self.at,
        }


def advance_candidate_stage(candidate: Candidate, new_stage: Any, *, force: bool = False, at: Optional[str] = None) -> StageChange:
    """
    Move a candidate along application -> interview -> background_check ->
    documentation -> training -> completed.

    Only the next stage is allowed without `force`. Backward moves, skipping
    ahead, and any move of a rejected candidate (re-opening) need force=True.
    """

    current = parse_stage(candidate.stage or CandidateStage.APPLICATION)
    target = parse_stage(new_stage)
    status = parse_candidate_status(candidate.status or CandidateStatus.PENDING)

    if target is current:
        raise ValidationError(f"Candidate is already in stage {current.value}", details={"stage": current.value})

    if not force:
        if status is CandidateStatus.REJECTED:
            raise InvalidStageTransitionError(current.value, target.value, "Candidate is rejected; re-opening requires force")
        if STAGE_FORWARD.get(current) is not target:
            raise InvalidStageTransitionError(current.value, target.value)

    if target is CandidateStage.COMPLETED:
        new_status = CandidateStatus.COMPLETED
    elif status in (CandidateStatus.REJECTED, CandidateStatus.COMPLETED):
        new_status = CandidateStatus.IN_PROGRESS
    elif status is CandidateStatus.PENDING and target is not CandidateStage.APPLICATION:
        new_status = CandidateStatus.IN_PROGRESS
    else:
        new_status = status

    candidate.stage = target.value
    candidate.status = new_status.value
    if new_status is not CandidateStatus.REJECTED:
        candidate.rejectionReason = ""

    return StageChange(
        candidateId=str(candidate.candidateId or ""),
        fromStage=current,
        toStage=target,
        fromStatus=status,
        toStatus=new_status,
        forced=bool(force),
        at=at or iso_utc_now(),
    )


def reject_candidate(candidate: Candidate, reason: Any) -> CandidateStatus:
    """Mark rejected, keeping the candidate, its stage and any session. Returns the previous status."""

    text = str(reason or "").strip()
    if not text:
        raise ValidationError("Rejection reason is required", details={"field": "reason"})
    previous = parse_candidate_status(candidate.status or CandidateStatus.PENDING)
    if previous is CandidateStatus.REJECTED:
        raise ValidationError("Candidate is already rejected")
    candidate.status = CandidateStatus.REJECTED.value
    candidate.rejectionReason = text
    return previous


def complete_candidate(candidate: Candidate) -> tuple[CandidateStatus, CandidateStage]:
    """Close out a candidate whose onboarding is done. Returns the previous (status, stage)."""

    status = parse_candidate_status(candidate.status or CandidateStatus.PENDING)
    stage = parse_stage(candidate.stage or CandidateStage.APPLICATION)
    if status is CandidateStatus.REJECTED:
        raise ValidationError("Candidate is rejected; re-open before completing onboarding")
    candidate.status = CandidateStatus.COMPLETED.value
    candidate.stage = CandidateStage.COMPLETED.value
    return status, stage


def create_session(candidate: Candidate, template: OnboardingTemplate, *, actor_id: str = "", at: Optional[str] = None) -> OnboardingSession:
    if parse_candidate_status(candidate.status or CandidateStatus.PENDING) is CandidateStatus.REJECTED:
        raise ValidationError("Cannot start onboarding for a rejected candidate", details={"candidateId": str(candidate.candidateId)})
    if not list(template.steps):
        raise ValidationError("Template has no steps", details={"templateId": str(template.templateId)})

    now = at or iso_utc_now()
    session = OnboardingSession(
        sessionId=f"SES-{new_uuid()}",
        venueId=candidate.venueId,
        candidateId=candidate.candidateId,
        templateId=template.templateId or "",
        templateName=template.name or "",
        status=SessionStatus.IN_PROGRESS.value,
        startedAt=now,
        completedAt="",
        version=1,
        createdBy=actor_id,
        updatedAt=now,
        updatedBy=actor_id,
    )
    session.steps = copy_steps(template.steps, OnboardingSessionStep)
    for s in session.steps:
        s.updatedAt = now
        s.completedAt = ""
        s.completedBy = ""
    return session


def progress(steps: Iterable, hours_per_day: int = 8) -> dict[str, Any]:
    """Pure derivation from the step list; call on every read."""

    steps = list(steps)
    total = len(steps)
    completed = 0
    remaining_hours = 0.0
    for s in steps:
        if parse_status(s.status or StepStatus.PENDING) is StepStatus.COMPLETED:
            completed += 1
        else:
            remaining_hours += float(s.estimatedHours or 0)

    percent = round(completed / total * 100, 1) if total else 0.0
    return {
        "percent": percent,
        "completedSteps": completed,
        "totalSteps": total,
        "remainingHours": remaining_hours,
        "estimatedDaysRemaining": int(math.ceil(remaining_hours / float(hours_per_day))) if remaining_hours > 0 else 0,
    }


def derive_session_status(steps: Iterable) -> SessionStatus:
    steps = list(steps)
    if not steps:
        return SessionStatus.IN_PROGRESS
    for s in steps:
        st = parse_status(s.status or StepStatus.PENDING)
        if s.required:
            if st is not StepStatus.COMPLETED:
                return SessionStatus.IN_PROGRESS
        elif st not in SATISFYING_STATUSES:
            return SessionStatus.IN_PROGRESS
    return SessionStatus.COMPLETED


def transition_session_step(
    session: OnboardingSession,
    step_id: str,
    new_status: Any,
    *,
    candidate: Optional[Candidate] = None,
    actor_id: str = "",
    at: Optional[str] = None,
) -> StepEvent:
    """Apply a step transition inside a session and refresh the derived session status."""

    if candidate is not None and parse_candidate_status(candidate.status or CandidateStatus.PENDING) is CandidateStatus.REJECTED:
        raise ValidationError("Candidate is rejected; onboarding steps are frozen", details={"candidateId": str(candidate.candidateId)})

    now = at or iso_utc_now()
    step = find_step(session, step_id)
    event = set_status(step, new_status, session.steps, at=now)

    if event.changed:
        step.updatedAt = now
        if event.toStatus is StepStatus.COMPLETED:
            step.completedAt = now
            step.completedBy = actor_id

    derived = derive_session_status(session.steps)
    session.status = derived.value
    if derived is SessionStatus.COMPLETED:
        session.completedAt = session.completedAt or now
    else:
        session.completedAt = ""
    return event
