from __future__ import annotations

import pytest

from models import Candidate, OnboardingSessionStep, OnboardingTemplate, OnboardingTemplateStep
from services.candidate_flow import (
    advance_candidate_stage,
    check_version,
    create_session,
    derive_session_status,
    progress,
    reject_candidate,
    transition_session_step,
)
from utils import ConflictError, DependencyNotSatisfiedError, InvalidStageTransitionError, ValidationError


def _candidate(**kw) -> Candidate:
    values = dict(candidateId="CAN-1", venueId="venue-1", name="Sarah Johnson", status="pending", stage="application",
                  rejectionReason="", version=1)
    values.update(kw)
    return Candidate(**values)


def _template() -> OnboardingTemplate:
    tpl = OnboardingTemplate(templateId="TPL-1", venueId="venue-1", name="Sound Engineer", department="Technical", position="Sound Engineer")
    fields = dict(catalogId="", description="", stepType="training", category="admin", required=True, assignedTo="",
                  dueDate="", status="pending", completionCriteria=[], documents=[], instructions="", notes="")
    tpl.steps = [
        OnboardingTemplateStep(stepId="a", title="Welcome", estimatedHours=3, dependsOn=[], orderNo=0, **fields),
        OnboardingTemplateStep(stepId="b", title="Equipment", estimatedHours=16, dependsOn=["a"], orderNo=1, **fields),
        OnboardingTemplateStep(stepId="c", title="Review", estimatedHours=5, dependsOn=["b"], orderNo=2, **fields),
    ]
    return tpl


def test_forward_moves_one_stage_at_a_time():
    cand = _candidate()
    change = advance_candidate_stage(cand, "interview")
    assert (cand.stage, cand.status) == ("interview", "in_progress")
    assert change.fromStatus.value == "pending" and not change.forced

    with pytest.raises(InvalidStageTransitionError) as exc:
        advance_candidate_stage(cand, "training")
    assert exc.value.details == {"from": "interview", "to": "training"}
    assert cand.stage == "interview"


def test_backward_move_requires_force():
    cand = _candidate(stage="documentation", status="in_progress")
    with pytest.raises(InvalidStageTransitionError):
        advance_candidate_stage(cand, "interview")

    change = advance_candidate_stage(cand, "interview", force=True)
    assert change.forced
    assert cand.stage == "interview"
    assert change.describe() == "Candidate forced to interview"


def test_same_stage_is_a_validation_error():
    with pytest.raises(ValidationError):
        advance_candidate_stage(_candidate(), "application")


def test_reaching_completed_stage_completes_candidate():
    cand = _candidate(stage="training", status="in_progress")
    advance_candidate_stage(cand, "completed")
    assert cand.status == "completed"


def test_rejected_candidate_needs_force_to_reopen():
    cand = _candidate(stage="interview", status="in_progress")
    assert reject_candidate(cand, "No-show at interview").value == "in_progress"
    assert (cand.status, cand.rejectionReason, cand.stage) == ("rejected", "No-show at interview", "interview")

    with pytest.raises(InvalidStageTransitionError):
        advance_candidate_stage(cand, "background_check")

    advance_candidate_stage(cand, "background_check", force=True)
    assert (cand.status, cand.rejectionReason) == ("in_progress", "")


def test_reject_requires_reason_and_is_not_repeatable():
    cand = _candidate()
    with pytest.raises(ValidationError):
        reject_candidate(cand, "  ")
    reject_candidate(cand, "Position filled")
    with pytest.raises(ValidationError):
        reject_candidate(cand, "Again")


def test_check_version():
    cand = _candidate(version=3)
    check_version(cand, None)
    check_version(cand, "")
    check_version(cand, 3)
    with pytest.raises(ConflictError) as exc:
        check_version(cand, 2)
    assert exc.value.details == {"expectedVersion": 2, "currentVersion": 3}


def test_create_session_copies_steps():
    tpl = _template()
    ses = create_session(_candidate(), tpl, actor_id="admin-1", at="2024-03-01T09:00:00.000Z")
    assert ses.sessionId.startswith("SES-")
    assert ses.status == "in_progress"
    assert ses.startedAt == "2024-03-01T09:00:00.000Z"
    assert all(isinstance(s, OnboardingSessionStep) for s in ses.steps)
    assert [s.title for s in ses.steps] == ["Welcome", "Equipment", "Review"]
    assert ses.steps[1].dependsOn == [ses.steps[0].stepId]
    assert {s.stepId for s in ses.steps}.isdisjoint({"a", "b", "c"})


def test_create_session_rejects_rejected_candidate_and_empty_template():
    with pytest.raises(ValidationError):
        create_session(_candidate(status="rejected"), _template())
    empty = _template()
    empty.steps = []
    with pytest.raises(ValidationError):
        create_session(_candidate(), empty)


def test_progress_is_derived_and_idempotent():
    ses = create_session(_candidate(), _template())
    before = progress(ses.steps)
    assert before == {"percent": 0.0, "completedSteps": 0, "totalSteps": 3, "remainingHours": 24.0, "estimatedDaysRemaining": 3}

    first = ses.steps[0].stepId
    transition_session_step(ses, first, "completed", actor_id="u1")
    p1 = progress(ses.steps)
    p2 = progress(ses.steps)
    assert p1 == p2
    assert p1["percent"] == 33.3
    assert p1["remainingHours"] == 21.0
    assert p1["estimatedDaysRemaining"] == 3


def test_progress_of_empty_list():
    assert progress([])["percent"] == 0.0


def test_transition_gates_on_dependencies_and_completes_session():
    ses = create_session(_candidate(), _template())
    a, b, c = ses.steps

    with pytest.raises(DependencyNotSatisfiedError):
        transition_session_step(ses, c.stepId, "completed")

    for step in (a, b, c):
        event = transition_session_step(ses, step.stepId, "completed", actor_id="u1", at="2024-03-02T10:00:00.000Z")
        assert event.changed
    assert ses.status == "completed"
    assert ses.completedAt == "2024-03-02T10:00:00.000Z"
    assert c.completedBy == "u1"
    assert progress(ses.steps)["percent"] == 100.0


def test_optional_step_can_be_skipped_for_completion():
    ses = create_session(_candidate(), _template())
    a, b, c = ses.steps
    c.required = False
    transition_session_step(ses, a.stepId, "completed")
    transition_session_step(ses, b.stepId, "completed")
    assert derive_session_status(ses.steps).value == "in_progress"
    transition_session_step(ses, c.stepId, "skipped")
    assert ses.status == "completed"


def test_rejected_candidate_freezes_steps():
    ses = create_session(_candidate(), _template())
    cand = _candidate(status="rejected")
    with pytest.raises(ValidationError):
        transition_session_step(ses, ses.steps[0].stepId, "in_progress", candidate=cand)
    assert ses.steps[0].status == "pending"
