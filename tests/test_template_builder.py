from __future__ import annotations

import pytest
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from db import SessionLocal
from models import OnboardingTemplate, OnboardingTemplateStep
from services.step_catalog import get_step_template, list_available
from services.template_builder import (
    add_step,
    clone_template,
    derive_estimated_days,
    get_template,
    remove_step,
    save_template,
    update_step,
    validate_template,
)
from utils import NotFoundError, StorageError, ValidationError


def _template(**kw) -> OnboardingTemplate:
    values = dict(templateId="", venueId="venue-1", name="Bar Staff", department="Bar", position="Bartender",
                  description="", estimatedDays=0, requiredDocuments=[], assignees=[], tags=[], isDefault=False,
                  useCount=0, lastUsedAt="")
    values.update(kw)
    tpl = OnboardingTemplate(**values)
    tpl.steps = []
    return tpl


def _with_steps(tpl: OnboardingTemplate, *ids: str) -> list[OnboardingTemplateStep]:
    steps = []
    for sid in ids:
        step = add_step(tpl, get_step_template("welcome"))
        step.stepId = sid
        steps.append(step)
    return steps


def test_catalog_lists_seven_entries():
    ids = [st.id for st in list_available()]
    assert ids == ["welcome", "equipment", "safety", "systems", "shadow", "review", "documentation"]
    assert get_step_template("nope") is None
    assert get_step_template("safety").to_dict()["category"] == "admin"


def test_add_step_copies_catalog_entry():
    tpl = _template()
    step = add_step(tpl, get_step_template("equipment"))
    assert step.stepId.startswith("STEP-")
    assert step.catalogId == "equipment"
    assert step.title == "Equipment Training"
    assert step.estimatedHours == 8.0
    assert step.status == "pending"
    assert step.required is True
    assert step.dependsOn == []
    assert tpl.steps == [step]


def test_update_step_rejects_unknown_fields_without_mutating():
    tpl = _template()
    (a,) = _with_steps(tpl, "a")
    with pytest.raises(ValidationError) as exc:
        update_step(tpl, "a", {"title": "New", "status": "completed"})
    assert exc.value.details["fields"] == ["status"]
    assert a.title == "Welcome & Orientation"


def test_update_step_validates_values_before_mutating():
    tpl = _template()
    (a,) = _with_steps(tpl, "a")
    with pytest.raises(ValidationError):
        update_step(tpl, "a", {"title": "New", "estimatedHours": 0})
    assert a.title == "Welcome & Orientation"

    update_step(tpl, "a", {"title": "Venue Tour", "estimatedHours": "2.5", "instructions": "Meet at the front desk"})
    assert (a.title, a.estimatedHours, a.instructions) == ("Venue Tour", 2.5, "Meet at the front desk")


def test_update_step_dependency_checks():
    tpl = _template()
    _with_steps(tpl, "a", "b")
    with pytest.raises(ValidationError):
        update_step(tpl, "b", {"dependsOn": ["ghost"]})
    with pytest.raises(ValidationError) as exc:
        update_step(tpl, "b", {"dependsOn": ["b"]})
    assert exc.value.details["cycle"] == ["b", "b"]

    update_step(tpl, "b", {"dependsOn": ["a"]})
    assert tpl.steps[1].dependsOn == ["a"]


def test_update_missing_step_is_not_found():
    with pytest.raises(NotFoundError):
        update_step(_template(), "missing", {"title": "x"})


def test_remove_step_cleans_dangling_dependencies():
    tpl = _template()
    a, b, c = _with_steps(tpl, "a", "b", "c")
    c.dependsOn = ["a", "b"]

    cleaned = remove_step(tpl, "a")
    assert cleaned == ["c"]
    assert [s.stepId for s in tpl.steps] == ["b", "c"]
    assert c.dependsOn == ["b"]
    assert [s.orderNo for s in tpl.steps] == [0, 1]


def test_validate_reports_missing_fields():
    tpl = _template(name="", position=" ")
    with pytest.raises(ValidationError) as exc:
        validate_template(tpl)
    assert exc.value.details["missing"] == ["name", "position"]


def test_validate_reports_cycle():
    tpl = _template()
    a, b, c = _with_steps(tpl, "a", "b", "c")
    a.dependsOn = ["c"]
    b.dependsOn = ["a"]
    c.dependsOn = ["b"]
    with pytest.raises(ValidationError) as exc:
        validate_template(tpl)
    cycle = exc.value.details["cycle"]
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a", "b", "c"}


def test_validate_reports_unknown_dependencies():
    tpl = _template()
    (a,) = _with_steps(tpl, "a")
    a.dependsOn = ["elsewhere"]
    with pytest.raises(ValidationError) as exc:
        validate_template(tpl)
    assert exc.value.details["unknownDependencies"] == {"a": ["elsewhere"]}


def test_derive_estimated_days_rounds_up():
    tpl = _template()
    steps = _with_steps(tpl, "a", "b", "c")  # 3h each
    assert derive_estimated_days(steps, 8) == 2
    assert derive_estimated_days([], 8) == 0


def test_save_assigns_id_and_derives_days(app_client):
    tpl = _template()
    _with_steps(tpl, "a", "b", "c")
    with SessionLocal() as db:
        saved = save_template(db, tpl, actor_id="admin-1")
        db.commit()
        assert saved.templateId.startswith("TPL-")
        assert saved.estimatedDays == 2
        assert saved.createdBy == "admin-1"

    with SessionLocal() as db:
        loaded = get_template(db, saved.templateId, venue_id="venue-1")
        assert [s.stepId for s in loaded.steps] == ["a", "b", "c"]
        with pytest.raises(NotFoundError):
            get_template(db, saved.templateId, venue_id="venue-2")


def test_save_rejects_cycle_and_persists_nothing(app_client):
    tpl = _template()
    a, b = _with_steps(tpl, "a", "b")
    a.dependsOn = ["b"]
    b.dependsOn = ["a"]
    with SessionLocal() as db:
        with pytest.raises(ValidationError) as exc:
            save_template(db, tpl, actor_id="admin-1")
        assert "cycle" in exc.value.details
        assert db.execute(select(OnboardingTemplate)).scalars().all() == []


def test_single_default_per_department(app_client):
    with SessionLocal() as db:
        first = _template(name="One", isDefault=True)
        _with_steps(first, "a1")
        save_template(db, first, actor_id="admin-1")
        other_dept = _template(name="Door", department="Security", isDefault=True)
        _with_steps(other_dept, "d1")
        save_template(db, other_dept, actor_id="admin-1")
        second = _template(name="Two", isDefault=True)
        _with_steps(second, "b1")
        save_template(db, second, actor_id="admin-1")
        db.commit()

    with SessionLocal() as db:
        rows = {t.name: t.isDefault for t in db.execute(select(OnboardingTemplate)).scalars()}
    assert rows == {"One": False, "Two": True, "Door": True}


def test_clone_gets_fresh_ids_and_remapped_dependencies():
    tpl = _template(templateId="TPL-src", isDefault=True, useCount=7)
    a, b = _with_steps(tpl, "a", "b")
    b.dependsOn = ["a"]
    b.status = "completed"

    clone = clone_template(tpl, name="Bar Staff v2")
    assert clone.templateId.startswith("TPL-") and clone.templateId != "TPL-src"
    assert clone.name == "Bar Staff v2"
    assert clone.isDefault is False
    assert clone.useCount == 0
    new_a, new_b = clone.steps
    assert {new_a.stepId, new_b.stepId}.isdisjoint({"a", "b"})
    assert new_b.dependsOn == [new_a.stepId]
    assert new_b.status == "pending"
    assert b.dependsOn == ["a"]


def _persisted_template(db) -> OnboardingTemplate:
    tpl = _template()
    a, b, c = _with_steps(tpl, "a", "b", "c")
    c.dependsOn = ["a", "b"]
    saved = save_template(db, tpl, actor_id="admin-1")
    db.commit()
    return saved


def test_remove_step_names_failed_delete_substep(app_client, monkeypatch):
    with SessionLocal() as db:
        tpl = _persisted_template(db)
        real_flush = db.flush
        calls = []

        def flaky_flush(*args, **kwargs):
            calls.append(1)
            if len(calls) == 2:
                raise SQLAlchemyError("disk full")
            return real_flush(*args, **kwargs)

        monkeypatch.setattr(db, "flush", flaky_flush)
        with pytest.raises(StorageError) as exc:
            remove_step(tpl, "a", db=db)
        assert exc.value.details == {"subStep": "step_delete"}
        assert isinstance(exc.value.__cause__, SQLAlchemyError)


def test_remove_step_names_failed_cleanup_substep(app_client, monkeypatch):
    with SessionLocal() as db:
        tpl = _persisted_template(db)

        def broken_flush(*args, **kwargs):
            raise SQLAlchemyError("connection reset")

        monkeypatch.setattr(db, "flush", broken_flush)
        with pytest.raises(StorageError) as exc:
            remove_step(tpl, "a", db=db)
        assert exc.value.sub_step == "dependency_cleanup"
        assert [s.stepId for s in tpl.steps] == ["a", "b", "c"]


def test_remove_step_persists_with_db(app_client):
    with SessionLocal() as db:
        tpl = _persisted_template(db)
        assert remove_step(tpl, "a", db=db) == ["c"]
        db.commit()
        tid = tpl.templateId

    with SessionLocal() as db:
        loaded = get_template(db, tid)
        assert [s.stepId for s in loaded.steps] == ["b", "c"]
        assert loaded.steps[1].dependsOn == ["b"]
