from __future__ import annotations

import math
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import inspect, select, update

from db import storage_step
from models import OnboardingTemplate, OnboardingTemplateStep
from services.step_catalog import StepTemplate
from services.step_machine import StepStatus, find_cycle, parse_category, parse_step_type, unknown_dependencies
from utils import NotFoundError, ValidationError, iso_utc_now, new_uuid, str_list


EDITABLE_STEP_FIELDS = {
    "title",
    "description",
    "category",
    "type",
    "estimatedHours",
    "instructions",
    "assignedTo",
    "required",
    "dueDate",
    "dependsOn",
    "completionCriteria",
    "documents",
    "notes",
}

_STEP_COPY_FIELDS = (
    "catalogId",
    "title",
    "description",
    "stepType",
    "category",
    "required",
    "estimatedHours",
    "assignedTo",
    "dueDate",
    "instructions",
    "notes",
)


def new_step_id() -> str:
    return f"STEP-{new_uuid()}"


def new_template_id() -> str:
    return f"TPL-{new_uuid()}"


def _positive_hours(value: Any) -> float:
    try:
        hours = float(value)
    except (TypeError, ValueError):
        raise ValidationError("estimatedHours must be a number", details={"field": "estimatedHours"})
    if not math.isfinite(hours) or hours <= 0:
        raise ValidationError("estimatedHours must be positive", details={"field": "estimatedHours"})
    return hours


def find_step(template, step_id: str):
    sid = str(step_id or "").strip()
    for s in template.steps:
        if str(s.stepId) == sid:
            return s
    raise NotFoundError(f"Step not found: {sid}", details={"stepId": sid})


def add_step(template: OnboardingTemplate, step_template: StepTemplate) -> OnboardingTemplateStep:
    """Append a pending, required, dependency-free step copied from a catalog entry."""

    step = OnboardingTemplateStep(
        stepId=new_step_id(),
        catalogId=step_template.id,
        title=step_template.title,
        description=step_template.description,
        stepType=step_template.type.value,
        category=step_template.category.value,
        required=True,
        estimatedHours=float(step_template.estimatedHours),
        assignedTo="",
        dependsOn=[],
        dueDate="",
        status=StepStatus.PENDING.value,
        completionCriteria=[],
        documents=[],
        instructions="",
        notes="",
        orderNo=len(template.steps),
    )
    template.steps.append(step)
    return step


def update_step(template: OnboardingTemplate, step_id: str, patch: dict[str, Any]) -> OnboardingTemplateStep:
    step = find_step(template, step_id)
    patch = dict(patch or {})

    unknown = sorted(set(patch) - EDITABLE_STEP_FIELDS)
    if unknown:
        raise ValidationError(f"Fields not editable: {', '.join(unknown)}", details={"fields": unknown})

    # Validate everything before touching the step.
    changes: dict[str, Any] = {}
    if "title" in patch:
        title = str(patch["title"] or "").strip()
        if not title:
            raise ValidationError("Step title is required", details={"field": "title"})
        changes["title"] = title
    if "description" in patch:
        changes["description"] = str(patch["description"] or "").strip()
    if "category" in patch:
        changes["category"] = parse_category(patch["category"]).value
    if "type" in patch:
        changes["stepType"] = parse_step_type(patch["type"]).value
    if "estimatedHours" in patch:
        changes["estimatedHours"] = _positive_hours(patch["estimatedHours"])
    if "instructions" in patch:
        changes["instructions"] = str(patch["instructions"] or "").strip()
    if "assignedTo" in patch:
        changes["assignedTo"] = str(patch["assignedTo"] or "").strip()
    if "required" in patch:
        changes["required"] = bool(patch["required"])
    if "dueDate" in patch:
        changes["dueDate"] = str(patch["dueDate"] or "").strip()
    if "notes" in patch:
        changes["notes"] = str(patch["notes"] or "").strip()
    if "completionCriteria" in patch:
        changes["completionCriteria"] = str_list(patch["completionCriteria"])
    if "documents" in patch:
        changes["documents"] = str_list(patch["documents"])
    if "dependsOn" in patch:
        deps = str_list(patch["dependsOn"])
        known = {str(s.stepId) for s in template.steps}
        missing = [d for d in deps if d not in known]
        if missing:
            raise ValidationError("dependsOn references unknown steps", details={"unknown": missing})
        if str(step.stepId) in deps:
            raise ValidationError("A step cannot depend on itself", details={"cycle": [str(step.stepId), str(step.stepId)]})
        changes["dependsOn"] = deps

    for k, v in changes.items():
        setattr(step, k, v)
    return step


def remove_step(template: OnboardingTemplate, step_id: str, *, db=None) -> list[str]:
    """
    Remove a step and strip its id from every other step's dependsOn.

    With a db session the two writes are flushed separately, dependency
    cleanup first; a failure is reported as StorageError naming the sub-step
    ("dependency_cleanup" or "step_delete"). Returns the ids of steps whose
    dependencies were rewritten.
    """

    step = find_step(template, step_id)
    sid = str(step.stepId)

    cleaned: list[str] = []
    with _maybe_storage_step(db, "dependency_cleanup"):
        for other in template.steps:
            deps = [str(d) for d in (other.dependsOn or [])]
            if sid in deps:
                other.dependsOn = [d for d in deps if d != sid]
                cleaned.append(str(other.stepId))

    with _maybe_storage_step(db, "step_delete"):
        template.steps.remove(step)
        for i, s in enumerate(template.steps):
            s.orderNo = i

    return cleaned


class _NullStep:
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def _maybe_storage_step(db, sub_step: str):
    if db is None:
        return _NullStep()
    return storage_step(db, sub_step)


def derive_estimated_days(steps: Iterable, hours_per_day: int = 8) -> int:
    total = sum(float(s.estimatedHours or 0) for s in steps)
    return int(math.ceil(total / float(hours_per_day))) if total > 0 else 0


def validate_template(template: OnboardingTemplate) -> None:
    missing = [f for f in ("name", "department", "position") if not str(getattr(template, f, "") or "").strip()]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}", details={"missing": missing})

    steps = list(template.steps)
    seen: set[str] = set()
    for s in steps:
        sid = str(s.stepId or "")
        if not sid or sid in seen:
            raise ValidationError("Step ids must be present and unique", details={"stepId": sid})
        seen.add(sid)
        if not str(s.title or "").strip():
            raise ValidationError("Step title is required", details={"stepId": sid, "field": "title"})
        parse_step_type(s.stepType)
        parse_category(s.category)
        _positive_hours(s.estimatedHours)

    unknown = unknown_dependencies(steps)
    if unknown:
        raise ValidationError("dependsOn references steps outside this template", details={"unknownDependencies": unknown})

    cycle = find_cycle(steps)
    if cycle:
        raise ValidationError(f"Dependency cycle: {' -> '.join(cycle)}", details={"cycle": cycle})


def save_template(db, template: OnboardingTemplate, *, actor_id: str, hours_per_day: int = 8) -> OnboardingTemplate:
    """Validate, assign an id when new, and persist (insert or overwrite)."""

    validate_template(template)

    now = iso_utc_now()
    is_new = inspect(template).transient
    if not str(template.templateId or "").strip():
        template.templateId = new_template_id()
    if is_new:
        template.createdAt = now
        template.createdBy = actor_id

    template.name = str(template.name).strip()
    template.department = str(template.department).strip()
    template.position = str(template.position).strip()
    if int(template.estimatedDays or 0) <= 0:
        template.estimatedDays = derive_estimated_days(template.steps, hours_per_day)
    template.useCount = int(template.useCount or 0)
    template.isDefault = bool(template.isDefault)
    template.updatedAt = now
    template.updatedBy = actor_id
    for i, s in enumerate(template.steps):
        s.orderNo = i

    if template.isDefault:
        with storage_step(db, "default_flag_reset"):
            db.execute(
                update(OnboardingTemplate)
                .where(OnboardingTemplate.venueId == template.venueId)
                .where(OnboardingTemplate.department == template.department)
                .where(OnboardingTemplate.templateId != template.templateId)
                .values(isDefault=False)
            )

    with storage_step(db, "template_save"):
        if is_new:
            db.add(template)
        elif inspect(template).detached:
            template = db.merge(template)
    return template


def copy_steps(src_steps: Iterable, factory: Callable[..., Any]) -> list:
    """Deep-copy steps with fresh ids; dependsOn is remapped onto the new ids, status reset to pending."""

    src_steps = list(src_steps)
    id_map = {str(s.stepId): new_step_id() for s in src_steps}
    out = []
    for i, s in enumerate(src_steps):
        values = {f: getattr(s, f) for f in _STEP_COPY_FIELDS}
        out.append(
            factory(
                stepId=id_map[str(s.stepId)],
                dependsOn=[id_map[str(d)] for d in (s.dependsOn or []) if str(d) in id_map],
                completionCriteria=list(s.completionCriteria or []),
                documents=list(s.documents or []),
                status=StepStatus.PENDING.value,
                orderNo=i,
                **values,
            )
        )
    return out


def clone_template(template: OnboardingTemplate, *, name: Optional[str] = None) -> OnboardingTemplate:
    clone = OnboardingTemplate(
        templateId=new_template_id(),
        venueId=template.venueId,
        name=str(name).strip() if name else template.name,
        department=template.department,
        position=template.position,
        description=template.description,
        estimatedDays=int(template.estimatedDays or 0),
        requiredDocuments=list(template.requiredDocuments or []),
        assignees=list(template.assignees or []),
        tags=list(template.tags or []),
        isDefault=False,
        useCount=0,
        lastUsedAt="",
    )
    clone.steps = copy_steps(template.steps, OnboardingTemplateStep)
    return clone


def get_template(db, template_id: str, *, venue_id: str = "") -> OnboardingTemplate:
    tid = str(template_id or "").strip()
    if not tid:
        raise ValidationError("Missing templateId")
    q = select(OnboardingTemplate).where(OnboardingTemplate.templateId == tid)
    if venue_id:
        q = q.where(OnboardingTemplate.venueId == venue_id)
    row = db.execute(q).scalar_one_or_none()
    if not row:
        raise NotFoundError("Template not found", details={"templateId": tid})
    return row


def serialize_step(s) -> dict[str, Any]:
    out = {
        "id": str(s.stepId or ""),
        "catalogId": str(s.catalogId or ""),
        "title": str(s.title or ""),
        "description": str(s.description or ""),
        "type": str(s.stepType or ""),
        "category": str(s.category or ""),
        "required": bool(s.required),
        "estimatedHours": float(s.estimatedHours or 0),
        "assignedTo": str(s.assignedTo or ""),
        "dependsOn": list(s.dependsOn or []),
        "dueDate": str(s.dueDate or ""),
        "status": str(s.status or ""),
        "completionCriteria": list(s.completionCriteria or []),
        "documents": list(s.documents or []),
        "instructions": str(s.instructions or ""),
        "notes": str(s.notes or ""),
        "order": int(s.orderNo or 0),
    }
    if hasattr(s, "completedAt"):
        out["completedAt"] = str(s.completedAt or "")
        out["completedBy"] = str(s.completedBy or "")
    return out


def serialize_template(t: OnboardingTemplate, *, include_steps: bool = True) -> dict[str, Any]:
    out = {
        "id": str(t.templateId or ""),
        "venueId": str(t.venueId or ""),
        "name": str(t.name or ""),
        "department": str(t.department or ""),
        "position": str(t.position or ""),
        "description": str(t.description or ""),
        "estimatedDays": int(t.estimatedDays or 0),
        "requiredDocuments": list(t.requiredDocuments or []),
        "assignees": list(t.assignees or []),
        "tags": list(t.tags or []),
        "isDefault": bool(t.isDefault),
        "useCount": int(t.useCount or 0),
        "lastUsedAt": str(t.lastUsedAt or ""),
        "stepCount": len(t.steps),
        "updatedAt": str(t.updatedAt or ""),
    }
    if include_steps:
        out["steps"] = [serialize_step(s) for s in t.steps]
    return out
