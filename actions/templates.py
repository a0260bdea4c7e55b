from __future__ import annotations

from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.orm import selectinload

from actions.helpers import append_audit, req_str, require_auth
from db import storage_step
from models import OnboardingTemplate, OnboardingTemplateStep
from services import step_catalog
from services.default_templates import DEFAULT_TEMPLATES, build_default_template
from services.template_builder import (
    add_step,
    clone_template,
    get_template,
    new_step_id,
    remove_step,
    save_template,
    serialize_template,
    update_step,
    validate_template,
)
from utils import AuthContext, NotFoundError, ValidationError, clamp_int, iso_utc_now, notice, parse_bool, str_list


def _step_from_payload(sp: dict[str, Any], row: OnboardingTemplateStep, *, step_id: str, order_no: int) -> OnboardingTemplateStep:
    catalog_id = str(sp.get("catalogId") or "").strip()
    base = step_catalog.get_step_template(catalog_id) if catalog_id else None
    if catalog_id and base is None:
        raise NotFoundError(f"Unknown catalog step: {catalog_id}", details={"catalogId": catalog_id})

    row.stepId = step_id
    row.catalogId = catalog_id
    row.title = str(sp.get("title") or (base.title if base else "")).strip()
    row.description = str(sp.get("description") or (base.description if base else "")).strip()
    row.stepType = str(sp.get("type") or (base.type.value if base else "task")).strip().lower()
    row.category = str(sp.get("category") or (base.category.value if base else "admin")).strip().lower()
    row.required = parse_bool(sp.get("required"), True)
    hours = sp.get("estimatedHours")
    if hours in (None, "") and base is not None:
        hours = base.estimatedHours
    try:
        row.estimatedHours = float(hours)
    except (TypeError, ValueError):
        raise ValidationError("estimatedHours must be a number", details={"stepId": step_id, "field": "estimatedHours"})
    row.assignedTo = str(sp.get("assignedTo") or "").strip()
    row.dueDate = str(sp.get("dueDate") or "").strip()
    row.status = "pending"
    row.completionCriteria = str_list(sp.get("completionCriteria"))
    row.documents = str_list(sp.get("documents"))
    row.instructions = str(sp.get("instructions") or "").strip()
    row.notes = str(sp.get("notes") or "").strip()
    row.orderNo = order_no
    return row


def _apply_steps(tpl: OnboardingTemplate, steps_payload: Any) -> None:
    if steps_payload is None:
        return
    if not isinstance(steps_payload, list):
        raise ValidationError("steps must be a list")

    existing = {str(s.stepId): s for s in tpl.steps}
    # Client ids are kept only for steps already in this template; others get fresh ids.
    id_map: dict[str, str] = {}
    for sp in steps_payload:
        if not isinstance(sp, dict):
            raise ValidationError("Each step must be an object")
        cid = str(sp.get("id") or "").strip()
        if cid and cid in id_map:
            raise ValidationError("Duplicate step id in payload", details={"stepId": cid})
        if cid:
            id_map[cid] = cid if cid in existing else new_step_id()

    rows: list[OnboardingTemplateStep] = []
    for i, sp in enumerate(steps_payload):
        cid = str(sp.get("id") or "").strip()
        sid = id_map[cid] if cid else new_step_id()
        row = existing.get(sid) or OnboardingTemplateStep()
        _step_from_payload(sp, row, step_id=sid, order_no=i)
        row.dependsOn = [id_map.get(d, d) for d in str_list(sp.get("dependsOn"))]
        rows.append(row)
    tpl.steps = rows


def _apply_header(tpl: OnboardingTemplate, raw: dict[str, Any]) -> None:
    for key in ("name", "department", "position", "description"):
        if key in raw:
            setattr(tpl, key, str(raw.get(key) or "").strip())
    if "estimatedDays" in raw:
        tpl.estimatedDays = clamp_int(raw.get("estimatedDays"), default=0, min_v=0, max_v=3650)
    for key in ("requiredDocuments", "assignees", "tags"):
        if key in raw:
            setattr(tpl, key, str_list(raw.get(key)))
    if "isDefault" in raw:
        tpl.isDefault = parse_bool(raw.get("isDefault"))


def _template_payload(data) -> dict[str, Any]:
    raw = (data or {}).get("template")
    if not isinstance(raw, dict):
        raise ValidationError("Missing template object")
    return raw


def step_catalog_list(data, auth: AuthContext | None, db, cfg):
    return {"items": [st.to_dict() for st in step_catalog.list_available()]}


def template_list(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    department = str((data or {}).get("department") or "").strip()
    q = str((data or {}).get("q") or "").strip()

    stmt = select(OnboardingTemplate).options(selectinload(OnboardingTemplate.steps)).where(OnboardingTemplate.venueId == auth.venueId)
    if department:
        stmt = stmt.where(OnboardingTemplate.department == department)
    if q:
        like = f"%{q}%"
        stmt = stmt.where(or_(OnboardingTemplate.name.ilike(like), OnboardingTemplate.position.ilike(like)))
    rows = db.execute(
        stmt.order_by(OnboardingTemplate.isDefault.desc(), OnboardingTemplate.useCount.desc(), OnboardingTemplate.name.asc())
    ).scalars().all()
    return {"items": [serialize_template(t, include_steps=False) for t in rows]}


def template_get(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    tpl = get_template(db, req_str(data, "templateId"), venue_id=auth.venueId)
    return {"template": serialize_template(tpl)}


def template_validate(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    raw = _template_payload(data)
    tpl = OnboardingTemplate(venueId=auth.venueId)
    tpl.steps = []
    _apply_header(tpl, raw)
    _apply_steps(tpl, raw.get("steps") or [])
    validate_template(tpl)
    return {"valid": True, "stepCount": len(tpl.steps)}


def template_save(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    raw = _template_payload(data)
    template_id = str(raw.get("id") or "").strip()

    if template_id:
        tpl = get_template(db, template_id, venue_id=auth.venueId)
        created = False
    else:
        tpl = OnboardingTemplate(templateId="", venueId=auth.venueId, useCount=0, lastUsedAt="")
        tpl.steps = []
        created = True

    _apply_header(tpl, raw)
    _apply_steps(tpl, raw.get("steps"))
    tpl = save_template(db, tpl, actor_id=auth.userId, hours_per_day=cfg.HOURS_PER_DAY)

    append_audit(
        db,
        auth,
        action="TEMPLATE_CREATE" if created else "TEMPLATE_UPDATE",
        resource_type="onboarding_template",
        resource_id=tpl.templateId,
        details={"name": tpl.name, "department": tpl.department, "stepCount": len(tpl.steps), "isDefault": bool(tpl.isDefault)},
    )
    verb = "created" if created else "updated"
    return {
        "template": serialize_template(tpl),
        "created": created,
        "notice": notice(f"Template {verb}", f'"{tpl.name}" has been {verb}.'),
    }


def template_step_add(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    tpl = get_template(db, req_str(data, "templateId"), venue_id=auth.venueId)
    catalog_id = req_str(data, "stepTemplateId")
    st = step_catalog.get_step_template(catalog_id)
    if st is None:
        raise NotFoundError("Step template not found", details={"stepTemplateId": catalog_id})

    step = add_step(tpl, st)
    tpl = save_template(db, tpl, actor_id=auth.userId, hours_per_day=cfg.HOURS_PER_DAY)
    append_audit(
        db,
        auth,
        action="TEMPLATE_STEP_ADD",
        resource_type="onboarding_template",
        resource_id=tpl.templateId,
        details={"stepId": step.stepId, "catalogId": catalog_id},
    )
    return {
        "template": serialize_template(tpl),
        "stepId": step.stepId,
        "notice": notice("Step added", f'"{st.title}" added to {tpl.name}.'),
    }


def template_step_update(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    tpl = get_template(db, req_str(data, "templateId"), venue_id=auth.venueId)
    step_id = req_str(data, "stepId")
    patch = (data or {}).get("patch")
    if not isinstance(patch, dict) or not patch:
        raise ValidationError("Missing patch")

    step = update_step(tpl, step_id, patch)
    tpl = save_template(db, tpl, actor_id=auth.userId, hours_per_day=cfg.HOURS_PER_DAY)
    append_audit(
        db,
        auth,
        action="TEMPLATE_STEP_UPDATE",
        resource_type="onboarding_template",
        resource_id=tpl.templateId,
        details={"stepId": step.stepId, "fields": sorted(patch.keys())},
    )
    return {"template": serialize_template(tpl), "notice": notice("Step updated", f'"{step.title}" saved.')}


def template_step_remove(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    tpl = get_template(db, req_str(data, "templateId"), venue_id=auth.venueId)
    step_id = req_str(data, "stepId")

    cleaned = remove_step(tpl, step_id, db=db)
    tpl.updatedAt = iso_utc_now()
    tpl.updatedBy = auth.userId
    append_audit(
        db,
        auth,
        action="TEMPLATE_STEP_REMOVE",
        resource_type="onboarding_template",
        resource_id=tpl.templateId,
        details={"stepId": step_id, "dependenciesCleaned": cleaned},
    )
    return {
        "template": serialize_template(tpl),
        "dependenciesCleaned": cleaned,
        "notice": notice("Step removed", f"Step removed from {tpl.name}."),
    }


def template_clone(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    src = get_template(db, req_str(data, "templateId"), venue_id=auth.venueId)
    name = str((data or {}).get("name") or "").strip() or f"{src.name} (Copy)"

    clone = clone_template(src, name=name)
    clone = save_template(db, clone, actor_id=auth.userId, hours_per_day=cfg.HOURS_PER_DAY)
    append_audit(
        db,
        auth,
        action="TEMPLATE_CLONE",
        resource_type="onboarding_template",
        resource_id=clone.templateId,
        details={"sourceTemplateId": src.templateId},
    )
    return {"template": serialize_template(clone), "notice": notice("Template duplicated", f'"{clone.name}" created.')}


def template_delete(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    tpl = get_template(db, req_str(data, "templateId"), venue_id=auth.venueId)
    template_id, name = tpl.templateId, tpl.name

    with storage_step(db, "template_delete"):
        db.delete(tpl)
    append_audit(db, auth, action="TEMPLATE_DELETE", resource_type="onboarding_template", resource_id=template_id, details={"name": name})
    return {"templateId": template_id, "notice": notice("Template deleted", f'"{name}" has been deleted.', "destructive")}


def templates_seed_defaults(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    existing = set(
        db.execute(select(OnboardingTemplate.name).where(OnboardingTemplate.venueId == auth.venueId)).scalars().all()
    )

    created: list[dict[str, Any]] = []
    for spec in DEFAULT_TEMPLATES:
        if spec["name"] in existing:
            continue
        tpl = save_template(db, build_default_template(spec, auth.venueId), actor_id=auth.userId, hours_per_day=cfg.HOURS_PER_DAY)
        created.append({"id": tpl.templateId, "name": tpl.name})

    if created:
        append_audit(
            db,
            auth,
            action="TEMPLATES_SEED_DEFAULTS",
            resource_type="onboarding_template",
            details={"created": [c["name"] for c in created]},
        )
    return {"created": created, "skipped": len(DEFAULT_TEMPLATES) - len(created)}
