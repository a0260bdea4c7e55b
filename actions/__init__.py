from __future__ import annotations

from typing import Any, Callable

from actions import access, candidates, compliance, sessions, staff, templates
from utils import ApiError, AuthContext

Handler = Callable[..., dict]


ACTION_HANDLERS: dict[str, Handler] = {
    "STEP_CATALOG_LIST": templates.step_catalog_list,
    "TEMPLATE_LIST": templates.template_list,
    "TEMPLATE_GET": templates.template_get,
    "TEMPLATE_SAVE": templates.template_save,
    "TEMPLATE_VALIDATE": templates.template_validate,
    "TEMPLATE_STEP_ADD": templates.template_step_add,
    "TEMPLATE_STEP_UPDATE": templates.template_step_update,
    "TEMPLATE_STEP_REMOVE": templates.template_step_remove,
    "TEMPLATE_CLONE": templates.template_clone,
    "TEMPLATE_DELETE": templates.template_delete,
    "TEMPLATES_SEED_DEFAULTS": templates.templates_seed_defaults,
    "CANDIDATE_CREATE": candidates.candidate_create,
    "CANDIDATE_GET": candidates.candidate_get,
    "CANDIDATE_LIST": candidates.candidate_list,
    "CANDIDATE_STAGE_ADVANCE": candidates.candidate_stage_advance,
    "CANDIDATE_REJECT": candidates.candidate_reject,
    "CANDIDATE_DOCUMENT_SET": candidates.candidate_document_set,
    "CANDIDATE_COMPLIANCE_SET": candidates.candidate_compliance_set,
    "CANDIDATE_COMPLETE_ONBOARDING": candidates.candidate_complete_onboarding,
    "ONBOARDING_STATS": candidates.onboarding_stats,
    "SESSION_CREATE": sessions.session_create,
    "SESSION_GET": sessions.session_get,
    "SESSION_LIST": sessions.session_list,
    "SESSION_PROGRESS": sessions.session_progress,
    "STEP_STATUS_SET": sessions.step_status_set,
    "ACTIVITY_LIST": sessions.activity_list,
    "STAFF_UPSERT": staff.staff_upsert,
    "STAFF_LIST": staff.staff_list,
    "CERTIFICATION_ADD": staff.certification_add,
    "AUDIT_QUERY": compliance.audit_query,
    "AUDIT_PURGE": compliance.audit_purge,
    "COMPLIANCE_RUN": compliance.compliance_run,
    "COMPLIANCE_REPORT": compliance.compliance_report,
    "COMPLIANCE_REPORT_ENQUEUE": compliance.compliance_report_enqueue,
    "COMPLIANCE_REPORT_STATUS": compliance.compliance_report_status,
    "VENUE_MEMBER_UPSERT": access.venue_member_upsert,
    "VENUE_MEMBER_LIST": access.venue_member_list,
    "PERMISSION_OVERRIDE_SET": access.permission_override_set,
    "PERMISSION_CHECK": access.permission_check,
    "SETTINGS_GET": access.settings_get,
    "SETTINGS_SET": access.settings_set,
}


def dispatch(action: str, data: Any, auth: AuthContext | None, db, cfg) -> dict:
    action_u = str(action or "").upper().strip()
    handler = ACTION_HANDLERS.get(action_u)
    if handler is None:
        raise ApiError("BAD_REQUEST", f"Unknown action: {action_u}")
    return handler(data or {}, auth, db, cfg)
