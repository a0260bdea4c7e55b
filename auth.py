from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import event, select

from cache_layer import MEMBER, MISSING, OVERRIDES, forget_access, lookup_access, store_access
from db import SessionLocal
from models import PermissionOverride, VenueMember
from utils import AuthContext, AuthError, PermissionDeniedError, ValidationError, normalize_role


ROLE_ORDER = ("staff", "supervisor", "manager", "admin")

_ROLE_GRANTS: dict[str, tuple[str, ...]] = {
    "staff": ("onboarding:view", "steps:update"),
    "supervisor": ("candidates:view", "sessions:manage", "activity:view"),
    "manager": ("candidates:manage", "templates:manage", "staff:manage", "audit:view", "compliance:view"),
    "admin": ("members:manage", "permissions:manage", "settings:manage", "audit:purge", "compliance:report"),
}


def _cumulative_matrix() -> dict[str, frozenset[str]]:
    out: dict[str, frozenset[str]] = {}
    acc: set[str] = set()
    for role in ROLE_ORDER:
        acc |= set(_ROLE_GRANTS[role])
        out[role] = frozenset(acc)
    return out


ROLE_PERMISSIONS: dict[str, frozenset[str]] = _cumulative_matrix()
ALL_PERMISSIONS: frozenset[str] = ROLE_PERMISSIONS["admin"]


ACTION_PERMISSIONS: dict[str, str] = {
    # Catalog + templates
    "STEP_CATALOG_LIST": "onboarding:view",
    "TEMPLATE_LIST": "onboarding:view",
    "TEMPLATE_GET": "onboarding:view",
    "TEMPLATE_SAVE": "templates:manage",
    "TEMPLATE_VALIDATE": "templates:manage",
    "TEMPLATE_STEP_ADD": "templates:manage",
    "TEMPLATE_STEP_UPDATE": "templates:manage",
    "TEMPLATE_STEP_REMOVE": "templates:manage",
    "TEMPLATE_CLONE": "templates:manage",
    "TEMPLATE_DELETE": "templates:manage",
    "TEMPLATES_SEED_DEFAULTS": "templates:manage",
    # Candidates
    "CANDIDATE_CREATE": "candidates:manage",
    "CANDIDATE_GET": "candidates:view",
    "CANDIDATE_LIST": "candidates:view",
    "CANDIDATE_STAGE_ADVANCE": "candidates:manage",
    "CANDIDATE_REJECT": "candidates:manage",
    "CANDIDATE_DOCUMENT_SET": "candidates:manage",
    "CANDIDATE_COMPLIANCE_SET": "candidates:manage",
    "CANDIDATE_COMPLETE_ONBOARDING": "candidates:manage",
    "ONBOARDING_STATS": "candidates:view",
    # Sessions + steps
    "SESSION_CREATE": "sessions:manage",
    "SESSION_GET": "onboarding:view",
    "SESSION_LIST": "onboarding:view",
    "SESSION_PROGRESS": "onboarding:view",
    "STEP_STATUS_SET": "steps:update",
    "ACTIVITY_LIST": "activity:view",
    # Staff population
    "STAFF_UPSERT": "staff:manage",
    "STAFF_LIST": "staff:manage",
    "CERTIFICATION_ADD": "staff:manage",
    # Audit + compliance
    "AUDIT_QUERY": "audit:view",
    "AUDIT_PURGE": "audit:purge",
    "COMPLIANCE_RUN": "compliance:view",
    "COMPLIANCE_REPORT": "compliance:report",
    "COMPLIANCE_REPORT_ENQUEUE": "compliance:report",
    "COMPLIANCE_REPORT_STATUS": "compliance:report",
    # Identity + RBAC admin
    "VENUE_MEMBER_UPSERT": "members:manage",
    "VENUE_MEMBER_LIST": "members:manage",
    "PERMISSION_OVERRIDE_SET": "permissions:manage",
    "PERMISSION_CHECK": "onboarding:view",
    "SETTINGS_GET": "settings:manage",
    "SETTINGS_SET": "settings:manage",
}


def permissions_for_role(role: Any) -> frozenset[str]:
    """Unknown roles resolve to an empty set, never an error."""

    return ROLE_PERMISSIONS.get(normalize_role(role), frozenset())


def _member_snapshot(db, venue_id: str, user_id: str) -> Optional[dict[str, Any]]:
    cached = lookup_access(MEMBER, venue_id, user_id)
    if cached is MISSING:
        return None
    if isinstance(cached, dict):
        return cached

    row = (
        db.execute(select(VenueMember).where(VenueMember.venueId == venue_id).where(VenueMember.userId == user_id))
        .scalars()
        .first()
    )
    if not row:
        store_access(MEMBER, venue_id, user_id, MISSING)
        return None
    out = {
        "userId": str(row.userId or ""),
        "venueId": str(row.venueId or ""),
        "role": normalize_role(row.role),
        "displayName": str(row.displayName or ""),
        "status": str(row.status or "").upper(),
    }
    store_access(MEMBER, venue_id, user_id, out)
    return out


def _overrides(db, venue_id: str, user_id: str) -> dict[str, bool]:
    cached = lookup_access(OVERRIDES, venue_id, user_id)
    if isinstance(cached, dict):
        return cached

    rows = db.execute(
        select(PermissionOverride.permission, PermissionOverride.granted)
        .where(PermissionOverride.venueId == venue_id)
        .where(PermissionOverride.userId == user_id)
    ).all()
    out = {str(p): bool(g) for p, g in rows}
    store_access(OVERRIDES, venue_id, user_id, out)
    return out


_PENDING_INVALIDATIONS = "actor_cache_invalidations"


def invalidate_actor_cache(db, venue_id: str, user_id: str = "") -> None:
    """
    Drop cached access for a member once `db` commits.

    Dropping earlier would let a concurrent request re-read the still
    committed old role and cache it again for the full TTL.
    """

    db.info.setdefault(_PENDING_INVALIDATIONS, set()).add((str(venue_id), str(user_id or "")))


@event.listens_for(SessionLocal, "after_commit")
def _forget_after_commit(session) -> None:
    for venue_id, user_id in session.info.pop(_PENDING_INVALIDATIONS, set()):
        forget_access(venue_id, user_id)


@event.listens_for(SessionLocal, "after_rollback")
def _discard_on_rollback(session) -> None:
    session.info.pop(_PENDING_INVALIDATIONS, None)


def resolve_actor(db, *, user_id: Any, venue_id: Any, ip_address: str = "", user_agent: str = "") -> AuthContext:
    """
    Map the (user, venue) pair forwarded by the gateway onto a venue member.

    Unknown actors are rejected; disabled members are forbidden.
    """

    uid = str(user_id or "").strip()
    vid = str(venue_id or "").strip()
    if not uid or not vid:
        raise AuthError("Missing actor or venue")

    member = _member_snapshot(db, vid, uid)
    if not member:
        raise AuthError("Unknown actor for this venue")
    if member["status"] != "ACTIVE":
        raise PermissionDeniedError("Venue membership is not ACTIVE")

    return AuthContext(
        valid=True,
        userId=uid,
        venueId=vid,
        role=member["role"],
        displayName=member["displayName"],
        ipAddress=str(ip_address or ""),
        userAgent=str(user_agent or ""),
    )


def resolved_permissions(db, *, user_id: str, venue_id: str, role: Optional[str] = None) -> tuple[str, frozenset[str]]:
    if role is None:
        member = _member_snapshot(db, venue_id, user_id)
        active = bool(member) and member["status"] == "ACTIVE"
        role = member["role"] if active else ""
    perms = set(permissions_for_role(role))
    if role:
        for perm, granted in _overrides(db, venue_id, user_id).items():
            if granted:
                perms.add(perm)
            else:
                perms.discard(perm)
    return normalize_role(role), frozenset(perms)


def required_permission(action_or_permission: Any) -> str:
    raw = str(action_or_permission or "").strip()
    if not raw:
        raise ValidationError("Missing action")
    if ":" in raw:
        return raw.lower()
    perm = ACTION_PERMISSIONS.get(raw.upper())
    if not perm:
        raise ValidationError(f"Unknown action: {raw.upper()}")
    return perm


def check_permission(db, user_id: Any, venue_id: Any, action: Any) -> dict[str, Any]:
    """Accepts either an action name (TEMPLATE_SAVE) or a permission string (templates:manage)."""

    perm = required_permission(action)
    role, perms = resolved_permissions(db, user_id=str(user_id or "").strip(), venue_id=str(venue_id or "").strip())
    return {"allowed": perm in perms, "role": role, "permission": perm, "permissions": sorted(perms)}


def assert_permission(db, auth: Optional[AuthContext], action: str) -> None:
    if not auth or not auth.valid:
        raise AuthError("Actor required")
    perm = required_permission(action)
    _, perms = resolved_permissions(db, user_id=auth.userId, venue_id=auth.venueId, role=auth.role)
    if perm not in perms:
        raise PermissionDeniedError(
            f"Not allowed for role: {auth.role or '(none)'}",
            details={"action": str(action).upper(), "permission": perm},
        )
