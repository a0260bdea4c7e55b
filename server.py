from __future__ import annotations

import logging
import os
import re
from typing import Any

from dotenv import load_dotenv
from flask import Blueprint, Flask, current_app, g, request
from flask_cors import CORS
from sqlalchemy import select
from sqlalchemy.exc import DBAPIError

from actions import dispatch
from auth import assert_permission, resolve_actor
from config import Config
from db import SessionLocal, init_engine, is_timeout_error, ping_db, translate_storage_error
from models import VenueMember
from services.audit_log import record_audit
from utils import ApiError, PermissionDeniedError, SimpleRateLimiter, err, iso_utc_now, new_uuid, now_monotonic, ok, parse_json_body


rest_api = Blueprint("rest_api", __name__)

logger = logging.getLogger("api")


def _client_ip() -> str:
    return str(request.headers.get("X-Forwarded-For", request.remote_addr or "") or "")


def _resolve_request_actor(db):
    return resolve_actor(
        db,
        user_id=request.headers.get("X-Actor-Id"),
        venue_id=request.headers.get("X-Venue-Id"),
        ip_address=_client_ip(),
        user_agent=str(request.headers.get("User-Agent") or ""),
    )


def _run_action(action_u: str, data: Any, cfg: Config):
    """
    Resolve the actor, check the permission, dispatch and commit one action.

    Shared by POST /api and the REST routes so both get the same envelope,
    rollback and logging behaviour.
    """

    db = None
    auth_ctx = None
    try:
        db = SessionLocal()
        auth_ctx = _resolve_request_actor(db)
        assert_permission(db, auth_ctx, action_u)

        out = dispatch(action_u, data or {}, auth_ctx, db, cfg)
        db.commit()

        latency_ms = int((now_monotonic() - g.start_ts) * 1000)
        logger.info(
            "request_id=%s action=%s user=%s role=%s latency_ms=%s",
            g.request_id,
            action_u,
            auth_ctx.userId,
            auth_ctx.role,
            latency_ms,
        )
        return ok(out)[0]
    except ApiError as e:
        if db is not None:
            db.rollback()
        if isinstance(e, PermissionDeniedError) and auth_ctx is not None:
            _write_denied_audit(auth_ctx, action_u, e)
        logger.info("request_id=%s action=%s code=%s", getattr(g, "request_id", ""), action_u, e.code)
        return err(e.code, e.message, http_status=e.http_status, details=e.details)
    except DBAPIError as e:
        if db is not None:
            db.rollback()

        request_id = str(getattr(g, "request_id", "") or "").strip()
        if is_timeout_error(e):
            te = translate_storage_error(e, action_u.lower())
            logger.warning("request_id=%s action=%s code=%s", request_id, action_u, te.code)
            return err(te.code, te.message, http_status=te.http_status, details=te.details)

        orig = getattr(e, "orig", None)
        orig_msg = re.sub(r"\s+", " ", str(orig) if orig else "").strip()
        if len(orig_msg) > 300:
            orig_msg = orig_msg[:300] + "..."

        if cfg.IS_PRODUCTION:
            msg = f"Database error (requestId: {request_id})"
        else:
            detail = f": {orig_msg}" if orig_msg else ""
            msg = f"Database error{detail} (requestId: {request_id})"

        logger.exception("request_id=%s action=%s", request_id, action_u)
        return err("INTERNAL", msg, http_status=500)
    except Exception as e:
        if db is not None:
            db.rollback()

        request_id = str(getattr(g, "request_id", "") or "").strip()
        if cfg.IS_PRODUCTION:
            msg = f"Unexpected error (requestId: {request_id})"
        else:
            msg = f"Unexpected error: {type(e).__name__} (requestId: {request_id})"

        logger.exception("request_id=%s action=%s", request_id, action_u)
        return err("INTERNAL", msg, http_status=500)
    finally:
        if db is not None:
            db.close()


def _write_denied_audit(auth_ctx, action: str, e: ApiError) -> None:
    db2 = SessionLocal()
    try:
        record_audit(
            db2,
            venue_id=auth_ctx.venueId,
            user_id=auth_ctx.userId,
            action="ACCESS_DENIED",
            resource_type="action",
            resource_id=str(action or "").upper() or "UNKNOWN",
            details={"permission": e.details.get("permission", ""), "role": auth_ctx.role, "requestId": getattr(g, "request_id", "")},
            ip_address=auth_ctx.ipAddress,
            user_agent=auth_ctx.userAgent,
        )
        db2.commit()
    except ApiError:
        db2.rollback()
        logger.exception("request_id=%s failed to record ACCESS_DENIED", getattr(g, "request_id", ""))
    finally:
        db2.close()


def _rest_handle(action: str, data: dict):
    cfg = current_app.config["CFG"]
    limiter: SimpleRateLimiter = current_app.config["LIMITER"]
    action_u = str(action or "").upper().strip()
    ip = _client_ip()
    try:
        limiter.check(f"{ip}:GLOBAL", cfg.RATE_LIMIT_GLOBAL)
        limiter.check(f"{ip}:API:{action_u}", cfg.RATE_LIMIT_DEFAULT)
    except ApiError as e:
        return err(e.code, e.message, http_status=e.http_status)
    return _run_action(action_u, data, cfg)


def _body() -> dict:
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


@rest_api.get("/api/step-catalog")
def rest_step_catalog():
    return _rest_handle("STEP_CATALOG_LIST", {})


@rest_api.get("/api/templates")
def rest_templates_list():
    return _rest_handle("TEMPLATE_LIST", {"department": request.args.get("department", ""), "q": request.args.get("q", "")})


@rest_api.post("/api/templates")
def rest_template_save():
    return _rest_handle("TEMPLATE_SAVE", {"template": _body()})


@rest_api.get("/api/templates/<template_id>")
def rest_template_get(template_id: str):
    return _rest_handle("TEMPLATE_GET", {"templateId": template_id})


@rest_api.put("/api/templates/<template_id>")
def rest_template_replace(template_id: str):
    return _rest_handle("TEMPLATE_SAVE", {"template": {**_body(), "id": template_id}})


@rest_api.delete("/api/templates/<template_id>")
def rest_template_delete(template_id: str):
    return _rest_handle("TEMPLATE_DELETE", {"templateId": template_id})


@rest_api.post("/api/templates/<template_id>/clone")
def rest_template_clone(template_id: str):
    return _rest_handle("TEMPLATE_CLONE", {"templateId": template_id, "name": _body().get("name") or ""})


@rest_api.post("/api/templates/<template_id>/steps")
def rest_template_step_add(template_id: str):
    return _rest_handle("TEMPLATE_STEP_ADD", {"templateId": template_id, "stepTemplateId": _body().get("stepTemplateId") or ""})


@rest_api.patch("/api/templates/<template_id>/steps/<step_id>")
def rest_template_step_update(template_id: str, step_id: str):
    return _rest_handle("TEMPLATE_STEP_UPDATE", {"templateId": template_id, "stepId": step_id, "patch": _body()})


@rest_api.delete("/api/templates/<template_id>/steps/<step_id>")
def rest_template_step_remove(template_id: str, step_id: str):
    return _rest_handle("TEMPLATE_STEP_REMOVE", {"templateId": template_id, "stepId": step_id})


@rest_api.get("/api/candidates")
def rest_candidates_list():
    filters = {k: request.args.get(k, "") for k in ("status", "stage", "department", "q")}
    return _rest_handle(
        "CANDIDATE_LIST",
        {"filters": filters, "offset": request.args.get("offset"), "limit": request.args.get("limit")},
    )


@rest_api.post("/api/candidates")
def rest_candidate_create():
    return _rest_handle("CANDIDATE_CREATE", _body())


@rest_api.get("/api/candidates/<candidate_id>")
def rest_candidate_get(candidate_id: str):
    return _rest_handle("CANDIDATE_GET", {"candidateId": candidate_id})


@rest_api.post("/api/candidates/<candidate_id>/stage")
def rest_candidate_stage(candidate_id: str):
    return _rest_handle("CANDIDATE_STAGE_ADVANCE", {**_body(), "candidateId": candidate_id})


@rest_api.post("/api/candidates/<candidate_id>/reject")
def rest_candidate_reject(candidate_id: str):
    return _rest_handle("CANDIDATE_REJECT", {**_body(), "candidateId": candidate_id})


@rest_api.post("/api/candidates/<candidate_id>/complete")
def rest_candidate_complete(candidate_id: str):
    return _rest_handle("CANDIDATE_COMPLETE_ONBOARDING", {**_body(), "candidateId": candidate_id})


@rest_api.get("/api/onboarding/stats")
def rest_onboarding_stats():
    return _rest_handle("ONBOARDING_STATS", {})


@rest_api.post("/api/sessions")
def rest_session_create():
    return _rest_handle("SESSION_CREATE", _body())


@rest_api.get("/api/sessions/<session_id>")
def rest_session_get(session_id: str):
    return _rest_handle("SESSION_GET", {"sessionId": session_id})


@rest_api.get("/api/sessions/<session_id>/progress")
def rest_session_progress(session_id: str):
    return _rest_handle("SESSION_PROGRESS", {"sessionId": session_id})


@rest_api.post("/api/sessions/<session_id>/steps/<step_id>/status")
def rest_step_status(session_id: str, step_id: str):
    return _rest_handle("STEP_STATUS_SET", {**_body(), "sessionId": session_id, "stepId": step_id})


@rest_api.get("/api/activity")
def rest_activity_list():
    return _rest_handle(
        "ACTIVITY_LIST",
        {
            "sessionId": request.args.get("sessionId", ""),
            "candidateId": request.args.get("candidateId", ""),
            "limit": request.args.get("limit"),
        },
    )


@rest_api.get("/api/audit")
def rest_audit_query():
    keys = ("userId", "action", "resourceType", "resourceId", "dateFrom", "dateTo")
    filters = {k: request.args.get(k) for k in keys if request.args.get(k)}
    return _rest_handle("AUDIT_QUERY", {"filters": filters, "offset": request.args.get("offset"), "limit": request.args.get("limit")})


@rest_api.get("/api/compliance/checks")
def rest_compliance_checks():
    return _rest_handle("COMPLIANCE_RUN", {})


@rest_api.get("/api/compliance/report")
def rest_compliance_report():
    return _rest_handle("COMPLIANCE_REPORT", {"reportType": request.args.get("type", "summary")})


@rest_api.post("/api/compliance/report/jobs")
def rest_compliance_report_enqueue():
    return _rest_handle("COMPLIANCE_REPORT_ENQUEUE", {"reportType": _body().get("reportType") or "summary"})


def _configure_logging(level: str):
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _seed_bootstrap_admins(db, cfg: Config) -> int:
    now = iso_utc_now()
    added = 0
    for pair in cfg.BOOTSTRAP_ADMINS:
        venue_id, _, user_id = pair.partition(":")
        venue_id, user_id = venue_id.strip(), user_id.strip()
        exists = db.execute(
            select(VenueMember.memberId).where(VenueMember.venueId == venue_id).where(VenueMember.userId == user_id)
        ).first()
        if exists:
            continue
        db.add(
            VenueMember(
                memberId=f"MEM-{new_uuid()}",
                venueId=venue_id,
                userId=user_id,
                displayName=user_id,
                email="",
                role="admin",
                status="ACTIVE",
                createdAt=now,
                createdBy="SYSTEM_INIT",
                updatedAt=now,
                updatedBy="SYSTEM_INIT",
            )
        )
        added += 1
    return added


def _redis_ready(url: str) -> bool:
    import redis

    try:
        return bool(redis.Redis.from_url(url, socket_connect_timeout=1, socket_timeout=1).ping())
    except redis.RedisError:
        return False


def create_app() -> Flask:
    load_dotenv()
    cfg = Config()
    cfg.validate()
    _configure_logging(cfg.LOG_LEVEL)

    engine = init_engine(cfg.DATABASE_URL, statement_timeout_s=cfg.REQUEST_TIMEOUT_SECONDS)

    from models import Base  # imported after engine init

    Base.metadata.create_all(bind=engine)

    app = Flask(__name__)
    app.config["CFG"] = cfg

    CORS(app, origins=cfg.ALLOWED_ORIGINS, supports_credentials=False)
    app.register_blueprint(rest_api)

    from app.routes.jobs import jobs_bp

    app.register_blueprint(jobs_bp, url_prefix="/api/jobs")

    limiter = SimpleRateLimiter()
    app.config["LIMITER"] = limiter

    # Seed bootstrap admins at startup (idempotent).
    db0 = SessionLocal()
    try:
        added = _seed_bootstrap_admins(db0, cfg)
        db0.commit()
        if added:
            logging.getLogger("onboarding").info("seeded %s bootstrap admin(s)", added)
    finally:
        db0.close()

    @app.before_request
    def _before():
        g.request_id = os.urandom(8).hex()
        g.start_ts = now_monotonic()

    @app.after_request
    def _after(resp):
        resp.headers["X-Request-ID"] = str(getattr(g, "request_id", "") or "")
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        resp.headers.setdefault("X-Frame-Options", "DENY")
        resp.headers.setdefault("Referrer-Policy", "no-referrer")
        resp.headers.setdefault("Cache-Control", "no-store")
        return resp

    @app.get("/health")
    def health():
        from cache_layer import cache_stats
        from db import get_pool_stats

        return ok({
            "status": "ok",
            "version": cfg.APP_VERSION,
            "db_pool": get_pool_stats(),
            "cache": cache_stats(),
        })[0]

    @app.get("/ready")
    def ready():
        db = SessionLocal()
        try:
            db_ok = ping_db(db)
        finally:
            db.close()
        checks: dict[str, Any] = {"db": db_ok}
        if cfg.REDIS_URL:
            checks["redis"] = _redis_ready(cfg.REDIS_URL)
        if not all(checks.values()):
            return err("NOT_READY", "Dependencies unavailable", http_status=503, details=checks)
        return ok({"status": "ready", "checks": checks})[0]

    @app.get("/")
    def index():
        return ok(
            {
                "status": "ok",
                "message": "Venue onboarding backend is running. Use /health for a quick check and POST /api for actions.",
                "endpoints": {"health": "/health", "ready": "/ready", "api": "/api"},
            }
        )[0]

    @app.errorhandler(404)
    def not_found(_e):
        return err("NOT_FOUND", f"Unknown endpoint: {request.path}. Use POST /api for actions.", http_status=404)

    @app.errorhandler(405)
    def method_not_allowed(_e):
        return err("BAD_REQUEST", "Method not allowed. Use POST /api for actions.", http_status=405)

    @app.post("/api")
    def api_route():
        cfg2: Config = app.config["CFG"]
        raw = request.get_data(as_text=True)
        try:
            body = parse_json_body(raw)
            action_u = str(body.get("action") or "").upper().strip()
            data = body.get("data") or {}
            if not action_u:
                raise ApiError("BAD_REQUEST", "Missing action")
            if not isinstance(data, dict):
                raise ApiError("BAD_REQUEST", "data must be an object")

            ip = _client_ip()
            # Generous global limit + a per-action limit so normal SPA usage is not blocked.
            limiter.check(f"{ip}:GLOBAL", cfg2.RATE_LIMIT_GLOBAL)
            limiter.check(f"{ip}:API:{action_u}", cfg2.RATE_LIMIT_DEFAULT)
        except ApiError as e:
            return err(e.code, e.message, http_status=e.http_status, details=e.details)

        return _run_action(action_u, data, cfg2)

    return app


if __name__ == "__main__":
    app = create_app()
    cfg = app.config["CFG"]
    app.run(host=cfg.HOST, port=cfg.PORT)
