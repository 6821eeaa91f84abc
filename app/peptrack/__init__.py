import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, g, render_template, request, session
from sqlalchemy import inspect as sa_inspect

from app.peptrack.config import PRODUCTION_ENVS, load_config
from app.peptrack.db import init_db, teardown_db_session
from app.peptrack.routes import bp as routes_bp
from app.peptrack.auth import bp as auth_bp, load_current_user
from app.peptrack.admin import bp as admin_bp
from app.peptrack.modules.proposals.admin import bp as proposals_bp

# Tables the current code expects; a missing one means `alembic upgrade head` was not run.
EXPECTED_TABLES = (
    "users",
    "roles",
    "permissions",
    "audit_events",
    "proposals",
    "proposal_authors",
    "proposal_status_changes",
)

_UNGUARDED_PREFIXES = ("/static/", "/health", "/healthz")


def _configure_logging(level_name: str) -> None:
    level = getattr(logging, (level_name or "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logging.getLogger("app.peptrack").setLevel(level)


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__, template_folder="templates", static_folder="static")
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True
    _configure_logging(app.config["LOG_LEVEL"])
    app.logger.setLevel(app.config["LOG_LEVEL"])

    from app.peptrack.security import ensure_csrf_token, validate_csrf

    @app.context_processor
    def _inject_csrf() -> dict:
        return {"csrf_token": ensure_csrf_token()}

    @app.context_processor
    def _inject_permissions() -> dict:
        from app.peptrack.rbac import user_has_permission

        def has_perm(key: str) -> bool:
            return user_has_permission(getattr(g, "current_user", None), key)

        return {"has_perm": has_perm}

    @app.template_filter("dateformat")
    def _dateformat_filter(value, format: str = "%Y-%m-%d") -> str:
        if value is None:
            return "-"
        if hasattr(value, "strftime"):
            return value.strftime(format)
        return str(value)

    @app.template_filter("pepnum")
    def _pepnum_filter(value) -> str:
        return f"PEP {int(value)}" if value is not None else "-"

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(_UNGUARDED_PREFIXES):
            return None
        ensure_csrf_token()
        session.permanent = True
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # Login/logout pass through.
            if (request.endpoint or "").startswith("auth."):
                return None
            if not app.config.get("CSRF_ENABLED", True):
                return None
            if not validate_csrf(request):
                app.logger.warning("CSRF rejected path=%s request_id=%s", request.path, getattr(g, "request_id", None))
                return render_template("errors/400.html", message="CSRF token missing or invalid."), 400

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in PRODUCTION_ENVS:
        if not str(app.config.get("DATABASE_URL") or "").strip():
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if str(app.config.get("SECRET_KEY") or "") in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    if hasattr(os, "register_at_fork"):
        def _after_fork_child() -> None:
            engine = app.extensions.get("sqlalchemy_engine")
            if engine:
                engine.dispose()
                app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

        os.register_at_fork(after_in_child=_after_fork_child)

    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [k for k in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY") if not app.config.get(k)]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))

    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(admin_bp, url_prefix="/admin")
    app.register_blueprint(proposals_bp, url_prefix="/admin/proposals")

    @app.before_request
    def _load_user_wrapper():
        if request.path.startswith(_UNGUARDED_PREFIXES):
            g.current_user = None
            return None
        return load_current_user()

    app.teardown_appcontext(teardown_db_session)

    # Schema health is checked on the first guarded request, after migrations/create_all.
    app.config.setdefault("_schema_health_checked", False)
    app.config.setdefault("_schema_health_missing", [])

    def _run_schema_health_check() -> list[str]:
        engine = app.extensions["sqlalchemy_engine"]
        insp = sa_inspect(engine)
        missing = [t for t in EXPECTED_TABLES if not insp.has_table(t)]
        if missing:
            app.logger.error("DB schema out of date; run `alembic upgrade head`. Missing: %s", ", ".join(missing))
        return missing

    @app.before_request
    def _schema_health_guardrail():
        if request.path.startswith(_UNGUARDED_PREFIXES):
            return None
        if not app.config["_schema_health_checked"]:
            app.config["_schema_health_missing"] = _run_schema_health_check()
            app.config["_schema_health_checked"] = True
        missing = app.config["_schema_health_missing"]
        if missing and request.path.startswith("/admin"):
            return render_template("errors/schema_out_of_date.html", missing=missing), 500
        return None

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return render_template("errors/404.html"), 404

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return render_template("errors/500.html"), 500

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        return render_template("errors/403.html", missing_permission=missing), 403

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        from flask import flash, redirect, url_for

        flash(f"File too large. Maximum size is {app.config['MAX_UPLOAD_MB']}MB.", "danger")
        referrer = request.referrer
        if referrer and referrer.startswith(request.host_url):
            return redirect(referrer), 302
        return redirect(url_for("proposals.list_proposals")), 302

    logging.getLogger(__name__).info("create_app() complete; app ready to serve")
    return app
