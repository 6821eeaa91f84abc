from datetime import date, datetime, time, timedelta

from flask import Blueprint, current_app, flash, g, render_template, request
from sqlalchemy import func, text

from app.peptrack.db import db_session
from app.peptrack.models import AuditEvent
from app.peptrack.modules.proposals.models import Proposal
from app.peptrack.rbac import require_permission

bp = Blueprint("admin", __name__)

_S3_KEYS = ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")


def _parse_date(s: str) -> date | None:
    s = (s or "").strip()
    if not s:
        return None
    try:
        return date.fromisoformat(s)
    except ValueError:
        return None


@bp.get("/")
@require_permission("admin.view")
def index():
    s = db_session()
    cfg = current_app.config
    status = {
        "env": (cfg.get("ENV") or "development").strip().lower(),
        "db_connected": False,
        "db_error": None,
        "storage_backend": (cfg.get("STORAGE_BACKEND") or "local").strip().lower(),
        "storage_configured": True,
        "storage_error": None,
    }

    try:
        s.execute(text("SELECT 1"))
        status["db_connected"] = True
    except Exception as e:
        current_app.logger.exception("Admin status DB probe failed")
        status["db_error"] = str(e)

    # Storage config only; no network calls.
    if status["storage_backend"] == "s3":
        missing = [k for k in _S3_KEYS if not cfg.get(k)]
        status["storage_configured"] = not missing
        if missing:
            status["storage_error"] = f"Missing: {', '.join(missing)}"

    counts: dict[str, int] = {}
    if status["db_connected"]:
        counts = dict(s.query(Proposal.status, func.count(Proposal.id)).group_by(Proposal.status).all())

    return render_template("admin/index.html", system_status=status, status_counts=counts)


@bp.get("/me")
@require_permission("admin.view")
def me():
    user = getattr(g, "current_user", None)
    role_keys = sorted({r.key for r in (user.roles or [])}) if user else []
    perm_keys = sorted({p.key for r in (user.roles or []) for p in (r.permissions or [])}) if user else []
    return render_template("admin/me.html", user=user, role_keys=role_keys, perm_keys=perm_keys)


@bp.get("/audit")
@require_permission("admin.view")
def audit_list():
    """
    Audit trail (last 200 events) with simple filters:
    - action (contains)
    - entity_id (exact, e.g. a proposal number)
    - date range (YYYY-MM-DD)
    """
    s = db_session()
    action = (request.args.get("action") or "").strip()
    entity_id = (request.args.get("entity_id") or "").strip()
    date_from = _parse_date(request.args.get("date_from") or "")
    date_to = _parse_date(request.args.get("date_to") or "")

    if (request.args.get("date_from") or "").strip() and not date_from:
        flash("date_from must be YYYY-MM-DD", "danger")
    if (request.args.get("date_to") or "").strip() and not date_to:
        flash("date_to must be YYYY-MM-DD", "danger")

    q = s.query(AuditEvent)
    if action:
        q = q.filter(AuditEvent.action.like(f"%{action}%"))
    if entity_id:
        q = q.filter(AuditEvent.entity_id == entity_id)
    if date_from:
        q = q.filter(AuditEvent.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        # inclusive end-date
        q = q.filter(AuditEvent.created_at < datetime.combine(date_to + timedelta(days=1), time.min))

    events = q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(200).all()
    return render_template(
        "admin/audit/list.html",
        events=events,
        action=action,
        entity_id=entity_id,
        date_from=(request.args.get("date_from") or "").strip(),
        date_to=(request.args.get("date_to") or "").strip(),
    )
