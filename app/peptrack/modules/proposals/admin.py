from __future__ import annotations

import io
from datetime import date

from flask import Blueprint, abort, flash, g, redirect, render_template, request, send_file, url_for
from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.peptrack.audit import record_event
from app.peptrack.db import db_session
from app.peptrack.models import User
from app.peptrack.modules.proposals.errors import ProposalError
from app.peptrack.modules.proposals.header import NUMBER_RX, VALID_TYPES, parse_authors
from app.peptrack.modules.proposals.lifecycle import VALID_STATUSES, allowed_targets
from app.peptrack.modules.proposals.models import Proposal
from app.peptrack.modules.proposals.references import cross_references, linkify_cross_references, resolve_footnotes
from app.peptrack.modules.proposals.service import (
    build_catalog,
    change_status,
    create_proposal,
    existing_numbers,
    get_by_number,
    import_proposals,
    read_source,
    validate_collection,
)
from app.peptrack.rbac import require_permission, user_has_permission

bp = Blueprint("proposals", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _get_or_404(s: Session, number: int) -> Proposal:
    p = get_by_number(s, number)
    if not p:
        abort(404)
    return p


def _parse_int(raw: str | None) -> int | None:
    v = (raw or "").strip()
    if not v:
        return None
    if not NUMBER_RX.fullmatch(v):
        raise ValueError(f"Expected a proposal number, got {v!r}")
    return int(v)


def _parse_number_field(raw: str | None) -> list[int]:
    out = []
    for part in (raw or "").replace(";", ",").split(","):
        n = _parse_int(part)
        if n is not None:
            out.append(n)
    return out


# ---------- List ----------
@bp.get("/")
@require_permission("proposals.view")
def list_proposals():
    s = db_session()
    search = (request.args.get("q") or "").strip()
    status_filter = (request.args.get("status") or "").strip()
    type_filter = (request.args.get("type") or "").strip()

    q = s.query(Proposal)
    if search:
        if NUMBER_RX.fullmatch(search):
            q = q.filter(Proposal.number == int(search))
        else:
            like = f"%{search}%"
            q = q.filter(or_(Proposal.title.ilike(like), Proposal.header_text.ilike(like)))
    if status_filter:
        q = q.filter(Proposal.status == status_filter)
    if type_filter:
        q = q.filter(Proposal.pep_type == type_filter)

    proposals = q.order_by(Proposal.number.asc()).all()
    return render_template(
        "admin/modules/proposals/list.html",
        proposals=proposals,
        search=search,
        status_filter=status_filter,
        type_filter=type_filter,
        statuses=VALID_STATUSES,
        types=VALID_TYPES,
    )


# ---------- New ----------
@bp.get("/new")
@require_permission("proposals.create")
def new_proposal_get():
    return render_template("admin/modules/proposals/new.html", types=VALID_TYPES, today=date.today())


@bp.post("/new")
@require_permission("proposals.create")
def new_proposal_post():
    s = db_session()
    u = _current_user()

    title = (request.form.get("title") or "").strip()
    pep_type = (request.form.get("pep_type") or "").strip()
    authors_raw = ", ".join(ln.strip() for ln in (request.form.get("authors") or "").splitlines() if ln.strip())
    authors = parse_authors(authors_raw)

    try:
        number = _parse_int(request.form.get("number"))
        requires = _parse_number_field(request.form.get("requires"))
        replaces = _parse_number_field(request.form.get("replaces"))
        created_raw = (request.form.get("created") or "").strip()
        created = date.fromisoformat(created_raw) if created_raw else None
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("proposals.new_proposal_get"))

    if not title or not pep_type or not authors:
        flash("Title, type, and at least one author are required.", "danger")
        return redirect(url_for("proposals.new_proposal_get"))

    try:
        p = create_proposal(
            s,
            title=title,
            authors=authors,
            pep_type=pep_type,
            user=u,
            created=created,
            number=number,
            python_version=(request.form.get("python_version") or "").strip() or None,
            requires=requires,
            replaces=replaces,
        )
    except ProposalError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("proposals.new_proposal_get"))
    s.commit()

    flash(f"PEP {p.number} created (Draft).", "success")
    return redirect(url_for("proposals.proposal_detail", number=p.number))


# ---------- Import ----------
@bp.get("/import")
@require_permission("proposals.import")
def import_get():
    return render_template("admin/modules/proposals/import.html")


@bp.post("/import")
@require_permission("proposals.import")
def import_post():
    s = db_session()
    u = _current_user()

    files = [f for f in request.files.getlist("files") if f and f.filename]
    if not files:
        flash("Choose one or more proposal source files.", "danger")
        return redirect(url_for("proposals.import_get"))

    documents = []
    for f in files:
        try:
            documents.append((f.filename, f.read().decode("utf-8")))
        except UnicodeDecodeError:
            flash(f"{f.filename}: not UTF-8 text.", "danger")
            return redirect(url_for("proposals.import_get"))

    try:
        imported = import_proposals(s, documents, user=u)
    except ProposalError as e:
        s.rollback()
        flash(f"Import rejected: {e}", "danger")
        return redirect(url_for("proposals.import_get"))
    s.commit()

    flash(f"Imported {len(imported)} proposal(s): " + ", ".join(f"PEP {p.number}" for p in imported), "success")
    if len(imported) == 1:
        return redirect(url_for("proposals.proposal_detail", number=imported[0].number))
    return redirect(url_for("proposals.list_proposals"))


# ---------- Detail ----------
@bp.get("/<int:number>")
@require_permission("proposals.view")
def proposal_detail(number: int):
    s = db_session()
    p = _get_or_404(s, number)
    known = existing_numbers(s)

    def _url(n: int) -> str | None:
        return url_for("proposals.proposal_detail", number=n) if n in known else None

    refs = [(n, n in known) for n in cross_references(p.body) if n != p.number]
    u = _current_user()
    return render_template(
        "admin/modules/proposals/detail.html",
        proposal=p,
        body_html=linkify_cross_references(p.body, _url),
        footnotes=resolve_footnotes(p.body),
        cross_refs=refs,
        targets=sorted(allowed_targets(p.status)),
        statuses=VALID_STATUSES,
        can_transition=user_has_permission(u, "proposals.transition"),
        can_override=user_has_permission(u, "proposals.override"),
    )


# ---------- Status ----------
@bp.post("/<int:number>/status")
@require_permission("proposals.transition")
def proposal_status(number: int):
    s = db_session()
    u = _current_user()
    p = _get_or_404(s, number)

    target = (request.form.get("target") or "").strip()
    override = request.form.get("override") == "1"
    if override and not user_has_permission(u, "proposals.override"):
        g.missing_permission = "proposals.override"
        abort(403)

    try:
        superseded_by = _parse_int(request.form.get("superseded_by"))
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("proposals.proposal_detail", number=p.number))

    try:
        change_status(
            s,
            p,
            target,
            user=u,
            resolution=request.form.get("resolution"),
            superseded_by=superseded_by,
            reason=request.form.get("reason"),
            override=override,
        )
    except ProposalError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("proposals.proposal_detail", number=number))
    s.commit()

    flash(f"PEP {p.number} is now {p.status}.", "success")
    return redirect(url_for("proposals.proposal_detail", number=p.number))


# ---------- Source ----------
@bp.get("/<int:number>/source")
@require_permission("proposals.download")
def proposal_source(number: int):
    s = db_session()
    u = _current_user()
    p = _get_or_404(s, number)

    data = read_source(p)
    filename = (p.storage_key or f"pep-{p.number:04d}.txt").rsplit("/", 1)[-1]
    record_event(
        s,
        actor=u,
        action="proposal.download",
        entity_type="Proposal",
        entity_id=str(p.number),
        metadata={"number": p.number, "filename": filename},
    )
    s.commit()
    return send_file(
        io.BytesIO(data),
        mimetype="text/plain",
        as_attachment=True,
        download_name=filename,
        max_age=0,
    )


# ---------- Collection views ----------
@bp.get("/check")
@require_permission("proposals.view")
def collection_check():
    s = db_session()
    proposals = s.query(Proposal).order_by(Proposal.number.asc()).all()
    issues = validate_collection(proposals)
    return render_template(
        "admin/modules/proposals/check.html",
        issues=issues,
        total=len(proposals),
        errors=sum(1 for i in issues if i.severity == "error"),
        warnings=sum(1 for i in issues if i.severity == "warning"),
    )


@bp.get("/catalog")
@require_permission("proposals.view")
def catalog():
    s = db_session()
    proposals = s.query(Proposal).order_by(Proposal.number.asc()).all()
    return render_template("admin/modules/proposals/catalog.html", sections=build_catalog(proposals), proposals=proposals)
