"""
Proposals service layer.
Handles number allocation, creation, import, status transitions, source
storage, collection validation and the categorized catalog.
"""
from __future__ import annotations

import logging
import threading
from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.peptrack.audit import record_event
from app.peptrack.storage import storage_from_config

from .errors import DanglingReference, DuplicateNumber, InvalidTransition, MalformedHeader, MissingReference
from .header import (
    VALID_TYPES,
    Author,
    ParsedDocument,
    build_header,
    check_single_line,
    format_number_list,
    order_issues,
    parse_document,
    parse_header,
)
from .lifecycle import (
    ACCEPTED,
    ACTIVE,
    DEFERRED,
    DRAFT,
    FINAL,
    REJECTED,
    RESOLUTION_REQUIRED,
    SUPERSEDED,
    VALID_STATUSES,
    WITHDRAWN,
    required_reference,
    transition,
)
from .models import Proposal, ProposalAuthor, ProposalStatusChange
from .references import cross_references, resolve_footnotes

if TYPE_CHECKING:
    from app.peptrack.models import User

logger = logging.getLogger(__name__)

# Guards number allocation through the insert that claims the number.
# The unique constraint on proposals.number covers other processes.
_NUMBER_LOCK = threading.RLock()

SOURCE_CONTENT_TYPE = "text/x-rst; charset=utf-8"

SKELETON_SECTIONS = (
    "Abstract",
    "Motivation",
    "Rationale",
    "Specification",
    "Backwards Compatibility",
    "Reference Implementation",
    "Rejected Ideas",
    "References",
    "Copyright",
)


def skeleton_body() -> str:
    """Section headings every new draft starts from."""
    chunks = []
    for title in SKELETON_SECTIONS:
        text = "This document is placed in the public domain." if title == "Copyright" else ""
        chunks.append(f"{title}\n{'=' * len(title)}\n\n{text}\n" if text else f"{title}\n{'=' * len(title)}\n")
    return "\n".join(chunks)


# ---------- Lookup / numbering ----------

def get_by_number(s: Session, number: int) -> Proposal | None:
    """Resolve a cross-reference by identifier."""
    return s.query(Proposal).filter(Proposal.number == number).one_or_none()


def existing_numbers(s: Session) -> set[int]:
    return {n for (n,) in s.query(Proposal.number).all()}


def allocate_number(s: Session, requested: int | None = None) -> int:
    """Next free number (max + 1), or `requested` if it is not taken."""
    with _NUMBER_LOCK:
        if requested is not None:
            if requested < 1:
                raise MalformedHeader(f"PEP must be a positive number, got {requested}", field="PEP")
            if get_by_number(s, requested) is not None:
                raise DuplicateNumber(requested)
            return requested
        current = s.query(func.max(Proposal.number)).scalar() or 0
        return current + 1


def _flush_claiming(s: Session, numbers: Sequence[int]) -> None:
    try:
        s.flush()
    except IntegrityError as e:
        # Another process claimed one of the numbers between the check and the insert.
        logger.warning("Number collision on flush (numbers=%s): %s", list(numbers), e)
        raise DuplicateNumber(numbers[0] if len(numbers) == 1 else min(numbers)) from e


# ---------- Source storage ----------

def build_storage_key(number: int, filename: str | None = None) -> str:
    ext = ".rst" if (filename or "").lower().endswith(".rst") else ".txt"
    return f"proposals/pep-{number:04d}{ext}"


def render_source(proposal: Proposal) -> str:
    return proposal.header_text + proposal.separator + proposal.body


def store_source(proposal: Proposal, *, filename: str | None = None) -> str:
    key = proposal.storage_key or build_storage_key(proposal.number, filename)
    storage = storage_from_config(current_app.config)
    storage.put_bytes(key, render_source(proposal).encode("utf-8"), content_type=SOURCE_CONTENT_TYPE)
    proposal.storage_key = key
    return key


def read_source(proposal: Proposal) -> bytes:
    """Stored file bytes; falls back to the database copy when storage has none."""
    if proposal.storage_key:
        storage = storage_from_config(current_app.config)
        if storage.exists(proposal.storage_key):
            return storage.get_bytes(proposal.storage_key)
        logger.warning("PEP %s: storage key %s missing; serving database copy", proposal.number, proposal.storage_key)
    return render_source(proposal).encode("utf-8")


# ---------- Create / import ----------

def _set_authors(proposal: Proposal, authors: Iterable[Author]) -> None:
    proposal.authors = [
        ProposalAuthor(position=i, name=a.name, contact=a.contact) for i, a in enumerate(authors)
    ]


def _check_references(
    source: int,
    *,
    superseded_by: int | None,
    requires: Iterable[int],
    replaces: Iterable[int],
    known: set[int],
) -> None:
    if superseded_by is not None and superseded_by not in known:
        raise DanglingReference(superseded_by, "Superseded-By", source)
    for n in requires:
        if n not in known:
            raise DanglingReference(n, "Requires", source)
    for n in replaces:
        if n not in known:
            raise DanglingReference(n, "Replaces", source)


def _check_status_fields(doc: ParsedDocument) -> None:
    meta = doc.metadata
    missing = required_reference(meta.status, resolution=meta.resolution, superseded_by=meta.superseded_by)
    if missing:
        raise MissingReference(meta.status, missing)


def create_proposal(
    s: Session,
    *,
    title: str,
    authors: Sequence[Author],
    pep_type: str,
    user: User,
    created: date | None = None,
    number: int | None = None,
    python_version: str | None = None,
    post_history: str | None = None,
    requires: Sequence[int] = (),
    replaces: Sequence[int] = (),
    body: str | None = None,
) -> Proposal:
    """
    Create a new Draft proposal with a generated header.

    Values go into the header verbatim, so line breaks are rejected up front.
    The lock only covers this process and the number is not final until the
    caller commits; if another session commits the same max+1 first, the
    session is rolled back and the next free number is taken (once). Call this
    before making other changes in the same session.
    """
    title = (title or "").strip()
    if not title:
        raise MalformedHeader("Missing required field 'Title'", field="Title")
    if not authors:
        raise MalformedHeader("Missing required field 'Author'", field="Author")
    if pep_type not in VALID_TYPES:
        raise MalformedHeader(f"Unknown Type {pep_type!r}", field="Type")
    created = created or date.today()
    check_single_line("Title", title)
    check_single_line("Python-Version", python_version)
    check_single_line("Post-History", post_history)
    for a in authors:
        check_single_line("Author", a.name)
        check_single_line("Author", a.contact)

    fields = dict(
        title=title,
        authors=authors,
        pep_type=pep_type,
        created=created,
        python_version=python_version,
        post_history=post_history,
        requires=requires,
        replaces=replaces,
    )
    try:
        proposal = _insert_draft(s, number, user=user, body=body, **fields)
    except DuplicateNumber:
        if number is not None:
            raise
        # Another session committed the same max+1 first; the failed flush
        # leaves the session unusable, so roll back and allocate again.
        logger.warning("Allocated number was claimed concurrently; retrying once")
        s.rollback()
        proposal = _insert_draft(s, None, user=user, body=body, **fields)

    store_source(proposal)
    record_event(
        s,
        actor=user,
        action="proposal.create",
        entity_type="Proposal",
        entity_id=str(proposal.number),
        metadata={"number": proposal.number, "title": proposal.title, "type": proposal.pep_type},
    )
    logger.info("Created PEP %s (%s)", proposal.number, proposal.title)
    return proposal


def _insert_draft(
    s: Session,
    number: int | None,
    *,
    user: User,
    body: str | None,
    title: str,
    authors: Sequence[Author],
    pep_type: str,
    created: date,
    python_version: str | None,
    post_history: str | None,
    requires: Sequence[int],
    replaces: Sequence[int],
) -> Proposal:
    with _NUMBER_LOCK:
        n = allocate_number(s, number)
        _check_references(n, superseded_by=None, requires=requires, replaces=replaces, known=existing_numbers(s))
        header = build_header(
            number=n,
            title=title,
            authors=authors,
            status=DRAFT,
            pep_type=pep_type,
            created=created,
            python_version=python_version,
            post_history=post_history,
            requires=requires,
            replaces=replaces,
        )
        now = datetime.utcnow()
        proposal = Proposal(
            number=n,
            title=title,
            status=DRAFT,
            pep_type=pep_type,
            created=created,
            python_version=python_version or None,
            post_history=post_history or None,
            requires=format_number_list(requires) or None,
            replaces=format_number_list(replaces) or None,
            header_text=header.serialize(),
            separator="\n",
            body=skeleton_body() if body is None else body,
            created_at=now,
            updated_at=now,
            created_by_user_id=user.id,
            updated_by_user_id=user.id,
        )
        _set_authors(proposal, authors)
        s.add(proposal)
        _flush_claiming(s, [n])
    return proposal


def _proposal_from_document(doc: ParsedDocument, user: User) -> Proposal:
    meta = doc.metadata
    now = datetime.utcnow()
    proposal = Proposal(
        number=meta.number,
        title=meta.title,
        status=meta.status,
        pep_type=meta.pep_type,
        created=meta.created,
        python_version=meta.python_version,
        post_history=meta.post_history,
        resolution=meta.resolution,
        superseded_by=meta.superseded_by,
        requires=format_number_list(meta.requires) or None,
        replaces=format_number_list(meta.replaces) or None,
        header_text=doc.header.serialize(),
        separator=doc.separator,
        body=doc.body,
        created_at=now,
        updated_at=now,
        created_by_user_id=user.id,
        updated_by_user_id=user.id,
    )
    _set_authors(proposal, meta.authors)
    return proposal


def parse_sources(documents: Iterable[tuple[str | None, str]]) -> list[ParsedDocument]:
    parsed = []
    for filename, text in documents:
        try:
            parsed.append(parse_document(text, filename=filename))
        except MalformedHeader as e:
            if not filename:
                raise
            raise MalformedHeader(f"{filename}: {e}", field=e.field) from e
    return parsed


def import_proposals(s: Session, documents: Iterable[tuple[str | None, str]], *, user: User) -> list[Proposal]:
    """
    Import (filename, text) source files as one batch.

    Header references may point at other members of the batch, so they are
    checked against the collection plus the whole batch.
    """
    parsed = parse_sources(documents)
    counts = Counter(doc.number for doc in parsed)
    for number, count in counts.items():
        if count > 1:
            raise DuplicateNumber(number)
    for doc in parsed:
        _check_status_fields(doc)

    with _NUMBER_LOCK:
        known = existing_numbers(s)
        for doc in parsed:
            if doc.number in known:
                raise DuplicateNumber(doc.number)
        known |= set(counts)
        for doc in parsed:
            meta = doc.metadata
            _check_references(
                meta.number,
                superseded_by=meta.superseded_by,
                requires=meta.requires,
                replaces=meta.replaces,
                known=known,
            )
        proposals = [_proposal_from_document(doc, user) for doc in parsed]
        s.add_all(proposals)
        _flush_claiming(s, [p.number for p in proposals])

    for doc, proposal in zip(parsed, proposals):
        store_source(proposal, filename=doc.filename)
        record_event(
            s,
            actor=user,
            action="proposal.import",
            entity_type="Proposal",
            entity_id=str(proposal.number),
            metadata={
                "number": proposal.number,
                "title": proposal.title,
                "status": proposal.status,
                "filename": doc.filename,
                "header_warnings": doc.warnings,
            },
        )
    logger.info("Imported %d proposal(s): %s", len(proposals), [p.number for p in proposals])
    return proposals


def import_proposal(s: Session, text: str, *, user: User, filename: str | None = None) -> Proposal:
    return import_proposals(s, [(filename, text)], user=user)[0]


# ---------- Status transitions ----------

def change_status(
    s: Session,
    proposal: Proposal,
    target: str,
    *,
    user: User,
    resolution: str | None = None,
    superseded_by: int | None = None,
    reason: str | None = None,
    override: bool = False,
) -> Proposal:
    """
    Move `proposal` to `target`, updating Status/Resolution/Superseded-By in
    both the row and the stored header.

    A resolution already on the proposal satisfies the Final/Rejected
    requirement; a new one replaces it.
    """
    resolution = (resolution or "").strip() or None
    reason = (reason or "").strip() or None
    check_single_line("Resolution", resolution)
    if override and not reason:
        raise InvalidTransition(proposal.status, target, "Editorial override requires a reason")

    new_status = transition(
        proposal.status,
        target,
        resolution=resolution or proposal.resolution,
        superseded_by=superseded_by,
        override=override,
    )

    if new_status == SUPERSEDED:
        if superseded_by == proposal.number:
            raise InvalidTransition(proposal.status, target, "A proposal cannot supersede itself")
        if get_by_number(s, superseded_by) is None:  # type: ignore[arg-type]
            raise DanglingReference(superseded_by, "Superseded-By", proposal.number)  # type: ignore[arg-type]

    new_superseded_by = superseded_by if new_status == SUPERSEDED else None

    # Header first: nothing on the row changes if the stored header cannot be rewritten.
    header = parse_header(proposal.header_text)
    header.set("Status", new_status)
    if resolution:
        header.set("Resolution", resolution)
    if new_superseded_by is not None:
        header.set("Superseded-By", str(new_superseded_by))
    else:
        header.remove("Superseded-By")

    old_status = proposal.status
    proposal.status = new_status
    if resolution:
        proposal.resolution = resolution
    proposal.superseded_by = new_superseded_by
    proposal.header_text = header.serialize()

    proposal.updated_at = datetime.utcnow()
    proposal.updated_by_user_id = user.id
    proposal.status_changes.append(
        ProposalStatusChange(
            from_status=old_status,
            to_status=new_status,
            resolution=resolution,
            superseded_by=proposal.superseded_by,
            is_override=override,
            reason=reason,
            changed_by_user_id=user.id,
        )
    )

    store_source(proposal)
    record_event(
        s,
        actor=user,
        action="proposal.status_change",
        entity_type="Proposal",
        entity_id=str(proposal.number),
        reason=reason,
        metadata={
            "number": proposal.number,
            "from": old_status,
            "to": new_status,
            "resolution": resolution,
            "superseded_by": proposal.superseded_by,
            "override": override,
        },
    )
    logger.info("PEP %s: %s -> %s%s", proposal.number, old_status, new_status, " (override)" if override else "")
    return proposal


# ---------- Collection validation ----------

@dataclass(frozen=True)
class CollectionIssue:
    number: int
    severity: str  # "error" | "warning"
    code: str
    message: str


def validate_collection(items: Iterable[Any]) -> list[CollectionIssue]:
    """
    Check collection-wide invariants over Proposal rows or ParsedDocuments.

    Errors break an invariant (uniqueness, status references, header
    references); warnings flag unresolved footnotes, body mentions of unknown
    proposals and non-canonical header order.
    """
    items = list(items)
    issues: list[CollectionIssue] = []

    def _add(number: int, severity: str, code: str, message: str) -> None:
        issues.append(CollectionIssue(number, severity, code, message))

    counts = Counter(item.number for item in items)
    for number, count in counts.items():
        if count > 1:
            _add(number, "error", "duplicate-number", f"PEP {number} is used by {count} documents")
    known = set(counts)

    for item in items:
        n = item.number
        if item.status not in VALID_STATUSES:
            _add(n, "error", "unknown-status", f"Unknown status {item.status!r}")

        if item.superseded_by is None and item.status == SUPERSEDED:
            _add(n, "error", "missing-superseded-by", "Superseded without Superseded-By")
        if item.superseded_by is not None:
            if item.status != SUPERSEDED:
                _add(n, "error", "superseded-by-without-status", f"Superseded-By set but status is {item.status}")
            if item.superseded_by not in known:
                _add(n, "error", "dangling-superseded-by", f"Superseded-By references missing PEP {item.superseded_by}")

        if item.status in RESOLUTION_REQUIRED and not (item.resolution or "").strip():
            _add(n, "error", "missing-resolution", f"{item.status} without Resolution")

        for label, numbers in (("Requires", item.requires_numbers), ("Replaces", item.replaces_numbers)):
            for ref in numbers:
                if ref not in known:
                    _add(n, "error", f"dangling-{label.lower()}", f"{label} references missing PEP {ref}")

        try:
            for problem in order_issues(parse_header(item.header_text)):
                _add(n, "warning", "header-order", problem)
        except MalformedHeader as e:
            _add(n, "error", "malformed-header", str(e))

        body = item.body or ""
        footnotes = resolve_footnotes(body)
        for label in footnotes.unresolved:
            _add(n, "warning", "unresolved-footnote", f"Footnote [{label}]_ has no target")
        for ref in cross_references(body):
            if ref != n and ref not in known:
                _add(n, "warning", "dangling-cross-reference", f"Body mentions PEP {ref}, which is not in the collection")

    issues.sort(key=lambda i: (i.number, i.severity != "error", i.code))
    return issues


# ---------- Catalog ----------

TYPE_CODES = {"Standards Track": "S", "Informational": "I", "Process": "P"}
STATUS_CODES = {
    ACCEPTED: "A",
    ACTIVE: "A",
    DEFERRED: "D",
    DRAFT: "",
    FINAL: "F",
    REJECTED: "R",
    SUPERSEDED: "S",
    WITHDRAWN: "W",
}

STANDARDS_TRACK = "Standards Track"

CATALOG_SECTIONS = (
    ("meta", "Meta-PEPs (PEPs about PEPs or Processes)"),
    ("info", "Other Informational PEPs"),
    ("accepted", "Accepted PEPs (accepted; may not be implemented yet)"),
    ("open", "Open PEPs (under consideration)"),
    ("finished", "Finished PEPs (done, with a stable interface)"),
    ("historical", "Historical Meta-PEPs and Informational PEPs"),
    ("deferred", "Deferred PEPs (postponed pending further research or updates)"),
    ("abandoned", "Abandoned, Withdrawn, and Rejected PEPs"),
)


@dataclass(frozen=True)
class CatalogEntry:
    code: str
    number: int
    title: str
    authors: str


@dataclass
class CatalogSection:
    key: str
    title: str
    entries: list[CatalogEntry] = field(default_factory=list)


def catalog_category(pep_type: str, status: str) -> str:
    if status in (ACTIVE, DRAFT) and pep_type == "Process":
        return "meta"
    if status == ACTIVE or (status == DRAFT and pep_type != STANDARDS_TRACK):
        return "info"
    if status == ACCEPTED:
        return "accepted"
    if status == DRAFT:
        return "open"
    if status == FINAL:
        return "finished" if pep_type == STANDARDS_TRACK else "historical"
    if status == DEFERRED:
        return "deferred"
    if status == SUPERSEDED and pep_type != STANDARDS_TRACK:
        return "historical"
    return "abandoned"


def build_catalog(proposals: Iterable[Proposal]) -> list[CatalogSection]:
    sections = {key: CatalogSection(key, title) for key, title in CATALOG_SECTIONS}
    for p in sorted(proposals, key=lambda p: p.number):
        code = TYPE_CODES.get(p.pep_type, "?") + STATUS_CODES.get(p.status, "?")
        sections[catalog_category(p.pep_type, p.status)].entries.append(
            CatalogEntry(code=code, number=p.number, title=p.title, authors=p.author_line)
        )
    return [sections[key] for key, _ in CATALOG_SECTIONS]
