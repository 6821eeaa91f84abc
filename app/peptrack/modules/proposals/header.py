"""
Proposal source files: metadata header + free-form body.

The header is an RFC 822 style block of ``Field: value`` lines (continuation
lines are indented) ending at the first blank line. Every field keeps its raw
bytes, so an untouched header serializes back exactly as it was read; edits
rewrite only the field being changed.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date

from app.peptrack.modules.proposals.errors import MalformedHeader
from app.peptrack.modules.proposals.lifecycle import SUPERSEDED, VALID_STATUSES

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("PEP", "Title", "Author", "Status", "Type", "Created")

# Canonical field order; used to place inserted fields and to flag misordered headers.
HEADER_ORDER = (
    "PEP",
    "Title",
    "Version",
    "Last-Modified",
    "Author",
    "Sponsor",
    "BDFL-Delegate",
    "PEP-Delegate",
    "Discussions-To",
    "Status",
    "Type",
    "Topic",
    "Content-Type",
    "Created",
    "Python-Version",
    "Post-History",
    "Resolution",
    "Superseded-By",
    "Requires",
    "Replaces",
)
_ORDER_RANK = {name.lower(): i for i, name in enumerate(HEADER_ORDER)}

VALID_TYPES = ("Standards Track", "Informational", "Process")

MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")

FIELD_LINE_RX = re.compile(r"^(?P<name>[A-Za-z][A-Za-z0-9-]*):(?P<rest>.*)$")
CREATED_RX = re.compile(r"^(?P<day>\d{1,2})-(?P<month>[A-Za-z]{3})-(?P<year>\d{4})$")
AUTHOR_ANGLE_RX = re.compile(r"^(?P<name>.+?)\s*<(?P<contact>[^<>]+)>$")
AUTHOR_PAREN_RX = re.compile(r"^(?P<contact>\S+@\S+)\s*\((?P<name>[^()]+)\)$")
NUMBER_RX = re.compile(r"\d+", re.ASCII)
# Only CR, LF and CRLF end a line (str.splitlines also splits on \x0c, \x85, \u2028).
LINE_RX = re.compile(r"[^\r\n]*(?:\r\n|\r|\n)|[^\r\n]+$")
LINE_BREAKS = ("\r", "\n")


def split_lines(text: str) -> list[str]:
    """Lines of `text` with their endings kept."""
    return LINE_RX.findall(text or "")


def _is_blank(line: str) -> bool:
    return not line.strip(" \t\r\n")


def check_single_line(name: str, value: str | None) -> None:
    """Header values are one physical line; a line break would start a new field."""
    if value and any(ch in value for ch in LINE_BREAKS):
        raise MalformedHeader(f"'{name}' must not contain line breaks", field=name)


@dataclass(frozen=True)
class HeaderField:
    name: str
    raw: str  # exact text, continuation lines and line endings included

    @property
    def value(self) -> str:
        """Logical value: first line plus continuation lines, whitespace-normalized."""
        lines = [ln.rstrip("\r\n") for ln in split_lines(self.raw)]
        parts = [lines[0].split(":", 1)[1].strip()] + [ln.strip() for ln in lines[1:]]
        return " ".join(p for p in parts if p)


class Header:
    def __init__(self, fields: Iterable[HeaderField] = ()) -> None:
        self.fields: list[HeaderField] = list(fields)

    def __contains__(self, name: str) -> bool:
        return self._index(name) is not None

    def __len__(self) -> int:
        return len(self.fields)

    def _index(self, name: str) -> int | None:
        key = name.lower()
        for i, f in enumerate(self.fields):
            if f.name.lower() == key:
                return i
        return None

    @property
    def newline(self) -> str:
        raw = self.fields[0].raw if self.fields else ""
        for ending in ("\r\n", "\r"):
            if raw.endswith(ending):
                return ending
        return "\n"

    def names(self) -> list[str]:
        return [f.name for f in self.fields]

    def get(self, name: str, default: str | None = None) -> str | None:
        i = self._index(name)
        if i is None:
            return default
        return self.fields[i].value

    def set(self, name: str, value: str) -> None:
        """Rewrite one field in place, or insert it at its canonical position."""
        check_single_line(name, value)
        i = self._index(name)
        if i is not None:
            old = self.fields[i]
            ending = self.newline if old.raw.endswith(LINE_BREAKS) else ""
            self.fields[i] = HeaderField(old.name, f"{old.name}: {value}{ending}")
            return

        new = HeaderField(name, f"{name}: {value}{self.newline}")

        rank = _ORDER_RANK.get(name.lower(), len(HEADER_ORDER))
        position = 0
        for j, f in enumerate(self.fields):
            r = _ORDER_RANK.get(f.name.lower())
            if r is not None and r < rank:
                position = j + 1
        if position == len(self.fields) and self.fields and not self.fields[-1].raw.endswith(LINE_BREAKS):
            last = self.fields[-1]
            self.fields[-1] = HeaderField(last.name, last.raw + self.newline)
        self.fields.insert(position, new)

    def remove(self, name: str) -> None:
        i = self._index(name)
        if i is not None:
            del self.fields[i]

    def serialize(self) -> str:
        return "".join(f.raw for f in self.fields)


def parse_header(text: str) -> Header:
    """Parse a header block. ``parse_header(t).serialize() == t`` for any valid block."""
    fields: list[HeaderField] = []
    seen: set[str] = set()
    current_name: str | None = None
    current_raw: list[str] = []

    def _flush() -> None:
        if current_name is not None:
            fields.append(HeaderField(current_name, "".join(current_raw)))

    for lineno, line in enumerate(split_lines(text), start=1):
        content = line.rstrip("\r\n")
        if _is_blank(content):
            raise MalformedHeader("Blank line inside header", line=lineno)
        if content[0] in " \t":
            if current_name is None:
                raise MalformedHeader("Continuation line before any field", line=lineno)
            current_raw.append(line)
            continue
        m = FIELD_LINE_RX.match(content)
        if not m:
            raise MalformedHeader(f"Expected 'Field: value', got {content[:40]!r}", line=lineno)
        name = m.group("name")
        if name.lower() in seen:
            raise MalformedHeader(f"Duplicate field '{name}'", field=name, line=lineno)
        _flush()
        seen.add(name.lower())
        current_name = name
        current_raw = [line]
    _flush()
    return Header(fields)


def order_issues(header: Header) -> list[str]:
    issues: list[str] = []
    prev_name: str | None = None
    prev_rank = -1
    for name in header.names():
        rank = _ORDER_RANK.get(name.lower())
        if rank is None:
            continue
        if rank < prev_rank:
            issues.append(f"'{name}' should come before '{prev_name}'")
        else:
            prev_name, prev_rank = name, rank
    return issues


@dataclass(frozen=True)
class Author:
    name: str
    contact: str = ""

    def __str__(self) -> str:
        return f"{self.name} <{self.contact}>" if self.contact else self.name


def _split_top_level(value: str) -> list[str]:
    """Split on commas that are not inside <...> or (...)."""
    parts: list[str] = []
    buf: list[str] = []
    depth = 0
    for ch in value:
        if ch in "<(":
            depth += 1
        elif ch in ">)":
            depth = max(depth - 1, 0)
        if ch == "," and depth == 0:
            parts.append("".join(buf))
            buf = []
        else:
            buf.append(ch)
    parts.append("".join(buf))
    return [p.strip() for p in parts if p.strip()]


def parse_authors(value: str) -> list[Author]:
    authors = []
    for part in _split_top_level(value or ""):
        m = AUTHOR_ANGLE_RX.match(part)
        if m:
            authors.append(Author(m.group("name").strip(), m.group("contact").strip()))
            continue
        m = AUTHOR_PAREN_RX.match(part)
        if m:
            authors.append(Author(m.group("name").strip(), m.group("contact").strip()))
            continue
        authors.append(Author(part))
    return authors


def format_authors(authors: Iterable[Author]) -> str:
    return ", ".join(str(a) for a in authors)


def parse_created(value: str) -> date:
    """Parse ``DD-Mon-YYYY`` (e.g. 14-Jan-2013); ISO dates are accepted too."""
    v = (value or "").strip()
    m = CREATED_RX.match(v)
    if m:
        month = m.group("month").title()
        if month in MONTHS:
            try:
                return date(int(m.group("year")), MONTHS.index(month) + 1, int(m.group("day")))
            except ValueError as e:
                raise MalformedHeader(f"Invalid Created date {v!r}: {e}", field="Created") from e
    try:
        return date.fromisoformat(v)
    except ValueError as e:
        raise MalformedHeader(f"Invalid Created date {v!r}; expected DD-Mon-YYYY", field="Created") from e


def format_created(d: date) -> str:
    return f"{d.day:02d}-{MONTHS[d.month - 1]}-{d.year}"


def parse_number(value: str, *, field_name: str = "PEP") -> int:
    v = (value or "").strip()
    if not NUMBER_RX.fullmatch(v):
        raise MalformedHeader(f"{field_name} must be a proposal number, got {v!r}", field=field_name)
    n = int(v)
    if n < 1:
        raise MalformedHeader(f"{field_name} must be a positive number, got {n}", field=field_name)
    return n


def parse_number_list(value: str | None, *, field_name: str) -> tuple[int, ...]:
    if not value:
        return ()
    return tuple(parse_number(part, field_name=field_name) for part in value.split(",") if part.strip())


def format_number_list(numbers: Iterable[int]) -> str:
    return ", ".join(str(n) for n in numbers)


@dataclass(frozen=True)
class ProposalMetadata:
    number: int
    title: str
    authors: tuple[Author, ...]
    status: str
    pep_type: str
    created: date
    python_version: str | None = None
    post_history: str | None = None
    resolution: str | None = None
    superseded_by: int | None = None
    requires: tuple[int, ...] = ()
    replaces: tuple[int, ...] = ()


def read_metadata(header: Header) -> ProposalMetadata:
    """Extract typed metadata, raising MalformedHeader on any missing or invalid field."""
    for name in REQUIRED_FIELDS:
        if not header.get(name):
            raise MalformedHeader(f"Missing required field '{name}'", field=name)

    status = header.get("Status") or ""
    if status not in VALID_STATUSES:
        raise MalformedHeader(f"Unknown Status {status!r}", field="Status")
    pep_type = header.get("Type") or ""
    if pep_type not in VALID_TYPES:
        raise MalformedHeader(f"Unknown Type {pep_type!r}", field="Type")

    authors = tuple(parse_authors(header.get("Author") or ""))
    if not authors:
        raise MalformedHeader("Author lists nobody", field="Author")

    superseded_by = None
    if header.get("Superseded-By"):
        superseded_by = parse_number(header.get("Superseded-By") or "", field_name="Superseded-By")

    return ProposalMetadata(
        number=parse_number(header.get("PEP") or ""),
        title=header.get("Title") or "",
        authors=authors,
        status=status,
        pep_type=pep_type,
        created=parse_created(header.get("Created") or ""),
        python_version=header.get("Python-Version") or None,
        post_history=header.get("Post-History") or None,
        resolution=header.get("Resolution") or None,
        superseded_by=superseded_by,
        requires=parse_number_list(header.get("Requires"), field_name="Requires"),
        replaces=parse_number_list(header.get("Replaces"), field_name="Replaces"),
    )


def split_document(text: str) -> tuple[str, str, str]:
    """Return (header_text, separator, body); the separator is the first blank line."""
    lines = split_lines(text)
    for i, line in enumerate(lines):
        if _is_blank(line):
            return "".join(lines[:i]), line, "".join(lines[i + 1:])
    return text, "", ""


@dataclass
class ParsedDocument:
    header: Header
    separator: str
    body: str
    metadata: ProposalMetadata
    filename: str | None = None
    warnings: list[str] = field(default_factory=list)

    # Attribute names shared with the Proposal model, for collection checks.
    @property
    def number(self) -> int:
        return self.metadata.number

    @property
    def status(self) -> str:
        return self.metadata.status

    @property
    def resolution(self) -> str | None:
        return self.metadata.resolution

    @property
    def superseded_by(self) -> int | None:
        return self.metadata.superseded_by

    @property
    def requires_numbers(self) -> list[int]:
        return list(self.metadata.requires)

    @property
    def replaces_numbers(self) -> list[int]:
        return list(self.metadata.replaces)

    @property
    def header_text(self) -> str:
        return self.header.serialize()

    def serialize(self) -> str:
        return self.header.serialize() + self.separator + self.body


def parse_document(text: str, *, filename: str | None = None) -> ParsedDocument:
    header_text, separator, body = split_document(text)
    header = parse_header(header_text)
    metadata = read_metadata(header)
    if metadata.superseded_by is not None and metadata.status != SUPERSEDED:
        raise MalformedHeader(
            f"Superseded-By is only valid when Status is {SUPERSEDED} (got {metadata.status})",
            field="Superseded-By",
        )
    doc = ParsedDocument(header, separator, body, metadata, filename=filename, warnings=order_issues(header))
    if doc.warnings:
        logger.debug("PEP %s header order: %s", metadata.number, "; ".join(doc.warnings))
    return doc


def build_header(
    *,
    number: int,
    title: str,
    authors: Iterable[Author],
    status: str,
    pep_type: str,
    created: date,
    python_version: str | None = None,
    post_history: str | None = None,
    resolution: str | None = None,
    superseded_by: int | None = None,
    requires: Iterable[int] = (),
    replaces: Iterable[int] = (),
) -> Header:
    """Generate a fresh header with fields in canonical order."""
    h = Header()
    h.set("PEP", str(number))
    h.set("Title", title)
    h.set("Author", format_authors(authors))
    h.set("Status", status)
    h.set("Type", pep_type)
    h.set("Created", format_created(created))
    if python_version:
        h.set("Python-Version", python_version)
    if post_history:
        h.set("Post-History", post_history)
    if resolution:
        h.set("Resolution", resolution)
    if superseded_by is not None:
        h.set("Superseded-By", str(superseded_by))
    requires = list(requires)
    if requires:
        h.set("Requires", format_number_list(requires))
    replaces = list(replaces)
    if replaces:
        h.set("Replaces", format_number_list(replaces))
    return h
