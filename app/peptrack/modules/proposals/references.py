"""
Footnote and cross-document references inside proposal bodies.

Footnotes use reStructuredText markers (``[1]_``, ``[#]_``, ``[#label]_``)
resolved against the trailing reference list (``.. [1] text``).
Cross-references name other proposals by number (``PEP 436``,
``:pep:`436```, ``pep-0436`` in URLs).
"""
from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field

from markupsafe import Markup, escape

FOOTNOTE_MARKER_RX = re.compile(r"\[(?P<label>\d+|#[A-Za-z0-9_-]*)\]_")
FOOTNOTE_TARGET_RX = re.compile(r"^\.\.[ \t]+\[(?P<label>\d+|#[A-Za-z0-9_-]*)\](?:[ \t]+(?P<text>.*))?$")

PEP_MENTION_RX = re.compile(r"\bPEP\s+(?P<number>\d+)\b")
PEP_ROLE_RX = re.compile(r":pep:`(?:[^`<]*<)?(?P<number>\d+)(?:#[^`>]*)?>?`")
PEP_URL_RX = re.compile(r"\bpep-(?P<number>\d{4})\b")

AUTO_LABEL = "#"


@dataclass
class FootnoteReport:
    resolved: dict[str, str] = field(default_factory=dict)
    unresolved: list[str] = field(default_factory=list)
    unused: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.unresolved


def footnote_markers(body: str) -> list[str]:
    """Marker labels in order of appearance (repeats kept)."""
    return [m.group("label") for m in FOOTNOTE_MARKER_RX.finditer(body or "")]


def footnote_targets(body: str) -> list[tuple[str, str]]:
    """(label, text) for each ``.. [label]`` target; indented lines continue the text."""
    targets: list[tuple[str, str]] = []
    current: tuple[str, list[str]] | None = None
    for line in (body or "").splitlines():
        m = FOOTNOTE_TARGET_RX.match(line)
        if m:
            if current:
                targets.append((current[0], " ".join(current[1]).strip()))
            current = (m.group("label"), [m.group("text") or ""])
            continue
        if current and line[:1] in (" ", "\t") and line.strip():
            current[1].append(line.strip())
            continue
        if current:
            targets.append((current[0], " ".join(current[1]).strip()))
            current = None
    if current:
        targets.append((current[0], " ".join(current[1]).strip()))
    return targets


def resolve_footnotes(body: str) -> FootnoteReport:
    """
    Match markers to targets.

    Anonymous auto-numbered markers (``[#]_``) pair with anonymous targets in
    order and are reported as ``#1``, ``#2``, ...; labelled markers match by label.
    """
    report = FootnoteReport()
    targets = footnote_targets(body)
    named = {label: text for label, text in targets if label != AUTO_LABEL}
    anonymous = [text for label, text in targets if label == AUTO_LABEL]

    used: set[str] = set()
    auto_seen = 0
    for label in footnote_markers(body):
        if label == AUTO_LABEL:
            auto_seen += 1
            key = f"{AUTO_LABEL}{auto_seen}"
            if auto_seen <= len(anonymous):
                report.resolved[key] = anonymous[auto_seen - 1]
            elif key not in report.unresolved:
                report.unresolved.append(key)
            continue
        if label in named:
            report.resolved[label] = named[label]
            used.add(label)
        elif label not in report.unresolved:
            report.unresolved.append(label)

    report.unused = [label for label in named if label not in used]
    report.unused.extend(f"{AUTO_LABEL}{i}" for i in range(auto_seen + 1, len(anonymous) + 1))
    return report


def cross_references(text: str) -> list[int]:
    """Distinct proposal numbers mentioned in `text`, ascending."""
    found: set[int] = set()
    for rx in (PEP_MENTION_RX, PEP_ROLE_RX, PEP_URL_RX):
        for m in rx.finditer(text or ""):
            n = int(m.group("number"))
            if n > 0:
                found.add(n)
    return sorted(found)


def linkify_cross_references(text: str, url_for_number: Callable[[int], str | None]) -> Markup:
    """
    HTML-escape `text` and turn ``PEP N`` mentions into links.

    `url_for_number` returns None for numbers that do not resolve; those are
    wrapped in a ``dangling-ref`` span instead.
    """

    def _sub(m: re.Match[str]) -> str:
        n = int(m.group("number"))
        url = url_for_number(n)
        if url:
            return f'<a href="{escape(url)}">{m.group(0)}</a>'
        return f'<span class="dangling-ref" title="No such proposal">{m.group(0)}</span>'

    return Markup(PEP_MENTION_RX.sub(_sub, str(escape(text or ""))))
