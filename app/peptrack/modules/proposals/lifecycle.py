"""
Status lifecycle for proposals.

    Draft -> Active | Accepted | Rejected | Withdrawn | Deferred
    Accepted -> Final | Superseded
    Final -> Superseded

Final, Rejected, Withdrawn and Superseded are terminal; Final keeps only the
explicit edge to Superseded. Anything else is an editorial override.
"""
from __future__ import annotations

from app.peptrack.modules.proposals.errors import InvalidTransition, MissingReference

DRAFT = "Draft"
ACTIVE = "Active"
ACCEPTED = "Accepted"
REJECTED = "Rejected"
WITHDRAWN = "Withdrawn"
DEFERRED = "Deferred"
FINAL = "Final"
SUPERSEDED = "Superseded"

VALID_STATUSES = (DRAFT, ACTIVE, ACCEPTED, DEFERRED, FINAL, REJECTED, WITHDRAWN, SUPERSEDED)

STATUS_TRANSITIONS: dict[str, frozenset[str]] = {
    DRAFT: frozenset({ACTIVE, ACCEPTED, REJECTED, WITHDRAWN, DEFERRED}),
    ACCEPTED: frozenset({FINAL, SUPERSEDED}),
    FINAL: frozenset({SUPERSEDED}),
    ACTIVE: frozenset(),
    DEFERRED: frozenset(),
    REJECTED: frozenset(),
    WITHDRAWN: frozenset(),
    SUPERSEDED: frozenset(),
}

TERMINAL_STATUSES = frozenset({FINAL, REJECTED, WITHDRAWN, SUPERSEDED})

# Statuses that record a final decision and must carry a resolution URL.
RESOLUTION_REQUIRED = frozenset({FINAL, REJECTED})


def allowed_targets(status: str) -> frozenset[str]:
    return STATUS_TRANSITIONS.get(status, frozenset())


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current: str, target: str) -> bool:
    return target in allowed_targets(current)


def required_reference(target: str, *, resolution: str | None, superseded_by: int | None) -> str | None:
    """Name of the reference `target` needs but did not get, if any."""
    if target == SUPERSEDED and superseded_by is None:
        return "a superseding proposal number"
    if target in RESOLUTION_REQUIRED and not (resolution or "").strip():
        return "a resolution reference"
    return None


def transition(
    current: str,
    target: str,
    *,
    resolution: str | None = None,
    superseded_by: int | None = None,
    override: bool = False,
) -> str:
    """
    Validate a status change and return the new status.

    Missing references are reported before the edge table is consulted, so a
    Draft proposal asking for Final without a resolution gets MissingReference.
    `override` lifts the edge table (reopening, for example) but never the
    reference requirements.
    """
    if current not in STATUS_TRANSITIONS:
        raise InvalidTransition(current, target, f"Current status '{current}' is not a known status")
    if target not in STATUS_TRANSITIONS:
        raise InvalidTransition(current, target, f"Unknown status '{target}'")
    if current == target:
        raise InvalidTransition(current, target, f"Proposal is already '{current}'")

    missing = required_reference(target, resolution=resolution, superseded_by=superseded_by)
    if missing:
        raise MissingReference(target, missing)

    if not override and not can_transition(current, target):
        if is_terminal(current) and not allowed_targets(current):
            raise InvalidTransition(current, target, f"'{current}' is terminal; no further transitions permitted")
        raise InvalidTransition(current, target)
    return target
