"""
Validation errors for the proposals module.

All of them are recoverable by rejecting the edit: views catch ProposalError,
roll back and flash the message; scripts print it and exit non-zero.
"""
from __future__ import annotations


class ProposalError(ValueError):
    pass


class MalformedHeader(ProposalError):
    """Header syntax error, or a required field missing or invalid."""

    def __init__(self, message: str, *, field: str | None = None, line: int | None = None) -> None:
        self.field = field
        self.line = line
        where = f" (line {line})" if line is not None else ""
        super().__init__(f"{message}{where}")


class InvalidTransition(ProposalError):
    def __init__(self, current: str, target: str, message: str | None = None) -> None:
        self.current = current
        self.target = target
        super().__init__(message or f"Cannot transition from '{current}' to '{target}'")


class MissingReference(ProposalError):
    """A status change needs a resolution URL or a superseding proposal."""

    def __init__(self, target: str, reference: str) -> None:
        self.target = target
        self.reference = reference
        super().__init__(f"Status '{target}' requires {reference}")


class DanglingReference(ProposalError):
    def __init__(self, number: int, field: str, source: int | None = None) -> None:
        self.number = number
        self.field = field
        self.source = source
        prefix = f"PEP {source}: " if source is not None else ""
        super().__init__(f"{prefix}{field} references PEP {number}, which does not exist")


class DuplicateNumber(ProposalError):
    def __init__(self, number: int) -> None:
        self.number = number
        super().__init__(f"PEP {number} already exists")
