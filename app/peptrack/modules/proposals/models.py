from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.peptrack.models import Base
from app.peptrack.modules.proposals.header import NUMBER_RX
from app.peptrack.modules.proposals.lifecycle import DRAFT, is_terminal


def _split_numbers(raw: str | None) -> list[int]:
    return [int(p) for p in (raw or "").split(",") if NUMBER_RX.fullmatch(p.strip())]


class Proposal(Base):
    __tablename__ = "proposals"
    __table_args__ = (
        Index("idx_proposals_status", "status"),
        Index("idx_proposals_type", "pep_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    # Immutable once assigned; never reused (proposals are never deleted).
    number: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=DRAFT)
    pep_type: Mapped[str] = mapped_column(String(32), nullable=False)
    created: Mapped[date] = mapped_column(Date, nullable=False)

    python_version: Mapped[str | None] = mapped_column(String(64), nullable=True)
    post_history: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolution: Mapped[str | None] = mapped_column(String(512), nullable=True)  # URL
    # Checked at the service layer; a batch import may reference a row added later in the batch.
    superseded_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    requires: Mapped[str | None] = mapped_column(String(255), nullable=True)  # "3107, 484"
    replaces: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Source file as stored: header_text + separator + body
    header_text: Mapped[str] = mapped_column(Text, nullable=False)
    separator: Mapped[str] = mapped_column(Text, nullable=False, default="\n")  # first blank line, whitespace kept
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")
    storage_key: Mapped[str | None] = mapped_column(String(512), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    authors: Mapped[list["ProposalAuthor"]] = relationship(
        "ProposalAuthor",
        back_populates="proposal",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ProposalAuthor.position",
    )
    status_changes: Mapped[list["ProposalStatusChange"]] = relationship(
        "ProposalStatusChange",
        back_populates="proposal",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ProposalStatusChange.id",
    )

    @property
    def requires_numbers(self) -> list[int]:
        return _split_numbers(self.requires)

    @property
    def replaces_numbers(self) -> list[int]:
        return _split_numbers(self.replaces)

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)

    @property
    def author_line(self) -> str:
        return ", ".join(a.name for a in self.authors)


class ProposalAuthor(Base):
    __tablename__ = "proposal_authors"
    __table_args__ = (
        UniqueConstraint("proposal_id", "position", name="uq_proposal_author_position"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    proposal_id: Mapped[int] = mapped_column(ForeignKey("proposals.id", ondelete="CASCADE"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)  # 0-based, header order
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    contact: Mapped[str] = mapped_column(String(320), nullable=False, default="")

    proposal: Mapped[Proposal] = relationship("Proposal", back_populates="authors", lazy="selectin")


class ProposalStatusChange(Base):
    """Append-only status history; one row per accepted transition."""

    __tablename__ = "proposal_status_changes"
    __table_args__ = (Index("idx_proposal_status_changes_proposal", "proposal_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    proposal_id: Mapped[int] = mapped_column(ForeignKey("proposals.id", ondelete="CASCADE"), nullable=False)

    from_status: Mapped[str] = mapped_column(String(16), nullable=False)
    to_status: Mapped[str] = mapped_column(String(16), nullable=False)
    resolution: Mapped[str | None] = mapped_column(String(512), nullable=True)
    superseded_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_override: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reason: Mapped[str | None] = mapped_column(String(512), nullable=True)

    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    changed_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    proposal: Mapped[Proposal] = relationship("Proposal", back_populates="status_changes", lazy="selectin")
