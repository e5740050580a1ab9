import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    String,
    Integer,
    Numeric,
    Date,
    DateTime,
    Text,
    Uuid,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    Index,
)
from sqlalchemy.orm import Mapped, mapped_column

from prflow.database import Base, utcnow


class PurchaseRequest(Base):
    __tablename__ = "purchase_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    pr_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    seq_year: Mapped[int] = mapped_column(Integer, nullable=False)
    seq_no: Mapped[int] = mapped_column(Integer, nullable=False)
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("projects.id"), nullable=False
    )
    pr_type: Mapped[str] = mapped_column(String(50), nullable=False, default="standard")
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    required_by: Mapped[Optional[date]] = mapped_column(Date)
    priority: Mapped[str] = mapped_column(String(20), nullable=False, default="normal")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    current_stage: Mapped[Optional[str]] = mapped_column(String(50))
    total_amount: Mapped[Decimal] = mapped_column(Numeric(20, 4), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("seq_year", "seq_no", name="uq_pr_sequence"),
        CheckConstraint(
            "(status = 'pending' AND current_stage IS NOT NULL) OR "
            "(status IN ('approved', 'rejected') AND current_stage IS NULL)",
            name="chk_pr_status_stage",
        ),
        Index("idx_pr_project", "project_id"),
        Index("idx_pr_status_stage", "status", "current_stage"),
        Index("idx_pr_created_by", "created_by"),
    )


class PrItem(Base):
    __tablename__ = "pr_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    pr_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("purchase_requests.id", ondelete="CASCADE"), nullable=False
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    material_id: Mapped[str] = mapped_column(String(64), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    unit: Mapped[str] = mapped_column(String(30), nullable=False)
    estimated_unit_price: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    vendor: Mapped[Optional[str]] = mapped_column(String(200))
    notes: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        UniqueConstraint("pr_id", "line_number", name="uq_pr_item_line"),
        CheckConstraint("quantity > 0", name="chk_pr_item_qty"),
        CheckConstraint("estimated_unit_price >= 0", name="chk_pr_item_price"),
        Index("idx_pr_items_pr", "pr_id"),
    )


class PrApprovalHistory(Base):
    """Append-only; one row per decided stage."""

    __tablename__ = "pr_approval_history"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    pr_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("purchase_requests.id", ondelete="CASCADE"), nullable=False
    )
    stage: Mapped[str] = mapped_column(String(50), nullable=False)
    stage_index: Mapped[int] = mapped_column(Integer, nullable=False)
    actor_ref: Mapped[str] = mapped_column(String(64), nullable=False)
    decision: Mapped[str] = mapped_column(String(20), nullable=False)
    comment: Mapped[Optional[str]] = mapped_column(Text)
    decided_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("pr_id", "stage", name="uq_pr_history_stage"),
        CheckConstraint("stage_index >= 0", name="chk_pr_history_index"),
        Index("idx_pr_history_pr", "pr_id", "stage_index"),
    )


class PrComment(Base):
    """Append-only discussion notes; outside the approval state machine."""

    __tablename__ = "pr_comments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    pr_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("purchase_requests.id", ondelete="CASCADE"), nullable=False
    )
    author_ref: Mapped[str] = mapped_column(String(64), nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (Index("idx_pr_comments_pr", "pr_id", "created_at"),)
