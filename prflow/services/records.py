"""Immutable snapshots passed between the approval engine and the store."""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Optional, Sequence


class PrStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Decision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


@dataclass(frozen=True)
class ItemRecord:
    line_number: int
    material_id: str
    quantity: Decimal
    unit: str
    estimated_unit_price: Decimal
    vendor: Optional[str] = None
    notes: Optional[str] = None

    @property
    def subtotal(self) -> Decimal:
        return self.quantity * self.estimated_unit_price


def compute_total(items: Sequence[ItemRecord]) -> Decimal:
    return sum((item.subtotal for item in items), Decimal("0"))


@dataclass(frozen=True)
class HistoryEntryRecord:
    stage: str
    stage_index: int
    actor_ref: str
    decision: Decision
    decided_at: datetime
    comment: Optional[str] = None


@dataclass(frozen=True)
class CommentRecord:
    id: str
    pr_id: str
    author_ref: str
    text: str
    created_at: datetime


@dataclass(frozen=True)
class PurchaseRequestRecord:
    id: str
    number: str
    project_id: str
    pr_type: str
    title: str
    status: PrStatus
    current_stage: Optional[str]
    created_by: str
    created_at: datetime
    updated_at: datetime
    version: int
    priority: Priority = Priority.NORMAL
    description: Optional[str] = None
    required_by: Optional[date] = None
    items: Sequence[ItemRecord] = field(default_factory=tuple)
    approval_history: Sequence[HistoryEntryRecord] = field(default_factory=tuple)
    comments: Sequence[CommentRecord] = field(default_factory=tuple)

    @property
    def total_amount(self) -> Decimal:
        return compute_total(self.items)

    @property
    def is_terminal(self) -> bool:
        return self.status is not PrStatus.PENDING


@dataclass(frozen=True)
class NewPurchaseRequest:
    """Everything the store needs to persist a freshly submitted PR."""

    project_id: str
    pr_type: str
    title: str
    current_stage: str
    created_by: str
    created_at: datetime
    items: Sequence[ItemRecord]
    priority: Priority = Priority.NORMAL
    description: Optional[str] = None
    required_by: Optional[date] = None


@dataclass(frozen=True)
class Mutation:
    """State the store writes back when the version check passes."""

    status: PrStatus
    current_stage: Optional[str]
    updated_at: datetime
    history_entry: Optional[HistoryEntryRecord] = None
    details: dict[str, Any] = field(default_factory=dict)


MutationFn = Callable[[PurchaseRequestRecord], Mutation]


@dataclass(frozen=True)
class RequestFilters:
    project_id: Optional[str] = None
    created_by: Optional[str] = None
    status: Optional[PrStatus] = None
    # (pr_type, stage) pairs; matches pending PRs sitting at any of them
    awaiting: Optional[Sequence[tuple[str, str]]] = None
    limit: int = 20
    offset: int = 0
