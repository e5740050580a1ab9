"""
Approval engine: the only mutator of purchase request approval state.

State machine per PR:
  pending@stage_i --approve--> pending@stage_i+1, or approved after the last stage
  pending@stage_i --reject---> rejected
  approved / rejected are terminal.

decide() checks its preconditions in a fixed order (exists, pending,
stage matches, role matches) before anything is written, then hands the
transition to RequestStore.compare_and_apply(). A lost race is retried
from a fresh read a bounded number of times; the re-read usually turns it
into a StageMismatchError instead of a double approval.
"""

import asyncio
import functools
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional, Sequence

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt
import structlog

from prflow.config import settings
from prflow.database import utcnow
from prflow.errors import (
    AlreadyFinalizedError,
    ConcurrentModificationError,
    EditLockedError,
    NotFoundError,
    StageMismatchError,
    UnauthorizedError,
    ValidationError,
)
from prflow.services.access import can_read, reads_all
from prflow.services.comment_ledger import CommentLedger
from prflow.services.identity import Actor
from prflow.services.notification_service import (
    EventType,
    NotificationSink,
    TransitionEvent,
    deliver,
)
from prflow.services.project_directory import ProjectDirectory
from prflow.services.records import (
    CommentRecord,
    Decision,
    HistoryEntryRecord,
    ItemRecord,
    Mutation,
    NewPurchaseRequest,
    PrStatus,
    Priority,
    PurchaseRequestRecord,
    RequestFilters,
    compute_total,
)
from prflow.services.request_store import RequestStore
from prflow.services.stage_policy import StageList, StagePolicy

logger = structlog.get_logger()

MAX_TITLE_LENGTH = 200
AMOUNT_QUANTUM = Decimal("0.01")
AMOUNT_LIMIT = Decimal(10) ** 13
# purchase_requests.total_amount is Numeric(20, 4)
TOTAL_LIMIT = Decimal(10) ** 16

LIST_FILTERS = ("all", "pending_approval", "my_requests", "approved", "rejected")


@dataclass(frozen=True)
class DraftItem:
    material_id: str
    quantity: Any
    unit: str
    estimated_unit_price: Any
    vendor: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class PurchaseRequestDraft:
    project_id: str
    title: str
    items: Sequence[DraftItem]
    description: Optional[str] = None
    required_by: Optional[date] = None
    priority: Any = Priority.NORMAL
    pr_type: Optional[str] = None


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


# Field left out of an edit; None on description or required_by clears it
UNSET: Any = _Unset()


@dataclass(frozen=True)
class DetailsUpdate:
    title: Any = UNSET
    description: Any = UNSET
    required_by: Any = UNSET
    priority: Any = UNSET


@dataclass(frozen=True)
class StageView:
    stages: list[str]
    current_index: Optional[int]
    can_act: bool


_background_tasks: set = set()


def spawn(fn: Callable, *args) -> None:
    """Default dispatcher: run fn(*args) as a detached task."""
    task = asyncio.create_task(fn(*args))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


def _decimal(value: Any, field_name: str, line_number: int) -> Decimal:
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"Item {line_number}: {field_name} must be a number") from None
    if not number.is_finite():
        raise ValidationError(f"Item {line_number}: {field_name} must be a finite number")
    if abs(number) >= AMOUNT_LIMIT:
        raise ValidationError(f"Item {line_number}: {field_name} is too large")
    # pr_items stores Numeric(15, 2); anything finer would be rounded away
    scaled = number.quantize(AMOUNT_QUANTUM)
    if scaled != number:
        raise ValidationError(
            f"Item {line_number}: {field_name} allows at most 2 decimal places"
        )
    return scaled


def _priority(value: Any) -> Priority:
    try:
        return Priority(value.value if isinstance(value, Priority) else str(value).lower())
    except ValueError:
        raise ValidationError(f"Unknown priority: {value!r}") from None


def _title(value: str) -> str:
    title = (value or "").strip()
    if not title:
        raise ValidationError("Title is required")
    if len(title) > MAX_TITLE_LENGTH:
        raise ValidationError(f"Title must be at most {MAX_TITLE_LENGTH} characters")
    return title


def _validate_items(items: Sequence[DraftItem]) -> tuple[ItemRecord, ...]:
    if not items:
        raise ValidationError("A purchase request needs at least one item")

    records = []
    for line_number, item in enumerate(items, start=1):
        if not str(item.material_id or "").strip():
            raise ValidationError(f"Item {line_number}: material is required")
        if not (item.unit or "").strip():
            raise ValidationError(f"Item {line_number}: unit is required")
        quantity = _decimal(item.quantity, "quantity", line_number)
        price = _decimal(item.estimated_unit_price, "estimated_unit_price", line_number)
        if quantity <= 0:
            raise ValidationError(f"Item {line_number}: quantity must be greater than zero")
        if price < 0:
            raise ValidationError(f"Item {line_number}: estimated_unit_price must not be negative")
        records.append(
            ItemRecord(
                line_number=line_number,
                material_id=str(item.material_id).strip(),
                quantity=quantity,
                unit=item.unit.strip(),
                estimated_unit_price=price,
                vendor=item.vendor,
                notes=item.notes,
            )
        )
    return tuple(records)


def plan_decision(
    stages: StageList,
    current: PurchaseRequestRecord,
    *,
    actor: Actor,
    decision: Decision,
    comment: Optional[str],
    now: datetime,
) -> Mutation:
    """Next state for a decision at the PR's current stage."""
    if current.is_terminal or current.current_stage is None:
        raise AlreadyFinalizedError(
            f"Purchase request {current.number} is already {current.status.value}"
        )

    stage_name = current.current_stage
    entry = HistoryEntryRecord(
        stage=stage_name,
        stage_index=stages.index_of(stage_name),
        actor_ref=actor.actor_id,
        decision=decision,
        decided_at=now,
        comment=comment,
    )

    if decision is Decision.REJECTED:
        return Mutation(
            status=PrStatus.REJECTED, current_stage=None, updated_at=now, history_entry=entry
        )

    next_stage = stages.next_after(stage_name)
    if next_stage is None:
        return Mutation(
            status=PrStatus.APPROVED, current_stage=None, updated_at=now, history_entry=entry
        )
    return Mutation(
        status=PrStatus.PENDING,
        current_stage=next_stage.name,
        updated_at=now,
        history_entry=entry,
    )


def _transition_event(pr: PurchaseRequestRecord, actor: Actor, now: datetime) -> TransitionEvent:
    decided = pr.approval_history[-1]
    if pr.status is PrStatus.REJECTED:
        event_type, stage = EventType.REJECTED, decided.stage
    elif pr.status is PrStatus.APPROVED:
        event_type, stage = EventType.APPROVED, decided.stage
    else:
        event_type, stage = EventType.STAGE_APPROVED, pr.current_stage
    return TransitionEvent(
        pr_id=pr.id,
        pr_number=pr.number,
        event_type=event_type,
        stage=stage,
        actor=actor.actor_id,
        timestamp=now,
    )


class ApprovalEngine:
    def __init__(
        self,
        store: RequestStore,
        policy: StagePolicy,
        projects: ProjectDirectory,
        notifier: NotificationSink,
        clock: Callable[[], datetime] = utcnow,
        dispatch: Callable[..., Any] = spawn,
        max_attempts: int = settings.DECIDE_MAX_ATTEMPTS,
    ) -> None:
        self._store = store
        self._policy = policy
        self._projects = projects
        self._notifier = notifier
        self._clock = clock
        self._dispatch = dispatch
        self._max_attempts = max(1, max_attempts)
        self._comments = CommentLedger(store, clock)

    def _notify(self, event: TransitionEvent) -> None:
        try:
            self._dispatch(deliver, self._notifier, event)
        except Exception as exc:
            logger.warning("notification_dispatch_failed", pr_id=event.pr_id, error=str(exc))

    async def _load(self, pr_id: str) -> PurchaseRequestRecord:
        pr = await self._store.get(pr_id)
        if pr is None:
            raise NotFoundError("Purchase request not found")
        return pr

    async def _load_readable(self, pr_id: str, actor: Actor) -> PurchaseRequestRecord:
        pr = await self._load(pr_id)
        if not can_read(actor, pr):
            raise UnauthorizedError("You do not have access to this purchase request")
        return pr

    # ---------- SUBMIT ----------

    async def submit(self, draft: PurchaseRequestDraft, actor: Actor) -> PurchaseRequestRecord:
        title = _title(draft.title)
        items = _validate_items(draft.items)
        if compute_total(items) >= TOTAL_LIMIT:
            raise ValidationError("Purchase request total is too large")
        priority = _priority(draft.priority)

        pr_type = draft.pr_type or self._policy.default_type
        if not self._policy.has_type(pr_type):
            raise ValidationError(f"Unknown purchase request type: {pr_type!r}")

        if not await self._projects.exists(draft.project_id):
            raise ValidationError("Project not found")

        stages = self._policy.resolve(pr_type)
        now = self._clock()

        pr = await self._store.create(
            NewPurchaseRequest(
                project_id=str(draft.project_id),
                pr_type=pr_type,
                title=title,
                description=draft.description,
                required_by=draft.required_by,
                priority=priority,
                current_stage=stages.first.name,
                created_by=actor.actor_id,
                created_at=now,
                items=items,
            )
        )

        logger.info(
            "pr_submitted",
            pr_id=pr.id,
            pr_number=pr.number,
            stage=pr.current_stage,
            total_amount=str(pr.total_amount),
            actor=actor.actor_id,
        )
        self._notify(
            TransitionEvent(
                pr_id=pr.id,
                pr_number=pr.number,
                event_type=EventType.SUBMITTED,
                stage=pr.current_stage,
                actor=actor.actor_id,
                timestamp=now,
            )
        )
        return pr

    # ---------- DECIDE ----------

    async def _decide_once(
        self,
        pr_id: str,
        actor: Actor,
        stage: str,
        decision: Decision,
        comment: Optional[str],
    ) -> PurchaseRequestRecord:
        pr = await self._load(pr_id)

        if pr.is_terminal:
            raise AlreadyFinalizedError(
                f"Purchase request {pr.number} is already {pr.status.value}"
            )

        if stage != pr.current_stage:
            raise StageMismatchError(
                f"Purchase request is not awaiting a decision at stage {stage!r}; "
                "refresh and try again"
            )

        stages = self._policy.resolve(pr.pr_type)
        if actor.role is not stages.required_role(pr.current_stage):
            raise UnauthorizedError("You are not authorized to act at this stage")

        now = self._clock()
        mutation_fn = functools.partial(
            plan_decision, stages, actor=actor, decision=decision, comment=comment, now=now
        )
        return await self._store.compare_and_apply(pr.id, pr.version, mutation_fn)

    def _log_conflict(self, retry_state) -> None:
        logger.warning(
            "pr_decision_conflict_retrying",
            attempt=retry_state.attempt_number,
            max_attempts=self._max_attempts,
        )

    async def decide(
        self,
        pr_id: str,
        actor: Actor,
        stage: str,
        decision: Decision,
        comment: Optional[str] = None,
    ) -> PurchaseRequestRecord:
        try:
            decision = Decision(decision)
        except ValueError:
            raise ValidationError(f"Unknown decision: {decision!r}") from None
        comment = (comment or "").strip() or None

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(ConcurrentModificationError),
                stop=stop_after_attempt(self._max_attempts),
                before_sleep=self._log_conflict,
                reraise=True,
            ):
                with attempt:
                    updated = await self._decide_once(pr_id, actor, stage, decision, comment)
        except ConcurrentModificationError:
            logger.warning("pr_decision_conflict", pr_id=pr_id, stage=stage, actor=actor.actor_id)
            raise

        logger.info(
            "pr_decision_applied",
            pr_id=updated.id,
            stage=stage,
            decision=decision.value,
            status=updated.status.value,
            next_stage=updated.current_stage,
            actor=actor.actor_id,
        )
        self._notify(_transition_event(updated, actor, updated.updated_at))
        return updated

    async def approve(
        self, pr_id: str, actor: Actor, stage: str, comment: Optional[str] = None
    ) -> PurchaseRequestRecord:
        return await self.decide(pr_id, actor, stage, Decision.APPROVED, comment)

    async def reject(
        self, pr_id: str, actor: Actor, stage: str, reason: str
    ) -> PurchaseRequestRecord:
        if not (reason or "").strip():
            raise ValidationError("A rejection reason is required")
        return await self.decide(pr_id, actor, stage, Decision.REJECTED, reason)

    # ---------- EDIT ----------

    async def update_details(
        self, pr_id: str, actor: Actor, changes: DetailsUpdate
    ) -> PurchaseRequestRecord:
        pr = await self._load(pr_id)
        if pr.created_by != actor.actor_id:
            raise UnauthorizedError("Only the requester can edit this purchase request")
        if pr.is_terminal:
            raise AlreadyFinalizedError(
                f"Purchase request {pr.number} is already {pr.status.value}"
            )
        if pr.approval_history:
            raise EditLockedError("Purchase request can no longer be edited once approval has started")

        details: dict[str, Any] = {}
        if changes.title is not UNSET:
            details["title"] = _title(changes.title)
        if changes.description is not UNSET:
            details["description"] = (changes.description or "").strip() or None
        if changes.required_by is not UNSET:
            details["required_by"] = changes.required_by
        if changes.priority is not UNSET:
            details["priority"] = _priority(changes.priority)
        if not details:
            return pr

        now = self._clock()

        def mutation_fn(current: PurchaseRequestRecord) -> Mutation:
            if current.is_terminal or current.approval_history:
                raise EditLockedError(
                    "Purchase request can no longer be edited once approval has started"
                )
            return Mutation(
                status=current.status,
                current_stage=current.current_stage,
                updated_at=now,
                details=details,
            )

        updated = await self._store.compare_and_apply(pr.id, pr.version, mutation_fn)
        logger.info("pr_details_updated", pr_id=pr.id, fields=sorted(details), actor=actor.actor_id)
        return updated

    # ---------- COMMENTS ----------

    async def add_comment(self, pr_id: str, actor: Actor, text: str) -> CommentRecord:
        await self._load_readable(pr_id, actor)
        return await self._comments.add(pr_id, actor, text)

    async def list_comments(self, pr_id: str, actor: Actor) -> Sequence[CommentRecord]:
        await self._load_readable(pr_id, actor)
        return await self._comments.list(pr_id)

    # ---------- QUERIES ----------

    async def get(self, pr_id: str, actor: Actor) -> PurchaseRequestRecord:
        return await self._load_readable(pr_id, actor)

    def can_act(self, pr: PurchaseRequestRecord, actor: Actor) -> bool:
        if pr.is_terminal or pr.current_stage is None:
            return False
        stages = self._policy.resolve(pr.pr_type)
        return actor.role is stages.required_role(pr.current_stage)

    def stage_view(self, pr: PurchaseRequestRecord, actor: Actor) -> StageView:
        stages = self._policy.resolve(pr.pr_type)
        current_index = None
        if pr.current_stage is not None:
            current_index = stages.index_of(pr.current_stage)
        return StageView(
            stages=stages.names,
            current_index=current_index,
            can_act=self.can_act(pr, actor),
        )

    async def list_requests(
        self,
        actor: Actor,
        view: str = "all",
        project_id: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[PurchaseRequestRecord], int]:
        if view not in LIST_FILTERS:
            raise ValidationError(
                f"Unknown filter {view!r}; expected one of {', '.join(LIST_FILTERS)}"
            )

        created_by = None if reads_all(actor) else actor.actor_id
        status = None
        awaiting = None
        if view == "pending_approval":
            awaiting = self._policy.stages_for_role(actor.role)
        elif view == "my_requests":
            created_by = actor.actor_id
        elif view == "approved":
            status = PrStatus.APPROVED
        elif view == "rejected":
            status = PrStatus.REJECTED

        filters = RequestFilters(
            project_id=project_id,
            created_by=created_by,
            status=status,
            awaiting=awaiting,
            limit=limit,
            offset=max(0, offset),
        )
        return await self._store.list_requests(filters)
