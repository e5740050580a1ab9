"""
Request store: durable state of purchase requests, their items,
approval history and comments.

compare_and_apply() is the only write path for approval state. It runs in
one transaction: reload the row, compare the version the caller read,
apply the mutation, then UPDATE ... WHERE version = expected. A zero row
count or a duplicate history row means another writer got there first.

Every operation is bounded by STORE_TIMEOUT_SECONDS; timeouts and
connection failures surface as StoreUnavailableError.
"""

import asyncio
import dataclasses
import uuid
from enum import Enum
from typing import Optional, Protocol, Sequence

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt
import structlog

from prflow.config import settings
from prflow.errors import (
    ConcurrentModificationError,
    NotFoundError,
    StoreUnavailableError,
    ValidationError,
)
from prflow.models.purchase_request import (
    PurchaseRequest,
    PrItem,
    PrApprovalHistory,
    PrComment,
)
from prflow.services.records import (
    CommentRecord,
    Decision,
    HistoryEntryRecord,
    ItemRecord,
    MutationFn,
    NewPurchaseRequest,
    PrStatus,
    Priority,
    PurchaseRequestRecord,
    RequestFilters,
    compute_total,
)

logger = structlog.get_logger()

PR_PREFIX = "PR"
NUMBER_ALLOCATION_ATTEMPTS = 3


class RequestStore(Protocol):
    async def get(self, pr_id: str) -> Optional[PurchaseRequestRecord]:
        ...

    async def create(self, draft: NewPurchaseRequest) -> PurchaseRequestRecord:
        ...

    async def compare_and_apply(
        self, pr_id: str, expected_version: int, mutation_fn: MutationFn
    ) -> PurchaseRequestRecord:
        ...

    async def append_comment(
        self, pr_id: str, author_ref: str, text: str, created_at
    ) -> CommentRecord:
        ...

    async def list_comments(self, pr_id: str) -> Sequence[CommentRecord]:
        ...

    async def list_requests(
        self, filters: RequestFilters
    ) -> tuple[Sequence[PurchaseRequestRecord], int]:
        ...


class _NumberCollision(Exception):
    """Two submissions picked the same PR sequence number."""


# Postgres names the constraint; SQLite lists the columns instead
_NUMBER_CONSTRAINT_MARKERS = (
    "uq_pr_sequence",
    "pr_number",
    "purchase_requests.seq_year",
)


def _is_number_collision(exc: IntegrityError) -> bool:
    message = str(exc.orig)
    return any(marker in message for marker in _NUMBER_CONSTRAINT_MARKERS)


def _as_uuid(value) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError):
        return None


def _column_value(value):
    return value.value if isinstance(value, Enum) else value


def _item_record(row: PrItem) -> ItemRecord:
    return ItemRecord(
        line_number=row.line_number,
        material_id=row.material_id,
        quantity=row.quantity,
        unit=row.unit,
        estimated_unit_price=row.estimated_unit_price,
        vendor=row.vendor,
        notes=row.notes,
    )


def _history_record(row: PrApprovalHistory) -> HistoryEntryRecord:
    return HistoryEntryRecord(
        stage=row.stage,
        stage_index=row.stage_index,
        actor_ref=row.actor_ref,
        decision=Decision(row.decision),
        decided_at=row.decided_at,
        comment=row.comment,
    )


def _comment_record(row: PrComment) -> CommentRecord:
    return CommentRecord(
        id=str(row.id),
        pr_id=str(row.pr_id),
        author_ref=row.author_ref,
        text=row.text,
        created_at=row.created_at,
    )


def _to_record(
    pr: PurchaseRequest,
    items: Sequence[PrItem],
    history: Sequence[PrApprovalHistory],
    comments: Sequence[PrComment] = (),
) -> PurchaseRequestRecord:
    return PurchaseRequestRecord(
        id=str(pr.id),
        number=pr.pr_number,
        project_id=str(pr.project_id),
        pr_type=pr.pr_type,
        title=pr.title,
        description=pr.description,
        required_by=pr.required_by,
        priority=Priority(pr.priority),
        status=PrStatus(pr.status),
        current_stage=pr.current_stage,
        created_by=pr.created_by,
        created_at=pr.created_at,
        updated_at=pr.updated_at,
        version=pr.version,
        items=tuple(_item_record(i) for i in items),
        approval_history=tuple(_history_record(h) for h in history),
        comments=tuple(_comment_record(c) for c in comments),
    )


class SqlAlchemyRequestStore:
    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        timeout: float = settings.STORE_TIMEOUT_SECONDS,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._timeout = timeout

    async def _bounded(self, operation: str, work):
        try:
            return await asyncio.wait_for(work(), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning("store_timeout", operation=operation, timeout=self._timeout)
            raise StoreUnavailableError(
                "The request store did not respond in time; retry shortly"
            ) from None
        except (OperationalError, InterfaceError) as e:
            logger.error("store_unavailable", operation=operation, error=str(e))
            raise StoreUnavailableError(
                "The request store is temporarily unavailable; retry shortly"
            ) from e

    # ---------- READ ----------

    async def _load(
        self, session: AsyncSession, pr: PurchaseRequest, with_comments: bool = True
    ) -> PurchaseRequestRecord:
        items = await session.execute(
            select(PrItem).where(PrItem.pr_id == pr.id).order_by(PrItem.line_number)
        )
        history = await session.execute(
            select(PrApprovalHistory)
            .where(PrApprovalHistory.pr_id == pr.id)
            .order_by(PrApprovalHistory.stage_index)
        )
        comments = []
        if with_comments:
            result = await session.execute(
                select(PrComment)
                .where(PrComment.pr_id == pr.id)
                .order_by(PrComment.created_at, PrComment.id)
            )
            comments = list(result.scalars().all())
        return _to_record(
            pr, list(items.scalars().all()), list(history.scalars().all()), comments
        )

    async def get(self, pr_id: str) -> Optional[PurchaseRequestRecord]:
        key = _as_uuid(pr_id)
        if key is None:
            return None

        async def work():
            async with self._sessionmaker() as session:
                result = await session.execute(
                    select(PurchaseRequest).where(PurchaseRequest.id == key)
                )
                pr = result.scalar_one_or_none()
                if pr is None:
                    return None
                return await self._load(session, pr)

        return await self._bounded("get", work)

    async def list_requests(
        self, filters: RequestFilters
    ) -> tuple[list[PurchaseRequestRecord], int]:
        conditions = []
        if filters.project_id is not None:
            project_key = _as_uuid(filters.project_id)
            if project_key is None:
                return [], 0
            conditions.append(PurchaseRequest.project_id == project_key)
        if filters.created_by is not None:
            conditions.append(PurchaseRequest.created_by == filters.created_by)
        if filters.status is not None:
            conditions.append(PurchaseRequest.status == filters.status.value)
        if filters.awaiting is not None:
            if not filters.awaiting:
                return [], 0
            conditions.append(PurchaseRequest.status == PrStatus.PENDING.value)
            conditions.append(
                or_(
                    *[
                        and_(
                            PurchaseRequest.pr_type == pr_type,
                            PurchaseRequest.current_stage == stage,
                        )
                        for pr_type, stage in filters.awaiting
                    ]
                )
            )

        async def work():
            async with self._sessionmaker() as session:
                count_q = select(func.count(PurchaseRequest.id)).where(*conditions)
                total = (await session.execute(count_q)).scalar() or 0

                result = await session.execute(
                    select(PurchaseRequest)
                    .where(*conditions)
                    .order_by(PurchaseRequest.created_at.desc(), PurchaseRequest.seq_no.desc())
                    .offset(filters.offset)
                    .limit(filters.limit)
                )
                prs = list(result.scalars().all())

                # Batch load children in one query each to avoid N+1
                pr_ids = [pr.id for pr in prs]
                items_map: dict = {}
                history_map: dict = {}
                if pr_ids:
                    items = await session.execute(
                        select(PrItem)
                        .where(PrItem.pr_id.in_(pr_ids))
                        .order_by(PrItem.pr_id, PrItem.line_number)
                    )
                    for item in items.scalars().all():
                        items_map.setdefault(item.pr_id, []).append(item)
                    history = await session.execute(
                        select(PrApprovalHistory)
                        .where(PrApprovalHistory.pr_id.in_(pr_ids))
                        .order_by(PrApprovalHistory.pr_id, PrApprovalHistory.stage_index)
                    )
                    for entry in history.scalars().all():
                        history_map.setdefault(entry.pr_id, []).append(entry)

                records = [
                    _to_record(pr, items_map.get(pr.id, []), history_map.get(pr.id, []))
                    for pr in prs
                ]
                return records, total

        return await self._bounded("list_requests", work)

    async def list_comments(self, pr_id: str) -> list[CommentRecord]:
        key = _as_uuid(pr_id)
        if key is None:
            raise NotFoundError("Purchase request not found")

        async def work():
            async with self._sessionmaker() as session:
                exists = await session.execute(
                    select(PurchaseRequest.id).where(PurchaseRequest.id == key)
                )
                if exists.scalar_one_or_none() is None:
                    raise NotFoundError("Purchase request not found")
                result = await session.execute(
                    select(PrComment)
                    .where(PrComment.pr_id == key)
                    .order_by(PrComment.created_at, PrComment.id)
                )
                return [_comment_record(c) for c in result.scalars().all()]

        return await self._bounded("list_comments", work)

    # ---------- CREATE ----------

    async def _insert(self, draft: NewPurchaseRequest) -> PurchaseRequestRecord:
        year = draft.created_at.year
        try:
            async with self._sessionmaker() as session, session.begin():
                result = await session.execute(
                    select(func.max(PurchaseRequest.seq_no)).where(
                        PurchaseRequest.seq_year == year
                    )
                )
                seq_no = (result.scalar() or 0) + 1

                pr = PurchaseRequest(
                    id=uuid.uuid4(),
                    pr_number=f"{PR_PREFIX}-{year}-{seq_no:04d}",
                    seq_year=year,
                    seq_no=seq_no,
                    project_id=uuid.UUID(draft.project_id),
                    pr_type=draft.pr_type,
                    title=draft.title,
                    description=draft.description,
                    required_by=draft.required_by,
                    priority=draft.priority.value,
                    status=PrStatus.PENDING.value,
                    current_stage=draft.current_stage,
                    total_amount=compute_total(draft.items),
                    version=1,
                    created_by=draft.created_by,
                    created_at=draft.created_at,
                    updated_at=draft.created_at,
                )
                session.add(pr)
                await session.flush()

                for item in draft.items:
                    session.add(
                        PrItem(
                            pr_id=pr.id,
                            line_number=item.line_number,
                            material_id=item.material_id,
                            quantity=item.quantity,
                            unit=item.unit,
                            estimated_unit_price=item.estimated_unit_price,
                            vendor=item.vendor,
                            notes=item.notes,
                        )
                    )
                await session.flush()
        except IntegrityError as e:
            if not _is_number_collision(e):
                logger.warning("pr_insert_rejected", year=year, error=str(e.orig))
                raise ValidationError(
                    "Purchase request violates a data constraint; check the project and items"
                ) from e
            logger.warning("pr_number_collision", year=year, error=str(e.orig))
            raise _NumberCollision() from e

        return PurchaseRequestRecord(
            id=str(pr.id),
            number=pr.pr_number,
            project_id=draft.project_id,
            pr_type=draft.pr_type,
            title=draft.title,
            description=draft.description,
            required_by=draft.required_by,
            priority=draft.priority,
            status=PrStatus.PENDING,
            current_stage=draft.current_stage,
            created_by=draft.created_by,
            created_at=draft.created_at,
            updated_at=draft.created_at,
            version=1,
            items=tuple(draft.items),
        )

    async def create(self, draft: NewPurchaseRequest) -> PurchaseRequestRecord:
        async def work():
            try:
                async for attempt in AsyncRetrying(
                    retry=retry_if_exception_type(_NumberCollision),
                    stop=stop_after_attempt(NUMBER_ALLOCATION_ATTEMPTS),
                    reraise=True,
                ):
                    with attempt:
                        return await self._insert(draft)
            except _NumberCollision:
                raise ConcurrentModificationError(
                    "Could not allocate a purchase request number; retry"
                ) from None

        return await self._bounded("create", work)

    # ---------- MUTATE ----------

    async def compare_and_apply(
        self, pr_id: str, expected_version: int, mutation_fn: MutationFn
    ) -> PurchaseRequestRecord:
        key = _as_uuid(pr_id)
        if key is None:
            raise NotFoundError("Purchase request not found")

        async def work():
            try:
                async with self._sessionmaker() as session, session.begin():
                    result = await session.execute(
                        select(PurchaseRequest).where(PurchaseRequest.id == key)
                    )
                    pr = result.scalar_one_or_none()
                    if pr is None:
                        raise NotFoundError("Purchase request not found")
                    if pr.version != expected_version:
                        raise ConcurrentModificationError(
                            "Purchase request was modified concurrently; refresh and retry"
                        )

                    current = await self._load(session, pr)
                    mutation = mutation_fn(current)
                    new_version = expected_version + 1

                    values = {
                        "status": mutation.status.value,
                        "current_stage": mutation.current_stage,
                        "updated_at": mutation.updated_at,
                        "version": new_version,
                    }
                    values.update({k: _column_value(v) for k, v in mutation.details.items()})

                    written = await session.execute(
                        update(PurchaseRequest)
                        .where(
                            PurchaseRequest.id == key,
                            PurchaseRequest.version == expected_version,
                        )
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                    if written.rowcount != 1:
                        raise ConcurrentModificationError(
                            "Purchase request was modified concurrently; refresh and retry"
                        )

                    history = tuple(current.approval_history)
                    entry = mutation.history_entry
                    if entry is not None:
                        session.add(
                            PrApprovalHistory(
                                pr_id=key,
                                stage=entry.stage,
                                stage_index=entry.stage_index,
                                actor_ref=entry.actor_ref,
                                decision=entry.decision.value,
                                comment=entry.comment,
                                decided_at=entry.decided_at,
                            )
                        )
                        await session.flush()
                        history = history + (entry,)
            except IntegrityError as e:
                logger.warning("cas_integrity_conflict", pr_id=pr_id, error=str(e.orig))
                raise ConcurrentModificationError(
                    "Purchase request was modified concurrently; refresh and retry"
                ) from e

            return dataclasses.replace(
                current,
                status=mutation.status,
                current_stage=mutation.current_stage,
                updated_at=mutation.updated_at,
                version=new_version,
                approval_history=history,
                **mutation.details,
            )

        return await self._bounded("compare_and_apply", work)

    # ---------- COMMENTS ----------

    async def append_comment(
        self, pr_id: str, author_ref: str, text: str, created_at
    ) -> CommentRecord:
        key = _as_uuid(pr_id)
        if key is None:
            raise NotFoundError("Purchase request not found")

        async def work():
            async with self._sessionmaker() as session, session.begin():
                exists = await session.execute(
                    select(PurchaseRequest.id).where(PurchaseRequest.id == key)
                )
                if exists.scalar_one_or_none() is None:
                    raise NotFoundError("Purchase request not found")
                comment = PrComment(
                    id=uuid.uuid4(),
                    pr_id=key,
                    author_ref=author_ref,
                    text=text,
                    created_at=created_at,
                )
                session.add(comment)
                await session.flush()
                return _comment_record(comment)

        return await self._bounded("append_comment", work)
