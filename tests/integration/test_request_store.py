"""
Integration tests for prflow/services/request_store.py against SQLite.

Tests: create/get round trip, PR numbering, compare_and_apply version
       check, history uniqueness, comments, listing filters, constraint
       failures on insert, amounts submitted through the engine.
"""

import uuid
from datetime import datetime
from decimal import Decimal

import pytest

from prflow.errors import ConcurrentModificationError, NotFoundError, ValidationError
from prflow.services.approval_engine import ApprovalEngine, DraftItem, PurchaseRequestDraft
from prflow.services.project_directory import SqlAlchemyProjectDirectory
from prflow.services.records import (
    Decision,
    HistoryEntryRecord,
    ItemRecord,
    Mutation,
    NewPurchaseRequest,
    PrStatus,
    Priority,
    RequestFilters,
)

NOW = datetime(2026, 4, 1, 10, 0, 0)


def _new(project_id: str, created_by: str = "site-001", **overrides) -> NewPurchaseRequest:
    values = dict(
        project_id=project_id,
        pr_type="standard",
        title="Formwork plywood",
        current_stage="Purchasing",
        created_by=created_by,
        created_at=NOW,
        priority=Priority.HIGH,
        items=(
            ItemRecord(
                line_number=1,
                material_id="PLY-18",
                quantity=Decimal("40"),
                unit="sheet",
                estimated_unit_price=Decimal("215000.50"),
            ),
            ItemRecord(
                line_number=2,
                material_id="NAIL-3",
                quantity=Decimal("12.5"),
                unit="kg",
                estimated_unit_price=Decimal("21000"),
                vendor="CV Sinar",
            ),
        ),
    )
    values.update(overrides)
    return NewPurchaseRequest(**values)


def _approve_at(stage: str, index: int, next_stage):
    def mutation_fn(current):
        entry = HistoryEntryRecord(
            stage=stage,
            stage_index=index,
            actor_ref="purch-001",
            decision=Decision.APPROVED,
            decided_at=NOW,
        )
        status = PrStatus.PENDING if next_stage else PrStatus.APPROVED
        return Mutation(status=status, current_stage=next_stage, updated_at=NOW, history_entry=entry)

    return mutation_fn


@pytest.mark.asyncio
async def test_create_and_get_round_trip(store, project_id):
    created = await store.create(_new(project_id))
    loaded = await store.get(created.id)

    assert loaded.number == "PR-2026-0001"
    assert loaded.status is PrStatus.PENDING
    assert loaded.current_stage == "Purchasing"
    assert loaded.priority is Priority.HIGH
    assert loaded.version == 1
    assert [i.material_id for i in loaded.items] == ["PLY-18", "NAIL-3"]
    assert loaded.items[1].vendor == "CV Sinar"
    assert loaded.total_amount == Decimal("40") * Decimal("215000.50") + Decimal("12.5") * Decimal("21000")


@pytest.mark.asyncio
async def test_numbers_are_sequential_per_year(store, project_id):
    first = await store.create(_new(project_id))
    second = await store.create(_new(project_id))
    next_year = await store.create(_new(project_id, created_at=datetime(2027, 1, 2, 8, 0, 0)))

    assert (first.number, second.number) == ("PR-2026-0001", "PR-2026-0002")
    assert next_year.number == "PR-2027-0001"


@pytest.mark.asyncio
async def test_get_unknown_or_malformed_id(store):
    assert await store.get(str(uuid.uuid4())) is None
    assert await store.get("not-a-uuid") is None


@pytest.mark.asyncio
async def test_compare_and_apply_advances_version(store, project_id):
    pr = await store.create(_new(project_id))

    updated = await store.compare_and_apply(
        pr.id, pr.version, _approve_at("Purchasing", 0, "Cost Control")
    )

    assert updated.version == 2
    assert updated.current_stage == "Cost Control"
    reloaded = await store.get(pr.id)
    assert reloaded.version == 2
    assert [h.stage for h in reloaded.approval_history] == ["Purchasing"]


@pytest.mark.asyncio
async def test_compare_and_apply_rejects_stale_version(store, project_id):
    pr = await store.create(_new(project_id))
    await store.compare_and_apply(pr.id, pr.version, _approve_at("Purchasing", 0, "Cost Control"))

    with pytest.raises(ConcurrentModificationError):
        await store.compare_and_apply(pr.id, pr.version, _approve_at("Purchasing", 0, "Cost Control"))

    reloaded = await store.get(pr.id)
    assert len(reloaded.approval_history) == 1
    assert reloaded.version == 2


@pytest.mark.asyncio
async def test_mutation_error_rolls_back(store, project_id):
    pr = await store.create(_new(project_id))

    def exploding(current):
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await store.compare_and_apply(pr.id, pr.version, exploding)

    reloaded = await store.get(pr.id)
    assert reloaded.version == 1
    assert reloaded.approval_history == ()


@pytest.mark.asyncio
async def test_compare_and_apply_writes_details(store, project_id):
    pr = await store.create(_new(project_id))

    def edit(current):
        return Mutation(
            status=current.status,
            current_stage=current.current_stage,
            updated_at=NOW,
            details={"title": "Plywood 18mm", "priority": Priority.URGENT},
        )

    updated = await store.compare_and_apply(pr.id, pr.version, edit)
    reloaded = await store.get(pr.id)

    assert updated.title == reloaded.title == "Plywood 18mm"
    assert reloaded.priority is Priority.URGENT


@pytest.mark.asyncio
async def test_compare_and_apply_unknown_pr(store):
    with pytest.raises(NotFoundError):
        await store.compare_and_apply(str(uuid.uuid4()), 1, _approve_at("Purchasing", 0, None))


@pytest.mark.asyncio
async def test_comments_append_in_order(store, project_id):
    pr = await store.create(_new(project_id))

    await store.append_comment(pr.id, "site-001", "First", datetime(2026, 4, 1, 11, 0, 0))
    await store.append_comment(pr.id, "purch-001", "Second", datetime(2026, 4, 1, 12, 0, 0))

    comments = await store.list_comments(pr.id)
    assert [(c.author_ref, c.text) for c in comments] == [("site-001", "First"), ("purch-001", "Second")]
    assert [c.text for c in (await store.get(pr.id)).comments] == ["First", "Second"]


@pytest.mark.asyncio
async def test_comment_on_missing_pr(store):
    with pytest.raises(NotFoundError):
        await store.append_comment(str(uuid.uuid4()), "site-001", "hello", NOW)
    with pytest.raises(NotFoundError):
        await store.list_comments(str(uuid.uuid4()))


@pytest.mark.asyncio
async def test_list_filters(store, project_id):
    a = await store.create(_new(project_id, created_by="site-001"))
    b = await store.create(_new(project_id, created_by="site-002"))
    await store.compare_and_apply(a.id, a.version, _approve_at("Purchasing", 0, "Cost Control"))

    rows, total = await store.list_requests(RequestFilters(created_by="site-002"))
    assert total == 1 and rows[0].id == b.id

    rows, total = await store.list_requests(
        RequestFilters(awaiting=[("standard", "Cost Control")])
    )
    assert total == 1 and rows[0].id == a.id

    rows, total = await store.list_requests(RequestFilters(awaiting=[]))
    assert (rows, total) == ([], 0)

    rows, total = await store.list_requests(RequestFilters(project_id=project_id, limit=1))
    assert total == 2 and len(rows) == 1
    # newest first
    assert rows[0].id == b.id

    rows, total = await store.list_requests(RequestFilters(status=PrStatus.APPROVED))
    assert total == 0


@pytest.mark.asyncio
async def test_project_directory_lookup(session_factory, project_id):
    projects = SqlAlchemyProjectDirectory(session_factory)

    assert await projects.exists(project_id)
    assert not await projects.exists(str(uuid.uuid4()))
    assert not await projects.exists("PRJ-TEST")


@pytest.mark.asyncio
async def test_check_violation_is_not_a_number_collision(store, project_id):
    bad_item = ItemRecord(
        line_number=1, material_id="PLY-18", quantity=Decimal("0"), unit="sheet",
        estimated_unit_price=Decimal("215000"),
    )

    with pytest.raises(ValidationError):
        await store.create(_new(project_id, items=(bad_item,)))

    rows, total = await store.list_requests(RequestFilters(project_id=project_id))
    assert (rows, total) == ([], 0)
    # the failed insert did not burn a number
    assert (await store.create(_new(project_id))).number == "PR-2026-0001"


# ---------------------------------------------------------------------------
# Amounts submitted through the engine
# ---------------------------------------------------------------------------


class NullSink:
    async def emit(self, event):
        return None


def _engine(store, policy, session_factory) -> ApprovalEngine:
    return ApprovalEngine(
        store=store,
        policy=policy,
        projects=SqlAlchemyProjectDirectory(session_factory),
        notifier=NullSink(),
        dispatch=lambda fn, *args: None,
    )


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "quantity, price",
    [
        ("0.01", "0.01"),
        ("9999999999999.99", "1"),
        (Decimal("2.50"), Decimal("1234567.89")),
        ("3", "0.07"),
    ],
    ids=["smallest", "largest-qty", "decimal-input", "cents"],
)
async def test_submitted_amounts_match_stored(
    store, policy, session_factory, project_id, requester, quantity, price
):
    engine = _engine(store, policy, session_factory)
    draft = PurchaseRequestDraft(
        project_id=project_id,
        title="Anchor bolts",
        items=[DraftItem(material_id="BOLT-M16", quantity=quantity, unit="pcs", estimated_unit_price=price)],
    )

    submitted = await engine.submit(draft, requester)
    stored = await store.get(submitted.id)

    assert stored.total_amount == submitted.total_amount
    assert stored.total_amount == Decimal(str(quantity)) * Decimal(str(price))
    assert [(i.quantity, i.estimated_unit_price) for i in stored.items] == [
        (i.quantity, i.estimated_unit_price) for i in submitted.items
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize("quantity", ["0.001", "0.004", "12.345"])
async def test_amounts_finer_than_cents_are_refused(
    store, policy, session_factory, project_id, requester, quantity
):
    engine = _engine(store, policy, session_factory)
    draft = PurchaseRequestDraft(
        project_id=project_id,
        title="Anchor bolts",
        items=[DraftItem(material_id="BOLT-M16", quantity=quantity, unit="pcs", estimated_unit_price="1")],
    )

    with pytest.raises(ValidationError):
        await engine.submit(draft, requester)

    rows, total = await store.list_requests(RequestFilters(project_id=project_id))
    assert total == 0
