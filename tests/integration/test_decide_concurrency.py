"""
Two approvers race on the same stage against a real database.

Exactly one decision may land; the loser sees a stage mismatch (after the
engine's re-read) or a concurrent-modification error, never a second
history entry.
"""

import asyncio
from decimal import Decimal

import pytest

from prflow.errors import ConcurrentModificationError, StageMismatchError
from prflow.services.approval_engine import ApprovalEngine, DraftItem, PurchaseRequestDraft
from prflow.services.identity import Actor, Role
from prflow.services.project_directory import SqlAlchemyProjectDirectory
from prflow.services.records import PrStatus
from prflow.services.stage_policy import STAGE_COST_CONTROL, STAGE_PURCHASING


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


async def _submit(engine, project_id, requester):
    return await engine.submit(
        PurchaseRequestDraft(
            project_id=project_id,
            title="Ready-mix concrete K-300",
            items=[DraftItem(material_id="RMC-K300", quantity=Decimal("18"), unit="m3", estimated_unit_price=Decimal("1150000"))],
        ),
        requester,
    )


@pytest.mark.asyncio
async def test_concurrent_approvals_apply_once(store, policy, session_factory, project_id, requester):
    engine = _engine(store, policy, session_factory)
    pr = await _submit(engine, project_id, requester)

    approvers = [
        Actor(actor_id="purch-001", role=Role.PURCHASING),
        Actor(actor_id="purch-002", role=Role.PURCHASING),
    ]
    results = await asyncio.gather(
        *[engine.approve(pr.id, a, STAGE_PURCHASING) for a in approvers],
        return_exceptions=True,
    )

    successes = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert isinstance(failures[0], (StageMismatchError, ConcurrentModificationError))

    stored = await store.get(pr.id)
    assert stored.current_stage == STAGE_COST_CONTROL
    assert stored.status is PrStatus.PENDING
    assert [h.stage for h in stored.approval_history] == [STAGE_PURCHASING]
    assert stored.version == 2


@pytest.mark.asyncio
async def test_approve_and_reject_race_has_single_outcome(
    store, policy, session_factory, project_id, requester
):
    engine = _engine(store, policy, session_factory)
    pr = await _submit(engine, project_id, requester)

    approver = Actor(actor_id="purch-001", role=Role.PURCHASING)
    rejecter = Actor(actor_id="purch-002", role=Role.PURCHASING)
    results = await asyncio.gather(
        engine.approve(pr.id, approver, STAGE_PURCHASING),
        engine.reject(pr.id, rejecter, STAGE_PURCHASING, "Duplicate of PR-2026-0001"),
        return_exceptions=True,
    )

    assert sum(1 for r in results if not isinstance(r, Exception)) == 1

    stored = await store.get(pr.id)
    assert len(stored.approval_history) == 1
    if stored.status is PrStatus.REJECTED:
        assert stored.current_stage is None
    else:
        assert stored.current_stage == STAGE_COST_CONTROL
