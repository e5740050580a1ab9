"""
Store and project lookups surface timeouts and connection failures as
StoreUnavailableError; error bodies keep their documented shape; only
numbering conflicts on insert are treated as retryable collisions.
"""

import asyncio
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from prflow.errors import (
    ConcurrentModificationError,
    ConfigurationError,
    StoreUnavailableError,
    UnauthorizedError,
)
from prflow.services.project_directory import SqlAlchemyProjectDirectory
from prflow.services.request_store import SqlAlchemyRequestStore, _is_number_collision

PR_ID = "3a5e7c1d-0000-4000-8000-000000000001"


def _hanging_sessionmaker() -> MagicMock:
    async def hang(*args):
        await asyncio.sleep(5)

    sessionmaker = MagicMock()
    sessionmaker.return_value.__aenter__.side_effect = hang
    return sessionmaker


def _broken_sessionmaker() -> MagicMock:
    sessionmaker = MagicMock()
    sessionmaker.return_value.__aenter__.side_effect = OperationalError(
        "SELECT 1", {}, Exception("connection refused")
    )
    return sessionmaker


@pytest.mark.asyncio
async def test_store_timeout_is_unavailable():
    store = SqlAlchemyRequestStore(_hanging_sessionmaker(), timeout=0.05)

    with pytest.raises(StoreUnavailableError) as exc_info:
        await store.get(PR_ID)

    assert exc_info.value.retryable is True
    assert exc_info.value.status_code == 503


@pytest.mark.asyncio
async def test_store_connection_failure_is_unavailable():
    store = SqlAlchemyRequestStore(_broken_sessionmaker(), timeout=1.0)

    with pytest.raises(StoreUnavailableError):
        await store.compare_and_apply(PR_ID, 1, lambda current: None)


@pytest.mark.asyncio
async def test_project_lookup_failure_is_unavailable():
    projects = SqlAlchemyProjectDirectory(_broken_sessionmaker(), timeout=1.0)

    with pytest.raises(StoreUnavailableError):
        await projects.exists(PR_ID)


def test_configuration_error_hides_internal_message():
    detail = ConfigurationError("Stage 'Legal' is not part of the resolved stage list").to_detail()

    assert detail["code"] == "CONFIGURATION_ERROR"
    assert "Legal" not in detail["message"]


def test_error_details_carry_code_and_retryable():
    assert ConcurrentModificationError("lost race").to_detail() == {
        "code": "CONCURRENT_MODIFICATION",
        "message": "lost race",
        "retryable": True,
    }
    assert UnauthorizedError("nope").status_code == 403


@pytest.mark.parametrize(
    "message, collision",
    [
        ('duplicate key value violates unique constraint "uq_pr_sequence"', True),
        ('duplicate key value violates unique constraint "purchase_requests_pr_number_key"', True),
        ("UNIQUE constraint failed: purchase_requests.seq_year, purchase_requests.seq_no", True),
        ("CHECK constraint failed: chk_pr_item_qty", False),
        ('insert or update on table "purchase_requests" violates foreign key constraint', False),
        ("UNIQUE constraint failed: pr_items.pr_id, pr_items.line_number", False),
    ],
)
def test_only_number_constraints_count_as_collisions(message, collision):
    exc = IntegrityError("INSERT INTO purchase_requests", {}, Exception(message))
    assert _is_number_collision(exc) is collision
