import os
import uuid
from datetime import datetime, timedelta, timezone

# Settings are read once at import time; pin the test values first
os.environ.setdefault("JWT_SECRET_KEY", "prflow-test-secret")
os.environ.setdefault("JWT_ALGORITHM", "HS256")
os.environ.setdefault("ENVIRONMENT", "test")

import pytest
import pytest_asyncio
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from prflow.config import settings
from prflow.database import Base
from prflow.models.project import Project
from prflow.services.identity import Actor, Role
from prflow.services.request_store import SqlAlchemyRequestStore
from prflow.services.stage_policy import StagePolicy
import prflow.models  # noqa: F401


def make_token(actor_id: str, role: str, **extra) -> str:
    now = datetime.now(timezone.utc)
    claims = {"sub": actor_id, "role": role, "iat": now, "exp": now + timedelta(minutes=15)}
    claims.update(extra)
    return jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm="HS256")


def auth_header(actor: Actor) -> dict:
    return {"Authorization": f"Bearer {make_token(actor.actor_id, actor.role.value)}"}


# ---------------------------------------------------------------------------
# Actors
# ---------------------------------------------------------------------------

@pytest.fixture
def requester():
    return Actor(actor_id="site-001", role=Role.SITE_TEAM)


@pytest.fixture
def other_requester():
    return Actor(actor_id="site-002", role=Role.SITE_TEAM)


@pytest.fixture
def purchasing():
    return Actor(actor_id="purch-001", role=Role.PURCHASING)


@pytest.fixture
def cost_control():
    return Actor(actor_id="cc-001", role=Role.COST_CONTROL)


@pytest.fixture
def gm():
    return Actor(actor_id="gm-001", role=Role.GENERAL_MANAGER)


@pytest.fixture
def policy():
    return StagePolicy()


# ---------------------------------------------------------------------------
# Database (file-backed SQLite so concurrent sessions see each other)
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'prflow-test.db'}",
        connect_args={"timeout": 5},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def store(session_factory):
    return SqlAlchemyRequestStore(session_factory, timeout=5.0)


@pytest_asyncio.fixture
async def project_id(session_factory):
    pid = uuid.uuid4()
    async with session_factory() as session:
        session.add(Project(id=pid, code="PRJ-TEST", name="Test Tower"))
        await session.commit()
    return str(pid)


@pytest.fixture
def headers_for():
    return auth_header


@pytest.fixture
def token_for():
    return make_token
