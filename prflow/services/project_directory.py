"""Project lookup delegated to the project registry's table."""

import asyncio
import uuid
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import structlog

from prflow.config import settings
from prflow.errors import StoreUnavailableError
from prflow.models.project import Project

logger = structlog.get_logger()


class ProjectDirectory(Protocol):
    async def exists(self, project_id: str) -> bool:
        ...


class SqlAlchemyProjectDirectory:
    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        timeout: float = settings.STORE_TIMEOUT_SECONDS,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._timeout = timeout

    async def _lookup(self, key: uuid.UUID) -> bool:
        async with self._sessionmaker() as session:
            result = await session.execute(select(Project.id).where(Project.id == key))
            return result.scalar_one_or_none() is not None

    async def exists(self, project_id: str) -> bool:
        try:
            key = uuid.UUID(str(project_id))
        except (ValueError, TypeError):
            return False
        try:
            found = await asyncio.wait_for(self._lookup(key), timeout=self._timeout)
        except (asyncio.TimeoutError, OperationalError, InterfaceError) as e:
            logger.warning("project_lookup_failed", project_id=project_id, error=str(e))
            raise StoreUnavailableError("Project registry is temporarily unavailable") from e
        if not found:
            logger.info("project_not_found", project_id=project_id)
        return found
