"""Comment ledger: append-only notes on a PR, outside the state machine."""

from datetime import datetime
from typing import Callable, Sequence

import structlog

from prflow.errors import ValidationError
from prflow.services.identity import Actor
from prflow.services.records import CommentRecord
from prflow.services.request_store import RequestStore

logger = structlog.get_logger()

MAX_COMMENT_LENGTH = 2000


class CommentLedger:
    def __init__(self, store: RequestStore, clock: Callable[[], datetime]) -> None:
        self._store = store
        self._clock = clock

    async def add(self, pr_id: str, actor: Actor, text: str) -> CommentRecord:
        body = (text or "").strip()
        if not body:
            raise ValidationError("Comment text must not be empty")
        if len(body) > MAX_COMMENT_LENGTH:
            raise ValidationError(
                f"Comment text must be at most {MAX_COMMENT_LENGTH} characters"
            )

        comment = await self._store.append_comment(pr_id, actor.actor_id, body, self._clock())
        logger.info("pr_comment_added", pr_id=pr_id, author=actor.actor_id)
        return comment

    async def list(self, pr_id: str) -> Sequence[CommentRecord]:
        return await self._store.list_comments(pr_id)
