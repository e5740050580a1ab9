"""
Notification service: transition events for the external notification sink.

Events are built inside the engine after a transition commits and are
delivered fire-and-forget: a failed delivery is logged, never raised.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Protocol

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
import structlog

from prflow.config import settings

logger = structlog.get_logger()
_std_logger = logging.getLogger(__name__)


class EventType(str, Enum):
    SUBMITTED = "submitted"
    STAGE_APPROVED = "stage_approved"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass(frozen=True)
class TransitionEvent:
    pr_id: str
    pr_number: str
    event_type: EventType
    stage: Optional[str]
    actor: str
    timestamp: datetime

    def to_payload(self) -> dict:
        return {
            "pr_id": self.pr_id,
            "pr_number": self.pr_number,
            "event_type": self.event_type.value,
            "stage": self.stage,
            "actor": self.actor,
            "timestamp": self.timestamp.isoformat(),
        }


class NotificationSink(Protocol):
    async def emit(self, event: TransitionEvent) -> None:
        ...


class LoggingNotificationSink:
    """Default sink when no webhook is configured."""

    async def emit(self, event: TransitionEvent) -> None:
        logger.info("notification_emitted", **event.to_payload())


class _WebhookRetryableError(Exception):
    """Raised for 5xx or network errors that warrant a retry."""


class WebhookNotificationSink:
    def __init__(
        self,
        url: str,
        timeout: float = settings.NOTIFICATION_TIMEOUT_SECONDS,
        max_attempts: int = settings.NOTIFICATION_MAX_ATTEMPTS,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._url = url
        self._max_attempts = max_attempts
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=min(timeout, 5.0)),
        )

    async def _post(self, payload: dict) -> None:
        try:
            response = await self._client.post(self._url, json=payload)
        except (httpx.ConnectError, httpx.TimeoutException, httpx.NetworkError) as exc:
            logger.warning("notification_network_error_retrying", error=str(exc))
            raise _WebhookRetryableError(str(exc)) from exc

        if response.status_code >= 500:
            logger.warning(
                "notification_5xx_retrying",
                status_code=response.status_code,
                pr_id=payload["pr_id"],
            )
            raise _WebhookRetryableError(f"Sink returned {response.status_code}")

        # 4xx: the sink refused the payload, no point retrying
        response.raise_for_status()

    async def emit(self, event: TransitionEvent) -> None:
        payload = event.to_payload()
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(_WebhookRetryableError),
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
            before_sleep=before_sleep_log(_std_logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                await self._post(payload)
        logger.info("notification_delivered", pr_id=event.pr_id, event_type=event.event_type.value)

    async def aclose(self) -> None:
        await self._client.aclose()


async def deliver(sink: NotificationSink, event: TransitionEvent) -> None:
    """Emit one event; swallow and log every failure."""
    try:
        await sink.emit(event)
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        logger.warning(
            "notification_failed",
            pr_id=event.pr_id,
            event_type=event.event_type.value,
            error=str(exc),
        )


_default_sink: Optional[NotificationSink] = None


def get_notification_sink() -> NotificationSink:
    global _default_sink
    if _default_sink is None:
        if settings.NOTIFICATION_WEBHOOK_URL:
            _default_sink = WebhookNotificationSink(settings.NOTIFICATION_WEBHOOK_URL)
        else:
            _default_sink = LoggingNotificationSink()
    return _default_sink


async def close_notification_sink() -> None:
    global _default_sink
    if isinstance(_default_sink, WebhookNotificationSink):
        await _default_sink.aclose()
    _default_sink = None
