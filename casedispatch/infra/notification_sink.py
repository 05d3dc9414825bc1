# casedispatch/infra/notification_sink.py
"""
NotificationSink implementations.

- ``JobQueueNotificationSink`` writes a ``notify_user`` job to the outbox;
  push/SMS/WebSocket fan-out happens in the worker that drains it.
- ``LoggingNotificationSink`` only logs; used with the memory backend.
"""
from __future__ import annotations

from collections import deque
from typing import Any

from casedispatch.core.ports import NotificationSink
from casedispatch.infra.logging_config import get_logger
from casedispatch.infra.pg_job_repo_async import AsyncPostgresJobRepository

logger = get_logger(__name__)

NOTIFY_JOB_TYPE = "notify_user"


class JobQueueNotificationSink(NotificationSink):

    def __init__(self, jobs: AsyncPostgresJobRepository, *, max_attempts: int = 5) -> None:
        self._jobs = jobs
        self._max_attempts = max_attempts

    async def notify(
        self,
        user_id: str,
        notification_type: str,
        title: str,
        body: str,
        data: dict[str, Any],
    ) -> None:
        await self._jobs.enqueue(
            NOTIFY_JOB_TYPE,
            {
                "user_id": user_id,
                "type": notification_type,
                "title": title,
                "body": body,
                "data": data,
            },
            max_attempts=self._max_attempts,
        )


class LoggingNotificationSink(NotificationSink):

    def __init__(self, *, max_kept: int = 1000) -> None:
        self.sent: deque[dict[str, Any]] = deque(maxlen=max_kept)

    async def notify(
        self,
        user_id: str,
        notification_type: str,
        title: str,
        body: str,
        data: dict[str, Any],
    ) -> None:
        self.sent.append(
            {"user_id": user_id, "type": notification_type, "title": title, "body": body, "data": data}
        )
        logger.info(
            f"Notification {notification_type} -> user={user_id}: {title}",
            extra={"case_id": data.get("caseId")},
        )
