# casedispatch/core/dispatch/notifications.py
"""
Case notification requests. Best-effort and decoupled from case state.

Each transition with a customer- or provider-visible effect produces one
request to the ``NotificationSink``.  A failing sink is logged and counted,
and the triggering transition still succeeds.
"""
from __future__ import annotations

from typing import Any

from casedispatch.core.domain import Case
from casedispatch.core.ports import NotificationSink
from casedispatch.infra.logging_config import get_logger
from casedispatch.infra.metrics import AppMetrics, inc_counter

logger = get_logger(__name__)


CASE_ASSIGNED = "case_assigned"
CASE_ACCEPTED = "case_accepted"
CASE_DECLINED = "case_declined"
CASE_COMPLETED = "case_completed"

_SNIPPET_LEN = 50


class CaseNotifier:
    """Turns case transitions into notification requests."""

    def __init__(self, sink: NotificationSink | None, *, lang: str = "bg", enabled: bool = True) -> None:
        self._sink = sink
        self._lang = lang if lang in _LABELS else "bg"
        self._enabled = enabled and sink is not None

    async def specific_case_created(self, case: Case) -> bool:
        """Tell the named provider a customer addressed a case to them."""
        if not case.provider_id:
            return False
        L = _LABELS[self._lang]
        return await self._send(
            case.provider_id,
            CASE_ASSIGNED,
            L["assigned_title"],
            L["assigned_body"].format(snippet=_snippet(case.description)),
            {
                "caseId": case.id,
                "action": "view_case",
                "serviceType": case.service_type,
                "priority": case.priority,
            },
            case,
        )

    async def case_accepted(self, case: Case) -> bool:
        """Tell the customer a provider took their case."""
        if not case.customer_id:
            logger.warning(
                "Cannot send accept notification: case has no customer",
                extra={"case_id": case.id},
            )
            return False
        L = _LABELS[self._lang]
        name = case.provider_name or L["provider_fallback"]
        return await self._send(
            case.customer_id,
            CASE_ACCEPTED,
            L["accepted_title"],
            L["accepted_body"].format(provider=name),
            {"caseId": case.id, "providerId": case.provider_id},
            case,
        )

    async def case_returned_to_queue(self, case: Case, provider_id: str, reason: str | None) -> bool:
        """Tell the customer their provider declined and the case is open again."""
        if not case.customer_id:
            return False
        L = _LABELS[self._lang]
        suffix = f": {reason}" if reason else ""
        return await self._send(
            case.customer_id,
            CASE_DECLINED,
            L["declined_title"],
            L["declined_body"].format(reason=suffix),
            {"caseId": case.id, "providerId": provider_id, "reason": reason},
            case,
        )

    async def case_completed(self, case: Case) -> bool:
        """Tell the customer the job is done and ask for a review."""
        if not case.customer_id or not case.provider_id:
            logger.warning(
                "Cannot send completion notification: missing customer or provider",
                extra={"case_id": case.id},
            )
            return False
        L = _LABELS[self._lang]
        return await self._send(
            case.customer_id,
            CASE_COMPLETED,
            L["completed_title"],
            L["completed_body"].format(provider=case.provider_name or L["provider_fallback"]),
            {"caseId": case.id, "providerId": case.provider_id, "action": "leave_review"},
            case,
        )

    async def _send(
        self,
        user_id: str,
        notification_type: str,
        title: str,
        body: str,
        data: dict[str, Any],
        case: Case,
    ) -> bool:
        if not self._enabled:
            logger.debug(
                "Notifications disabled, skipping %s", notification_type,
                extra={"case_id": case.id},
            )
            return False

        try:
            await self._sink.notify(user_id, notification_type, title, body, data)
        except Exception:
            logger.error(
                "Failed to emit %s notification to user=%s",
                notification_type, user_id,
                extra={"case_id": case.id},
                exc_info=True,
            )
            AppMetrics.notification_failed(notification_type)
            return False

        inc_counter("notifications_emitted_total", type=notification_type)
        return True


def _snippet(text: str | None) -> str:
    text = (text or "").strip()
    if len(text) <= _SNIPPET_LEN:
        return text
    return text[:_SNIPPET_LEN] + "..."


# ---------------------------------------------------------------------------
# Localized labels
# ---------------------------------------------------------------------------

_LABELS: dict[str, dict[str, str]] = {
    "bg": {
        "assigned_title": "Нова заявка директно възложена",
        "assigned_body": "Клиент ви възложи нова заявка: {snippet}",
        "accepted_title": "Заявката ви е приета",
        "accepted_body": "{provider} прие вашата заявка и ще се свърже с вас скоро.",
        "declined_title": "Заявката е отказана",
        "declined_body": (
            "Специалистът отказа вашата заявка{reason}. "
            "Заявката е върната в опашката за други специалисти."
        ),
        "completed_title": "Заявката е завършена",
        "completed_body": "{provider} завърши вашата заявка. Моля, оставете отзив.",
        "provider_fallback": "Специалист",
    },
    "en": {
        "assigned_title": "New case assigned to you",
        "assigned_body": "A customer assigned you a new case: {snippet}",
        "accepted_title": "Your case was accepted",
        "accepted_body": "{provider} accepted your case and will contact you soon.",
        "declined_title": "Your case was declined",
        "declined_body": (
            "The provider declined your case{reason}. "
            "It is back in the queue for other providers."
        ),
        "completed_title": "Your case is completed",
        "completed_body": "{provider} completed your case. Please leave a review.",
        "provider_fallback": "A provider",
    },
}
