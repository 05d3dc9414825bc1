# tests/helpers.py
"""Shared builders and fakes for the test suite."""
from datetime import datetime, timedelta, timezone
from typing import Any

from casedispatch.core.domain import CaseInput, ProviderSnapshot


NOW = datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)


class FixedClock:
    """Deterministic clock; ``advance`` moves it forward."""

    def __init__(self, start: datetime = NOW):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingSink:
    def __init__(self):
        self.sent: list[dict[str, Any]] = []

    async def notify(self, user_id, notification_type, title, body, data):
        self.sent.append(
            {"user_id": user_id, "type": notification_type, "title": title, "body": body, "data": data}
        )

    def types(self) -> list[str]:
        return [n["type"] for n in self.sent]


class FailingSink:
    def __init__(self):
        self.calls = 0

    async def notify(self, user_id, notification_type, title, body, data):
        self.calls += 1
        raise ConnectionError("push gateway unreachable")


def make_input(**overrides) -> CaseInput:
    data = dict(
        service_type="plumber",
        category="cat_plumber",
        description="Leaking pipe under the kitchen sink",
        phone="+359888123456",
        city="Sofia",
        neighborhood="Lozenets",
        customer_id="cust-1",
    )
    data.update(overrides)
    return CaseInput(**data)


def make_provider(provider_id: str, **overrides) -> ProviderSnapshot:
    data = dict(
        id=provider_id,
        category="plumber",
        city="Sofia",
        neighborhood="Lozenets",
        rating=4.5,
        total_reviews=40,
        experience_years=6,
        hourly_rate=40.0,
        is_available=True,
        last_active_at=NOW - timedelta(hours=2),
        business_name=f"{provider_id} Ltd",
        avg_response_minutes=30,
    )
    data.update(overrides)
    return ProviderSnapshot(**data)


