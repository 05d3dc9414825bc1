# casedispatch/core/domain.py
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Optional


# ============================================================================
# ENUMS
# ============================================================================

class CaseStatus(str, Enum):
    """
    Case lifecycle states.

    ``DECLINED`` is accepted by the generic status update for compatibility
    with older clients; the decline flow itself never writes it (a declined
    assigned case goes back to ``PENDING``).
    """
    PENDING = "pending"
    ACCEPTED = "accepted"
    WIP = "wip"
    COMPLETED = "completed"
    CLOSED = "closed"
    DECLINED = "declined"


class AssignmentType(str, Enum):
    OPEN = "open"
    SPECIFIC = "specific"


class CaseSort(str, Enum):
    """Typed orderings for a provider's queue."""
    NEWEST = "newest"
    OLDEST = "oldest"
    PRIORITY = "priority"
    STATUS = "status"


# Whitelist for the generic status update.
ALLOWED_STATUS_UPDATES: frozenset[str] = frozenset(s.value for s in CaseStatus)

# Statuses from which a case can be completed.
COMPLETABLE_STATUSES: frozenset[CaseStatus] = frozenset({CaseStatus.ACCEPTED, CaseStatus.WIP})

# Statuses that require an owning provider.
OWNED_STATUSES: frozenset[CaseStatus] = frozenset(
    {CaseStatus.ACCEPTED, CaseStatus.WIP, CaseStatus.COMPLETED}
)

# Queue ordering when no status filter is applied.
STATUS_PRIORITY: dict[str, int] = {
    CaseStatus.PENDING.value: 1,
    CaseStatus.ACCEPTED.value: 2,
    CaseStatus.WIP.value: 3,
    CaseStatus.DECLINED.value: 4,
    CaseStatus.COMPLETED.value: 5,
}

PRIORITY_RANK: dict[str, int] = {
    "urgent": 0,
    "high": 1,
    "medium": 2,
    "normal": 2,
    "low": 3,
}

DEFAULT_PRIORITY = "normal"
DEFAULT_PREFERRED_TIME = "morning"
DEFAULT_CURRENCY = "BGN"


# ============================================================================
# CASE
# ============================================================================

@dataclass
class Case:
    """A customer's service request."""
    id: str
    customer_id: Optional[str]
    service_type: str
    category: str
    description: str
    phone: str
    city: str
    neighborhood: Optional[str] = None
    address: Optional[str] = None
    priority: str = DEFAULT_PRIORITY
    preferred_date: Optional[str] = None
    preferred_time: str = DEFAULT_PREFERRED_TIME
    additional_details: Optional[str] = None

    status: CaseStatus = CaseStatus.PENDING
    assignment_type: AssignmentType = AssignmentType.OPEN
    is_open_case: bool = True
    provider_id: Optional[str] = None
    provider_name: Optional[str] = None
    auto_assigned: bool = False

    budget_min: Optional[float] = None
    budget_max: Optional[float] = None

    completion_notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None

    screenshots: list[str] = field(default_factory=list)

    def copy(self, **changes: Any) -> "Case":
        """Return a detached copy, optionally with fields changed."""
        changes.setdefault("screenshots", list(self.screenshots))
        return replace(self, **changes)

    def is_assigned_to(self, provider_id: str) -> bool:
        return self.provider_id is not None and self.provider_id == provider_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "customerId": self.customer_id,
            "serviceType": self.service_type,
            "category": self.category,
            "description": self.description,
            "city": self.city,
            "neighborhood": self.neighborhood,
            "address": self.address,
            "priority": self.priority,
            "preferredDate": self.preferred_date,
            "preferredTime": self.preferred_time,
            "additionalDetails": self.additional_details,
            "status": self.status.value,
            "assignmentType": self.assignment_type.value,
            "isOpenCase": self.is_open_case,
            "providerId": self.provider_id,
            "providerName": self.provider_name,
            "autoAssigned": self.auto_assigned,
            "budgetMin": self.budget_min,
            "budgetMax": self.budget_max,
            "completionNotes": self.completion_notes,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "completedAt": _iso(self.completed_at),
            "acceptedAt": _iso(self.accepted_at),
            "screenshots": list(self.screenshots),
        }


@dataclass
class CaseInput:
    """Fields a customer submits when creating a case."""
    service_type: Optional[str]
    description: Optional[str]
    phone: Optional[str]
    city: Optional[str]
    customer_id: Optional[str] = None
    category: Optional[str] = None
    neighborhood: Optional[str] = None
    address: Optional[str] = None
    priority: Optional[str] = None
    preferred_date: Optional[str] = None
    preferred_time: Optional[str] = None
    additional_details: Optional[str] = None
    assignment_type: AssignmentType = AssignmentType.OPEN
    provider_id: Optional[str] = None
    provider_name: Optional[str] = None
    budget_min: Optional[float] = None
    budget_max: Optional[float] = None
    screenshots: list[Any] = field(default_factory=list)


# ============================================================================
# DECLINE LEDGER
# ============================================================================

@dataclass(frozen=True)
class DeclineRecord:
    """A provider's opt-out from one case. Unique per (case_id, provider_id)."""
    case_id: str
    provider_id: str
    declined_at: datetime
    reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "caseId": self.case_id,
            "providerId": self.provider_id,
            "reason": self.reason,
            "declinedAt": _iso(self.declined_at),
        }


@dataclass(frozen=True)
class DeclineResult:
    returned_to_queue: bool


@dataclass(frozen=True)
class DeclinedCase:
    case: Case
    record: DeclineRecord

    def to_dict(self) -> dict[str, Any]:
        data = self.case.to_dict()
        data["declinedAt"] = _iso(self.record.declined_at)
        data["declineReason"] = self.record.reason
        return data


# ============================================================================
# INCOME
# ============================================================================

@dataclass(frozen=True)
class IncomeEntry:
    """Completion income reported by the provider."""
    amount: float
    currency: str = DEFAULT_CURRENCY
    payment_method: Optional[str] = None
    notes: Optional[str] = None


# ============================================================================
# SEARCH / STATS
# ============================================================================

@dataclass
class CaseFilters:
    status: Optional[str] = None
    category: Optional[str] = None
    city: Optional[str] = None
    neighborhood: Optional[str] = None
    provider_id: Optional[str] = None
    customer_id: Optional[str] = None
    participant_id: Optional[str] = None  # customer OR provider
    only_unassigned: bool = False
    exclude_declined_by: Optional[str] = None
    page: int = 1
    limit: int = 10
    sort_by: str = "created_at"
    sort_order: str = "desc"

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


@dataclass(frozen=True)
class CasePage:
    cases: list[Case]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        if self.limit <= 0:
            return 0
        return -(-self.total // self.limit)


@dataclass(frozen=True)
class ProviderStats:
    available: int = 0
    declined: int = 0
    pending: int = 0
    accepted: int = 0
    wip: int = 0
    completed: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "available": self.available,
            "declined": self.declined,
            "pending": self.pending,
            "accepted": self.accepted,
            "wip": self.wip,
            "completed": self.completed,
        }


# ============================================================================
# MATCHING
# ============================================================================

@dataclass(frozen=True)
class ProviderSnapshot:
    """
    Read model of a provider for one scoring pass.

    ``avg_response_minutes`` is the provider's historical time-to-accept;
    None when there is no history.
    """
    id: str
    category: str
    city: Optional[str] = None
    neighborhood: Optional[str] = None
    rating: float = 0.0
    total_reviews: int = 0
    experience_years: float = 0.0
    hourly_rate: Optional[float] = None
    is_available: bool = True
    last_active_at: Optional[datetime] = None
    business_name: Optional[str] = None
    avg_response_minutes: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "businessName": self.business_name,
            "serviceCategory": self.category,
            "city": self.city,
            "neighborhood": self.neighborhood,
            "rating": self.rating,
            "totalReviews": self.total_reviews,
            "experienceYears": self.experience_years,
            "hourlyRate": self.hourly_rate,
            "isAvailable": self.is_available,
            "lastActiveAt": _iso(self.last_active_at),
        }


@dataclass(frozen=True)
class MatchFactors:
    """Per-factor scores, each in [0, 1]."""
    category_match: float
    location_match: float
    rating_score: float
    availability_score: float
    experience_score: float
    price_score: float
    response_time_score: float

    def to_dict(self) -> dict[str, float]:
        return {
            "categoryMatch": self.category_match,
            "locationMatch": self.location_match,
            "ratingScore": self.rating_score,
            "availabilityScore": self.availability_score,
            "experienceScore": self.experience_score,
            "priceScore": self.price_score,
            "responseTimeScore": self.response_time_score,
        }


@dataclass(frozen=True)
class ScoredProvider:
    provider: ProviderSnapshot
    score: float
    factors: MatchFactors

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider.to_dict(),
            "score": self.score,
            "matchFactors": self.factors.to_dict(),
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
