# casedispatch/core/matching.py
"""
Provider matching and ranking.

``score`` and ``rank_providers`` are pure: same inputs, same output, no I/O.
``now`` is passed in explicitly so time-dependent factors stay
deterministic.  ``MatchingEngine`` adds the single read it needs (the
provider directory) on top.

Factor curves and weights live in ``MatchingConfig`` and default to the
calibration documented in ``casedispatch.config``.  Every factor is in
[0, 1]; the total is the weighted mean, so it is in [0, 1] as well.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, Mapping, Optional

from casedispatch.core.domain import Case, MatchFactors, ProviderSnapshot, ScoredProvider
from casedispatch.core.errors import InvalidInputError
from casedispatch.core.ports import AsyncProviderDirectory
from casedispatch.infra.logging_config import get_logger
from casedispatch.infra.metrics import AppMetrics

logger = get_logger(__name__)


DEFAULT_RELATED_CATEGORIES: dict[str, tuple[str, ...]] = {
    "electrician": ("handyman",),
    "plumber": ("handyman",),
    "hvac": ("handyman",),
    "handyman": ("electrician", "plumber", "hvac", "carpenter", "painter"),
}


@dataclass(frozen=True)
class MatchingConfig:
    weight_category: float = 0.25
    weight_location: float = 0.20
    weight_rating: float = 0.20
    weight_availability: float = 0.15
    weight_experience: float = 0.10
    weight_price: float = 0.05
    weight_response_time: float = 0.05

    related_categories: Mapping[str, tuple[str, ...]] = field(
        default_factory=lambda: dict(DEFAULT_RELATED_CATEGORIES)
    )
    related_category_credit: float = 0.6

    location_same_neighborhood: float = 1.0
    location_same_city: float = 0.8
    location_other_city: float = 0.3
    location_unknown: float = 0.5

    rating_prior_mean: float = 2.5
    rating_prior_weight: float = 10.0

    availability_window_hours: float = 24.0
    availability_half_life_hours: float = 72.0

    experience_saturation_years: float = 5.0

    market_median_hourly_rate: float = 40.0
    price_tolerance: float = 0.25

    response_reference_minutes: float = 120.0

    neutral: float = 0.5

    @classmethod
    def from_settings(cls, s) -> "MatchingConfig":
        return cls(
            weight_category=s.match_weight_category,
            weight_location=s.match_weight_location,
            weight_rating=s.match_weight_rating,
            weight_availability=s.match_weight_availability,
            weight_experience=s.match_weight_experience,
            weight_price=s.match_weight_price,
            weight_response_time=s.match_weight_response_time,
            related_category_credit=s.match_related_category_credit,
            rating_prior_mean=s.match_rating_prior_mean,
            rating_prior_weight=s.match_rating_prior_weight,
            availability_window_hours=s.match_availability_window_hours,
            availability_half_life_hours=s.match_availability_half_life_hours,
            experience_saturation_years=s.match_experience_saturation_years,
            market_median_hourly_rate=s.match_market_median_hourly_rate,
            price_tolerance=s.match_price_tolerance,
            response_reference_minutes=s.match_response_reference_minutes,
        )

    def weights(self) -> tuple[float, ...]:
        # Same order as MatchFactors fields
        return (
            self.weight_category,
            self.weight_location,
            self.weight_rating,
            self.weight_availability,
            self.weight_experience,
            self.weight_price,
            self.weight_response_time,
        )

    def related_to(self, category: str) -> tuple[str, ...]:
        return tuple(self.related_categories.get(normalize_category(category), ()))


DEFAULT_CONFIG = MatchingConfig()


def normalize_category(category: Optional[str]) -> str:
    """``"cat_Plumber"`` and ``"plumber"`` name the same category."""
    value = (category or "").strip().lower()
    if value.startswith("cat_"):
        value = value[4:]
    return value


def _same_place(a: Optional[str], b: Optional[str]) -> bool:
    return bool(a) and bool(b) and a.strip().lower() == b.strip().lower()


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


# ============================================================================
# FACTORS
# ============================================================================

def category_match(case: Case, provider: ProviderSnapshot, config: MatchingConfig = DEFAULT_CONFIG) -> float:
    wanted = normalize_category(case.category)
    offered = normalize_category(provider.category)
    if not wanted or not offered:
        return 0.0
    if wanted == offered:
        return 1.0
    if offered in config.related_to(wanted):
        return config.related_category_credit
    return 0.0


def location_match(case: Case, provider: ProviderSnapshot, config: MatchingConfig = DEFAULT_CONFIG) -> float:
    if not case.city or not provider.city:
        return config.location_unknown
    if not _same_place(case.city, provider.city):
        return config.location_other_city
    if _same_place(case.neighborhood, provider.neighborhood):
        return config.location_same_neighborhood
    return config.location_same_city


def rating_score(provider: ProviderSnapshot, config: MatchingConfig = DEFAULT_CONFIG) -> float:
    """
    Bayesian average on the 0-5 scale, normalized.

    Few reviews pull the rating toward the prior mean, so 5.0 from a single
    review ranks below 4.6 from two hundred.
    """
    n = max(0, provider.total_reviews)
    rating = max(0.0, min(5.0, provider.rating))
    c = config.rating_prior_weight
    smoothed = (c * config.rating_prior_mean + n * rating) / (c + n) if (c + n) > 0 else config.rating_prior_mean
    return _clamp(smoothed / 5.0)


def availability_score(
    provider: ProviderSnapshot,
    now: datetime,
    config: MatchingConfig = DEFAULT_CONFIG,
) -> float:
    if not provider.is_available:
        return 0.0
    if provider.last_active_at is None:
        return config.neutral

    last_active = provider.last_active_at
    if last_active.tzinfo is None:
        last_active = last_active.replace(tzinfo=timezone.utc)
    idle_hours = max(0.0, (now - last_active).total_seconds() / 3600.0)

    if idle_hours <= config.availability_window_hours:
        return 1.0
    overdue = idle_hours - config.availability_window_hours
    return _clamp(0.5 ** (overdue / config.availability_half_life_hours))


def experience_score(provider: ProviderSnapshot, config: MatchingConfig = DEFAULT_CONFIG) -> float:
    """Saturating: 1y ~0.18, 5y ~0.63, 10y ~0.86, 20y ~0.98."""
    years = max(0.0, provider.experience_years or 0.0)
    return _clamp(1.0 - math.exp(-years / config.experience_saturation_years))


def price_score(case: Case, provider: ProviderSnapshot, config: MatchingConfig = DEFAULT_CONFIG) -> float:
    """
    1.0 inside the target band, falling linearly to 0 as the rate moves a
    further 100% of the target away in either direction.
    """
    rate = provider.hourly_rate
    if not rate or rate <= 0:
        return config.neutral

    if case.budget_min is not None and case.budget_max is not None:
        target = (case.budget_min + case.budget_max) / 2.0
        half_band = (case.budget_max - case.budget_min) / 2.0
    elif case.budget_max is not None or case.budget_min is not None:
        target = case.budget_max if case.budget_max is not None else case.budget_min
        half_band = target * config.price_tolerance
    else:
        target = config.market_median_hourly_rate
        half_band = target * config.price_tolerance

    if target <= 0:
        return config.neutral

    distance = abs(rate - target)
    if distance <= half_band:
        return 1.0
    overshoot = (distance - half_band) / target
    return _clamp(1.0 - overshoot)


def response_time_score(provider: ProviderSnapshot, config: MatchingConfig = DEFAULT_CONFIG) -> float:
    minutes = provider.avg_response_minutes
    if minutes is None or minutes < 0:
        return config.neutral
    return _clamp(1.0 / (1.0 + minutes / config.response_reference_minutes))


# ============================================================================
# SCORE / RANK
# ============================================================================

def score(
    case: Case,
    provider: ProviderSnapshot,
    *,
    now: datetime,
    config: MatchingConfig = DEFAULT_CONFIG,
) -> ScoredProvider:
    factors = MatchFactors(
        category_match=category_match(case, provider, config),
        location_match=location_match(case, provider, config),
        rating_score=rating_score(provider, config),
        availability_score=availability_score(provider, now, config),
        experience_score=experience_score(provider, config),
        price_score=price_score(case, provider, config),
        response_time_score=response_time_score(provider, config),
    )
    values = (
        factors.category_match,
        factors.location_match,
        factors.rating_score,
        factors.availability_score,
        factors.experience_score,
        factors.price_score,
        factors.response_time_score,
    )
    weights = config.weights()
    weight_sum = sum(weights)
    total = sum(v * w for v, w in zip(values, weights)) / weight_sum if weight_sum > 0 else 0.0
    return ScoredProvider(provider=provider, score=round(total, 4), factors=factors)


def rank_providers(
    case: Case,
    providers: Iterable[ProviderSnapshot],
    *,
    limit: int,
    now: datetime,
    config: MatchingConfig = DEFAULT_CONFIG,
) -> list[ScoredProvider]:
    """
    Score, filter and order candidates.

    Dropped: unavailable providers, category mismatches (hard filter) and
    the case's own customer.  Order: score desc, then rating desc, then
    review count desc; remaining ties keep input order.
    """
    scored: list[ScoredProvider] = []
    for provider in providers:
        if not provider.is_available:
            continue
        if case.customer_id and provider.id == case.customer_id:
            continue
        result = score(case, provider, now=now, config=config)
        if result.factors.category_match <= 0:
            continue
        scored.append(result)

    scored.sort(key=lambda s: (-s.score, -s.provider.rating, -s.provider.total_reviews))
    return scored[:limit]


class MatchingEngine:
    """Ranks eligible providers for a case. Never mutates state."""

    def __init__(
        self,
        *,
        directory: AsyncProviderDirectory,
        config: MatchingConfig = DEFAULT_CONFIG,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.directory = directory
        self.config = config
        self.clock = clock

    async def find_best_providers(self, case: Case, limit: int = 10) -> list[ScoredProvider]:
        if limit < 1:
            raise InvalidInputError("limit must be >= 1")

        categories = [normalize_category(case.category), *self.config.related_to(case.category)]
        candidates = await self.directory.eligible_providers(
            categories, excluding_declined_for=case.id
        )
        if not candidates:
            logger.warning(
                f"No eligible providers for category={case.category}",
                extra={"case_id": case.id},
            )
            return []

        with AppMetrics.track_matching_time():
            top = rank_providers(case, candidates, limit=limit, now=self.clock(), config=self.config)

        logger.info(
            f"Matching: {len(candidates)} candidates, {len(top)} ranked, "
            f"top scores={[p.score for p in top[:3]]}",
            extra={"case_id": case.id},
        )
        return top
