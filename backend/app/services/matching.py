"""Capability matching between a service request and provider work profiles.

Everything here is a pure function of (request, profile, moment) so it can be
exercised without a database. Ranking only orders delivery; it never removes
an eligible provider.
"""
from datetime import datetime, time, timezone, tzinfo
from typing import Iterable, List, Optional, Set

from app.models import ServiceRequest, WorkProfile
from app.services.profile_directory import ALL_LOCALITIES

DEFAULT_ELIGIBLE_TIERS = frozenset({"basic", "premium"})
LIVE_AVAILABILITY = {"online", "busy"}
TIER_WEIGHTS = {"premium": 30.0, "basic": 20.0, "free": 5.0}
RATING_WEIGHT = 40.0
EXPERIENCE_WEIGHT = 20.0
EXPERIENCE_FULL_AT_REVIEWS = 10
ONLINE_BONUS = 10.0


def _to_minutes(value: str) -> int:
    parsed = time.fromisoformat(value)
    return parsed.hour * 60 + parsed.minute


def is_within_quiet_hours(start: Optional[str], end: Optional[str], moment: time) -> bool:
    """Inclusive on both ends; a window whose start is after its end wraps midnight."""
    if not start or not end:
        return False
    start_minutes = _to_minutes(start)
    end_minutes = _to_minutes(end)
    current = moment.hour * 60 + moment.minute
    if start_minutes > end_minutes:
        return current >= start_minutes or current <= end_minutes
    return start_minutes <= current <= end_minutes


def covers_category(profile: WorkProfile, category_id: str) -> bool:
    return category_id in profile.categories


def covers_locality(profile: WorkProfile, locality: str) -> bool:
    # A specific row and the wildcard are independent; either one is enough.
    wanted = locality.strip().casefold()
    return any(item == ALL_LOCALITIES or item.strip().casefold() == wanted for item in profile.localities)


def covers_request(profile: WorkProfile, request: ServiceRequest) -> bool:
    return profile.is_active and covers_category(profile, request.category_id) and covers_locality(profile, request.locality)


def is_live(profile: WorkProfile) -> bool:
    return profile.is_available and profile.availability_type in LIVE_AVAILABILITY


def eligibility_failures(
    request: ServiceRequest,
    profile: WorkProfile,
    now: datetime,
    eligible_tiers: Iterable[str] = DEFAULT_ELIGIBLE_TIERS,
    local_tz: Optional[tzinfo] = None,
) -> List[str]:
    failures: List[str] = []
    if profile.provider_id == request.requester_id:
        failures.append("own_request")
    if not profile.is_active:
        failures.append("inactive_profile")
    if not covers_category(profile, request.category_id):
        failures.append("category")
    if not covers_locality(profile, request.locality):
        failures.append("locality")
    if profile.verification_status != "verified":
        failures.append("unverified")
    if profile.subscription_tier not in set(eligible_tiers):
        failures.append("subscription_tier")
    if not is_live(profile):
        failures.append("unavailable")
    if not profile.push_enabled:
        failures.append("notifications_disabled")
    if request.urgency_tier != "emergency":
        local_now = now.astimezone(local_tz or timezone.utc)
        if is_within_quiet_hours(profile.quiet_hours_start, profile.quiet_hours_end, local_now.time()):
            failures.append("quiet_hours")
    return failures


def is_eligible(
    request: ServiceRequest,
    profile: WorkProfile,
    now: datetime,
    eligible_tiers: Iterable[str] = DEFAULT_ELIGIBLE_TIERS,
    local_tz: Optional[tzinfo] = None,
) -> bool:
    return not eligibility_failures(request, profile, now, eligible_tiers=eligible_tiers, local_tz=local_tz)


def priority_score(profile: WorkProfile) -> float:
    score = 0.0
    if profile.avg_rating is not None and profile.review_count > 0:
        score += (profile.avg_rating / 5.0) * RATING_WEIGHT
        score += min(profile.review_count / EXPERIENCE_FULL_AT_REVIEWS, 1.0) * EXPERIENCE_WEIGHT
    score += TIER_WEIGHTS.get(profile.subscription_tier, 0.0)
    if profile.availability_type == "online":
        score += ONLINE_BONUS
    return round(score, 4)


def rank(profiles: Iterable[WorkProfile]) -> List[WorkProfile]:
    return sorted(profiles, key=lambda p: (-priority_score(p), p.provider_id))


def eligible_ranked(
    request: ServiceRequest,
    profiles: Iterable[WorkProfile],
    now: datetime,
    eligible_tiers: Iterable[str] = DEFAULT_ELIGIBLE_TIERS,
    local_tz: Optional[tzinfo] = None,
) -> List[WorkProfile]:
    tiers: Set[str] = set(eligible_tiers)
    return rank(p for p in profiles if is_eligible(request, p, now, eligible_tiers=tiers, local_tz=local_tz))
