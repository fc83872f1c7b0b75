"""
CeloCred — Tier Resolver

Cumulative score → tier, as a pure step function:

    score <  100   UNRANKED
    score >= 100   BUILDER
    score >= 300   CONTRIBUTOR
    score >= 700   LEADER

Tier state only ever moves up. There is no decrease path.
"""
from datetime import datetime, timezone
from typing import Dict, Optional

from celocred.model import Tier, TierState

TIER_THRESHOLDS: Dict[Tier, int] = {
    Tier.BUILDER: 100,
    Tier.CONTRIBUTOR: 300,
    Tier.LEADER: 700,
}

_RANK = {
    Tier.UNRANKED: 0,
    Tier.BUILDER: 1,
    Tier.CONTRIBUTOR: 2,
    Tier.LEADER: 3,
}


def resolve_tier(cumulative_score: int) -> Tier:
    """Highest qualifying tier wins."""
    if cumulative_score >= TIER_THRESHOLDS[Tier.LEADER]:
        return Tier.LEADER
    if cumulative_score >= TIER_THRESHOLDS[Tier.CONTRIBUTOR]:
        return Tier.CONTRIBUTOR
    if cumulative_score >= TIER_THRESHOLDS[Tier.BUILDER]:
        return Tier.BUILDER
    return Tier.UNRANKED


def tier_rank(tier: Tier) -> int:
    return _RANK[tier]


def crossed_tier(old_total: int, new_total: int) -> Optional[Tier]:
    """The tier newly reached by going from old_total to new_total, or None."""
    old_tier = resolve_tier(old_total)
    new_tier = resolve_tier(new_total)
    if tier_rank(new_tier) > tier_rank(old_tier):
        return new_tier
    return None


def merge_tier_state(
    existing: Optional[TierState],
    address: str,
    new_total: int,
    now: Optional[datetime] = None,
) -> TierState:
    """
    Fold a new cumulative total into the tier record.
    current_tier never drops and each milestone timestamp, once set, is kept.
    """
    now = now or datetime.now(timezone.utc)
    existing = existing or TierState(address=address)

    resolved = resolve_tier(new_total)
    if tier_rank(existing.current_tier) > tier_rank(resolved):
        current = existing.current_tier
    else:
        current = resolved

    achieved = dict(existing.tier_achieved_at)
    for tier in TIER_THRESHOLDS:
        if tier_rank(tier) <= tier_rank(current):
            achieved[tier] = existing.tier_achieved_at.get(tier) or now

    return TierState(
        address=existing.address or address,
        current_tier=current,
        cumulative_score=max(existing.cumulative_score, new_total),
        tier_achieved_at=achieved,
    )
