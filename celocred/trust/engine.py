"""
CeloCred — Contribution Scoring Engine

Advisory opinion in, score delta out. Pure and total.

    delta = base(type)
            × (1 + impact/150)         1.0 – 1.67x
            × (1 + quality/160)        1.0 – 1.63x
            × (1 + authenticity/200)   1.0 – 1.5x
            × 1.20 if ownership verified
    capped at base(type) × 3.0

Short circuits:
    recommendation == reject or final == 0   → 0 (rejected at submission)
    authentic == False                       → round(base × 0.25)
"""
import math
from typing import Dict, Union

from celocred.errors import UnknownContributionType
from celocred.model import AdvisoryOpinion, ContributionType, Recommendation, ScoreBreakdown

BASE_SCORES: Dict[ContributionType, int] = {
    ContributionType.PR_MERGED: 25,
    ContributionType.COMMIT: 10,
    ContributionType.BUG_FIX: 20,
    ContributionType.DOCUMENTATION: 15,
    ContributionType.CODE_REVIEW: 12,
    ContributionType.POST_IMPACT: 30,
    ContributionType.OTHER: 10,
}

IMPACT_DIV = 150
QUALITY_DIV = 160
AUTH_DIV = 200
OWNERSHIP_BONUS = 1.20
MAX_MULTIPLIER = 3.0
NON_AUTHENTIC_PENALTY = 0.25


def parse_contribution_type(value: Union[str, ContributionType]) -> ContributionType:
    if isinstance(value, ContributionType):
        return value
    try:
        return ContributionType(str(value).strip().upper())
    except ValueError:
        raise UnknownContributionType(
            f"Unknown contribution type '{value}'",
            detail={"allowed": [t.value for t in ContributionType]},
        ) from None


def base_score(contribution_type: Union[str, ContributionType]) -> int:
    return BASE_SCORES[parse_contribution_type(contribution_type)]


def max_delta(contribution_type: Union[str, ContributionType]) -> int:
    return int(base_score(contribution_type) * MAX_MULTIPLIER)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def calculate_delta(
    opinion: AdvisoryOpinion,
    contribution_type: Union[str, ContributionType],
    ownership_verified: bool = False,
) -> ScoreBreakdown:
    """THE scoring function. Returns the delta with its full breakdown."""
    ctype = parse_contribution_type(contribution_type)
    base = BASE_SCORES[ctype]
    label = ctype.value.replace("_", " ")

    if opinion.recommendation == Recommendation.REJECT or opinion.final_score == 0:
        return ScoreBreakdown(
            base_score=base,
            delta=0,
            explanation=f"{label} contribution rejected: no points awarded",
        )

    if not opinion.authentic:
        pen = round_half_up(base * NON_AUTHENTIC_PENALTY)
        return ScoreBreakdown(
            base_score=base,
            delta=pen,
            raw=base * NON_AUTHENTIC_PENALTY,
            explanation=f"{label} contribution flagged as not authentic: flat penalty score of {pen}",
        )

    impact = _clamp(opinion.impact_score)
    quality = _clamp(opinion.quality_score)
    authenticity = _clamp(opinion.authenticity)

    imp_mult = 1.0 + impact / IMPACT_DIV
    qul_mult = 1.0 + quality / QUALITY_DIV
    au_mult = 1.0 + authenticity / AUTH_DIV
    own_mult = OWNERSHIP_BONUS if ownership_verified else 1.0

    raw = base * imp_mult * qul_mult * au_mult * own_mult
    cap = base * MAX_MULTIPLIER
    delta = round_half_up(min(raw, cap))

    parts = [f"{label} contribution scored at {base} base points"]
    if ownership_verified:
        parts.append(f"Wallet ownership verified: +{round((OWNERSHIP_BONUS - 1) * 100)}%")
    if raw > cap:
        parts.append(f"Capped at {MAX_MULTIPLIER:g}x base ({int(cap)} points)")
    parts.append(f"Final score: {delta} points")

    return ScoreBreakdown(
        base_score=base,
        delta=delta,
        impact_multiplier=round(imp_mult, 4),
        quality_multiplier=round(qul_mult, 4),
        authenticity_multiplier=round(au_mult, 4),
        ownership_multiplier=own_mult,
        raw=round(raw, 4),
        capped=raw > cap,
        explanation=". ".join(parts),
    )


def _clamp(value: float) -> float:
    return min(max(float(value), 0.0), 100.0)
