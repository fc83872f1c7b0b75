"""
Scoring engine: delta bounds, short circuits, rounding.
"""
import pytest

from celocred.errors import UnknownContributionType
from celocred.model import AdvisoryOpinion, ContributionType, Recommendation
from celocred.trust.engine import BASE_SCORES, calculate_delta, max_delta, parse_contribution_type


def opinion(impact=50, quality=50, authenticity=50, authentic=True,
            recommendation=Recommendation.ACCEPT, final=60):
    return AdvisoryOpinion(
        authentic=authentic,
        authenticity=authenticity,
        impact_score=impact,
        quality_score=quality,
        recommendation=recommendation,
        rationale="test",
        final_score=final,
    )


# ── 1. Types ──────────────────────────────────────

def test_base_score_table():
    assert BASE_SCORES[ContributionType.PR_MERGED] == 25
    assert BASE_SCORES[ContributionType.COMMIT] == 10
    assert BASE_SCORES[ContributionType.POST_IMPACT] == 30
    assert max(BASE_SCORES.values()) == BASE_SCORES[ContributionType.POST_IMPACT]


def test_type_parsing_is_case_insensitive():
    assert parse_contribution_type("bug_fix") == ContributionType.BUG_FIX


def test_unknown_type_is_input_error():
    with pytest.raises(UnknownContributionType):
        parse_contribution_type("TWEET")


# ── 2. Short circuits ─────────────────────────────

def test_reject_recommendation_scores_zero():
    result = calculate_delta(opinion(recommendation=Recommendation.REJECT), "PR_MERGED", True)
    assert result.delta == 0


def test_zero_final_scores_zero():
    result = calculate_delta(opinion(final=0), "PR_MERGED", True)
    assert result.delta == 0


@pytest.mark.parametrize("ctype,expected", [
    ("PR_MERGED", 6),       # 6.25
    ("COMMIT", 3),          # 2.5 rounds half up
    ("DOCUMENTATION", 4),   # 3.75
    ("POST_IMPACT", 8),     # 7.5
])
def test_non_authentic_flat_penalty(ctype, expected):
    result = calculate_delta(opinion(authentic=False, impact=100, quality=100), ctype, True)
    assert result.delta == expected


# ── 3. Multipliers ────────────────────────────────

def test_example_submission_hits_cap():
    # 10 × 1.5333 × 1.4375 × 1.475 × 1.2 ≈ 39.01
    result = calculate_delta(opinion(impact=80, quality=70, authenticity=95), "COMMIT", True)
    assert result.delta == 30
    assert result.capped
    assert result.raw > 39


def test_half_rounds_up():
    # 15 × 1.5 = 22.5
    result = calculate_delta(opinion(impact=0, quality=0, authenticity=100), "DOCUMENTATION", False)
    assert result.delta == 23


def test_ownership_bonus():
    without = calculate_delta(opinion(impact=0, quality=0, authenticity=0), "PR_MERGED", False)
    with_bonus = calculate_delta(opinion(impact=0, quality=0, authenticity=0), "PR_MERGED", True)
    assert without.delta == 25
    assert with_bonus.delta == 30
    assert "ownership verified" in with_bonus.explanation


@pytest.mark.parametrize("ctype", [t.value for t in ContributionType])
def test_delta_never_exceeds_three_times_base(ctype):
    result = calculate_delta(opinion(impact=100, quality=100, authenticity=100), ctype, True)
    assert 0 <= result.delta <= max_delta(ctype)


def test_delta_is_monotonic_in_each_score():
    for field in ("impact", "quality", "authenticity"):
        previous = -1
        for value in range(0, 101, 10):
            delta = calculate_delta(opinion(**{field: value}), "CODE_REVIEW", False).delta
            assert delta >= previous
            previous = delta
