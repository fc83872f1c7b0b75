"""
CeloCred — Advisory Verifier

The oracle is an untrusted hint source. It can move a score up or down
inside contract bounds, but it never decides pass/fail policy on its own.

    1. Zero ecosystem commits   → reject with zero scores. No oracle call.
    2. Otherwise                → ask the oracle for a JSON opinion
    3. Oracle unavailable / bad → deterministic heuristic formula
    4. Either path              → every numeric field clamped to [0, 100]
"""
import json
import re
from typing import Any, Dict, Optional, Union

import httpx
import structlog

from celocred.config import settings
from celocred.errors import OracleUnavailable
from celocred.model import ActivitySignal, AdvisoryOpinion, ContributionType, Recommendation
from celocred.trust.engine import round_half_up

logger = structlog.get_logger()

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")

NO_ACTIVITY_RATIONALE = (
    "No ecosystem contributions found for this profile. "
    "Contribution history in the target ecosystem is required for reputation scoring."
)


# =============================================
# HELPERS
# =============================================

def clamp_score(value: Any) -> int:
    """Anything → int in [0, 100]. Garbage becomes 0."""
    try:
        num = float(value)
    except (TypeError, ValueError):
        return 0
    if num != num:  # NaN
        return 0
    return int(round_half_up(min(max(num, 0.0), 100.0)))


def parse_recommendation(value: Any) -> Recommendation:
    try:
        return Recommendation(str(value).strip().lower())
    except ValueError:
        return Recommendation.REVIEW


def weighted_final(impact: float, quality: float, authenticity: float) -> float:
    return impact * 0.3 + quality * 0.3 + authenticity * 0.4


def recommendation_for(final: float) -> Recommendation:
    if final > 70:
        return Recommendation.ACCEPT
    if final > 50:
        return Recommendation.REVIEW
    return Recommendation.REJECT


def no_activity_opinion(signal: ActivitySignal) -> AdvisoryOpinion:
    focus = ", ".join(sorted(signal.specialties)) or "General Development"
    return AdvisoryOpinion(
        authentic=True,
        authenticity=0,
        impact_score=0,
        quality_score=0,
        final_score=0,
        recommendation=Recommendation.REJECT,
        rationale=NO_ACTIVITY_RATIONALE,
        key_findings=(
            "No ecosystem-related repositories found in profile",
            "Required: contributions to ecosystem organisations or ecosystem-related projects",
            f"Current profile focuses on: {focus}",
        ),
        source="policy",
    )


def build_prompt(signal: ActivitySignal, contribution_type: str) -> str:
    repos = "\n".join(
        f"  * {r.name} ({r.language}) - {r.commit_count} commits - {r.star_count} stars - {r.url}"
        for r in signal.ecosystem_repos
    )
    return f"""Analyze this GitHub contributor's ecosystem contributions and provide a verification score.

GitHub Profile Analysis:
- Username: {signal.handle}
- Public Repositories: {signal.repo_count}
- Followers: {signal.follower_count}
- Languages: {", ".join(signal.language_order)}
- Specialties: {", ".join(sorted(signal.specialties))}

ECOSYSTEM CONTRIBUTIONS ({len(signal.ecosystem_repos)} repos):
{repos}
Total Ecosystem Commits: {signal.ecosystem_commit_total}

Contribution Type: {contribution_type}

SCORING CRITERIA:
- Authenticity: real contributor vs suspicious activity
- Impact: relevance and reach of the contributions within the ecosystem
- Quality: commit history, review participation, PR quality

Respond with a single JSON object with fields:
authentic (boolean), authenticity (0-100), impactScore (0-100), qualityScore (0-100),
finalScore (0-100), reasoning (string), keyFindings (array of strings),
recommendation ("accept" | "review" | "reject")"""


def opinion_from_payload(payload: Dict[str, Any], source: str = "oracle") -> AdvisoryOpinion:
    """Map an untrusted oracle payload onto the opinion contract."""
    authenticity = clamp_score(payload.get("authenticity"))
    impact = clamp_score(payload.get("impactScore", payload.get("impact_score")))
    quality = clamp_score(payload.get("qualityScore", payload.get("quality_score")))

    raw_final = payload.get("finalScore", payload.get("final_score"))
    if raw_final is None:
        final = clamp_score(weighted_final(impact, quality, authenticity))
    else:
        final = clamp_score(raw_final)

    authentic_field = payload.get("authentic")
    authentic = (authentic_field is True) or authenticity > 50

    findings = payload.get("keyFindings", payload.get("key_findings"))
    if not isinstance(findings, list):
        findings = []

    rationale = payload.get("reasoning") or payload.get("rationale") or "Analysis completed"

    return AdvisoryOpinion(
        authentic=authentic,
        authenticity=authenticity,
        impact_score=impact,
        quality_score=quality,
        final_score=final,
        recommendation=parse_recommendation(payload.get("recommendation", "review")),
        rationale=str(rationale),
        key_findings=tuple(str(f) for f in findings[:6]),
        source=source,
    )


# =============================================
# ORACLES
# =============================================

class AdvisoryOracle:
    """Base class for opinion sources."""

    name = "base"

    async def assess(self, signal: ActivitySignal, contribution_type: str) -> AdvisoryOpinion:
        raise NotImplementedError


class HeuristicOracle(AdvisoryOracle):
    """Deterministic fallback. Same inputs, same opinion, no network."""

    name = "heuristic"

    async def assess(self, signal: ActivitySignal, contribution_type: str) -> AdvisoryOpinion:
        return self.compute(signal)

    @staticmethod
    def compute(signal: ActivitySignal) -> AdvisoryOpinion:
        repos = signal.ecosystem_repos
        commits = signal.ecosystem_commit_total

        avg_stars = sum(min(r.star_count, 100) for r in repos) / len(repos) if repos else 0.0
        commit_impact = min(commits * 5, 100)
        impact = min(max(signal.follower_count * 1.5 + commit_impact * 0.4, 0), 100)
        quality = min(max(avg_stars + len(signal.languages) * 8, 0), 100)
        authenticity = 90 if commits > 0 else 75
        final = weighted_final(impact, quality, authenticity)

        top_langs = ", ".join(signal.language_order[:3]) or "n/a"
        return AdvisoryOpinion(
            authentic=commits > 0,
            authenticity=clamp_score(authenticity),
            impact_score=clamp_score(impact),
            quality_score=clamp_score(quality),
            final_score=clamp_score(final),
            recommendation=recommendation_for(final),
            rationale=(
                f"Ecosystem contributor with {commits} commits across {len(repos)} repos. "
                f"Specializes in {', '.join(sorted(signal.specialties)) or 'General Development'}."
            ),
            key_findings=(
                f"{len(repos)} ecosystem repositories with active contributions",
                f"{commits} commits to ecosystem projects",
                f"Proficient in {top_langs}",
                f"{signal.follower_count} community followers",
            ),
            source="heuristic",
        )


class GeminiOracle(AdvisoryOracle):
    """Google Gemini generateContent client."""

    name = "gemini"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = settings.GEMINI_API_KEY if api_key is None else api_key
        self.model = model or settings.GEMINI_MODEL
        self.base_url = (base_url or settings.GEMINI_API_URL).rstrip("/")
        self.timeout = timeout or settings.ORACLE_TIMEOUT
        self._client = client

    async def assess(self, signal: ActivitySignal, contribution_type: str) -> AdvisoryOpinion:
        if not self.api_key:
            raise OracleUnavailable("Gemini API key not configured")

        body = {
            "contents": [{"parts": [{"text": build_prompt(signal, contribution_type)}]}],
            "generationConfig": {"temperature": 0.3, "maxOutputTokens": 500},
        }
        url = f"{self.base_url}/models/{self.model}:generateContent"

        try:
            if self._client is not None:
                response = await self._client.post(
                    url, params={"key": self.api_key}, json=body, timeout=self.timeout,
                )
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(
                        url, params={"key": self.api_key}, json=body, timeout=self.timeout,
                    )
        except httpx.HTTPError as e:
            raise OracleUnavailable(f"Gemini request failed: {type(e).__name__}") from e

        if not response.is_success:
            raise OracleUnavailable(
                f"Gemini returned {response.status_code}",
                detail={"body": response.text[:300]},
            )

        try:
            data = response.json()
            text = data["candidates"][0]["content"]["parts"][0]["text"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise OracleUnavailable("No content in Gemini response") from e

        match = _JSON_OBJECT.search(text or "")
        if not match:
            raise OracleUnavailable("Could not find a JSON object in Gemini response")
        try:
            payload = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise OracleUnavailable("Gemini response JSON did not parse") from e
        if not isinstance(payload, dict):
            raise OracleUnavailable("Gemini response JSON is not an object")

        return opinion_from_payload(payload, source="oracle")


# =============================================
# VERIFIER
# =============================================

class AdvisoryVerifier:
    def __init__(
        self,
        oracle: Optional[AdvisoryOracle] = None,
        fallback: Optional[AdvisoryOracle] = None,
    ):
        self.oracle = oracle if oracle is not None else GeminiOracle()
        self.fallback = fallback or HeuristicOracle()

    async def verify(
        self,
        signal: ActivitySignal,
        contribution_type: Union[str, ContributionType],
    ) -> AdvisoryOpinion:
        ctype = contribution_type.value if isinstance(contribution_type, ContributionType) else str(contribution_type)

        if signal.ecosystem_commit_total == 0:
            logger.info("advisory_short_circuit", handle=signal.handle, reason="no_ecosystem_commits")
            return no_activity_opinion(signal)

        try:
            opinion = await self.oracle.assess(signal, ctype)
            logger.info("advisory_oracle_responded",
                handle=signal.handle,
                oracle=self.oracle.name,
                authenticity=opinion.authenticity,
                impact=opinion.impact_score,
                quality=opinion.quality_score,
                recommendation=opinion.recommendation.value,
            )
        except OracleUnavailable as e:
            logger.warning("advisory_oracle_unavailable",
                handle=signal.handle, oracle=self.oracle.name, error=e.message)
            opinion = await self.fallback.assess(signal, ctype)

        return _clamped(opinion)


def _clamped(opinion: AdvisoryOpinion) -> AdvisoryOpinion:
    """Last line of defence: whatever produced the opinion, enforce bounds."""
    return AdvisoryOpinion(
        authentic=bool(opinion.authentic),
        authenticity=clamp_score(opinion.authenticity),
        impact_score=clamp_score(opinion.impact_score),
        quality_score=clamp_score(opinion.quality_score),
        final_score=clamp_score(opinion.final_score),
        recommendation=opinion.recommendation,
        rationale=opinion.rationale,
        key_findings=opinion.key_findings,
        source=opinion.source,
    )
