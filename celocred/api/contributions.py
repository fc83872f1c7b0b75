"""
CeloCred — Contributions API

    POST /v1/contributions/submit      - Score a contribution claim and write it on-chain (rate-limited)
    GET  /v1/contributions/health      - Ledger connectivity + oracle configuration
    GET  /v1/reputation/{address}      - On-chain score, tier and badge count

Status codes:
    400  malformed input, or a policy rejection (reason is user-facing)
    502  the on-chain sequence failed; body names the step and whether retry is safe
    503  GitHub or the ledger is unreachable
"""
from datetime import datetime, timezone
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from celocred import __version__
from celocred.chain.ledger import LedgerGateway, get_ledger_gateway
from celocred.compute.pipeline import ContributionPipeline, ContributionSubmission
from celocred.config import settings
from celocred.errors import InputError, LedgerError, PolicyRejection, UpstreamUnavailable
from celocred.model import Address, Tier
from celocred.rate_limit import rate_limit_submit
from celocred.trust.tiers import TIER_THRESHOLDS, resolve_tier, tier_rank

logger = structlog.get_logger()


# =============================================
# REQUEST/RESPONSE MODELS
# =============================================

class SubmitContributionRequest(BaseModel):
    address: str = Field(..., min_length=1, description="Wallet address that receives the score")
    type: str = Field(..., min_length=1, description="PR_MERGED, COMMIT, BUG_FIX, ...")
    link: str = Field(..., min_length=1, description="https://github.com/<username>")
    title: str = Field("", max_length=200)
    description: str = Field("", max_length=2000)


class ReputationResponse(BaseModel):
    address: str
    score: int
    tier: str
    badge_count: int
    next_tier: Optional[str] = None
    points_to_next_tier: Optional[int] = None


# =============================================
# DEPENDENCIES
# =============================================

def get_pipeline() -> ContributionPipeline:
    return ContributionPipeline(gateway=get_ledger_gateway())


def get_gateway() -> LedgerGateway:
    return get_ledger_gateway()


# =============================================
# CONTRIBUTIONS
# =============================================

contributions_router = APIRouter(prefix="/v1/contributions", tags=["contributions"])


@contributions_router.post("/submit", dependencies=[Depends(rate_limit_submit)])
async def submit(
    body: SubmitContributionRequest,
    pipeline: ContributionPipeline = Depends(get_pipeline),
):
    submission = ContributionSubmission(
        address=body.address,
        type=body.type,
        link=body.link,
        title=body.title,
        description=body.description,
    )
    try:
        outcome = await pipeline.submit(submission)
    except InputError as e:
        raise HTTPException(status_code=400, detail={"error": "invalid_input", "message": e.message})
    except PolicyRejection as e:
        raise HTTPException(status_code=400, detail={"error": e.code, "message": e.reason})
    except UpstreamUnavailable as e:
        logger.warning("submission_upstream_unavailable", source=e.source, error=e.message)
        raise HTTPException(
            status_code=503,
            detail={"error": "upstream_unavailable", "source": e.source, "message": e.message},
        )

    if not outcome.accepted:
        raise HTTPException(status_code=400, detail={
            "error": "rejected",
            "message": outcome.message,
            "contribution": outcome.record.to_dict(),
            "opinion": outcome.opinion.to_dict() if outcome.opinion else None,
        })

    execution = outcome.execution
    if not execution.success:
        raise HTTPException(status_code=502, detail={
            "error": "execution_failed",
            "failed_step": execution.failed_step.value,
            "retry_safe": execution.retry_safe,
            "message": execution.error,
            "contribution": outcome.record.to_dict(),
            "execution": execution.to_dict(),
        })

    response = outcome.to_dict()
    response["success"] = True
    return response


@contributions_router.get("/health")
async def contributions_health(gateway: LedgerGateway = Depends(get_gateway)):
    ledger_ok = await gateway.verify_setup()
    return {
        "status": "healthy" if ledger_ok else "degraded",
        "service": "celocred-contributions",
        "version": __version__,
        "ledger": {"backend": gateway.backend.name, "reachable": ledger_ok},
        "oracle": {"configured": settings.oracle_enabled, "model": settings.GEMINI_MODEL},
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# =============================================
# REPUTATION
# =============================================

reputation_router = APIRouter(prefix="/v1/reputation", tags=["reputation"])


@reputation_router.get("/{address}", response_model=ReputationResponse)
async def get_reputation(address: str, gateway: LedgerGateway = Depends(get_gateway)):
    try:
        parsed = Address.parse(address)
    except InputError as e:
        raise HTTPException(status_code=400, detail={"error": "invalid_input", "message": e.message})

    try:
        score = await gateway.get_score(parsed)
        badges = await gateway.get_badge_balance(parsed)
    except LedgerError as e:
        logger.warning("reputation_read_failed", address=parsed.checksum, error=e.message)
        raise HTTPException(status_code=503, detail={"error": "ledger_unavailable", "message": e.message})

    tier = resolve_tier(score)
    next_tier = next((t for t in TIER_THRESHOLDS if tier_rank(t) > tier_rank(tier)), None)

    return ReputationResponse(
        address=parsed.checksum,
        score=score,
        tier=tier.value,
        badge_count=badges,
        next_tier=next_tier.value if next_tier else None,
        points_to_next_tier=TIER_THRESHOLDS[next_tier] - score if next_tier else None,
    )
