"""
CeloCred — Submission Pipeline
The boundary every contribution claim crosses.

Flow:
    1. Validate address, type and link. Nothing external happens on bad input.
    2. Extract the ActivitySignal from the claimed GitHub profile
    3. Ownership: the declared address must equal the address in the bio
    4. Advisory opinion (oracle, or heuristic fallback)
    5. Score delta
    6. delta == 0 or reject  → rejected record, ledger never touched
       otherwise             → ExecutionOrchestrator
    7. Emit the contribution record and the tier-update instruction

Component errors are converted here:
    ProfileNotFound      → PolicyRejection
    identity transport   → UpstreamUnavailable (no signal means no score)
"""
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog

from celocred.chain.ledger import LedgerGateway, get_ledger_gateway
from celocred.chain.orchestrator import ExecutionOrchestrator, ExecutionPlan
from celocred.compute.collectors import GitHubIdentitySource, parse_profile_link
from celocred.compute.signals import SignalExtractor
from celocred.errors import PolicyRejection, ProfileNotFound
from celocred.model import (
    ActivitySignal,
    Address,
    ContributionRecord,
    ContributionStatus,
    ContributionType,
    ExecutionResult,
    ExecutionStep,
    Recommendation,
    SubmissionOutcome,
    TierState,
    TierUpdateInstruction,
)
from celocred.trust.advisory import AdvisoryVerifier
from celocred.trust.engine import calculate_delta, parse_contribution_type
from celocred.trust.tiers import merge_tier_state

logger = structlog.get_logger()

DEFAULT_REJECTION = (
    "Contribution does not meet verification requirements. "
    "Ensure your GitHub profile has contributions to ecosystem projects."
)


@dataclass
class ContributionSubmission:
    address: str
    type: str
    link: str
    title: str = ""
    description: str = ""


def proof_payload(address: Address, ctype: ContributionType, handle: str, submission: ContributionSubmission) -> Dict[str, Any]:
    """
    What the proof hash covers. No timestamp and no score, so resubmitting
    the same claim always lands on the same proof and the registry rejects it.
    """
    return {
        "address": address.lower,
        "type": ctype.value,
        "handle": handle.lower(),
        "link": submission.link.strip(),
        "title": submission.title.strip(),
        "description": submission.description.strip(),
    }


def check_ownership(address: Address, signal: ActivitySignal):
    """Hard gate. A mismatch is a rejection, not a missing bonus."""
    if signal.declared_address is None:
        if signal.bio_contains_address:
            raise PolicyRejection(
                "The wallet address in your GitHub bio is not a valid address (check its capitalisation).",
                code="bio_address_invalid",
            )
        raise PolicyRejection(
            "Please add your wallet address (0x...) to your GitHub bio so we can verify ownership.",
            code="bio_address_missing",
        )
    if signal.declared_address != address:
        raise PolicyRejection(
            "Wallet in GitHub bio does not match provided wallet.",
            code="ownership_mismatch",
            detail={"bio_address": signal.declared_address.checksum},
        )


class ContributionPipeline:
    """
    Usage:
        pipeline = ContributionPipeline(gateway=get_ledger_gateway())
        outcome = await pipeline.submit(ContributionSubmission(address, "COMMIT", link))
    """

    def __init__(
        self,
        source: Optional[GitHubIdentitySource] = None,
        verifier: Optional[AdvisoryVerifier] = None,
        gateway: Optional[LedgerGateway] = None,
    ):
        self.source = source
        self.verifier = verifier or AdvisoryVerifier()
        self.gateway = gateway or get_ledger_gateway()

    async def submit(
        self,
        submission: ContributionSubmission,
        tier_state: Optional[TierState] = None,
        resume_from: Optional[ExecutionResult] = None,
    ) -> SubmissionOutcome:
        start = time.time()

        # 1. Input
        address = Address.parse(submission.address)
        ctype = parse_contribution_type(submission.type)
        handle = parse_profile_link(submission.link)
        log = logger.bind(address=address.checksum, handle=handle, type=ctype.value)

        # 2. Signal
        signal = await self._extract(handle)

        # 3. Ownership
        try:
            check_ownership(address, signal)
        except PolicyRejection as e:
            log.info("submission_ownership_rejected", code=e.code)
            raise

        # 4-5. Opinion and delta
        opinion = await self.verifier.verify(signal, ctype)
        breakdown = calculate_delta(opinion, ctype, ownership_verified=True)

        record = ContributionRecord(
            id=f"contrib_{uuid.uuid4().hex[:12]}",
            address=address.lower,
            type=ctype,
            score=breakdown.delta,
            status=ContributionStatus.PENDING,
            handle=signal.handle,
            link=submission.link.strip(),
            title=submission.title or signal.handle,
            description=submission.description
                or f"Verified contributor: {', '.join(sorted(signal.specialties))}",
            created_at=datetime.now(timezone.utc).isoformat(),
        )

        # 6a. Rejected at the boundary: the orchestrator never runs
        if breakdown.delta == 0 or opinion.recommendation == Recommendation.REJECT:
            reason = opinion.rationale or DEFAULT_REJECTION
            record.status = ContributionStatus.REJECTED
            record.score = 0
            record.rejection_reason = reason
            log.info("submission_rejected",
                recommendation=opinion.recommendation.value,
                final_score=opinion.final_score,
                ecosystem_commits=signal.ecosystem_commit_total,
            )
            return SubmissionOutcome(
                accepted=False,
                record=record,
                message=reason,
                opinion=opinion,
                breakdown=breakdown,
                signal=signal,
            )

        # 6b. Ledger
        plan = ExecutionPlan(
            address=address,
            score_delta=breakdown.delta,
            payload=proof_payload(address, ctype, signal.handle, submission),
        )
        record.proof = plan.proof_hash
        execution = await ExecutionOrchestrator(self.gateway).run(plan, resume_from=resume_from)

        # 7. Emit
        tier_update = None
        if execution.score_tx or execution.completed(ExecutionStep.SCORE_UPDATING):
            record.status = ContributionStatus.VERIFIED
            record.on_chain_tx = execution.score_tx
            new_total = execution.confirmed_score
            if new_total is None:
                new_total = (execution.previous_score or 0) + breakdown.delta
            state = merge_tier_state(tier_state, address.lower, new_total)
            tier_update = TierUpdateInstruction(
                address=address.lower,
                score_delta=breakdown.delta,
                new_total=new_total,
                new_tier=state.current_tier,
                tier_state=state,
                reason=f"{ctype.value} contribution: {signal.handle}",
            )
            message = (
                f"Verified! {signal.handle} earned {breakdown.delta} points "
                f"({opinion.recommendation.value.upper()}). "
                f"Total: {new_total} points ({state.current_tier.value})."
            )
        else:
            message = f"On-chain execution failed at {execution.failed_step.value}: {execution.error}"

        log.info("submission_processed",
            delta=breakdown.delta,
            status=record.status.value,
            success=execution.success,
            failed_step=execution.failed_step.value if execution.failed_step else None,
            elapsed_ms=round((time.time() - start) * 1000, 2),
        )

        return SubmissionOutcome(
            accepted=True,
            record=record,
            message=message,
            opinion=opinion,
            breakdown=breakdown,
            signal=signal,
            execution=execution,
            tier_update=tier_update,
        )

    async def _extract(self, handle: str) -> ActivitySignal:
        try:
            if self.source is not None:
                return await SignalExtractor(self.source).extract_handle(handle)
            async with GitHubIdentitySource() as source:
                return await SignalExtractor(source).extract_handle(handle)
        except ProfileNotFound as e:
            raise PolicyRejection(
                f"Could not analyze GitHub profile '{handle}'. Please ensure the link is valid.",
                code="profile_not_found",
            ) from e


async def submit_contribution(
    submission: ContributionSubmission,
    tier_state: Optional[TierState] = None,
    pipeline: Optional[ContributionPipeline] = None,
) -> SubmissionOutcome:
    """Library entry point. Raises InputError, PolicyRejection or UpstreamUnavailable."""
    return await (pipeline or ContributionPipeline()).submit(submission, tier_state=tier_state)
