"""
CeloCred — Execution Orchestrator
Drives one accepted contribution through the ledger.

    Scoring → Registering → ScoreUpdating → BadgeChecking → Minting → Complete
                  │               │                              │
                  └── Failed ─────┘                              └── non-fatal

Rules:
    - A step starts only after the previous step's write is confirmed.
    - Every write is at-most-once per run. A cancelled caller never leaves
      a write half-sent: submit + confirm run shielded.
    - Registering or ScoreUpdating failing halts the run. Hashes of the
      steps that did confirm are kept on the result.
    - Minting failing does not undo the score. The run still succeeds.
    - A run can resume from a previous result: steps that already have
      a tx hash are skipped. A write that was sent but never confirmed is
      re-sent byte for byte, never signed afresh.
"""
import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
from eth_utils import keccak

from celocred.chain.badges import badge_token_id, encode_badge_uri, generate_badge_svg
from celocred.chain.ledger import LedgerGateway, PreparedTx
from celocred.errors import CeloCredError, LedgerError, LedgerUnconfirmed
from celocred.model import Address, ExecutionResult, ExecutionStep
from celocred.trust.tiers import crossed_tier, resolve_tier

logger = structlog.get_logger()

# Progress a resumed run carries over from the previous result
_RESUMABLE_STEPS = (ExecutionStep.SCORING, ExecutionStep.REGISTERING, ExecutionStep.SCORE_UPDATING)


def compute_proof_hash(payload: Dict[str, Any]) -> str:
    """keccak256 of the canonical JSON payload, 0x-prefixed."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return "0x" + keccak(text=canonical).hex()


@dataclass(frozen=True)
class ExecutionPlan:
    address: Address
    score_delta: int
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def proof_hash(self) -> str:
        return compute_proof_hash(self.payload)


class ExecutionOrchestrator:
    """
    Usage:
        result = await ExecutionOrchestrator(gateway).run(plan)
        if not result.success and result.retry_safe:
            result = await ExecutionOrchestrator(gateway).run(plan, resume_from=result)
    """

    def __init__(self, gateway: LedgerGateway):
        self.gateway = gateway

    async def run(self, plan: ExecutionPlan, resume_from: Optional[ExecutionResult] = None) -> ExecutionResult:
        if plan.score_delta <= 0:
            raise ValueError("an execution plan needs a positive score delta")

        result = self._seed(plan, resume_from)
        address = plan.address
        log = logger.bind(address=address.checksum, proof_hash=result.proof_hash[:18])
        log.info("execution_started", delta=plan.score_delta, resumed=resume_from is not None)

        # ── Scoring ───────────────────────────────
        if result.previous_score is None:
            try:
                result.previous_score = await self.gateway.get_score(address)
            except CeloCredError as e:
                return self._fail(result, ExecutionStep.SCORING, e, log)
        result.tier_before = resolve_tier(result.previous_score)
        self._mark(result, ExecutionStep.SCORING)

        # ── Registering ───────────────────────────
        if result.registry_tx is None and not result.completed(ExecutionStep.REGISTERING):
            try:
                if await self._landed(ExecutionStep.REGISTERING, plan, result, resume_from):
                    log.warning("proof_found_registered", step=ExecutionStep.REGISTERING.value)
                else:
                    result.registry_tx = await self._write(result, ExecutionStep.REGISTERING,
                        lambda: self.gateway.register_proof(address, result.proof_hash, plan.score_delta))
                    log.info("proof_registered", tx=result.registry_tx)
            except CeloCredError as e:
                return self._fail(result, ExecutionStep.REGISTERING, e, log)
        self._mark(result, ExecutionStep.REGISTERING)

        # ── ScoreUpdating ─────────────────────────
        if result.score_tx is None and not result.completed(ExecutionStep.SCORE_UPDATING):
            try:
                if await self._landed(ExecutionStep.SCORE_UPDATING, plan, result, resume_from):
                    log.warning("score_found_increased", step=ExecutionStep.SCORE_UPDATING.value)
                else:
                    result.score_tx = await self._write(result, ExecutionStep.SCORE_UPDATING,
                        lambda: self.gateway.increase_score(address, plan.score_delta))
                    log.info("score_increased", tx=result.score_tx, delta=plan.score_delta)
            except CeloCredError as e:
                return self._fail(result, ExecutionStep.SCORE_UPDATING, e, log)
        self._mark(result, ExecutionStep.SCORE_UPDATING)

        expected = result.previous_score + plan.score_delta
        try:
            result.confirmed_score = await self.gateway.get_score(address)
        except CeloCredError as e:
            # Score is on-chain; only the tier check is lost
            log.warning("score_readback_failed", error=e.message)
            result.success = True
            result.failed_step = ExecutionStep.BADGE_CHECKING
            result.retry_safe = True
            result.error = f"{ExecutionStep.BADGE_CHECKING.value}: {e.message}"
            return result
        if result.confirmed_score < expected:
            log.warning("score_readback_inconsistent", expected=expected, observed=result.confirmed_score)

        # ── BadgeChecking ─────────────────────────
        result.tier_after = resolve_tier(result.confirmed_score)
        new_tier = crossed_tier(result.previous_score, result.confirmed_score)
        self._mark(result, ExecutionStep.BADGE_CHECKING)

        # ── Minting ───────────────────────────────
        if new_tier is not None and result.badge_tx is None:
            result.token_id = badge_token_id(address, new_tier)
            result.badge_uri = encode_badge_uri(generate_badge_svg(new_tier))
            try:
                result.badge_tx = await self._write(result, ExecutionStep.MINTING,
                    lambda: self.gateway.mint_badge(address, result.token_id, result.badge_uri, new_tier))
            except CeloCredError as e:
                log.error("badge_mint_failed", tier=new_tier.value, error=e.message)
                result.success = True
                result.failed_step = ExecutionStep.MINTING
                result.retry_safe = getattr(e, "retry_safe", False)
                result.error = f"{ExecutionStep.MINTING.value}: {e.message}"
                return result
            log.info("badge_minted", tier=new_tier.value, tx=result.badge_tx)
            self._mark(result, ExecutionStep.MINTING)

        # ── Complete ──────────────────────────────
        result.success = True
        result.failed_step = None
        result.retry_safe = None
        result.error = None
        self._mark(result, ExecutionStep.COMPLETE)
        log.info("execution_complete",
            registry_tx=result.registry_tx,
            score_tx=result.score_tx,
            badge_tx=result.badge_tx,
            score=result.confirmed_score,
            tier=result.tier_after.value,
        )
        return result

    async def _write(self, result: ExecutionResult, step: ExecutionStep,
                     submit: Callable[[], Awaitable[PreparedTx]]) -> str:
        """
        Submit and confirm as one unit. Cancelling the caller does not cancel the write.

        The signed write is parked on result.pending_txs until its receipt is in.
        A resumed run re-sends those exact bytes instead of signing a new write,
        so a write that was only slow to mine can never land twice.
        """
        async def submit_and_confirm() -> str:
            tx = result.pending_txs.get(step.value)
            try:
                if tx is not None:
                    logger.info("ledger_tx_resent", step=step.value, tx_hash=tx.tx_hash)
                    tx = await self.gateway.resend(tx)
                else:
                    tx = await submit()
                result.pending_txs[step.value] = tx
                await self.gateway.confirm(tx)
            except LedgerUnconfirmed as e:
                if e.tx is not None:
                    result.pending_txs[step.value] = e.tx
                raise
            del result.pending_txs[step.value]
            return tx.tx_hash

        return await asyncio.shield(submit_and_confirm())

    async def _landed(self, step: ExecutionStep, plan: ExecutionPlan, result: ExecutionResult,
                      resume_from: Optional[ExecutionResult]) -> bool:
        """
        Whether a resumed step's earlier write already took effect on the ledger.
        Only asked when the previous run failed retry-safe at this very step and
        left no signed write behind to re-send.
        """
        if resume_from is None or resume_from.failed_step != step or not resume_from.retry_safe:
            return False
        if step.value in result.pending_txs:
            return False
        if step == ExecutionStep.REGISTERING:
            return await self.gateway.is_proof_used(result.proof_hash)
        if step == ExecutionStep.SCORE_UPDATING:
            observed = await self.gateway.get_score(plan.address)
            return observed >= result.previous_score + plan.score_delta
        return False

    @staticmethod
    def _seed(plan: ExecutionPlan, resume_from: Optional[ExecutionResult]) -> ExecutionResult:
        result = ExecutionResult(proof_hash=plan.proof_hash)
        if resume_from is None:
            return result
        if resume_from.proof_hash and resume_from.proof_hash != result.proof_hash:
            raise ValueError("cannot resume a run for a different payload")
        result.registry_tx = resume_from.registry_tx
        result.score_tx = resume_from.score_tx
        result.badge_tx = resume_from.badge_tx
        result.previous_score = resume_from.previous_score
        result.token_id = resume_from.token_id
        result.badge_uri = resume_from.badge_uri
        result.pending_txs = dict(resume_from.pending_txs)
        result.completed_steps = [s for s in resume_from.completed_steps if s in _RESUMABLE_STEPS]
        return result

    @staticmethod
    def _mark(result: ExecutionResult, step: ExecutionStep):
        if step not in result.completed_steps:
            result.completed_steps.append(step)

    @staticmethod
    def _fail(result: ExecutionResult, step: ExecutionStep, error: CeloCredError, log) -> ExecutionResult:
        retry_safe = error.retry_safe if isinstance(error, LedgerError) else True
        log.error("execution_step_failed",
            step=step.value,
            error=error.message,
            error_type=type(error).__name__,
            retry_safe=retry_safe,
        )
        result.success = False
        result.failed_step = step
        result.retry_safe = retry_safe
        result.error = f"{step.value}: {error.message}"
        return result
