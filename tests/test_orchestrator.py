import asyncio

import pytest

from celocred.chain.badges import badge_token_id
from celocred.chain.ledger import LedgerGateway
from celocred.chain.orchestrator import ExecutionOrchestrator, ExecutionPlan
from celocred.errors import LedgerTransientError
from celocred.model import Address, ExecutionStep, Tier

from conftest import WALLET, run

ADDRESS = Address.parse(WALLET)


def plan(delta=30, link="https://github.com/dev"):
    return ExecutionPlan(
        address=ADDRESS,
        score_delta=delta,
        payload={"address": ADDRESS.lower, "type": "COMMIT", "handle": "dev", "link": link},
    )


def ops(ledger):
    return [b.op for b in ledger.blocks if b.status]


# ── Happy paths ───────────────────────────────────

def test_first_contribution_registers_and_scores(ledger, gateway):
    result = run(ExecutionOrchestrator(gateway).run(plan()))
    assert result.success
    assert result.registry_tx and result.score_tx
    assert result.badge_tx is None
    assert result.previous_score == 0
    assert result.confirmed_score == 30
    assert result.tier_after == Tier.UNRANKED
    assert result.completed_steps == [
        ExecutionStep.SCORING,
        ExecutionStep.REGISTERING,
        ExecutionStep.SCORE_UPDATING,
        ExecutionStep.BADGE_CHECKING,
        ExecutionStep.COMPLETE,
    ]
    assert ops(ledger) == ["register", "increase"]


def test_no_badge_inside_a_tier(ledger, gateway):
    ledger.scores[ADDRESS.lower] = 120
    result = run(ExecutionOrchestrator(gateway).run(plan()))
    assert result.success
    assert result.confirmed_score == 150
    assert result.badge_tx is None
    assert ledger.balances == {}


def test_badge_minted_when_crossing_builder(ledger, gateway):
    ledger.scores[ADDRESS.lower] = 90
    result = run(ExecutionOrchestrator(gateway).run(plan(delta=20)))
    assert result.success
    assert result.badge_tx
    assert result.tier_before == Tier.UNRANKED
    assert result.tier_after == Tier.BUILDER
    assert result.token_id == badge_token_id(ADDRESS, Tier.BUILDER)
    assert result.badge_uri.startswith("data:image/svg+xml;base64,")
    assert ExecutionStep.MINTING in result.completed_steps
    assert ledger.balances[ADDRESS.lower] == 1
    assert ops(ledger) == ["register", "increase", "mint"]


# ── Partial failure ───────────────────────────────

def test_score_update_failure_keeps_registry_tx(ledger, gateway):
    ledger.inject_fault("increase", "revert")
    result = run(ExecutionOrchestrator(gateway).run(plan()))
    assert not result.success
    assert result.failed_step == ExecutionStep.SCORE_UPDATING
    assert result.registry_tx is not None
    assert result.score_tx is None
    assert result.badge_tx is None
    assert result.retry_safe is False
    assert result.error.startswith("ScoreUpdating:")
    assert ledger.scores == {}


def test_register_timeout_halts_everything(ledger, gateway):
    ledger.inject_fault("register", "drop")
    result = run(ExecutionOrchestrator(gateway).run(plan()))
    assert not result.success
    assert result.failed_step == ExecutionStep.REGISTERING
    assert result.retry_safe is True
    assert result.registry_tx is None
    assert "prepare:increase" not in ledger.calls


def test_scoring_read_failure(ledger, gateway):
    ledger.inject_fault("get_score", "transient", times=10)
    result = run(ExecutionOrchestrator(gateway).run(plan()))
    assert result.failed_step == ExecutionStep.SCORING
    assert result.retry_safe is True
    assert ledger.blocks == []


def test_mint_failure_is_not_fatal(ledger, gateway):
    ledger.scores[ADDRESS.lower] = 90
    ledger.inject_fault("mint", "revert")
    result = run(ExecutionOrchestrator(gateway).run(plan(delta=20)))
    assert result.success
    assert result.score_tx is not None
    assert result.badge_tx is None
    assert result.failed_step == ExecutionStep.MINTING
    assert result.error.startswith("Minting:")
    assert ledger.scores[ADDRESS.lower] == 110


def test_stale_readback_is_logged_not_fatal(ledger, gateway):
    ledger.inject_fault("get_score", "stale", times=2)
    result = run(ExecutionOrchestrator(gateway).run(plan()))
    assert result.success
    assert result.confirmed_score == 0
    assert ledger.scores[ADDRESS.lower] == 30


class ReadbackFails(LedgerGateway):
    """Answers the first score read, fails every one after."""

    reads = 0

    async def get_score(self, address):
        self.reads += 1
        if self.reads > 1:
            raise LedgerTransientError("node went away")
        return await super().get_score(address)


def test_readback_failure_skips_badge_check(ledger):
    gw = ReadbackFails(ledger, confirm_timeout=0.05, poll_interval=0.01, max_retries=0, backoff_base=0)
    ledger.scores[ADDRESS.lower] = 90
    result = run(ExecutionOrchestrator(gw).run(plan(delta=20)))
    assert result.success
    assert result.score_tx is not None
    assert result.failed_step == ExecutionStep.BADGE_CHECKING
    assert result.badge_tx is None
    assert ledger.balances == {}


# ── Idempotence and resume ────────────────────────

def test_same_payload_twice_scores_once(ledger, gateway):
    first = run(ExecutionOrchestrator(gateway).run(plan()))
    second = run(ExecutionOrchestrator(gateway).run(plan()))
    assert first.success
    assert not second.success
    assert second.failed_step == ExecutionStep.REGISTERING
    assert second.retry_safe is False
    assert ledger.scores[ADDRESS.lower] == 30
    assert ops(ledger).count("increase") == 1


def test_resume_skips_confirmed_steps(ledger, gateway):
    ledger.inject_fault("increase", "drop")
    failed = run(ExecutionOrchestrator(gateway).run(plan()))
    assert failed.failed_step == ExecutionStep.SCORE_UPDATING
    assert failed.retry_safe is True

    sent = failed.pending_txs[ExecutionStep.SCORE_UPDATING.value]

    resumed = run(ExecutionOrchestrator(gateway).run(plan(), resume_from=failed))
    assert resumed.success
    assert resumed.registry_tx == failed.registry_tx
    assert resumed.score_tx == sent.tx_hash
    assert resumed.pending_txs == {}
    assert ops(ledger).count("register") == 1
    assert ledger.calls.count("prepare:increase") == 1
    assert ledger.scores[ADDRESS.lower] == 30


def test_late_score_increase_is_not_applied_twice(ledger, gateway):
    ledger.inject_fault("increase", "late")
    failed = run(ExecutionOrchestrator(gateway).run(plan()))
    assert failed.failed_step == ExecutionStep.SCORE_UPDATING
    assert failed.retry_safe is True
    assert ledger.scores[ADDRESS.lower] == 30

    resumed = run(ExecutionOrchestrator(gateway).run(plan(), resume_from=failed))
    assert resumed.success
    assert resumed.score_tx == failed.pending_txs[ExecutionStep.SCORE_UPDATING.value].tx_hash
    assert ledger.scores[ADDRESS.lower] == 30
    assert ops(ledger).count("increase") == 1


def test_late_registration_resumes_into_the_score_update(ledger, gateway):
    ledger.inject_fault("register", "late")
    failed = run(ExecutionOrchestrator(gateway).run(plan()))
    assert failed.failed_step == ExecutionStep.REGISTERING
    assert failed.retry_safe is True

    resumed = run(ExecutionOrchestrator(gateway).run(plan(), resume_from=failed))
    assert resumed.success
    assert resumed.registry_tx == failed.pending_txs[ExecutionStep.REGISTERING.value].tx_hash
    assert ops(ledger) == ["register", "increase"]
    assert ledger.scores[ADDRESS.lower] == 30


def test_resume_checks_the_ledger_when_the_signed_write_is_gone(ledger, gateway):
    ledger.inject_fault("increase", "late")
    failed = run(ExecutionOrchestrator(gateway).run(plan()))
    failed.pending_txs.clear()

    resumed = run(ExecutionOrchestrator(gateway).run(plan(), resume_from=failed))
    assert resumed.success
    assert resumed.score_tx is None
    assert ExecutionStep.SCORE_UPDATING in resumed.completed_steps
    assert ledger.scores[ADDRESS.lower] == 30
    assert ledger.calls.count("prepare:increase") == 1


def test_resume_finds_a_registration_that_landed(ledger, gateway):
    ledger.inject_fault("register", "late")
    failed = run(ExecutionOrchestrator(gateway).run(plan()))
    failed.pending_txs.clear()

    resumed = run(ExecutionOrchestrator(gateway).run(plan(), resume_from=failed))
    assert resumed.success
    assert "is_proof_used" in ledger.calls
    assert ops(ledger) == ["register", "increase"]
    assert ledger.scores[ADDRESS.lower] == 30


def test_rejected_registration_is_not_reconciled(ledger, gateway):
    run(ExecutionOrchestrator(gateway).run(plan()))
    duplicate = run(ExecutionOrchestrator(gateway).run(plan()))
    assert duplicate.retry_safe is False

    again = run(ExecutionOrchestrator(gateway).run(plan(), resume_from=duplicate))
    assert not again.success
    assert again.failed_step == ExecutionStep.REGISTERING
    assert ledger.scores[ADDRESS.lower] == 30


def test_resume_rejects_a_different_payload(gateway):
    failed = run(ExecutionOrchestrator(gateway).run(plan()))
    with pytest.raises(ValueError):
        run(ExecutionOrchestrator(gateway).run(plan(link="https://github.com/other"), resume_from=failed))


def test_zero_delta_never_reaches_the_ledger(ledger, gateway):
    with pytest.raises(ValueError):
        run(ExecutionOrchestrator(gateway).run(plan(delta=0)))
    assert ledger.calls == []


# ── Cancellation ──────────────────────────────────

class SlowConfirm(LedgerGateway):
    confirmed = 0

    async def confirm(self, tx):
        await asyncio.sleep(0.05)
        receipt = await super().confirm(tx)
        self.confirmed += 1
        return receipt


def test_cancelled_caller_does_not_cut_a_write_short(ledger):
    gw = SlowConfirm(ledger, confirm_timeout=1, poll_interval=0.01, max_retries=0, backoff_base=0)

    async def scenario():
        task = asyncio.ensure_future(ExecutionOrchestrator(gw).run(plan()))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.sleep(0.1)

    run(scenario())
    assert gw.confirmed == 1
    assert ops(ledger) == ["register"]
