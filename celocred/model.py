"""
CeloCred — Domain Model

Everything the pipeline passes between stages. ActivitySignal and
AdvisoryOpinion are frozen: they belong to the request that created them
and are never persisted by the core. ContributionRecord, TierState and
TierUpdateInstruction are what the core hands to the record store.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from eth_utils import is_checksum_address, to_checksum_address

from celocred.errors import InvalidAddress

_HEX_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")


# ── Enums ─────────────────────────────────────────

class ContributionType(str, Enum):
    PR_MERGED     = "PR_MERGED"
    COMMIT        = "COMMIT"
    BUG_FIX       = "BUG_FIX"
    DOCUMENTATION = "DOCUMENTATION"
    CODE_REVIEW   = "CODE_REVIEW"
    POST_IMPACT   = "POST_IMPACT"
    OTHER         = "OTHER"


class Tier(str, Enum):
    UNRANKED    = "UNRANKED"
    BUILDER     = "BUILDER"
    CONTRIBUTOR = "CONTRIBUTOR"
    LEADER      = "LEADER"


class Recommendation(str, Enum):
    ACCEPT = "accept"
    REVIEW = "review"
    REJECT = "reject"


class ContributionStatus(str, Enum):
    PENDING  = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class ExecutionStep(str, Enum):
    SCORING        = "Scoring"
    REGISTERING    = "Registering"
    SCORE_UPDATING = "ScoreUpdating"
    BADGE_CHECKING = "BadgeChecking"
    MINTING        = "Minting"
    COMPLETE       = "Complete"


# ── Address ───────────────────────────────────────

@dataclass(frozen=True, eq=False)
class Address:
    """
    A 20-byte account address held in EIP-55 checksum form.
    Two addresses are equal iff their lowercase forms match.
    """
    checksum: str

    @classmethod
    def parse(cls, value: str) -> "Address":
        """
        Accepts all-lowercase, all-uppercase, or a correctly checksummed
        mixed-case address. Anything else raises InvalidAddress.
        """
        raw = (value or "").strip()
        if not _HEX_ADDRESS.match(raw):
            raise InvalidAddress(f"'{value}' is not a 0x-prefixed 40 hex digit address")
        digits = raw[2:]
        mixed = digits != digits.lower() and digits != digits.upper()
        if mixed and not is_checksum_address(raw):
            raise InvalidAddress(f"'{value}' has an invalid EIP-55 checksum")
        return cls(checksum=to_checksum_address(raw.lower()))

    @property
    def lower(self) -> str:
        return self.checksum.lower()

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Address):
            return self.lower == other.lower
        if isinstance(other, str):
            return self.lower == other.strip().lower()
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.lower)

    def __str__(self) -> str:
        return self.checksum


# ── Signals ───────────────────────────────────────

@dataclass(frozen=True)
class EcosystemRepo:
    name: str
    url: str
    owned_by_target_org: bool
    commit_count: int
    star_count: int
    language: str
    is_fork: bool = False
    detected_by: str = "keyword"            # "keyword" | "content"


@dataclass(frozen=True)
class ActivitySignal:
    """Everything we observed about a GitHub handle. No scoring logic here."""
    handle: str
    repo_count: int = 0
    follower_count: int = 0
    languages: FrozenSet[str] = frozenset()
    specialties: FrozenSet[str] = frozenset()
    ecosystem_repos: Tuple[EcosystemRepo, ...] = ()
    ecosystem_commit_total: int = 0
    declared_address: Optional[Address] = None
    address_well_formed: bool = False
    bio_contains_address: bool = False

    # Context for the oracle prompt and for debugging
    language_order: Tuple[str, ...] = ()
    top_repos: Tuple[str, ...] = ()
    probe_errors: Tuple[str, ...] = ()

    @property
    def has_ecosystem_activity(self) -> bool:
        return self.ecosystem_commit_total > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "handle": self.handle,
            "repo_count": self.repo_count,
            "follower_count": self.follower_count,
            "languages": list(self.language_order) or sorted(self.languages),
            "specialties": sorted(self.specialties),
            "ecosystem_repos": [asdict(r) for r in self.ecosystem_repos],
            "ecosystem_commit_total": self.ecosystem_commit_total,
            "declared_address": str(self.declared_address) if self.declared_address else None,
            "address_well_formed": self.address_well_formed,
            "bio_contains_address": self.bio_contains_address,
        }


# ── Advisory ──────────────────────────────────────

@dataclass(frozen=True)
class AdvisoryOpinion:
    authentic: bool
    authenticity: int
    impact_score: int
    quality_score: int
    recommendation: Recommendation
    rationale: str
    final_score: int = 0
    key_findings: Tuple[str, ...] = ()
    source: str = "oracle"                   # "oracle" | "heuristic" | "policy"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "authentic": self.authentic,
            "authenticity": self.authenticity,
            "impact_score": self.impact_score,
            "quality_score": self.quality_score,
            "final_score": self.final_score,
            "recommendation": self.recommendation.value,
            "rationale": self.rationale,
            "key_findings": list(self.key_findings),
            "source": self.source,
        }


@dataclass(frozen=True)
class ScoreBreakdown:
    base_score: int
    delta: int
    impact_multiplier: float = 1.0
    quality_multiplier: float = 1.0
    authenticity_multiplier: float = 1.0
    ownership_multiplier: float = 1.0
    raw: float = 0.0
    capped: bool = False
    explanation: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ── Records handed to the store ───────────────────

@dataclass
class ContributionRecord:
    id: str
    address: str
    type: ContributionType
    score: int
    status: ContributionStatus
    proof: str = ""
    on_chain_tx: Optional[str] = None
    handle: str = ""
    link: str = ""
    title: str = ""
    description: str = ""
    rejection_reason: Optional[str] = None
    created_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["type"] = self.type.value
        d["status"] = self.status.value
        return d


@dataclass(frozen=True)
class TierState:
    address: str
    current_tier: Tier = Tier.UNRANKED
    cumulative_score: int = 0
    tier_achieved_at: Dict[Tier, datetime] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "current_tier": self.current_tier.value,
            "cumulative_score": self.cumulative_score,
            "tier_achieved_at": {t.value: ts.isoformat() for t, ts in self.tier_achieved_at.items()},
        }


@dataclass(frozen=True)
class TierUpdateInstruction:
    address: str
    score_delta: int
    new_total: int
    new_tier: Tier
    tier_state: TierState
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "score_delta": self.score_delta,
            "new_total": self.new_total,
            "new_tier": self.new_tier.value,
            "tier_state": self.tier_state.to_dict(),
            "reason": self.reason,
        }


# ── Execution ─────────────────────────────────────

@dataclass
class ExecutionResult:
    """
    Outcome of one run of the on-chain sequence. At most one tx per step.
    A missing badge_tx is normal (no tier crossed) and is not an error.
    """
    success: bool = False
    registry_tx: Optional[str] = None
    score_tx: Optional[str] = None
    badge_tx: Optional[str] = None
    error: Optional[str] = None

    failed_step: Optional[ExecutionStep] = None
    retry_safe: Optional[bool] = None
    completed_steps: List[ExecutionStep] = field(default_factory=list)

    proof_hash: str = ""
    token_id: Optional[int] = None
    badge_uri: Optional[str] = None
    previous_score: Optional[int] = None
    confirmed_score: Optional[int] = None
    tier_before: Optional[Tier] = None
    tier_after: Optional[Tier] = None
    # step → signed write that was sent but never confirmed
    pending_txs: Dict[str, Any] = field(default_factory=dict)

    def completed(self, step: ExecutionStep) -> bool:
        return step in self.completed_steps

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "registry_tx": self.registry_tx,
            "score_tx": self.score_tx,
            "badge_tx": self.badge_tx,
            "error": self.error,
            "failed_step": self.failed_step.value if self.failed_step else None,
            "retry_safe": self.retry_safe,
            "completed_steps": [s.value for s in self.completed_steps],
            "proof_hash": self.proof_hash,
            "token_id": str(self.token_id) if self.token_id is not None else None,
            "previous_score": self.previous_score,
            "confirmed_score": self.confirmed_score,
            "tier_before": self.tier_before.value if self.tier_before else None,
            "tier_after": self.tier_after.value if self.tier_after else None,
            "pending_txs": {step: tx.tx_hash for step, tx in self.pending_txs.items()},
        }


@dataclass
class SubmissionOutcome:
    accepted: bool
    record: ContributionRecord
    message: str
    opinion: Optional[AdvisoryOpinion] = None
    breakdown: Optional[ScoreBreakdown] = None
    signal: Optional[ActivitySignal] = None
    execution: Optional[ExecutionResult] = None
    tier_update: Optional[TierUpdateInstruction] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": self.accepted,
            "message": self.message,
            "contribution": self.record.to_dict(),
            "opinion": self.opinion.to_dict() if self.opinion else None,
            "breakdown": self.breakdown.to_dict() if self.breakdown else None,
            "signal": self.signal.to_dict() if self.signal else None,
            "execution": self.execution.to_dict() if self.execution else None,
            "tier_update": self.tier_update.to_dict() if self.tier_update else None,
        }
