"""
CeloCred — Ledger Gateway
The only component that talks to the ledger.

Three write operations, two reads:
    register_proof(address, proof_hash, score)     ContributionRegistry.registerContribution
    increase_score(address, amount)                ReputationScore.increase
    mint_badge(address, token_id, uri, tier)       ReputationBadge.mint
    get_score(address)                             ReputationScore.getScore
    get_badge_balance(address)                     ReputationBadge.balanceOf

Every write is two-phase:

    prepare()    build + sign. No side effects. A revert surfaces here as LedgerRejected.
    broadcast()  send the signed bytes. Re-sending identical bytes is a no-op,
                 so a retried broadcast can never double-apply.

confirm() then waits for inclusion:
    receipt ok          → done
    receipt reverted    → LedgerRejected   (never retry the same payload)
    no receipt in time  → LedgerUnconfirmed (safe to retry; carries the signed tx)

resend() broadcasts a signed write again. A retry after LedgerUnconfirmed goes
through resend(), never a fresh prepare(), so the write lands at most once.

Backends:
    InMemoryLedger       hash-chained append-only blocks. Development and tests.
    Web3LedgerBackend    signs with the agent key and submits over JSON-RPC.
"""
import asyncio
import hashlib
import json
import time
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from enum import Enum
from functools import lru_cache
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import structlog
from eth_account import Account
from eth_utils import keccak, to_checksum_address
from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError, TimeExhausted

from celocred.config import settings
from celocred.errors import LedgerRejected, LedgerTransientError, LedgerUnconfirmed
from celocred.model import Address, Tier

logger = structlog.get_logger()

GENESIS_HASH = "0" * 64
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class LedgerOp(str, Enum):
    REGISTER = "register"
    INCREASE = "increase"
    MINT     = "mint"


@dataclass
class PreparedTx:
    """A signed, not yet broadcast, ledger write."""
    op: LedgerOp
    tx_hash: str
    args: Dict[str, Any]
    raw: bytes = b""


@dataclass
class Receipt:
    tx_hash: str
    status: bool
    block_number: int = 0


def _as_address(address: Union[Address, str]) -> str:
    return address.checksum if isinstance(address, Address) else to_checksum_address(address)


def proof_bytes(proof_hash: str) -> bytes:
    value = proof_hash[2:] if proof_hash.startswith("0x") else proof_hash
    raw = bytes.fromhex(value)
    if len(raw) != 32:
        raise ValueError(f"proof hash must be 32 bytes, got {len(raw)}")
    return raw


# =============================================
# BACKEND INTERFACE
# =============================================

class LedgerBackend:
    """Base class. Subclasses talk to one concrete ledger."""

    name = "base"

    async def prepare(self, op: LedgerOp, **args) -> PreparedTx:
        raise NotImplementedError

    async def broadcast(self, tx: PreparedTx) -> str:
        raise NotImplementedError

    async def wait_for_receipt(self, tx_hash: str, timeout: float, poll_interval: float) -> Receipt:
        raise NotImplementedError

    async def get_score(self, address: str) -> int:
        raise NotImplementedError

    async def get_badge_balance(self, address: str) -> int:
        raise NotImplementedError

    async def is_proof_used(self, proof_hash: str) -> bool:
        raise NotImplementedError


# =============================================
# IN-MEMORY LEDGER
# =============================================

@dataclass
class Block:
    """One applied write. Sealed on creation: the hash covers every field but itself."""
    index: int
    op: str
    tx_hash: str
    args: Dict[str, Any]
    status: bool = True
    prev_hash: str = GENESIS_HASH
    sealed_at: str = ""
    block_hash: str = ""

    def __post_init__(self):
        if not self.sealed_at:
            self.sealed_at = datetime.now(timezone.utc).isoformat()
        if not self.block_hash:
            self.block_hash = self.compute_hash()

    def compute_hash(self) -> str:
        content = json.dumps({
            "index": self.index,
            "op": self.op,
            "tx_hash": self.tx_hash,
            "args": self.args,
            "status": self.status,
            "prev_hash": self.prev_hash,
            "sealed_at": self.sealed_at,
        }, sort_keys=True, default=str)
        return hashlib.sha256(content.encode()).hexdigest()

    def verify(self) -> bool:
        return self.block_hash == self.compute_hash()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class _Fault:
    mode: str
    remaining: int = 1


class InMemoryLedger(LedgerBackend):
    """
    Same contract semantics as the deployed registry, score and badge
    contracts, held in process memory.

        - a proof hash can be registered once
        - a token id can be minted once
        - scores only ever increase

    Faults can be injected per operation to exercise partial failure:
        inject_fault("register" | "increase" | "mint", mode)
            "transient"  prepare raises LedgerTransientError
            "drop"       broadcast is accepted but never mined. Re-sending
                         the same signed bytes later gets it mined.
            "revert"     mined with a failed receipt
            "late"       mined, but the first receipt wait times out
        inject_fault("get_score", "transient" | "stale")
    """

    name = "memory"

    def __init__(self):
        self.blocks: List[Block] = []
        self.scores: Dict[str, int] = {}
        self.used_proofs: Dict[str, str] = {}            # proof → owner
        self.badges: Dict[int, Tuple[str, str, str]] = {}  # token id → (owner, tier, uri)
        self.balances: Dict[str, int] = {}
        self.receipts: Dict[str, Receipt] = {}
        self.calls: List[str] = []
        self._nonce = 0
        self._dropped: set = set()
        self._late: set = set()
        self._faults: Dict[str, _Fault] = {}

    # ── Fault injection ───────────────────────────

    def inject_fault(self, op: Union[LedgerOp, str], mode: str, times: int = 1):
        key = op.value if isinstance(op, LedgerOp) else op
        self._faults[key] = _Fault(mode=mode, remaining=times)

    def _take_fault(self, key: str, *modes: str) -> Optional[str]:
        fault = self._faults.get(key)
        if fault is None or fault.mode not in modes:
            return None
        fault.remaining -= 1
        if fault.remaining <= 0:
            del self._faults[key]
        return fault.mode

    # ── Chain ─────────────────────────────────────

    @property
    def head(self) -> str:
        return self.blocks[-1].block_hash if self.blocks else GENESIS_HASH

    def verify_chain(self) -> bool:
        prev = GENESIS_HASH
        for block in self.blocks:
            if block.prev_hash != prev or not block.verify():
                return False
            prev = block.block_hash
        return True

    def _check(self, op: LedgerOp, args: Dict[str, Any]) -> Optional[str]:
        """Contract-level preconditions. Returns the revert reason, or None."""
        if op == LedgerOp.REGISTER:
            if args["proof_hash"].lower() in self.used_proofs:
                return "ContributionRegistry: proof already used"
            if args["score"] <= 0:
                return "ContributionRegistry: score must be positive"
        elif op == LedgerOp.INCREASE:
            if args["amount"] <= 0:
                return "ReputationScore: amount must be positive"
        elif op == LedgerOp.MINT:
            if int(args["token_id"]) in self.badges:
                return "ReputationBadge: token already minted"
        return None

    def _apply(self, op: LedgerOp, args: Dict[str, Any]):
        owner = args["address"].lower()
        if op == LedgerOp.REGISTER:
            self.used_proofs[args["proof_hash"].lower()] = owner
        elif op == LedgerOp.INCREASE:
            self.scores[owner] = self.scores.get(owner, 0) + args["amount"]
        elif op == LedgerOp.MINT:
            self.badges[int(args["token_id"])] = (owner, args["tier"], args["uri"])
            self.balances[owner] = self.balances.get(owner, 0) + 1

    # ── Writes ────────────────────────────────────

    async def prepare(self, op: LedgerOp, **args) -> PreparedTx:
        self.calls.append(f"prepare:{op.value}")
        if self._take_fault(op.value, "transient"):
            raise LedgerTransientError(f"simulated transient failure preparing {op.value}")

        reason = self._check(op, args)
        if reason:
            raise LedgerRejected(reason)

        self._nonce += 1
        payload = json.dumps({"op": op.value, "args": args, "nonce": self._nonce},
                             sort_keys=True, default=str)
        tx_hash = "0x" + keccak(text=payload).hex()
        return PreparedTx(op=op, tx_hash=tx_hash, args=dict(args), raw=payload.encode())

    async def broadcast(self, tx: PreparedTx) -> str:
        self.calls.append(f"broadcast:{tx.op.value}")
        if tx.tx_hash in self.receipts:
            return tx.tx_hash
        if tx.tx_hash in self._dropped:
            # Evicted from the pool; the same signed bytes are accepted again
            self._dropped.discard(tx.tx_hash)
            mode = None
        else:
            mode = self._take_fault(tx.op.value, "drop", "revert", "late")
        if mode == "drop":
            self._dropped.add(tx.tx_hash)
            return tx.tx_hash
        if mode == "late":
            self._late.add(tx.tx_hash)

        # State may have moved between prepare and inclusion
        status = mode != "revert" and self._check(tx.op, tx.args) is None
        if status:
            self._apply(tx.op, tx.args)

        block = Block(
            index=len(self.blocks),
            op=tx.op.value,
            tx_hash=tx.tx_hash,
            args=tx.args,
            status=status,
            prev_hash=self.head,
        )
        self.blocks.append(block)
        self.receipts[tx.tx_hash] = Receipt(tx_hash=tx.tx_hash, status=status, block_number=block.index)

        logger.debug("block_appended", op=block.op, index=block.index,
                     status=status, hash=block.block_hash[:16])
        return tx.tx_hash

    async def wait_for_receipt(self, tx_hash: str, timeout: float, poll_interval: float) -> Receipt:
        if tx_hash in self._late:
            self._late.discard(tx_hash)
            await asyncio.sleep(min(poll_interval, timeout))
            raise LedgerUnconfirmed(f"transaction {tx_hash} not mined within {timeout}s")
        deadline = time.monotonic() + timeout
        while True:
            receipt = self.receipts.get(tx_hash)
            if receipt is not None:
                return receipt
            if time.monotonic() >= deadline:
                raise LedgerUnconfirmed(f"transaction {tx_hash} not mined within {timeout}s")
            await asyncio.sleep(min(poll_interval, timeout))

    # ── Reads ─────────────────────────────────────

    async def get_score(self, address: str) -> int:
        self.calls.append("get_score")
        mode = self._take_fault("get_score", "transient", "stale")
        if mode == "transient":
            raise LedgerTransientError("simulated transient failure reading score")
        score = self.scores.get(address.lower(), 0)
        if mode == "stale":
            return 0
        return score

    async def get_badge_balance(self, address: str) -> int:
        self.calls.append("get_badge_balance")
        return self.balances.get(address.lower(), 0)

    async def is_proof_used(self, proof_hash: str) -> bool:
        self.calls.append("is_proof_used")
        return proof_hash.lower() in self.used_proofs


# =============================================
# WEB3 BACKEND
# =============================================

def _abi_fn(name: str, inputs: List[Tuple[str, str]], outputs: List[str] = (), view: bool = False) -> Dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": "", "type": t} for t in outputs],
        "stateMutability": "view" if view else "nonpayable",
    }


REGISTRY_ABI = [
    _abi_fn("registerContribution", [("user", "address"), ("proofHash", "bytes32"), ("score", "uint256")]),
    _abi_fn("usedProofs", [("proofHash", "bytes32")], ["bool"], view=True),
]
SCORE_ABI = [
    _abi_fn("increase", [("user", "address"), ("amount", "uint256")]),
    _abi_fn("getScore", [("user", "address")], ["uint256"], view=True),
]
BADGE_ABI = [
    _abi_fn("mint", [("to", "address"), ("tokenId", "uint256"), ("uri", "string"), ("tier", "string")]),
    _abi_fn("balanceOf", [("owner", "address")], ["uint256"], view=True),
]


class Web3LedgerBackend(LedgerBackend):
    """
    Signs locally with the agent key, submits raw transactions over JSON-RPC.
    Every RPC call is bounded by rpc_timeout.
    """

    name = "web3"

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        private_key: Optional[str] = None,
        chain_id: Optional[int] = None,
        registry_address: Optional[str] = None,
        score_address: Optional[str] = None,
        badge_address: Optional[str] = None,
        rpc_timeout: Optional[float] = None,
        w3: Optional[AsyncWeb3] = None,
    ):
        key = private_key or settings.PRIVATE_KEY
        if not key:
            raise RuntimeError("PRIVATE_KEY is required for the web3 ledger backend")

        self.w3 = w3 or AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url or settings.CELO_RPC))
        self.account = Account.from_key(key)
        self.chain_id = chain_id or settings.CHAIN_ID
        self.rpc_timeout = rpc_timeout or settings.LEDGER_RPC_TIMEOUT
        self._nonce_lock: Optional[asyncio.Lock] = None
        self._next_nonce: Optional[int] = None

        self.registry = self.w3.eth.contract(
            address=to_checksum_address(registry_address or settings.REGISTRY_ADDRESS), abi=REGISTRY_ABI)
        self.score = self.w3.eth.contract(
            address=to_checksum_address(score_address or settings.SCORE_ADDRESS), abi=SCORE_ABI)
        self.badge = self.w3.eth.contract(
            address=to_checksum_address(badge_address or settings.BADGE_ADDRESS), abi=BADGE_ABI)

    async def _rpc(self, label: str, awaitable):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.rpc_timeout)
        except ContractLogicError as e:
            raise LedgerRejected(f"{label} reverted: {e}", cause=e) from e
        except (LedgerRejected, LedgerTransientError):
            raise
        except Exception as e:
            raise LedgerTransientError(f"{label} failed: {type(e).__name__}: {e}", cause=e) from e

    def _function(self, op: LedgerOp, args: Dict[str, Any]):
        if op == LedgerOp.REGISTER:
            return self.registry.functions.registerContribution(
                args["address"], proof_bytes(args["proof_hash"]), int(args["score"]))
        if op == LedgerOp.INCREASE:
            return self.score.functions.increase(args["address"], int(args["amount"]))
        if op == LedgerOp.MINT:
            return self.badge.functions.mint(
                args["address"], int(args["token_id"]), args["uri"], args["tier"])
        raise ValueError(f"unknown ledger operation {op}")

    async def prepare(self, op: LedgerOp, **args) -> PreparedTx:
        fn = self._function(op, args)
        sender = self.account.address
        if self._nonce_lock is None:
            self._nonce_lock = asyncio.Lock()
        # One agent key signs every write: nonces are handed out one at a time
        async with self._nonce_lock:
            pending = await self._rpc("nonce", self.w3.eth.get_transaction_count(sender, "pending"))
            nonce = pending if self._next_nonce is None else max(pending, self._next_nonce)
            # build_transaction estimates gas, which simulates the call: reverts surface here
            tx = await self._rpc(f"{op.value} build", fn.build_transaction({
                "from": sender,
                "nonce": nonce,
                "chainId": self.chain_id,
            }))
            signed = self.account.sign_transaction(tx)
            self._next_nonce = nonce + 1
        logger.debug("ledger_tx_signed", op=op.value, nonce=nonce)
        return PreparedTx(
            op=op,
            tx_hash="0x" + bytes(signed.hash).hex(),
            args=dict(args),
            raw=bytes(signed.raw_transaction),
        )

    async def broadcast(self, tx: PreparedTx) -> str:
        try:
            await asyncio.wait_for(self.w3.eth.send_raw_transaction(tx.raw), timeout=self.rpc_timeout)
        except Exception as e:
            # Re-sending bytes the node already has is success, whatever the node calls it
            if "already known" in str(e).lower() or await self._known(tx.tx_hash):
                return tx.tx_hash
            # The local nonce may have run ahead of the node; re-read it next time
            self._next_nonce = None
            raise LedgerTransientError(f"{tx.op.value} broadcast failed: {type(e).__name__}: {e}", cause=e) from e
        return tx.tx_hash

    async def _known(self, tx_hash: str) -> bool:
        try:
            await asyncio.wait_for(self.w3.eth.get_transaction(tx_hash), timeout=self.rpc_timeout)
            return True
        except Exception:
            return False

    async def wait_for_receipt(self, tx_hash: str, timeout: float, poll_interval: float) -> Receipt:
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=timeout, poll_latency=poll_interval)
        except (TimeExhausted, asyncio.TimeoutError) as e:
            raise LedgerUnconfirmed(f"transaction {tx_hash} not mined within {timeout}s", cause=e) from e
        except Exception as e:
            raise LedgerUnconfirmed(f"receipt lookup for {tx_hash} failed: {type(e).__name__}", cause=e) from e
        return Receipt(
            tx_hash=tx_hash,
            status=receipt["status"] == 1,
            block_number=receipt.get("blockNumber", 0),
        )

    async def get_score(self, address: str) -> int:
        return int(await self._rpc("getScore", self.score.functions.getScore(address).call()))

    async def get_badge_balance(self, address: str) -> int:
        return int(await self._rpc("balanceOf", self.badge.functions.balanceOf(address).call()))

    async def is_proof_used(self, proof_hash: str) -> bool:
        return bool(await self._rpc(
            "usedProofs", self.registry.functions.usedProofs(proof_bytes(proof_hash)).call()))


# =============================================
# GATEWAY
# =============================================

class LedgerGateway:
    """
    Retries backend hiccups with exponential backoff.
    Never retries a rejection.
    """

    def __init__(
        self,
        backend: LedgerBackend,
        confirm_timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_base: Optional[float] = None,
    ):
        self.backend = backend
        self.confirm_timeout = confirm_timeout or settings.LEDGER_CONFIRM_TIMEOUT
        self.poll_interval = poll_interval or settings.LEDGER_POLL_INTERVAL
        self.max_retries = settings.LEDGER_MAX_RETRIES if max_retries is None else max_retries
        self.backoff_base = settings.LEDGER_BACKOFF_BASE if backoff_base is None else backoff_base

    async def _retrying(self, label: str, call: Callable):
        attempt = 0
        while True:
            try:
                return await call()
            except LedgerTransientError as e:
                attempt += 1
                if attempt > self.max_retries:
                    logger.error("ledger_retries_exhausted", op=label, attempts=attempt, error=e.message)
                    raise
                delay = self.backoff_base * (2 ** (attempt - 1))
                logger.warning("ledger_retry", op=label, attempt=attempt, delay=delay, error=e.message)
                await asyncio.sleep(delay)

    async def _submit(self, op: LedgerOp, **args) -> PreparedTx:
        tx = await self._retrying(f"{op.value}.prepare", lambda: self.backend.prepare(op, **args))
        return await self._broadcast(tx)

    async def _broadcast(self, tx: PreparedTx) -> PreparedTx:
        try:
            await self._retrying(f"{tx.op.value}.broadcast", lambda: self.backend.broadcast(tx))
        except LedgerTransientError as e:
            # We cannot tell whether the node accepted it
            raise LedgerUnconfirmed(
                f"{tx.op.value} broadcast not acknowledged: {e.message}", tx=tx, cause=e) from e
        logger.info("ledger_tx_submitted", op=tx.op.value, tx_hash=tx.tx_hash, backend=self.backend.name)
        return tx

    async def resend(self, tx: PreparedTx) -> PreparedTx:
        """Broadcast an already signed write again. Same bytes, same nonce: it lands at most once."""
        return await self._broadcast(tx)

    # ── Writes ────────────────────────────────────

    async def register_proof(self, address: Union[Address, str], proof_hash: str, score: int) -> PreparedTx:
        return await self._submit(
            LedgerOp.REGISTER, address=_as_address(address), proof_hash=proof_hash, score=int(score))

    async def increase_score(self, address: Union[Address, str], amount: int) -> PreparedTx:
        return await self._submit(LedgerOp.INCREASE, address=_as_address(address), amount=int(amount))

    async def mint_badge(self, address: Union[Address, str], token_id: int, uri: str, tier: Tier) -> PreparedTx:
        return await self._submit(
            LedgerOp.MINT, address=_as_address(address), token_id=str(token_id), tier=tier.value, uri=uri)

    async def confirm(self, tx: PreparedTx) -> Receipt:
        try:
            receipt = await self.backend.wait_for_receipt(tx.tx_hash, self.confirm_timeout, self.poll_interval)
        except LedgerUnconfirmed as e:
            if e.tx is None:
                e.tx = tx
            raise
        if not receipt.status:
            logger.error("ledger_tx_reverted", op=tx.op.value, tx_hash=tx.tx_hash)
            raise LedgerRejected(f"{tx.op.value} transaction {tx.tx_hash} reverted")
        logger.info("ledger_tx_confirmed", op=tx.op.value, tx_hash=tx.tx_hash, block=receipt.block_number)
        return receipt

    # ── Reads ─────────────────────────────────────

    async def get_score(self, address: Union[Address, str]) -> int:
        addr = _as_address(address)
        return await self._retrying("getScore", lambda: self.backend.get_score(addr))

    async def get_badge_balance(self, address: Union[Address, str]) -> int:
        addr = _as_address(address)
        return await self._retrying("balanceOf", lambda: self.backend.get_badge_balance(addr))

    async def is_proof_used(self, proof_hash: str) -> bool:
        return await self._retrying("usedProofs", lambda: self.backend.is_proof_used(proof_hash))

    async def verify_setup(self) -> bool:
        """One read against the score contract. True if the ledger answers."""
        try:
            await self.backend.get_score(ZERO_ADDRESS)
            return True
        except Exception as e:
            logger.error("ledger_setup_check_failed", backend=self.backend.name, error=str(e))
            return False


# =============================================
# FACTORY
# =============================================

def build_backend(kind: Optional[str] = None) -> LedgerBackend:
    kind = (kind or settings.LEDGER_BACKEND).lower()
    if kind == "web3":
        return Web3LedgerBackend()
    if kind == "memory":
        return InMemoryLedger()
    raise ValueError(f"unknown LEDGER_BACKEND '{kind}' (expected 'memory' or 'web3')")


@lru_cache()
def get_ledger_gateway() -> LedgerGateway:
    gateway = LedgerGateway(build_backend())
    logger.info("ledger_gateway_ready", backend=gateway.backend.name)
    return gateway
