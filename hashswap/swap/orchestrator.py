"""
Swap Orchestrator for hashswap.

Drives each swap through its phases:

    Created -> Filled -> LockedOnA -> FundedOnB -> ClaimedOnB -> ClaimedOnA
    (any unclaimed phase) -> Refunded / Expired once the timelock passes
    Created / Filled -> Cancelled (no lock exists yet)

Every phase-advance operation is idempotent: calling it again when the swap
is already at or past the target phase returns the current snapshot.

Chain calls never run under the per-swap lock. The pattern for every
value-moving step is:

1. lock, validate phase, release
2. build + sign, persist the signed tx as `pending`, broadcast, wait for receipt
3. lock again, commit the phase transition

A crash between 2 and 3 leaves the pending record in the ledger; `resume()`
looks the transaction up again instead of submitting a second one. Claim
transactions carry the secret, so only their hash is persisted.
"""

import time
import logging
import threading
from dataclasses import dataclass
from typing import Optional, Dict, List, Callable, Any

from ..core import (
    Swap,
    SwapPhase,
    CHAIN_A,
    CHAIN_B,
    generate_secret,
    new_swap_id,
    verify_preimage,
)
from ..config import OrchestratorConfig
from ..errors import (
    SwapError,
    InvalidParameters,
    InvalidPhase,
    SecretMismatch,
    ExpiredBeforeCompletion,
    DuplicateEventDelivery,
    TransientChainError,
    StaleTransaction,
    TransactionReverted,
)
from ..tokens import TokenRegistry
from ..chains.base import ChainAdapter, EscrowStatus, LockRequest, SignedTx, TxReceipt
from .ledger import SwapLedger, SecretVault
from .retry import RetryPolicy, call_with_retry

log = logging.getLogger(__name__)

# Actions (keys of Swap.pending / Swap.tx_hashes)
LOCK_A = "lock_a"
FUND_B = "fund_b"
CLAIM_B = "claim_b"
CLAIM_A = "claim_a"
REFUND_A = "refund_a"
REFUND_B = "refund_b"

# Signed claims embed the secret; never write them to disk
SECRET_ACTIONS = (CLAIM_B, CLAIM_A)

# Event kinds
EVENT_LOCKED = "locked"
EVENT_CLAIMED = "claimed"
EVENT_REFUNDED = "refunded"
EVENT_EXPIRED = "expired"

CHAIN_CLOCK = "clock"

OUTCOME_CLAIM_WINDOW_MISSED = "claim_window_missed"
OUTCOME_COUNTERPARTY_CLAIMED_A = "counterparty_claimed_a"


@dataclass
class ChainEvent:
    """Something observed on a chain (or on the clock) for one swap."""
    swap_id: str
    chain: str              # CHAIN_A, CHAIN_B or CHAIN_CLOCK
    kind: str               # locked, claimed, refunded, expired
    ref: Optional[str] = None
    secret: Optional[str] = None
    tx_hash: Optional[str] = None

    @property
    def key(self) -> str:
        """Idempotency key: swap id + event type."""
        return f"{self.swap_id}:{self.chain}:{self.kind}"


class SwapOrchestrator:
    """
    State machine driving swaps across chain A and chain B.

    Components are passed in explicitly and shared read-only; the ledger is
    the only mutable state.
    """

    def __init__(
        self,
        ledger: SwapLedger,
        vault: SecretVault,
        chain_a: ChainAdapter,
        chain_b: ChainAdapter,
        tokens: TokenRegistry,
        config: OrchestratorConfig = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.ledger = ledger
        self.vault = vault
        self.chain_a = chain_a
        self.chain_b = chain_b
        self.tokens = tokens
        self.config = config or OrchestratorConfig()
        self.clock = clock
        self.sleep = sleep
        self.retry_policy = RetryPolicy(
            attempts=self.config.retry_attempts,
            backoff=self.config.retry_backoff,
            max_backoff=self.config.retry_max_backoff,
        )
        self._inflight = set()
        self._inflight_lock = threading.Lock()

    # =========================================================================
    # Helpers
    # =========================================================================

    def _now(self) -> int:
        return int(self.clock())

    def _adapter(self, action: str) -> ChainAdapter:
        return self.chain_a if action in (LOCK_A, CLAIM_A, REFUND_A) else self.chain_b

    def _retry(self, fn, description: str):
        return call_with_retry(fn, self.retry_policy, description, sleep=self.sleep)

    def _transition(self, swap: Swap, phase: SwapPhase, note: str = ""):
        old = swap.phase
        swap.transition(phase, note, now=self._now())
        suffix = f" ({note})" if note else ""
        log.info(f"Swap {swap.swap_id}: {old.value} -> {phase.value}{suffix}")

    def _claim_inflight(self, swap_id: str, action: str) -> bool:
        with self._inflight_lock:
            key = (swap_id, action)
            if key in self._inflight:
                return False
            self._inflight.add(key)
            return True

    def _release_inflight(self, swap_id: str, action: str):
        with self._inflight_lock:
            self._inflight.discard((swap_id, action))

    def _is_inflight(self, swap_id: str) -> bool:
        with self._inflight_lock:
            return any(sid == swap_id for sid, _ in self._inflight)

    def _require_time(self, swap: Swap, seconds: int, action: str):
        remaining = swap.timelock - self._now()
        if remaining <= seconds:
            raise ExpiredBeforeCompletion(
                f"Swap {swap.swap_id}: {action} needs more than {seconds}s before "
                f"timelock, {max(remaining, 0)}s left",
                swap_id=swap.swap_id,
            )

    # =========================================================================
    # Submission pipeline
    # =========================================================================

    def _run_action(
        self,
        swap_id: str,
        action: str,
        build: Callable[[Swap], SignedTx],
        commit: Callable[[Swap, TxReceipt], None],
        on_revert: Optional[Callable[[TransactionReverted], Optional[Dict[str, Any]]]] = None,
        check: Optional[Callable[[Swap], Optional[Dict[str, Any]]]] = None,
    ) -> Dict[str, Any]:
        """
        Build/persist/broadcast/confirm one transaction and commit the result.

        `check` runs under the swap lock once this caller owns the action
        slot. It raises when the phase no longer allows the action, or
        returns a snapshot when the action is already done.
        """
        if not self._claim_inflight(swap_id, action):
            log.info(f"Swap {swap_id}: {action} already in flight")
            return self.ledger.get(swap_id).snapshot(self._now())
        try:
            with self.ledger.locked(swap_id) as swap:
                current = check(swap) if check is not None else None
                frozen = self.ledger.get(swap_id)
                pending = swap.pending.get(action)
            if current is not None:
                return current

            receipt = self._execute(swap_id, action, frozen, pending, build)

            with self.ledger.locked(swap_id) as swap:
                swap.pending.pop(action, None)
                swap.tx_hashes[action] = receipt.tx_hash
                swap.failure = None
                commit(swap, receipt)
                return swap.snapshot(self._now())

        except TransactionReverted as e:
            self._record_failure(swap_id, action, e, drop_pending=True)
            if on_revert is not None:
                handled = on_revert(e)
                if handled is not None:
                    return handled
            raise
        except (InvalidPhase, ExpiredBeforeCompletion):
            # Stale request, the swap itself did not fail
            raise
        except SwapError as e:
            if not e.retryable:
                self._record_failure(swap_id, action, e)
            raise
        finally:
            self._release_inflight(swap_id, action)

    def _record_failure(self, swap_id: str, action: str, error: SwapError, drop_pending: bool = False):
        log.error(f"Swap {swap_id}: {action} failed: {error.code}: {error}")
        with self.ledger.locked(swap_id) as swap:
            swap.failure = {"action": action, "error": error.code, "detail": str(error)}
            if drop_pending:
                swap.pending.pop(action, None)

    def _sign_and_persist(self, swap_id: str, action: str, frozen: Swap, build) -> SignedTx:
        signed = self._retry(lambda: build(frozen), f"{action} build for {swap_id}")
        signed.submitted_at = self._now()
        with self.ledger.locked(swap_id) as swap:
            swap.pending[action] = signed.to_record(include_raw=action not in SECRET_ACTIONS)
        return signed

    def _execute(self, swap_id: str, action: str, frozen: Swap, pending, build) -> TxReceipt:
        adapter = self._adapter(action)

        signed = SignedTx.from_record(pending) if pending else None
        if signed is not None:
            log.info(f"Swap {swap_id}: checking pending {action} tx {signed.tx_hash}")
            receipt = self._retry(
                lambda: adapter.get_receipt(signed.tx_hash, signed.meta),
                f"{action} receipt for {swap_id}",
            )
            if receipt is not None:
                return self._check_receipt(receipt, action)
            if signed.raw is None:
                signed = None

        if signed is None:
            signed = self._sign_and_persist(swap_id, action, frozen, build)

        for attempt in (1, 2):
            try:
                self._retry(lambda: adapter.broadcast(signed), f"{action} broadcast for {swap_id}")
                break
            except StaleTransaction:
                if attempt == 2:
                    raise
                log.warning(f"Swap {swap_id}: {action} tx {signed.tx_hash} can no longer land, re-signing")
                signed = self._sign_and_persist(swap_id, action, frozen, build)

        log.info(f"Swap {swap_id}: {action} submitted on {adapter.name}: {signed.tx_hash}")
        return self._await_receipt(adapter, signed, swap_id, action)

    def _await_receipt(self, adapter: ChainAdapter, signed: SignedTx, swap_id: str, action: str) -> TxReceipt:
        deadline = time.monotonic() + self.config.confirm_timeout
        while True:
            receipt = self._retry(
                lambda: adapter.get_receipt(signed.tx_hash, signed.meta),
                f"{action} receipt for {swap_id}",
            )
            if receipt is not None:
                return self._check_receipt(receipt, action)
            if time.monotonic() >= deadline:
                raise TransientChainError(
                    f"{action} tx {signed.tx_hash} not confirmed after "
                    f"{self.config.confirm_timeout}s",
                    swap_id=swap_id,
                )
            self.sleep(self.config.confirm_poll)

    @staticmethod
    def _check_receipt(receipt: TxReceipt, action: str) -> TxReceipt:
        if not receipt.success:
            raise TransactionReverted(f"{action} tx {receipt.tx_hash}: {receipt.error or 'reverted'}")
        return receipt

    # =========================================================================
    # Order management
    # =========================================================================

    def create_order(
        self,
        maker: str,
        maker_receiver: str,
        maker_asset: str,
        taker_asset: str,
        making_amount: int,
        taking_amount: int,
        timelock_duration: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Create a swap order. Generates the secret and publishes only its hashlock.

        Args:
            maker: Maker's chain A address (locks making_amount)
            maker_receiver: Maker's chain B address (receives taking_amount)
            maker_asset / taker_asset: Allowlisted symbols on chain A / chain B
            making_amount / taking_amount: Base units
            timelock_duration: Seconds from now until refunds are allowed

        Returns:
            Swap snapshot (no secret)
        """
        if not maker or not maker_receiver:
            raise InvalidParameters("maker and maker_receiver are required")
        maker = self.chain_a.validate_address(maker, "maker")
        maker_receiver = self.chain_b.validate_address(maker_receiver, "maker_receiver")
        maker_token = self.tokens.require_escrowable(maker_asset, CHAIN_A)
        taker_token = self.tokens.require_escrowable(taker_asset, CHAIN_B)
        for name, value in (("making_amount", making_amount), ("taking_amount", taking_amount)):
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise InvalidParameters(f"{name} must be a positive integer")

        duration = self.config.default_timelock if timelock_duration is None else timelock_duration
        if not (self.config.min_timelock <= duration <= self.config.max_timelock):
            raise InvalidParameters(
                f"timelock_duration must be between {self.config.min_timelock} "
                f"and {self.config.max_timelock} seconds"
            )

        now = self._now()
        secret, hashlock = generate_secret()
        swap = Swap(
            swap_id=new_swap_id(),
            maker=maker,
            maker_receiver=maker_receiver,
            maker_asset=maker_token.symbol,
            taker_asset=taker_token.symbol,
            making_amount=making_amount,
            taking_amount=taking_amount,
            hashlock=hashlock,
            timelock=now + duration,
            created_at=now,
            updated_at=now,
        )
        # Vault first: a ledger record must never exist without its secret
        self.vault.put(swap.swap_id, secret)
        self.ledger.create(swap)

        log.info(
            f"Order {swap.swap_id} created: {making_amount} {swap.maker_asset} -> "
            f"{taking_amount} {swap.taker_asset}, hashlock {hashlock[:16]}..., "
            f"timelock {swap.timelock}"
        )
        return swap.snapshot(now)

    def fill_order(
        self,
        swap_id: str,
        taker: str,
        taker_receiver: str,
        making_amount: Optional[int] = None,
        taking_amount: Optional[int] = None,
        maker_asset: Optional[str] = None,
        taker_asset: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Bind the taker. Terms given by the caller must match the order exactly."""
        if not taker or not taker_receiver:
            raise InvalidParameters("taker and taker_receiver are required")
        taker = self.chain_b.validate_address(taker, "taker")
        taker_receiver = self.chain_a.validate_address(taker_receiver, "taker_receiver")

        with self.ledger.locked(swap_id) as swap:
            if swap.reached(SwapPhase.FILLED):
                if swap.taker == taker and swap.taker_receiver == taker_receiver:
                    return swap.snapshot(self._now())
                raise InvalidPhase(f"Swap {swap_id} is already filled", swap_id=swap_id)
            if swap.phase != SwapPhase.CREATED:
                raise InvalidPhase(
                    f"Swap {swap_id} is {swap.phase.value}, cannot fill", swap_id=swap_id
                )

            expected = {
                "making_amount": swap.making_amount,
                "taking_amount": swap.taking_amount,
                "maker_asset": swap.maker_asset,
                "taker_asset": swap.taker_asset,
            }
            given = {
                "making_amount": making_amount,
                "taking_amount": taking_amount,
                "maker_asset": maker_asset.upper() if maker_asset else None,
                "taker_asset": taker_asset.upper() if taker_asset else None,
            }
            for name, value in given.items():
                if value is not None and value != expected[name]:
                    raise InvalidParameters(
                        f"{name} mismatch: order has {expected[name]}, got {value}",
                        swap_id=swap_id,
                    )
            self._require_time(swap, 2 * self.config.claim_safety_margin, "fill")

            swap.taker = taker
            swap.taker_receiver = taker_receiver
            self._transition(swap, SwapPhase.FILLED, f"taker {taker[:10]}...")
            return swap.snapshot(self._now())

    def cancel_order(self, swap_id: str) -> Dict[str, Any]:
        """Drop a swap that has no lock on any chain."""
        with self.ledger.locked(swap_id) as swap:
            if swap.phase == SwapPhase.CANCELLED:
                return swap.snapshot(self._now())
            if swap.phase not in (SwapPhase.CREATED, SwapPhase.FILLED) \
                    or swap.chain_refs or swap.pending or self._is_inflight(swap_id):
                raise InvalidPhase(
                    f"Swap {swap_id} has a lock in progress or on chain; "
                    f"only claim or refund can resolve it",
                    swap_id=swap_id,
                )
            self._transition(swap, SwapPhase.CANCELLED, "cancelled before any lock")
            return swap.snapshot(self._now())

    def get_order(self, swap_id: str) -> Dict[str, Any]:
        return self.ledger.get(swap_id).snapshot(self._now())

    def list_orders(self, phase: Optional[str] = None) -> List[Dict[str, Any]]:
        wanted = None
        if phase:
            try:
                wanted = SwapPhase(phase.lower())
            except ValueError:
                if phase.lower() != "completed":
                    raise InvalidParameters(f"Unknown phase {phase!r}")
                wanted = SwapPhase.COMPLETED
        now = self._now()
        return [s.snapshot(now) for s in self.ledger.list(wanted)]

    # =========================================================================
    # Lock / fund
    # =========================================================================

    def _phase_check(self, action: str, required: SwapPhase,
                     target: SwapPhase) -> Callable[[Swap], Optional[Dict[str, Any]]]:
        def check(swap: Swap) -> Optional[Dict[str, Any]]:
            if swap.reached(target):
                return swap.snapshot(self._now())
            if swap.phase != required:
                raise InvalidPhase(
                    f"Swap {swap.swap_id} is {swap.phase.value}, {action} needs {required.value}",
                    swap_id=swap.swap_id,
                )
            return None
        return check

    def _advance_lock(self, swap_id: str, action: str, chain: str,
                      required: SwapPhase, target: SwapPhase,
                      make_request: Callable[[Swap], LockRequest]) -> Dict[str, Any]:
        check = self._phase_check(action, required, target)
        with self.ledger.locked(swap_id) as swap:
            current = check(swap)
            if current is not None:
                return current
            if action not in swap.pending:
                self._require_time(swap, 2 * self.config.claim_safety_margin, action)

        adapter = self._adapter(action)
        return self._run_action(
            swap_id, action,
            build=lambda swap: adapter.build_lock(make_request(swap)),
            commit=lambda swap, receipt: self._commit_lock(swap, chain, target, receipt),
            check=check,
        )

    def _commit_lock(self, swap: Swap, chain: str, target: SwapPhase, receipt: TxReceipt):
        if not receipt.ref:
            raise TransactionReverted(f"Lock tx {receipt.tx_hash} produced no escrow reference")
        swap.set_ref(chain, receipt.ref)
        if swap.is_terminal():
            log.warning(f"Swap {swap.swap_id}: lock on chain {chain} confirmed after swap became {swap.phase.value}")
        elif not swap.reached(target):
            self._transition(swap, target, f"chain {chain} escrow {receipt.ref}")

    def _settle_pending_lock(self, swap_id: str, action: str):
        """
        Resolve a lock submitted before the timelock passed.

        The stored transaction may be rebroadcast but is never re-signed:
        a fresh lock after expiry would only strand more funds.
        """
        swap = self.ledger.get(swap_id)
        record = swap.pending.get(action)
        if record is None:
            return
        signed = SignedTx.from_record(record)
        adapter = self._adapter(action)
        chain, target = (CHAIN_A, SwapPhase.LOCKED_ON_A) if action == LOCK_A \
            else (CHAIN_B, SwapPhase.FUNDED_ON_B)

        receipt = self._retry(
            lambda: adapter.get_receipt(signed.tx_hash, signed.meta),
            f"{action} receipt for {swap_id}",
        )
        if receipt is None and signed.raw:
            try:
                self._retry(lambda: adapter.broadcast(signed), f"{action} broadcast for {swap_id}")
                receipt = self._await_receipt(adapter, signed, swap_id, action)
            except StaleTransaction:
                receipt = None
            except TransactionReverted as e:
                receipt = TxReceipt(tx_hash=signed.tx_hash, success=False, error=str(e))

        with self.ledger.locked(swap_id) as swap:
            swap.pending.pop(action, None)
            if receipt is None or not receipt.success:
                log.warning(f"Swap {swap_id}: pending {action} {signed.tx_hash} never landed")
                return
            swap.tx_hashes[action] = receipt.tx_hash
            self._commit_lock(swap, chain, target, receipt)

    def lock_a(self, swap_id: str) -> Dict[str, Any]:
        """Escrow making_amount on chain A for the taker (createEscrow)."""
        return self._advance_lock(
            swap_id, LOCK_A, CHAIN_A, SwapPhase.FILLED, SwapPhase.LOCKED_ON_A,
            lambda swap: LockRequest(
                swap_id=swap.swap_id,
                locker=swap.maker,
                beneficiary=swap.taker_receiver,
                asset=swap.maker_asset,
                amount=swap.making_amount,
                hashlock=swap.hashlock,
                timelock=swap.timelock,
            ),
        )

    def fund_b(self, swap_id: str) -> Dict[str, Any]:
        """Create the hashlocked claimable balance on chain B for the maker (fundOther)."""
        return self._advance_lock(
            swap_id, FUND_B, CHAIN_B, SwapPhase.LOCKED_ON_A, SwapPhase.FUNDED_ON_B,
            lambda swap: LockRequest(
                swap_id=swap.swap_id,
                locker=swap.taker,
                beneficiary=swap.maker_receiver,
                asset=swap.taker_asset,
                amount=swap.taking_amount,
                hashlock=swap.hashlock,     # same hashlock and timelock as lock_a
                timelock=swap.timelock,
            ),
        )

    # =========================================================================
    # Claims
    # =========================================================================

    def claim_b(self, swap_id: str) -> Dict[str, Any]:
        """Maker claims chain B, publishing the secret (claimOther)."""
        check = self._phase_check("claim on B", SwapPhase.FUNDED_ON_B, SwapPhase.CLAIMED_ON_B)
        with self.ledger.locked(swap_id) as swap:
            current = check(swap)
            if current is not None:
                return current
            if CLAIM_B not in swap.pending:
                self._require_time(swap, self.config.claim_safety_margin, "claim on B")

        secret = self.vault.get(swap_id)
        if secret is None:
            raise InvalidParameters(f"No secret held for swap {swap_id}", swap_id=swap_id)
        if not verify_preimage(secret, self.ledger.get(swap_id).hashlock):
            raise SecretMismatch(f"Stored secret does not match hashlock of {swap_id}", swap_id=swap_id)

        def commit(swap: Swap, receipt: TxReceipt):
            swap.secret = secret
            if not swap.reached(SwapPhase.CLAIMED_ON_B):
                self._transition(swap, SwapPhase.CLAIMED_ON_B, f"secret revealed: {secret[:16]}...")

        return self._run_action(
            swap_id, CLAIM_B,
            build=lambda swap: self.chain_b.build_claim(swap.chain_refs[CHAIN_B], secret, swap.hashlock),
            commit=commit,
            check=check,
        )

    def claim_a(self, swap_id: str, secret: Optional[str] = None) -> Dict[str, Any]:
        """Taker claims chain A with the revealed secret (claimFirst)."""
        with self.ledger.locked(swap_id) as swap:
            if swap.reached(SwapPhase.CLAIMED_ON_A):
                return swap.snapshot(self._now())
            if secret is not None and not verify_preimage(secret, swap.hashlock):
                raise SecretMismatch(f"Secret does not match hashlock of {swap_id}", swap_id=swap_id)
            self._check_claim_a(swap)
            secret = secret or swap.secret
            if secret is None:
                raise InvalidParameters(f"No revealed secret for swap {swap_id}", swap_id=swap_id)

        def commit(swap: Swap, receipt: TxReceipt):
            if not swap.reached(SwapPhase.CLAIMED_ON_A):
                self._transition(swap, SwapPhase.CLAIMED_ON_A, "completed")

        def on_revert(error: TransactionReverted):
            return self._after_failed_claim_a(swap_id)

        return self._run_action(
            swap_id, CLAIM_A,
            build=lambda swap: self.chain_a.build_claim(swap.chain_refs[CHAIN_A], secret, swap.hashlock),
            commit=commit,
            on_revert=on_revert,
            check=self._check_claim_a,
        )

    def _check_claim_a(self, swap: Swap) -> Optional[Dict[str, Any]]:
        if swap.reached(SwapPhase.CLAIMED_ON_A):
            return swap.snapshot(self._now())
        if swap.phase == SwapPhase.EXPIRED and swap.outcome == OUTCOME_CLAIM_WINDOW_MISSED:
            raise ExpiredBeforeCompletion(
                f"Swap {swap.swap_id} missed the chain A claim window", swap_id=swap.swap_id
            )
        if swap.phase != SwapPhase.CLAIMED_ON_B:
            raise InvalidPhase(
                f"Swap {swap.swap_id} is {swap.phase.value}, claim on A needs claimed_on_b",
                swap_id=swap.swap_id,
            )
        return None

    def _after_failed_claim_a(self, swap_id: str) -> Optional[Dict[str, Any]]:
        """A rejected claim on A is final only if the escrow is gone or expired."""
        swap = self.ledger.get(swap_id)
        state = self._retry(
            lambda: self.chain_a.query_status(swap.chain_refs[CHAIN_A], swap.hashlock),
            f"chain A status for {swap_id}",
        )
        with self.ledger.locked(swap_id) as swap:
            if state.status == EscrowStatus.CLAIMED:
                swap.tx_hashes.setdefault(CLAIM_A, state.tx_hash or "observed")
                swap.failure = None
                self._transition(swap, SwapPhase.CLAIMED_ON_A, "claim observed on chain A")
                return swap.snapshot(self._now())
            missed = state.status == EscrowStatus.REFUNDED or swap.is_expired(self._now())
            if missed:
                swap.outcome = OUTCOME_CLAIM_WINDOW_MISSED
                self._transition(swap, SwapPhase.EXPIRED, "chain A rejected claim after timelock")
        if missed:
            log.error(f"Swap {swap_id}: chain A claim window missed, escrow {state.status.value}")
            raise ExpiredBeforeCompletion(
                f"Swap {swap_id} missed the chain A claim window", swap_id=swap_id
            )
        return None

    # =========================================================================
    # Refund / expiry
    # =========================================================================

    def refund(self, swap_id: str) -> Dict[str, Any]:
        """
        Return every outstanding lock to its locker once the timelock passed.

        If chain B shows the secret was revealed, switch to claiming A
        instead. A chain whose counterpart was claimed is never refunded.
        """
        now = self._now()
        with self.ledger.locked(swap_id) as swap:
            if swap.phase == SwapPhase.REFUNDED:
                return swap.snapshot(now)
            if swap.phase == SwapPhase.CLAIMED_ON_A or (
                swap.phase == SwapPhase.CANCELLED and not swap.has_stranded_lock()
            ):
                raise InvalidPhase(f"Swap {swap_id} is {swap.phase.value}, nothing to refund", swap_id=swap_id)
            if swap.phase == SwapPhase.EXPIRED and swap.outcome:
                # A claim happened on one side; the other side is never refunded
                return swap.snapshot(now)
            if not swap.is_expired(now):
                raise InvalidPhase(
                    f"Swap {swap_id} timelock not reached ({swap.timelock - now}s left)",
                    swap_id=swap_id,
                )
            if swap.phase == SwapPhase.CLAIMED_ON_B:
                claim_instead = True
            else:
                claim_instead = False
                if not swap.chain_refs and not swap.pending:
                    if swap.phase != SwapPhase.EXPIRED:
                        self._transition(swap, SwapPhase.EXPIRED, "timelock passed before any lock")
                    return swap.snapshot(now)
                if swap.phase == SwapPhase.EXPIRED and not swap.outstanding_locks() and not swap.pending:
                    return swap.snapshot(now)
            pending_locks = [a for a in (LOCK_A, FUND_B) if a in swap.pending]

        if claim_instead:
            return self.claim_a(swap_id)

        # Settle locks that were submitted but never committed
        for action in pending_locks:
            self._settle_pending_lock(swap_id, action)

        swap = self.ledger.get(swap_id)
        states = {}
        for chain in (CHAIN_B, CHAIN_A):
            if swap.has_lock(chain):
                adapter = self.chain_a if chain == CHAIN_A else self.chain_b
                states[chain] = self._retry(
                    lambda: adapter.query_status(swap.chain_refs[chain], swap.hashlock),
                    f"{adapter.name} status for {swap_id}",
                )

        state_b = states.get(CHAIN_B)
        if state_b is not None and state_b.status == EscrowStatus.CLAIMED:
            log.warning(f"Swap {swap_id}: secret already revealed on chain B, claiming A instead of refunding")
            return self.handle_event(ChainEvent(
                swap_id, CHAIN_B, EVENT_CLAIMED,
                ref=state_b.ref, secret=state_b.secret, tx_hash=state_b.tx_hash,
            ))

        state_a = states.get(CHAIN_A)
        if state_a is not None and state_a.status == EscrowStatus.CLAIMED:
            with self.ledger.locked(swap_id) as swap:
                swap.tx_hashes.setdefault(CLAIM_A, state_a.tx_hash or "observed")
                swap.outcome = OUTCOME_COUNTERPARTY_CLAIMED_A
                log.error(f"Swap {swap_id}: chain A claimed without a claim on B; chain B left locked")
                if not swap.is_terminal():
                    self._transition(swap, SwapPhase.EXPIRED, "chain A claimed by counterparty")
                return swap.snapshot(self._now())

        for chain, state in states.items():
            if state.status == EscrowStatus.REFUNDED:
                with self.ledger.locked(swap_id) as swap:
                    swap.refunds.setdefault(chain, state.tx_hash or "observed")
            elif state.status == EscrowStatus.LOCKED:
                self._refund_chain(swap_id, chain)

        with self.ledger.locked(swap_id) as swap:
            if not swap.chain_refs:
                if swap.phase != SwapPhase.EXPIRED:
                    self._transition(swap, SwapPhase.EXPIRED, "timelock passed before any lock")
            elif not swap.outstanding_locks() and swap.phase != SwapPhase.REFUNDED:
                self._transition(swap, SwapPhase.REFUNDED, "all locks returned")
            return swap.snapshot(self._now())

    def _refund_chain(self, swap_id: str, chain: str) -> Dict[str, Any]:
        action = REFUND_A if chain == CHAIN_A else REFUND_B
        adapter = self._adapter(action)

        def commit(swap: Swap, receipt: TxReceipt):
            swap.refunds[chain] = receipt.tx_hash
            log.info(f"Swap {swap_id}: {adapter.name} escrow refunded ({receipt.tx_hash})")

        def on_revert(error: TransactionReverted):
            swap = self.ledger.get(swap_id)
            state = self._retry(
                lambda: adapter.query_status(swap.chain_refs[chain], swap.hashlock),
                f"{adapter.name} status for {swap_id}",
            )
            if state.status != EscrowStatus.REFUNDED:
                return None
            with self.ledger.locked(swap_id) as swap:
                swap.refunds.setdefault(chain, state.tx_hash or "observed")
                swap.failure = None
                return swap.snapshot(self._now())

        return self._run_action(
            swap_id, action,
            build=lambda swap: adapter.build_refund(swap.chain_refs[chain]),
            commit=commit,
            on_revert=on_revert,
        )

    def process_expired(self) -> List[str]:
        """Refund or expire every active swap whose timelock has passed."""
        return [swap.swap_id for swap in self.ledger.active() if self.expire_if_due(swap.swap_id)]

    def expire_if_due(self, swap_id: str) -> bool:
        """Run expiry handling for one swap. True if it was due and went through."""
        swap = self.ledger.get(swap_id)
        if swap.phase == SwapPhase.CLAIMED_ON_A or not swap.is_expired(self._now()):
            return False
        if swap.is_terminal() and not swap.has_stranded_lock():
            return False
        try:
            self.handle_event(ChainEvent(swap_id, CHAIN_CLOCK, EVENT_EXPIRED))
            return True
        except SwapError as e:
            log.warning(f"Expiry handling for {swap_id} failed: {e.code}: {e}")
            return False

    # =========================================================================
    # Events and recovery
    # =========================================================================

    def handle_event(self, event: ChainEvent) -> Dict[str, Any]:
        """
        Apply an observed chain event.

        Re-delivered events (same swap id + event type) are no-ops.
        """
        if event.kind == EVENT_EXPIRED:
            snapshot = self.refund(event.swap_id)
            with self.ledger.locked(event.swap_id) as swap:
                if event.key not in swap.events and swap.is_terminal():
                    swap.events.append(event.key)
            return snapshot

        try:
            return self._apply_event(event)
        except DuplicateEventDelivery:
            log.debug(f"Duplicate event {event.key} ignored")
            return self.ledger.get(event.swap_id).snapshot(self._now())

    def _apply_event(self, event: ChainEvent) -> Dict[str, Any]:
        follow_up = None
        with self.ledger.locked(event.swap_id) as swap:
            if event.key in swap.events:
                raise DuplicateEventDelivery(event.key, swap_id=event.swap_id)

            if event.kind == EVENT_LOCKED:
                self._apply_locked(swap, event)
            elif event.kind == EVENT_CLAIMED:
                if event.chain == CHAIN_B:
                    if not self._apply_reveal(swap, event):
                        return swap.snapshot(self._now())
                    if swap.phase == SwapPhase.CLAIMED_ON_B:
                        follow_up = "claim_a"
                else:
                    follow_up = self._apply_claim_a(swap, event)
            elif event.kind == EVENT_REFUNDED:
                swap.refunds.setdefault(event.chain, event.tx_hash or "observed")
                log.info(f"Swap {swap.swap_id}: refund observed on chain {event.chain}")
                if not swap.outstanding_locks() and not swap.is_terminal():
                    self._transition(swap, SwapPhase.REFUNDED, "refunds observed on chain")
            else:
                raise InvalidParameters(f"Unknown event kind {event.kind!r}")

            swap.events.append(event.key)
            snapshot = swap.snapshot(self._now())

        if follow_up == "claim_a":
            return self.claim_a(event.swap_id)
        if follow_up == "claim_b":
            return self.claim_b(event.swap_id)
        return snapshot

    def _apply_locked(self, swap: Swap, event: ChainEvent):
        if event.chain == CHAIN_A:
            target, required, action = SwapPhase.LOCKED_ON_A, SwapPhase.FILLED, LOCK_A
        else:
            target, required, action = SwapPhase.FUNDED_ON_B, SwapPhase.LOCKED_ON_A, FUND_B
        if event.ref:
            swap.set_ref(event.chain, event.ref)
        if swap.phase == required and event.ref:
            swap.pending.pop(action, None)
            if event.tx_hash:
                swap.tx_hashes.setdefault(action, event.tx_hash)
            self._transition(swap, target, f"lock observed on chain {event.chain}")

    def _apply_reveal(self, swap: Swap, event: ChainEvent) -> bool:
        """Record the secret published on chain B. False if it cannot be used yet."""
        if not event.secret:
            log.warning(f"Swap {swap.swap_id}: claim on B seen but preimage not readable yet")
            return False
        if not verify_preimage(event.secret, swap.hashlock):
            log.error(f"Swap {swap.swap_id}: preimage observed on B does not match hashlock")
            return False
        if swap.secret is None:
            swap.secret = event.secret
        swap.pending.pop(CLAIM_B, None)
        swap.tx_hashes.setdefault(CLAIM_B, event.tx_hash or "observed")
        if not swap.reached(SwapPhase.CLAIMED_ON_B) and not swap.is_terminal():
            self._transition(swap, SwapPhase.CLAIMED_ON_B, f"secret revealed: {event.secret[:16]}...")
        return True

    def _apply_claim_a(self, swap: Swap, event: ChainEvent) -> Optional[str]:
        swap.pending.pop(CLAIM_A, None)
        swap.tx_hashes.setdefault(CLAIM_A, event.tx_hash or "observed")
        if swap.phase == SwapPhase.CLAIMED_ON_B:
            self._transition(swap, SwapPhase.CLAIMED_ON_A, "claim observed on chain A")
            return None
        if swap.is_terminal():
            return None
        # Secret reached chain A before B was claimed: maker must claim B now
        log.warning(f"Swap {swap.swap_id}: chain A claimed while {swap.phase.value}")
        if event.secret and verify_preimage(event.secret, swap.hashlock):
            swap.secret = swap.secret or event.secret
        if swap.phase == SwapPhase.FUNDED_ON_B:
            return "claim_b"
        return None

    def resume(self, swap_id: str) -> Dict[str, Any]:
        """Finish transactions that were submitted before a restart."""
        swap = self.ledger.get(swap_id)
        for action in list(swap.pending.keys()):
            log.info(f"Swap {swap_id}: resuming pending {action}")
            if action == LOCK_A:
                self.lock_a(swap_id)
            elif action == FUND_B:
                self.fund_b(swap_id)
            elif action == CLAIM_B:
                self.claim_b(swap_id)
            elif action == CLAIM_A:
                self.claim_a(swap_id)
            elif action == REFUND_A:
                self._refund_chain(swap_id, CHAIN_A)
            elif action == REFUND_B:
                self._refund_chain(swap_id, CHAIN_B)
        return self.ledger.get(swap_id).snapshot(self._now())

    def resume_all(self) -> int:
        resumed = 0
        for swap in self.ledger.active():
            if not swap.pending:
                continue
            try:
                self.resume(swap.swap_id)
                resumed += 1
            except SwapError as e:
                log.warning(f"Resume of {swap.swap_id} failed: {e.code}: {e}")
        return resumed
