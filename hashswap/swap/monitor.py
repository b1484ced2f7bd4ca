"""
Event Monitor for hashswap.

Polls both chains for:
- Claims on chain B (secret reveals), followed at once by the claim on A
- Claims and refunds on chain A
- Refunds on chain B
- Timelock expiry (local clock)

Runs as a background thread that hands each swap to a worker pool, at most
one task per swap id, so a slow confirmation on one swap never holds up a
claim or refund on another. Every observation is delivered to the
orchestrator as a ChainEvent carrying an idempotency key (swap id + event
type), so polling the same state twice never triggers a second action.
"""

import time
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Dict, List, Callable, Optional

from ..config import MonitorConfig
from ..core import Swap, SwapPhase, CHAIN_A, CHAIN_B
from ..errors import SwapError
from ..chains.base import ChainAdapter, EscrowStatus
from .orchestrator import (
    SwapOrchestrator,
    ChainEvent,
    EVENT_CLAIMED,
    EVENT_REFUNDED,
)

log = logging.getLogger(__name__)


class EventMonitor:
    """
    Background service that watches both chains for swap events.

    Handlers registered with on(kind, handler) are called with each newly
    applied ChainEvent. Handler errors are logged and never stop the loop.
    """

    def __init__(self, orchestrator: SwapOrchestrator, config: MonitorConfig = None):
        self.orchestrator = orchestrator
        self.ledger = orchestrator.ledger
        self.config = config or MonitorConfig()
        self._handlers: Dict[str, List[Callable[[ChainEvent], None]]] = {}

        # State
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._pool: Optional[ThreadPoolExecutor] = None
        self._tasks: Dict[str, Future] = {}
        self._tasks_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def on(self, kind: str, handler: Callable[[ChainEvent], None]):
        self._handlers.setdefault(kind, []).append(handler)

    def start(self):
        """Start monitor in background thread."""
        if self.running:
            return

        self._stop.clear()
        self._thread = threading.Thread(target=self._watch_loop, name="swap-monitor", daemon=True)
        self._thread.start()
        log.info(
            f"Event monitor started (poll {self.config.poll_interval_ms}ms, "
            f"{self.config.confirmation_blocks} confirmations)"
        )

    def stop(self):
        """Stop monitor."""
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        if self._pool is not None:
            self._pool.shutdown(wait=True, cancel_futures=True)
            self._pool = None
        with self._tasks_lock:
            self._tasks.clear()
        log.info("Event monitor stopped")

    def _watch_loop(self):
        """Main watch loop."""
        interval = self.config.poll_interval_ms / 1000.0
        while not self._stop.is_set():
            started = time.monotonic()
            try:
                self.poll_once(wait=False)
            except Exception as e:
                log.exception(f"Monitor error: {e}")
            self._stop.wait(max(0.0, interval - (time.monotonic() - started)))

    def poll_once(self, wait: bool = True) -> List[ChainEvent]:
        """
        One pass over every active swap. Returns the events applied.

        Each swap is handed to the worker pool unless a task for it is still
        running. With `wait`, blocks until this pass's tasks finish; without,
        collects only the tasks that are already done.
        """
        for swap in self.ledger.active():
            self._submit(swap.swap_id)
        return self._collect(wait)

    def _executor(self) -> ThreadPoolExecutor:
        if self._pool is None:
            self._pool = ThreadPoolExecutor(
                max_workers=self.config.max_workers, thread_name_prefix="swap-worker"
            )
        return self._pool

    def _submit(self, swap_id: str):
        with self._tasks_lock:
            if swap_id in self._tasks:
                return
            self._tasks[swap_id] = self._executor().submit(self._process, swap_id)

    def _collect(self, wait: bool) -> List[ChainEvent]:
        with self._tasks_lock:
            tasks = list(self._tasks.items())

        applied = []
        for swap_id, future in tasks:
            if not wait and not future.done():
                continue
            try:
                events = future.result()
            except Exception as e:
                log.exception(f"Monitor task for {swap_id} failed: {e}")
                events = []
            finally:
                with self._tasks_lock:
                    if self._tasks.get(swap_id) is future:
                        del self._tasks[swap_id]
            for event in events:
                applied.append(event)
                self._dispatch(event)
        return applied

    def _process(self, swap_id: str) -> List[ChainEvent]:
        """All monitor work for one swap: resume, observe, auto-claim, expire."""
        swap = self.ledger.get(swap_id)
        if swap.pending:
            try:
                self.orchestrator.resume(swap_id)
            except SwapError as e:
                log.warning(f"Resume of {swap_id} failed: {e.code}: {e}")
            swap = self.ledger.get(swap_id)

        applied = []
        if not swap.is_terminal():
            try:
                applied = self._check_swap(swap)
            except SwapError as e:
                log.warning(f"Check of swap {swap_id} failed: {e.code}: {e}")

        if self.config.auto_claim and self.ledger.get(swap_id).phase == SwapPhase.CLAIMED_ON_B:
            try:
                self.orchestrator.claim_a(swap_id)
            except SwapError as e:
                log.warning(f"Auto-claim on A for {swap_id} failed: {e.code}: {e}")

        if self.config.auto_refund:
            self.orchestrator.expire_if_due(swap_id)

        return applied

    # -------------------------------------------------------------------------
    # Per-swap checks
    # -------------------------------------------------------------------------

    def _status(self, adapter: ChainAdapter, swap: Swap, chain: str):
        return adapter.query_status(
            swap.chain_refs[chain],
            hashlock=swap.hashlock,
            confirmations=self.config.confirmation_blocks,
        )

    def _check_swap(self, swap: Swap) -> List[ChainEvent]:
        events = []

        if swap.has_lock(CHAIN_B) and swap.phase == SwapPhase.FUNDED_ON_B:
            state = self._status(self.orchestrator.chain_b, swap, CHAIN_B)
            if state.status == EscrowStatus.CLAIMED:
                log.info(f"Claim on B detected for {swap.swap_id}")
                events.append(ChainEvent(
                    swap.swap_id, CHAIN_B, EVENT_CLAIMED,
                    ref=state.ref, secret=state.secret, tx_hash=state.tx_hash,
                ))
            elif state.status == EscrowStatus.REFUNDED:
                events.append(ChainEvent(
                    swap.swap_id, CHAIN_B, EVENT_REFUNDED, ref=state.ref, tx_hash=state.tx_hash
                ))

        if swap.has_lock(CHAIN_A) and swap.phase in (
            SwapPhase.LOCKED_ON_A, SwapPhase.FUNDED_ON_B, SwapPhase.CLAIMED_ON_B
        ):
            state = self._status(self.orchestrator.chain_a, swap, CHAIN_A)
            if state.status == EscrowStatus.CLAIMED:
                events.append(ChainEvent(
                    swap.swap_id, CHAIN_A, EVENT_CLAIMED,
                    ref=state.ref, secret=state.secret, tx_hash=state.tx_hash,
                ))
            elif state.status == EscrowStatus.REFUNDED:
                events.append(ChainEvent(
                    swap.swap_id, CHAIN_A, EVENT_REFUNDED, ref=state.ref, tx_hash=state.tx_hash
                ))

        applied = []
        for event in events:
            if event.key in swap.events:
                continue
            try:
                self.orchestrator.handle_event(event)
            except SwapError as e:
                log.warning(f"Event {event.key} follow-up failed: {e.code}: {e}")
            if event.key in self.ledger.get(swap.swap_id).events:
                applied.append(event)
        return applied

    def _dispatch(self, event: ChainEvent):
        for handler in self._handlers.get(event.kind, []):
            try:
                handler(event)
            except Exception as e:
                log.error(f"Handler for {event.kind} failed: {e}")

    def watch_single(self, swap_id: str, timeout: int = 3600) -> Swap:
        """
        Poll until one swap reaches a terminal phase or timeout.

        Blocking call - use for CLI or testing.
        """
        start = time.monotonic()
        while time.monotonic() - start < timeout:
            self.poll_once()
            swap = self.ledger.get(swap_id)
            if swap.is_terminal():
                return swap
            time.sleep(self.config.poll_interval_ms / 1000.0)
        return self.ledger.get(swap_id)
