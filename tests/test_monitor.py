#!/usr/bin/env python3
"""
Event Monitor Tests

Usage:
    python tests/test_monitor.py
"""

import sys
import os
import time
import shutil
import tempfile
import threading
import unittest
from unittest.mock import MagicMock

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, os.path.dirname(__file__))

from hashswap.core import SwapPhase, CHAIN_A, CHAIN_B
from hashswap.config import EVMConfig, StellarConfig, OrchestratorConfig, MonitorConfig
from hashswap.chains.base import EscrowStatus
from hashswap.tokens import default_registry
from hashswap.swap.ledger import SwapLedger, SecretVault
from hashswap.swap.orchestrator import SwapOrchestrator, EVENT_CLAIMED, EVENT_REFUNDED
from hashswap.swap.monitor import EventMonitor

from fakes import FakeChain, FakeClock, MAKER_A, TAKER_A, MAKER_B, TAKER_B


class TestEventMonitor(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.clock = FakeClock()
        self.chain_a = FakeChain(CHAIN_A, "ethereum", self.clock, MAKER_A)
        self.chain_b = FakeChain(CHAIN_B, "stellar", self.clock, TAKER_B)
        self.orch = SwapOrchestrator(
            SwapLedger(os.path.join(self.tmpdir, "swaps.json")),
            SecretVault(os.path.join(self.tmpdir, "secrets.json")),
            self.chain_a,
            self.chain_b,
            default_registry(EVMConfig(), StellarConfig()),
            config=OrchestratorConfig(confirm_timeout=0, retry_backoff=0),
            clock=self.clock,
            sleep=lambda s: None,
        )
        self.monitor = EventMonitor(self.orch, MonitorConfig(poll_interval_ms=10))

    def tearDown(self):
        self.monitor.stop()
        shutil.rmtree(self.tmpdir)

    def funded_swap(self) -> str:
        swap_id = self.orch.create_order(MAKER_A, MAKER_B, "USDC", "XLM", 100, 100, 3600)["swap_id"]
        self.orch.fill_order(swap_id, TAKER_B, TAKER_A)
        self.orch.lock_a(swap_id)
        self.orch.fund_b(swap_id)
        return swap_id

    def test_reveal_on_b_triggers_claim_on_a(self):
        swap_id = self.funded_swap()
        swap = self.orch.ledger.get(swap_id)
        secret = self.orch.vault.get(swap_id)
        handler = MagicMock()
        self.monitor.on(EVENT_CLAIMED, handler)

        # Maker claims B outside this process
        self.chain_b.external_claim(swap.chain_refs[CHAIN_B], secret)
        events = self.monitor.poll_once()

        self.assertEqual([e.chain for e in events], [CHAIN_B])
        self.assertEqual(events[0].secret, secret)
        handler.assert_called_once()
        swap = self.orch.ledger.get(swap_id)
        self.assertEqual(swap.phase, SwapPhase.CLAIMED_ON_A)
        self.assertEqual(self.chain_a.escrows[swap.chain_refs[CHAIN_A]]["status"], EscrowStatus.CLAIMED)

    def test_repeated_polls_do_not_resubmit(self):
        swap_id = self.funded_swap()
        swap = self.orch.ledger.get(swap_id)
        self.chain_b.external_claim(swap.chain_refs[CHAIN_B], self.orch.vault.get(swap_id))

        self.monitor.poll_once()
        broadcasts = list(self.chain_a.broadcasts)
        self.assertEqual(self.monitor.poll_once(), [])
        self.assertEqual(self.monitor.poll_once(), [])
        self.assertEqual(self.chain_a.broadcasts, broadcasts)

    def test_claim_on_a_first_makes_maker_claim_b(self):
        swap_id = self.funded_swap()
        swap = self.orch.ledger.get(swap_id)
        self.chain_a.external_claim(swap.chain_refs[CHAIN_A], self.orch.vault.get(swap_id))

        self.monitor.poll_once()
        swap = self.orch.ledger.get(swap_id)
        self.assertEqual(self.chain_b.escrows[swap.chain_refs[CHAIN_B]]["status"], EscrowStatus.CLAIMED)
        self.assertEqual(swap.phase, SwapPhase.CLAIMED_ON_A)

    def test_expired_swap_refunded(self):
        swap_id = self.funded_swap()
        self.clock.advance(3601)
        self.monitor.poll_once()

        swap = self.orch.ledger.get(swap_id)
        self.assertEqual(swap.phase, SwapPhase.REFUNDED)
        self.assertEqual(set(swap.refunds), {CHAIN_A, CHAIN_B})

    def test_auto_refund_disabled(self):
        self.monitor.config.auto_refund = False
        swap_id = self.funded_swap()
        self.clock.advance(3601)
        self.monitor.poll_once()
        self.assertEqual(self.orch.ledger.get(swap_id).phase, SwapPhase.FUNDED_ON_B)

    def test_refund_observed_on_chain(self):
        swap_id = self.funded_swap()
        swap = self.orch.ledger.get(swap_id)
        handler = MagicMock()
        self.monitor.on(EVENT_REFUNDED, handler)

        # Taker refunded B with its own tooling
        self.chain_b.escrows[swap.chain_refs[CHAIN_B]].update(
            status=EscrowStatus.REFUNDED, settled_by="btx_refund"
        )
        self.monitor.poll_once()

        swap = self.orch.ledger.get(swap_id)
        self.assertEqual(swap.refunds[CHAIN_B], "btx_refund")
        self.assertEqual(swap.phase, SwapPhase.FUNDED_ON_B)
        handler.assert_called_once()

    def test_handler_errors_do_not_stop_polling(self):
        swap_id = self.funded_swap()
        swap = self.orch.ledger.get(swap_id)
        self.monitor.on(EVENT_CLAIMED, MagicMock(side_effect=RuntimeError("boom")))
        self.chain_b.external_claim(swap.chain_refs[CHAIN_B], self.orch.vault.get(swap_id))

        self.assertEqual(len(self.monitor.poll_once()), 1)
        self.assertEqual(self.orch.ledger.get(swap_id).phase, SwapPhase.CLAIMED_ON_A)

    def test_slow_swap_does_not_hold_up_others(self):
        slow_id = self.funded_swap()
        fast_id = self.funded_swap()
        slow_ref = self.orch.ledger.get(slow_id).chain_refs[CHAIN_A]
        fast = self.orch.ledger.get(fast_id)
        release = threading.Event()
        entered = threading.Event()
        stalled_calls = []
        query_status = self.chain_a.query_status

        def stalled(ref, hashlock=None, confirmations=None):
            if ref == slow_ref:
                stalled_calls.append(ref)
                entered.set()
                release.wait(10)
            return query_status(ref, hashlock, confirmations)

        self.chain_a.query_status = stalled
        self.chain_b.external_claim(fast.chain_refs[CHAIN_B], self.orch.vault.get(fast_id))
        try:
            self.monitor.poll_once(wait=False)
            self.assertTrue(entered.wait(5))
            deadline = time.monotonic() + 5
            while self.orch.ledger.get(fast_id).phase != SwapPhase.CLAIMED_ON_A \
                    and time.monotonic() < deadline:
                self.monitor.poll_once(wait=False)
                time.sleep(0.01)
            self.assertEqual(self.orch.ledger.get(fast_id).phase, SwapPhase.CLAIMED_ON_A)
            self.assertEqual(self.orch.ledger.get(slow_id).phase, SwapPhase.FUNDED_ON_B)
            # Still one task for the stuck swap, however many polls ran
            self.assertEqual(stalled_calls, [slow_ref])
        finally:
            release.set()
        self.monitor.poll_once()
        self.assertEqual(self.orch.ledger.get(slow_id).phase, SwapPhase.FUNDED_ON_B)

    def test_task_errors_do_not_stop_polling(self):
        swap_id = self.funded_swap()
        self.chain_b.query_status = MagicMock(side_effect=RuntimeError("horizon parse error"))
        self.assertEqual(self.monitor.poll_once(), [])
        self.assertEqual(self.monitor.poll_once(), [])
        self.assertEqual(self.orch.ledger.get(swap_id).phase, SwapPhase.FUNDED_ON_B)

    def test_start_stop(self):
        self.monitor.start()
        self.assertTrue(self.monitor.running)
        self.monitor.stop()
        self.assertFalse(self.monitor.running)


if __name__ == "__main__":
    unittest.main(verbosity=2)
