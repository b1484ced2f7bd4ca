#!/usr/bin/env python3
"""
Core types, token allowlist, configuration and retry policy.

Usage:
    python tests/test_core.py
"""

import sys
import os
import hashlib
import unittest
from unittest.mock import MagicMock

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from hashswap.core import (
    Swap, SwapPhase, TERMINAL_PHASES, CHAIN_A, CHAIN_B,
    generate_secret, normalize_hex32, verify_preimage, new_swap_id,
)
from hashswap.config import Settings, EVMConfig, StellarConfig
from hashswap.errors import (
    InvalidParameters, ChainUnavailable, StaleTransaction, TransactionReverted,
)
from hashswap.tokens import default_registry, to_base_units, to_display_amount
from hashswap.swap.retry import RetryPolicy, call_with_retry


def make_swap(**overrides) -> Swap:
    secret, hashlock = generate_secret()
    fields = dict(
        swap_id=new_swap_id(),
        maker="0xmaker",
        maker_receiver="GMAKER",
        maker_asset="USDC",
        taker_asset="XLM",
        making_amount=100,
        taker_receiver=None,
        taking_amount=100,
        hashlock=hashlock,
        timelock=1_000_000,
    )
    fields.update(overrides)
    return Swap(**fields)


class TestSecrets(unittest.TestCase):

    def test_generate_secret(self):
        secret, hashlock = generate_secret()
        self.assertEqual(len(secret), 64)
        self.assertEqual(hashlib.sha256(bytes.fromhex(secret)).hexdigest(), hashlock)

    def test_secrets_are_unique(self):
        self.assertNotEqual(generate_secret()[0], generate_secret()[0])

    def test_verify_preimage(self):
        secret, hashlock = generate_secret()
        self.assertTrue(verify_preimage(secret, hashlock))
        self.assertTrue(verify_preimage("0x" + secret, "0x" + hashlock.upper()))
        self.assertFalse(verify_preimage("00" * 32, hashlock))
        self.assertFalse(verify_preimage("not-hex", hashlock))

    def test_normalize_hex32(self):
        self.assertEqual(normalize_hex32("0x" + "AB" * 32), "ab" * 32)
        with self.assertRaises(InvalidParameters):
            normalize_hex32("ab" * 31)
        with self.assertRaises(InvalidParameters):
            normalize_hex32(None)


class TestSwapRecord(unittest.TestCase):

    def test_completed_alias(self):
        self.assertIs(SwapPhase.COMPLETED, SwapPhase.CLAIMED_ON_A)
        self.assertEqual(SwapPhase("claimed_on_a"), SwapPhase.COMPLETED)

    def test_reached_follows_happy_path(self):
        swap = make_swap(phase=SwapPhase.FUNDED_ON_B)
        self.assertTrue(swap.reached(SwapPhase.LOCKED_ON_A))
        self.assertTrue(swap.reached(SwapPhase.FUNDED_ON_B))
        self.assertFalse(swap.reached(SwapPhase.CLAIMED_ON_B))

    def test_failure_phases_reach_nothing(self):
        swap = make_swap(phase=SwapPhase.REFUNDED)
        self.assertFalse(swap.reached(SwapPhase.CREATED))
        self.assertTrue(swap.is_terminal())

    def test_terminal_phases(self):
        terminal = {"claimed_on_a", "refunded", "expired", "cancelled"}
        self.assertEqual({p.value for p in TERMINAL_PHASES}, terminal)

    def test_expiry_is_strictly_after_timelock(self):
        swap = make_swap(timelock=1000)
        self.assertFalse(swap.is_expired(1000))
        self.assertTrue(swap.is_expired(1001))

    def test_ref_written_once(self):
        swap = make_swap()
        swap.set_ref(CHAIN_A, "ref1")
        swap.set_ref(CHAIN_A, "ref1")
        with self.assertRaises(InvalidParameters):
            swap.set_ref(CHAIN_A, "ref2")

    def test_outstanding_locks(self):
        swap = make_swap()
        swap.set_ref(CHAIN_A, "ref_a")
        swap.set_ref(CHAIN_B, "ref_b")
        self.assertEqual(swap.outstanding_locks(), [CHAIN_A, CHAIN_B])
        swap.refunds[CHAIN_B] = "0xrefund"
        swap.tx_hashes["claim_a"] = "0xclaim"
        self.assertEqual(swap.outstanding_locks(), [])

    def test_stranded_lock_only_when_cancelled(self):
        swap = make_swap(phase=SwapPhase.CANCELLED)
        self.assertFalse(swap.has_stranded_lock())
        swap.set_ref(CHAIN_A, "ref_a")
        self.assertTrue(swap.has_stranded_lock())
        swap.refunds[CHAIN_A] = "0xrefund"
        self.assertFalse(swap.has_stranded_lock())

        swap = make_swap(phase=SwapPhase.LOCKED_ON_A)
        swap.set_ref(CHAIN_A, "ref_a")
        self.assertFalse(swap.has_stranded_lock())

    def test_transition_records_history(self):
        swap = make_swap()
        swap.transition(SwapPhase.FILLED, "taker bound", now=42)
        self.assertEqual(swap.phase, SwapPhase.FILLED)
        self.assertEqual(swap.updated_at, 42)
        self.assertEqual(swap.history[-1]["from"], "created")
        self.assertEqual(swap.history[-1]["to"], "filled")

    def test_secret_hidden_until_revealed(self):
        secret, hashlock = generate_secret()
        swap = make_swap(hashlock=hashlock, phase=SwapPhase.FUNDED_ON_B, secret=secret)
        self.assertIsNone(swap.to_dict()["secret"])
        self.assertIsNone(swap.snapshot(0)["secret"])

        swap.phase = SwapPhase.CLAIMED_ON_B
        self.assertEqual(swap.to_dict()["secret"], secret)
        self.assertEqual(swap.snapshot(0)["secret"], secret)

    def test_dict_roundtrip(self):
        swap = make_swap(phase=SwapPhase.LOCKED_ON_A, taker="GTAKER")
        swap.pending["fund_b"] = {"tx_hash": "abc"}
        restored = Swap.from_dict(swap.to_dict())
        self.assertEqual(restored.phase, SwapPhase.LOCKED_ON_A)
        self.assertEqual(restored.pending, swap.pending)
        self.assertEqual(restored.to_dict(), swap.to_dict())

    def test_snapshot_lists_pending_actions(self):
        swap = make_swap(timelock=100)
        swap.pending["lock_a"] = {"tx_hash": "0x1", "raw": "0xdead"}
        snap = swap.snapshot(40)
        self.assertEqual(snap["pending"], ["lock_a"])
        self.assertEqual(snap["expires_in"], 60)
        self.assertFalse(snap["completed"])


class TestTokens(unittest.TestCase):

    def setUp(self):
        self.tokens = default_registry(EVMConfig(), StellarConfig())

    def test_allowlist(self):
        self.assertEqual(self.tokens.require_escrowable("usdc", CHAIN_A).decimals, 6)
        self.assertTrue(self.tokens.require_escrowable("XLM", CHAIN_B).native)
        self.assertEqual(
            self.tokens.get("USDC", CHAIN_B).issuer, StellarConfig().usdc_issuer
        )

    def test_unknown_asset(self):
        with self.assertRaises(InvalidParameters):
            self.tokens.get("DOGE", CHAIN_A)
        self.assertFalse(self.tokens.is_supported("XLM", CHAIN_A))

    def test_native_eth_not_escrowable(self):
        self.assertTrue(self.tokens.is_supported("ETH", CHAIN_A))
        with self.assertRaises(InvalidParameters):
            self.tokens.require_escrowable("ETH", CHAIN_A)

    def test_to_dict_groups_by_chain(self):
        data = self.tokens.to_dict()
        self.assertEqual(set(data.keys()), {"ethereum", "stellar"})
        self.assertIn("XLM", [t["symbol"] for t in data["stellar"]])

    def test_erc20_decimals_follow_config(self):
        tokens = default_registry(EVMConfig(token_symbol="DAI", token_decimals=18), StellarConfig())
        self.assertEqual(tokens.require_escrowable("DAI", CHAIN_A).decimals, 18)

    def test_amount_conversion(self):
        self.assertEqual(to_base_units("1.5", 6), 1_500_000)
        self.assertEqual(to_display_amount(100, 7), "0.0000100")
        with self.assertRaises(InvalidParameters):
            to_base_units("0.00000001", 7)
        with self.assertRaises(InvalidParameters):
            to_base_units("abc", 7)


class TestSettings(unittest.TestCase):

    def test_defaults(self):
        settings = Settings.from_env({})
        self.assertEqual(settings.orchestrator.default_timelock, 3600)
        self.assertEqual(settings.orchestrator.claim_safety_margin, 300)
        self.assertEqual(settings.monitor.poll_interval_ms, 5000)
        self.assertEqual(settings.stellar.network, "testnet")
        self.assertEqual(settings.evm.token_decimals, 6)
        self.assertEqual(settings.monitor.max_workers, 8)

    def test_env_overrides(self):
        settings = Settings.from_env({
            "CONFIRMATION_BLOCKS": "3",
            "POLL_INTERVAL_MS": "250",
            "DEFAULT_TIMELOCK_SECONDS": "7200",
            "AUTO_CLAIM": "false",
            "ERC20_DECIMALS": "18",
            "MONITOR_WORKERS": "2",
            "SWAP_DB_PATH": "/tmp/x.json",
        })
        self.assertEqual(settings.evm.confirmations, 3)
        self.assertEqual(settings.monitor.confirmation_blocks, 3)
        self.assertEqual(settings.monitor.poll_interval_ms, 250)
        self.assertEqual(settings.orchestrator.default_timelock, 7200)
        self.assertFalse(settings.monitor.auto_claim)
        self.assertEqual(settings.evm.token_decimals, 18)
        self.assertEqual(settings.monitor.max_workers, 2)
        self.assertEqual(settings.db_path, "/tmp/x.json")

    def test_invalid_values(self):
        with self.assertRaises(InvalidParameters):
            Settings.from_env({"POLL_INTERVAL_MS": "fast"})
        with self.assertRaises(InvalidParameters):
            Settings.from_env({"MIN_TIMELOCK_SECONDS": "600"})
        with self.assertRaises(InvalidParameters):
            Settings.from_env({"STELLAR_NETWORK": "futurenet"})
        with self.assertRaises(InvalidParameters):
            Settings.from_env({"ERC20_DECIMALS": "-1"})
        with self.assertRaises(InvalidParameters):
            Settings.from_env({"MONITOR_WORKERS": "0"})

    def test_private_keys_not_in_repr(self):
        settings = Settings.from_env({"ETH_PRIVATE_KEY": "0x" + "11" * 32, "STELLAR_SECRET": "SSECRET"})
        self.assertNotIn("11" * 32, repr(settings))
        self.assertNotIn("SSECRET", repr(settings))


class TestRetry(unittest.TestCase):

    def setUp(self):
        self.sleep = MagicMock()
        self.policy = RetryPolicy(attempts=3, backoff=1.0, max_backoff=3.0)

    def test_transient_errors_are_retried(self):
        fn = MagicMock(side_effect=[ChainUnavailable("down"), ChainUnavailable("down"), "ok"])
        self.assertEqual(call_with_retry(fn, self.policy, sleep=self.sleep), "ok")
        self.assertEqual(fn.call_count, 3)
        self.assertEqual([c.args[0] for c in self.sleep.call_args_list], [1.0, 2.0])

    def test_gives_up_after_attempts(self):
        fn = MagicMock(side_effect=ChainUnavailable("down"))
        with self.assertRaises(ChainUnavailable):
            call_with_retry(fn, self.policy, sleep=self.sleep)
        self.assertEqual(fn.call_count, 3)

    def test_permanent_errors_not_retried(self):
        fn = MagicMock(side_effect=TransactionReverted("revert"))
        with self.assertRaises(TransactionReverted):
            call_with_retry(fn, self.policy, sleep=self.sleep)
        self.assertEqual(fn.call_count, 1)

    def test_stale_transaction_not_retried(self):
        fn = MagicMock(side_effect=StaleTransaction("nonce too low"))
        with self.assertRaises(StaleTransaction):
            call_with_retry(fn, self.policy, sleep=self.sleep)
        self.assertEqual(fn.call_count, 1)
        self.sleep.assert_not_called()

    def test_backoff_is_capped(self):
        self.assertEqual(self.policy.delay(5), 3.0)


if __name__ == "__main__":
    unittest.main(verbosity=2)
