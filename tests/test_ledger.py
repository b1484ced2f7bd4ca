#!/usr/bin/env python3
"""
Swap ledger and secret vault persistence.

Usage:
    python tests/test_ledger.py
"""

import sys
import os
import json
import stat
import shutil
import tempfile
import unittest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from hashswap.core import Swap, SwapPhase, CHAIN_A, generate_secret
from hashswap.errors import SwapNotFound, InvalidParameters, InvalidPhase
from hashswap.swap.ledger import SwapLedger, SecretVault


def make_swap(swap_id="swap_test0001", created_at=1) -> Swap:
    _, hashlock = generate_secret()
    return Swap(
        swap_id=swap_id,
        maker="0xmaker",
        maker_receiver="GMAKER",
        maker_asset="USDC",
        taker_asset="XLM",
        making_amount=100,
        taking_amount=250,
        hashlock=hashlock,
        timelock=10_000,
        created_at=created_at,
    )


class TestSwapLedger(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.path = os.path.join(self.tmpdir, "state", "swaps.json")
        self.ledger = SwapLedger(self.path)

    def tearDown(self):
        shutil.rmtree(self.tmpdir)

    def test_create_and_get(self):
        self.ledger.create(make_swap())
        swap = self.ledger.get("swap_test0001")
        self.assertEqual(swap.making_amount, 100)
        self.assertEqual(swap.phase, SwapPhase.CREATED)

    def test_duplicate_create_rejected(self):
        self.ledger.create(make_swap())
        with self.assertRaises(InvalidParameters):
            self.ledger.create(make_swap())

    def test_unknown_swap(self):
        with self.assertRaises(SwapNotFound):
            self.ledger.get("swap_missing")
        with self.assertRaises(SwapNotFound):
            with self.ledger.locked("swap_missing"):
                pass

    def test_get_returns_copy(self):
        self.ledger.create(make_swap())
        copy = self.ledger.get("swap_test0001")
        copy.phase = SwapPhase.FILLED
        self.assertEqual(self.ledger.get("swap_test0001").phase, SwapPhase.CREATED)

    def test_changes_survive_restart(self):
        self.ledger.create(make_swap())
        with self.ledger.locked("swap_test0001") as swap:
            swap.transition(SwapPhase.FILLED, now=5)
            swap.set_ref(CHAIN_A, "7")
            swap.pending["fund_b"] = {"tx_hash": "abc", "raw": "AAAA"}

        reopened = SwapLedger(self.path)
        swap = reopened.get("swap_test0001")
        self.assertEqual(swap.phase, SwapPhase.FILLED)
        self.assertEqual(swap.chain_refs, {CHAIN_A: "7"})
        self.assertEqual(swap.pending["fund_b"]["raw"], "AAAA")

    def test_exception_rolls_back(self):
        self.ledger.create(make_swap())
        with self.assertRaises(InvalidPhase):
            with self.ledger.locked("swap_test0001") as swap:
                swap.transition(SwapPhase.FILLED)
                raise InvalidPhase("nope")

        self.assertEqual(self.ledger.get("swap_test0001").phase, SwapPhase.CREATED)
        self.assertEqual(SwapLedger(self.path).get("swap_test0001").phase, SwapPhase.CREATED)

    def test_unrevealed_secret_not_written(self):
        secret, _ = generate_secret()
        self.ledger.create(make_swap())
        with self.ledger.locked("swap_test0001") as swap:
            swap.transition(SwapPhase.FUNDED_ON_B)
            swap.secret = secret

        with open(self.path) as f:
            self.assertNotIn(secret, f.read())
        # Still available in memory
        self.assertEqual(self.ledger.get("swap_test0001").secret, secret)

    def test_file_is_json(self):
        self.ledger.create(make_swap())
        with open(self.path) as f:
            data = json.load(f)
        self.assertIn("swap_test0001", data["swaps"])
        self.assertFalse(os.path.exists(self.path + ".tmp"))

    def test_list_and_stats(self):
        self.ledger.create(make_swap("swap_a", created_at=1))
        self.ledger.create(make_swap("swap_b", created_at=2))
        self.ledger.create(make_swap("swap_c", created_at=3))
        with self.ledger.locked("swap_a") as swap:
            swap.transition(SwapPhase.CLAIMED_ON_A)
        with self.ledger.locked("swap_b") as swap:
            swap.transition(SwapPhase.REFUNDED)

        self.assertEqual([s.swap_id for s in self.ledger.list()], ["swap_a", "swap_b", "swap_c"])
        self.assertEqual([s.swap_id for s in self.ledger.active()], ["swap_c"])
        self.assertEqual([s.swap_id for s in self.ledger.list(SwapPhase.COMPLETED)], ["swap_a"])

        stats = self.ledger.stats()
        self.assertEqual(stats["total"], 3)
        self.assertEqual(stats["completed"], 1)
        self.assertEqual(stats["refunded"], 1)
        self.assertEqual(stats["pending"], 1)
        self.assertEqual(stats["volume"], {"USDC": 100})
        self.assertEqual(stats["by_phase"]["created"], 1)


class TestSecretVault(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.path = os.path.join(self.tmpdir, "secrets.json")

    def tearDown(self):
        shutil.rmtree(self.tmpdir)

    def test_put_get_persist(self):
        secret, _ = generate_secret()
        vault = SecretVault(self.path)
        vault.put("swap_1", "0x" + secret)
        self.assertTrue(vault.has("swap_1"))
        self.assertEqual(SecretVault(self.path).get("swap_1"), secret)
        self.assertIsNone(vault.get("swap_2"))

    def test_file_mode_0600(self):
        vault = SecretVault(self.path)
        vault.put("swap_1", generate_secret()[0])
        mode = stat.S_IMODE(os.stat(self.path).st_mode)
        self.assertEqual(mode & 0o077, 0)

    def test_rejects_malformed_secret(self):
        vault = SecretVault(self.path)
        with self.assertRaises(InvalidParameters):
            vault.put("swap_1", "1234")


if __name__ == "__main__":
    unittest.main(verbosity=2)
