"""
Durable swap ledger and secret vault.

Swap records live in one JSON file keyed by swap id and are rewritten
atomically (temp file + os.replace) on every committed change, so a
restart never loses an in-flight swap. Secrets that have not been revealed
on chain are kept in a separate keystore file with 0600 permissions and
never appear in the ledger file.
"""

import os
import json
import logging
import threading
from contextlib import contextmanager
from typing import Dict, List, Optional, Iterator, Any

from ..core import Swap, SwapPhase, TERMINAL_PHASES, normalize_hex32
from ..errors import SwapNotFound, InvalidParameters

log = logging.getLogger(__name__)


def _atomic_write(path: str, data: Dict[str, Any], mode: int = 0o644):
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    tmp_path = f"{path}.tmp"
    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "w") as f:
        json.dump(data, f, indent=2, sort_keys=True)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)


def _load_json(path: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        return {}
    with open(path) as f:
        return json.load(f)


class SwapLedger:
    """
    Authoritative store of swap records.

    Each swap has its own lock; `locked()` is the only way to mutate a
    record. Terminal swaps are kept for audit and never deleted.
    """

    def __init__(self, path: str):
        self.path = os.path.expanduser(path)
        self._swaps: Dict[str, Swap] = {}
        self._records: Dict[str, Dict[str, Any]] = {}
        self._locks: Dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()
        self._io_lock = threading.Lock()
        self._load()

    def _load(self):
        data = _load_json(self.path)
        for swap_id, record in data.get("swaps", {}).items():
            self._swaps[swap_id] = Swap.from_dict(record)
            self._records[swap_id] = record
            self._locks[swap_id] = threading.RLock()
        if self._swaps:
            active = sum(1 for s in self._swaps.values() if not s.is_terminal())
            log.info(f"Loaded {len(self._swaps)} swaps from {self.path} ({active} active)")

    def _persist(self, swap: Swap):
        with self._io_lock:
            self._records[swap.swap_id] = swap.to_dict()
            _atomic_write(self.path, {"swaps": self._records})

    def _lock_for(self, swap_id: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(swap_id)
            if lock is None:
                raise SwapNotFound(f"Swap {swap_id} not found", swap_id=swap_id)
            return lock

    def create(self, swap: Swap) -> Swap:
        with self._registry_lock:
            if swap.swap_id in self._swaps:
                raise InvalidParameters(f"Swap {swap.swap_id} already exists")
            self._swaps[swap.swap_id] = swap
            self._locks[swap.swap_id] = threading.RLock()
        self._persist(swap)
        return swap

    @contextmanager
    def locked(self, swap_id: str) -> Iterator[Swap]:
        """
        Hold the swap's lock and yield the live record.

        Changes are persisted when the block exits normally. If it raises,
        the record is restored to what it was on entry.
        """
        lock = self._lock_for(swap_id)
        with lock:
            swap = self._swaps[swap_id]
            before = swap.to_dict()
            before_secret = swap.secret
            try:
                yield swap
            except BaseException:
                restored = Swap.from_dict(before)
                restored.secret = before_secret
                self._swaps[swap_id] = restored
                raise
            if swap.to_dict() != before or swap.secret != before_secret:
                self._persist(swap)

    def get(self, swap_id: str) -> Swap:
        """Copy of the current record (safe to read without the lock)."""
        lock = self._lock_for(swap_id)
        with lock:
            swap = self._swaps[swap_id]
            copy = Swap.from_dict(swap.to_dict())
            copy.secret = swap.secret
            return copy

    def list(self, phase: Optional[SwapPhase] = None) -> List[Swap]:
        with self._registry_lock:
            ids = list(self._swaps.keys())
        swaps = [self.get(swap_id) for swap_id in ids]
        if phase is not None:
            swaps = [s for s in swaps if s.phase == phase]
        return sorted(swaps, key=lambda s: s.created_at)

    def active(self) -> List[Swap]:
        """Swaps the monitor still has to watch, stranded cancelled locks included."""
        return [s for s in self.list() if s.phase not in TERMINAL_PHASES or s.has_stranded_lock()]

    def stats(self) -> Dict[str, Any]:
        swaps = self.list()
        by_phase = {phase.value: 0 for phase in SwapPhase}
        volume: Dict[str, int] = {}
        for swap in swaps:
            by_phase[swap.phase.value] += 1
            if swap.phase == SwapPhase.CLAIMED_ON_A:
                volume[swap.maker_asset] = volume.get(swap.maker_asset, 0) + swap.making_amount
        return {
            "total": len(swaps),
            "completed": by_phase[SwapPhase.CLAIMED_ON_A.value],
            "refunded": by_phase[SwapPhase.REFUNDED.value],
            "expired": by_phase[SwapPhase.EXPIRED.value],
            "pending": sum(1 for s in swaps if s.phase not in TERMINAL_PHASES),
            "by_phase": by_phase,
            "volume": volume,
        }


class SecretVault:
    """Keystore for unrevealed secrets (JSON file, mode 0600)."""

    def __init__(self, path: str):
        self.path = os.path.expanduser(path)
        self._lock = threading.Lock()
        self._secrets: Dict[str, str] = _load_json(self.path)

    def put(self, swap_id: str, secret: str):
        secret = normalize_hex32(secret, "secret")
        with self._lock:
            self._secrets[swap_id] = secret
            _atomic_write(self.path, self._secrets, mode=0o600)

    def get(self, swap_id: str) -> Optional[str]:
        with self._lock:
            return self._secrets.get(swap_id)

    def has(self, swap_id: str) -> bool:
        with self._lock:
            return swap_id in self._secrets
