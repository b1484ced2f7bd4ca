"""
Core types and helpers for hashswap.

A swap moves `making_amount` of the maker's asset on chain A (EVM HTLC
contract) against `taking_amount` of the taker's asset on chain B (Stellar
claimable balance). Both locks share one SHA256 hashlock and one absolute
timelock.
"""

import time
import uuid
import hashlib
import secrets
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List

from .errors import InvalidParameters


class SwapPhase(Enum):
    """Swap lifecycle phases."""
    CREATED = "created"             # Order created, hashlock published
    FILLED = "filled"               # Taker bound to the order
    LOCKED_ON_A = "locked_on_a"     # Maker's funds escrowed on chain A
    FUNDED_ON_B = "funded_on_b"     # Taker's claimable balance on chain B
    CLAIMED_ON_B = "claimed_on_b"   # Maker claimed B, secret is public
    CLAIMED_ON_A = "claimed_on_a"   # Taker claimed A with the revealed secret
    REFUNDED = "refunded"           # Every outstanding lock returned to its locker
    EXPIRED = "expired"             # Timelock passed with nothing left to refund
    CANCELLED = "cancelled"         # Dropped before any lock existed

    COMPLETED = "claimed_on_a"      # Alias


# Position along the happy path. Terminal failure phases have no rank.
PHASE_RANK = {
    SwapPhase.CREATED: 0,
    SwapPhase.FILLED: 1,
    SwapPhase.LOCKED_ON_A: 2,
    SwapPhase.FUNDED_ON_B: 3,
    SwapPhase.CLAIMED_ON_B: 4,
    SwapPhase.CLAIMED_ON_A: 5,
}

TERMINAL_PHASES = (
    SwapPhase.CLAIMED_ON_A,
    SwapPhase.REFUNDED,
    SwapPhase.EXPIRED,
    SwapPhase.CANCELLED,
)

# Phases in which the secret has been published on chain B
REVEALED_PHASES = (SwapPhase.CLAIMED_ON_B, SwapPhase.CLAIMED_ON_A)

CHAIN_A = "a"
CHAIN_B = "b"


# =============================================================================
# Timelock defaults (seconds)
# =============================================================================

DEFAULT_TIMELOCK_SECONDS = 3600     # 1 hour, same as the relayer default
MIN_TIMELOCK_SECONDS = 900          # Room for lock, fund and both claims
MAX_TIMELOCK_SECONDS = 86400        # Contracts reject anything above 1 day
CLAIM_SAFETY_MARGIN_SECONDS = 300   # No reveal on B this close to expiry


def now_ts() -> int:
    return int(time.time())


def new_swap_id() -> str:
    return f"swap_{uuid.uuid4().hex[:16]}"


# =============================================================================
# Swap record
# =============================================================================

@dataclass
class Swap:
    """
    One cross-chain swap.

    `maker` locks on chain A and receives on chain B at `maker_receiver`.
    `taker` funds on chain B and receives on chain A at `taker_receiver`.
    """
    swap_id: str
    maker: str
    maker_receiver: str
    maker_asset: str
    taker_asset: str
    making_amount: int          # Base units of maker_asset
    taking_amount: int          # Base units of taker_asset
    hashlock: str               # SHA256(secret), 64 hex chars
    timelock: int               # Absolute unix timestamp
    phase: SwapPhase = SwapPhase.CREATED

    taker: Optional[str] = None
    taker_receiver: Optional[str] = None

    # Only set once the secret is public on chain B
    secret: Optional[str] = None

    # Escrow identifiers, each written once
    chain_refs: Dict[str, str] = field(default_factory=dict)
    # action -> confirmed tx hash
    tx_hashes: Dict[str, str] = field(default_factory=dict)
    # action -> submitted-but-unconfirmed transaction
    pending: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    # chain -> refund tx hash ("observed" when seen on chain only)
    refunds: Dict[str, str] = field(default_factory=dict)
    # Processed event idempotency keys
    events: List[str] = field(default_factory=list)
    history: List[Dict[str, Any]] = field(default_factory=list)

    outcome: Optional[str] = None
    failure: Optional[Dict[str, str]] = None

    created_at: int = 0
    updated_at: int = 0

    @property
    def rank(self) -> Optional[int]:
        return PHASE_RANK.get(self.phase)

    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def is_revealed(self) -> bool:
        return self.phase in REVEALED_PHASES or (
            self.phase == SwapPhase.EXPIRED and self.secret is not None
        )

    def reached(self, phase: SwapPhase) -> bool:
        """True if the swap is at or past `phase` on the happy path."""
        rank = self.rank
        return rank is not None and rank >= PHASE_RANK[phase]

    def is_expired(self, now: Optional[int] = None) -> bool:
        return (now if now is not None else now_ts()) > self.timelock

    def has_lock(self, chain: str) -> bool:
        return chain in self.chain_refs

    def outstanding_locks(self) -> List[str]:
        """Chains with a lock that was neither refunded nor claimed."""
        chains = []
        if CHAIN_A in self.chain_refs and CHAIN_A not in self.refunds \
                and "claim_a" not in self.tx_hashes:
            chains.append(CHAIN_A)
        if CHAIN_B in self.chain_refs and CHAIN_B not in self.refunds \
                and "claim_b" not in self.tx_hashes:
            chains.append(CHAIN_B)
        return chains

    def has_stranded_lock(self) -> bool:
        """Cancelled, yet a lock landed on chain anyway and still needs a refund."""
        return self.phase == SwapPhase.CANCELLED and bool(self.outstanding_locks())

    def set_ref(self, chain: str, ref: str):
        """Record an escrow identifier. A ref never changes once set."""
        current = self.chain_refs.get(chain)
        if current is not None and current != ref:
            raise InvalidParameters(
                f"Swap {self.swap_id} already has {chain} escrow {current}"
            )
        self.chain_refs[chain] = ref

    def transition(self, phase: SwapPhase, note: str = "", now: Optional[int] = None):
        ts = now if now is not None else now_ts()
        self.history.append({
            "from": self.phase.value,
            "to": phase.value,
            "at": ts,
            "note": note,
        })
        self.phase = phase
        self.updated_at = ts

    def to_dict(self) -> Dict[str, Any]:
        """Persistent form. Carries the secret only after it went public."""
        return {
            "swap_id": self.swap_id,
            "maker": self.maker,
            "maker_receiver": self.maker_receiver,
            "maker_asset": self.maker_asset,
            "taker_asset": self.taker_asset,
            "making_amount": self.making_amount,
            "taking_amount": self.taking_amount,
            "hashlock": self.hashlock,
            "timelock": self.timelock,
            "phase": self.phase.value,
            "taker": self.taker,
            "taker_receiver": self.taker_receiver,
            "secret": self.secret if self.is_revealed() else None,
            "chain_refs": dict(self.chain_refs),
            "tx_hashes": dict(self.tx_hashes),
            "pending": {k: dict(v) for k, v in self.pending.items()},
            "refunds": dict(self.refunds),
            "events": list(self.events),
            "history": [dict(h) for h in self.history],
            "outcome": self.outcome,
            "failure": dict(self.failure) if self.failure else None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Swap":
        data = dict(data)
        data["phase"] = SwapPhase(data["phase"])
        return cls(**data)

    def snapshot(self, now: Optional[int] = None) -> Dict[str, Any]:
        """Public view returned to API callers."""
        ts = now if now is not None else now_ts()
        return {
            "swap_id": self.swap_id,
            "phase": self.phase.value,
            "completed": self.phase == SwapPhase.CLAIMED_ON_A,
            "maker": self.maker,
            "maker_receiver": self.maker_receiver,
            "taker": self.taker,
            "taker_receiver": self.taker_receiver,
            "maker_asset": self.maker_asset,
            "taker_asset": self.taker_asset,
            "making_amount": self.making_amount,
            "taking_amount": self.taking_amount,
            "hashlock": self.hashlock,
            "timelock": self.timelock,
            "expires_in": max(0, self.timelock - ts),
            "secret": self.secret if self.is_revealed() else None,
            "chain_refs": dict(self.chain_refs),
            "tx_hashes": dict(self.tx_hashes),
            "pending": sorted(self.pending.keys()),
            "refunds": dict(self.refunds),
            "outcome": self.outcome,
            "failure": dict(self.failure) if self.failure else None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


# =============================================================================
# HTLC Utilities
# =============================================================================

def generate_secret() -> tuple[str, str]:
    """
    Generate a random secret and its SHA256 hashlock.

    Returns:
        (secret_hex, hashlock_hex)
    """
    secret = secrets.token_bytes(32)
    hashlock = hashlib.sha256(secret).digest()
    return secret.hex(), hashlock.hex()


def normalize_hex32(value: str, name: str = "value") -> str:
    """Lowercase 64-char hex without 0x prefix, or InvalidParameters."""
    if not isinstance(value, str):
        raise InvalidParameters(f"{name} must be a hex string")
    raw = value[2:] if value.lower().startswith("0x") else value
    try:
        decoded = bytes.fromhex(raw)
    except ValueError:
        raise InvalidParameters(f"{name} is not valid hex")
    if len(decoded) != 32:
        raise InvalidParameters(f"{name} must be 32 bytes")
    return decoded.hex()


def verify_preimage(preimage_hex: str, hashlock_hex: str) -> bool:
    """
    Verify that SHA256(preimage) == hashlock.

    Args:
        preimage_hex: 32-byte preimage as hex string (0x optional)
        hashlock_hex: Expected SHA256 hash as hex string (0x optional)

    Returns:
        True if valid
    """
    try:
        preimage = bytes.fromhex(normalize_hex32(preimage_hex, "preimage"))
        expected = bytes.fromhex(normalize_hex32(hashlock_hex, "hashlock"))
    except InvalidParameters:
        return False
    return hashlib.sha256(preimage).digest() == expected
