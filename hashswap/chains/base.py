"""
Uniform chain adapter interface.

Every ledger exposes the same capability set: lock, claim, refund and
query. State-changing calls are split into build (sign locally) and
broadcast so the orchestrator can persist a signed transaction before it
leaves the process. Confirmation is observed later with get_receipt or
query_status, never assumed.
"""

import time
import logging
from abc import ABC, abstractmethod
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, Dict, Any

from ..core import verify_preimage, normalize_hex32
from ..errors import SecretMismatch, InvalidParameters

log = logging.getLogger(__name__)


class EscrowStatus(Enum):
    LOCKED = "locked"
    CLAIMED = "claimed"
    REFUNDED = "refunded"
    NOT_FOUND = "not_found"


@dataclass
class LockRequest:
    """Parameters for one escrow (HTLC on A, claimable balance on B)."""
    swap_id: str
    locker: str         # Funds come from here, refunds go back here
    beneficiary: str    # Receives the funds on claim
    asset: str          # Allowlisted symbol
    amount: int         # Base units
    hashlock: str
    timelock: int       # Absolute unix timestamp


@dataclass
class SignedTx:
    """A transaction signed locally and not yet confirmed."""
    chain: str
    action: str                     # lock, claim, refund
    tx_hash: str
    raw: Optional[str] = field(default=None, repr=False)
    meta: Dict[str, Any] = field(default_factory=dict)
    submitted_at: int = 0

    def to_record(self, include_raw: bool = True) -> Dict[str, Any]:
        return {
            "chain": self.chain,
            "action": self.action,
            "tx_hash": self.tx_hash,
            "raw": self.raw if include_raw else None,
            "meta": dict(self.meta),
            "submitted_at": self.submitted_at,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "SignedTx":
        return cls(
            chain=record["chain"],
            action=record["action"],
            tx_hash=record["tx_hash"],
            raw=record.get("raw"),
            meta=dict(record.get("meta") or {}),
            submitted_at=record.get("submitted_at", 0),
        )


@dataclass
class TxReceipt:
    """Outcome of a transaction that is final at the configured depth."""
    tx_hash: str
    success: bool
    ref: Optional[str] = None       # Escrow reference created by a lock
    block: Optional[int] = None
    error: Optional[str] = None


@dataclass
class EscrowState:
    status: EscrowStatus
    ref: str
    secret: Optional[str] = None    # Revealed preimage, when claimed
    amount: Optional[int] = None
    timelock: Optional[int] = None
    tx_hash: Optional[str] = None   # Claim or refund transaction, if known

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "ref": self.ref,
            "amount": self.amount,
            "timelock": self.timelock,
            "tx_hash": self.tx_hash,
        }


class ChainAdapter(ABC):
    """Base class for chain A (contract) and chain B (claimable balance) adapters."""

    chain: str = ""
    name: str = ""

    @property
    @abstractmethod
    def address(self) -> str:
        """Account this adapter signs for."""

    @abstractmethod
    def validate_address(self, address: str, role: str = "address") -> str:
        """Normalized account address on this chain, or InvalidParameters. No network access."""

    @abstractmethod
    def build_lock(self, request: LockRequest) -> SignedTx:
        """Validate balances and sign the escrow-creating transaction."""

    @abstractmethod
    def build_claim(self, ref: str, secret: str, hashlock: str) -> SignedTx:
        """Sign a claim that reveals `secret` on this chain."""

    @abstractmethod
    def build_refund(self, ref: str) -> SignedTx:
        """Sign a refund back to the locker (valid only after the timelock)."""

    @abstractmethod
    def broadcast(self, signed: SignedTx) -> str:
        """Submit a signed transaction. Resubmitting a known tx is not an error."""

    @abstractmethod
    def get_receipt(self, tx_hash: str, meta: Optional[Dict[str, Any]] = None) -> Optional[TxReceipt]:
        """Receipt once final at the configured depth, None while pending or unknown."""

    @abstractmethod
    def query_status(
        self,
        ref: str,
        hashlock: Optional[str] = None,
        confirmations: Optional[int] = None,
    ) -> EscrowState:
        """Normalized escrow status."""

    def health(self) -> Dict[str, Any]:
        return {"chain": self.name, "address": self.address}

    # -------------------------------------------------------------------------
    # Build + broadcast shortcuts
    # -------------------------------------------------------------------------

    def lock(self, request: LockRequest) -> SignedTx:
        signed = self.build_lock(request)
        return self._submit(signed)

    def claim(self, ref: str, secret: str, hashlock: str) -> SignedTx:
        signed = self.build_claim(ref, secret, hashlock)
        return self._submit(signed)

    def refund(self, ref: str) -> SignedTx:
        signed = self.build_refund(ref)
        return self._submit(signed)

    def _submit(self, signed: SignedTx) -> SignedTx:
        signed.tx_hash = self.broadcast(signed)
        if not signed.submitted_at:
            signed.submitted_at = int(time.time())
        log.info(f"[{self.name}] {signed.action} submitted: {signed.tx_hash}")
        return signed

    # -------------------------------------------------------------------------
    # Shared validation
    # -------------------------------------------------------------------------

    @staticmethod
    def check_preimage(secret: str, hashlock: str) -> tuple[str, str]:
        """Local pre-check before paying fees for a claim. Chain stays the authority."""
        try:
            secret_hex = normalize_hex32(secret, "secret")
        except InvalidParameters:
            raise SecretMismatch("Secret is not a 32-byte hex value")
        hashlock_hex = normalize_hex32(hashlock, "hashlock")
        if not verify_preimage(secret_hex, hashlock_hex):
            raise SecretMismatch("SHA256(secret) does not match hashlock")
        return secret_hex, hashlock_hex

    @staticmethod
    def check_lock_request(request: LockRequest, now: Optional[int] = None):
        if request.amount <= 0:
            raise InvalidParameters("Lock amount must be positive")
        if not request.beneficiary:
            raise InvalidParameters("Lock beneficiary is required")
        normalize_hex32(request.hashlock, "hashlock")
        if request.timelock <= (now if now is not None else int(time.time())):
            raise InvalidParameters("Timelock must be in the future")
