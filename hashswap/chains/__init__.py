"""
Chain adapters for hashswap.

Each adapter provides the same capability set:
- lock (escrow funds under hashlock + timelock)
- claim (with the preimage)
- refund (after the timelock)
- query (normalized escrow status)
"""

from .base import ChainAdapter, EscrowStatus, EscrowState, LockRequest, SignedTx, TxReceipt
from .evm import EVMHtlcAdapter
from .stellar import StellarClaimableAdapter

__all__ = [
    "ChainAdapter",
    "EscrowStatus",
    "EscrowState",
    "LockRequest",
    "SignedTx",
    "TxReceipt",
    "EVMHtlcAdapter",
    "StellarClaimableAdapter",
]
