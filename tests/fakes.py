"""
In-memory chain adapter and clock for orchestrator tests.

FakeChain enforces the same rules as the real escrows: claims need the
right preimage before the timelock, refunds only after it. Receipts are
available as soon as a transaction is broadcast unless `hold_receipts`
is set.
"""

import hashlib
import itertools
import threading
from typing import Dict, Any, Optional

from stellar_sdk import Keypair
from stellar_sdk.exceptions import Ed25519PublicKeyInvalidError
from web3 import Web3

from hashswap.core import CHAIN_A
from hashswap.errors import InvalidParameters
from hashswap.chains.base import (
    ChainAdapter,
    EscrowState,
    EscrowStatus,
    LockRequest,
    SignedTx,
    TxReceipt,
)

MAKER_A = "0x1111111111111111111111111111111111111111"
TAKER_A = "0x2222222222222222222222222222222222222222"
MAKER_B = Keypair.random().public_key
TAKER_B = Keypair.random().public_key


class FakeClock:
    def __init__(self, now: int = 1_700_000_000):
        self.now = now

    def __call__(self) -> float:
        return float(self.now)

    def advance(self, seconds: int):
        self.now += seconds


class FakeChain(ChainAdapter):

    def __init__(self, chain: str, name: str, clock: FakeClock, address: str):
        self.chain = chain
        self.name = name
        self.clock = clock
        self._address = address
        self._counter = itertools.count(1)

        self.escrows: Dict[str, Dict[str, Any]] = {}
        self.payloads: Dict[str, tuple] = {}
        self.receipts: Dict[str, TxReceipt] = {}
        self.broadcasts = []
        self.built = []
        self._mutex = threading.Lock()

        # Test knobs
        self.broadcast_errors = []      # Raised one per broadcast call, in order
        self.hold_receipts = False

    @property
    def address(self) -> str:
        return self._address

    def _new_hash(self) -> str:
        return f"{self.chain}tx{next(self._counter):04d}"

    def _signed(self, action: str, payload: tuple, meta: Optional[Dict[str, Any]] = None) -> SignedTx:
        with self._mutex:
            tx_hash = self._new_hash()
            self.payloads[tx_hash] = payload
            self.built.append((action, tx_hash))
        return SignedTx(self.chain, action, tx_hash, raw=f"raw-{tx_hash}", meta=meta or {})

    # -------------------------------------------------------------------------
    # ChainAdapter
    # -------------------------------------------------------------------------

    def validate_address(self, address: str, role: str = "address") -> str:
        if self.chain == CHAIN_A:
            if not isinstance(address, str) or not Web3.is_address(address):
                raise InvalidParameters(f"Invalid EVM {role}: {address!r}")
            return address
        try:
            if not isinstance(address, str):
                raise TypeError(type(address).__name__)
            Keypair.from_public_key(address)
        except (Ed25519PublicKeyInvalidError, TypeError, ValueError):
            raise InvalidParameters(f"Invalid Stellar {role}: {address!r}")
        return address

    def build_lock(self, request: LockRequest) -> SignedTx:
        self.check_lock_request(request, now=int(self.clock()))
        self.validate_address(request.beneficiary, "beneficiary")
        return self._signed("lock", ("lock", request), {"swap_id": request.swap_id})

    def build_claim(self, ref: str, secret: str, hashlock: str) -> SignedTx:
        secret, _ = self.check_preimage(secret, hashlock)
        return self._signed("claim", ("claim", ref, secret))

    def build_refund(self, ref: str) -> SignedTx:
        return self._signed("refund", ("refund", ref))

    def broadcast(self, signed: SignedTx) -> str:
        with self._mutex:
            if self.broadcast_errors:
                raise self.broadcast_errors.pop(0)
            self.broadcasts.append(signed.tx_hash)
            if signed.tx_hash not in self.receipts:
                self.receipts[signed.tx_hash] = self._apply(signed.tx_hash)
            return signed.tx_hash

    def get_receipt(self, tx_hash: str, meta: Optional[Dict[str, Any]] = None) -> Optional[TxReceipt]:
        if self.hold_receipts:
            return None
        return self.receipts.get(tx_hash)

    def query_status(self, ref, hashlock=None, confirmations=None) -> EscrowState:
        escrow = self.escrows.get(ref)
        if escrow is None:
            return EscrowState(EscrowStatus.NOT_FOUND, ref)
        return EscrowState(
            status=escrow["status"],
            ref=ref,
            secret=escrow.get("secret"),
            amount=escrow["amount"],
            timelock=escrow["timelock"],
            tx_hash=escrow.get("settled_by"),
        )

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def _apply(self, tx_hash: str) -> TxReceipt:
        payload = self.payloads[tx_hash]
        now = int(self.clock())
        kind = payload[0]

        if kind == "lock":
            request = payload[1]
            ref = f"{self.chain}escrow{len(self.escrows) + 1}"
            self.escrows[ref] = {
                "status": EscrowStatus.LOCKED,
                "locker": request.locker,
                "beneficiary": request.beneficiary,
                "amount": request.amount,
                "hashlock": request.hashlock,
                "timelock": request.timelock,
            }
            return TxReceipt(tx_hash, True, ref=ref)

        escrow = self.escrows.get(payload[1])
        if escrow is None or escrow["status"] != EscrowStatus.LOCKED:
            return TxReceipt(tx_hash, False, error="escrow not active")

        if kind == "claim":
            secret = payload[2]
            if hashlib.sha256(bytes.fromhex(secret)).hexdigest() != escrow["hashlock"]:
                return TxReceipt(tx_hash, False, error="invalid preimage")
            if now >= escrow["timelock"]:
                return TxReceipt(tx_hash, False, error="timelock expired")
            escrow.update(status=EscrowStatus.CLAIMED, secret=secret, settled_by=tx_hash)
            return TxReceipt(tx_hash, True)

        if now < escrow["timelock"]:
            return TxReceipt(tx_hash, False, error="timelock not reached")
        escrow.update(status=EscrowStatus.REFUNDED, settled_by=tx_hash)
        return TxReceipt(tx_hash, True)

    # -------------------------------------------------------------------------
    # Direct manipulation (counterparty actions)
    # -------------------------------------------------------------------------

    def external_claim(self, ref: str, secret: str):
        escrow = self.escrows[ref]
        escrow.update(status=EscrowStatus.CLAIMED, secret=secret, settled_by=f"{self.chain}external")

    def actions(self):
        return [action for action, _ in self.built]
