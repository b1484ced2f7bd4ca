"""
Chain A adapter: ERC20 hashed-timelock contract on an EVM chain.

Contract surface (HashedTimelock, one ERC20 token per deployment):
    newSwap(receiver, amount, hashlock, timelock) -> swapId
    claim(swapId, preimage)
    refund(swapId)
    swaps(swapId) -> (sender, receiver, amount, hashlock, timelock,
                      claimed, refunded, preimage)
"""

import logging
from contextlib import contextmanager
from typing import Optional, Dict, Any

from web3 import Web3
from web3.exceptions import (
    ContractLogicError,
    TimeExhausted,
    TransactionNotFound,
    Web3Exception,
    Web3RPCError,
)
from eth_account import Account

from ..core import CHAIN_A, normalize_hex32
from ..config import EVMConfig
from ..errors import (
    SwapError,
    ChainUnavailable,
    TransientChainError,
    StaleTransaction,
    InsufficientFunds,
    InvalidParameters,
    TransactionReverted,
)
from .base import (
    ChainAdapter,
    EscrowState,
    EscrowStatus,
    LockRequest,
    SignedTx,
    TxReceipt,
)

log = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Gas limits (contract calls are fixed-cost)
GAS_NEW_SWAP = 300000
GAS_CLAIM = 150000
GAS_REFUND = 120000
GAS_APPROVE = 100000

# Contract ABI (minimal - only functions we use)
HTLC_ABI = [
    {
        "name": "newSwap",
        "type": "function",
        "inputs": [
            {"name": "receiver", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "hashlock", "type": "bytes32"},
            {"name": "timelock", "type": "uint256"}
        ],
        "outputs": [{"name": "swapId", "type": "bytes32"}]
    },
    {
        "name": "claim",
        "type": "function",
        "inputs": [
            {"name": "swapId", "type": "bytes32"},
            {"name": "preimage", "type": "bytes32"}
        ],
        "outputs": []
    },
    {
        "name": "refund",
        "type": "function",
        "inputs": [{"name": "swapId", "type": "bytes32"}],
        "outputs": []
    },
    {
        "name": "swaps",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "", "type": "bytes32"}],
        "outputs": [
            {"name": "sender", "type": "address"},
            {"name": "receiver", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "hashlock", "type": "bytes32"},
            {"name": "timelock", "type": "uint256"},
            {"name": "claimed", "type": "bool"},
            {"name": "refunded", "type": "bool"},
            {"name": "preimage", "type": "bytes32"}
        ]
    },
]

ERC20_ABI = [
    {
        "name": "approve",
        "type": "function",
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"}
        ],
        "outputs": [{"name": "", "type": "bool"}]
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"}
        ],
        "outputs": [{"name": "", "type": "uint256"}]
    },
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}]
    },
]

NEW_SWAP_TOPIC = Web3.keccak(
    text="NewSwap(bytes32,address,address,uint256,bytes32,uint256)"
).hex()


def _hex(value) -> str:
    """HexBytes/bytes/str -> 0x-prefixed lowercase hex."""
    if isinstance(value, (bytes, bytearray)):
        value = bytes(value).hex()
    value = str(value).lower()
    return value if value.startswith("0x") else "0x" + value


def _bytes32(value: str, name: str) -> bytes:
    return bytes.fromhex(normalize_hex32(value, name))


class EVMHtlcAdapter(ChainAdapter):
    """HashedTimelock ERC20 escrow on chain A."""

    chain = CHAIN_A
    name = "ethereum"

    def __init__(self, config: EVMConfig, web3: Optional[Web3] = None):
        self.config = config
        self._web3 = web3
        self._account = None

    @property
    def web3(self) -> Web3:
        """Lazy-load web3 instance."""
        if self._web3 is None:
            self._web3 = Web3(Web3.HTTPProvider(self.config.rpc_url))
        return self._web3

    @property
    def account(self):
        if self._account is None:
            key = self.config.private_key
            if not key:
                raise InvalidParameters("ETH_PRIVATE_KEY is not configured")
            if not key.startswith("0x"):
                key = "0x" + key
            self._account = Account.from_key(key)
        return self._account

    @property
    def address(self) -> str:
        return self.account.address

    @property
    def contract(self):
        if not self.config.htlc_address:
            raise InvalidParameters("HTLC_ADDRESS is not configured")
        return self.web3.eth.contract(
            address=Web3.to_checksum_address(self.config.htlc_address),
            abi=HTLC_ABI
        )

    @property
    def token(self):
        return self.web3.eth.contract(
            address=Web3.to_checksum_address(self.config.token_address),
            abi=ERC20_ABI
        )

    # -------------------------------------------------------------------------
    # Error translation
    # -------------------------------------------------------------------------

    @contextmanager
    def _rpc(self, action: str):
        try:
            yield
        except SwapError:
            raise
        except (TimeExhausted, OSError) as e:
            raise ChainUnavailable(f"{action}: {e}")
        except ContractLogicError as e:
            raise TransactionReverted(f"{action} would revert: {e}")
        except Web3RPCError as e:
            raise self._classify(action, e)
        except ValueError as e:
            # Raised locally while encoding arguments, never by the node
            raise InvalidParameters(f"{action}: {e}")
        except Web3Exception as e:
            raise self._classify(action, e)

    @staticmethod
    def _classify(action: str, error: Exception) -> SwapError:
        message = str(error).lower()
        if "insufficient funds" in message:
            return InsufficientFunds(f"{action}: {error}")
        if "nonce too low" in message or "replacement transaction underpriced" in message:
            return StaleTransaction(f"{action}: {error}")
        return TransientChainError(f"{action}: {error}")

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    def _sign(self, fn_call, gas: int, action: str, meta: Dict[str, Any]) -> SignedTx:
        w3 = self.web3
        sender = self.address
        tx = fn_call.build_transaction({
            'from': sender,
            'nonce': w3.eth.get_transaction_count(sender, 'pending'),
            'gas': gas,
            'gasPrice': int(w3.eth.gas_price * self.config.gas_price_multiplier),
            'chainId': self.config.chain_id
        })
        signed = self.account.sign_transaction(tx)
        return SignedTx(
            chain=self.chain,
            action=action,
            tx_hash=_hex(signed.hash),
            raw=_hex(signed.raw_transaction),
            meta=meta,
        )

    def _ensure_allowance(self, amount: int):
        """Approve the HTLC contract for the token if needed (max approval)."""
        w3 = self.web3
        spender = Web3.to_checksum_address(self.config.htlc_address)
        allowance = self.token.functions.allowance(self.address, spender).call()
        if allowance >= amount:
            return

        log.info(f"Approving {self.config.token_symbol} spending for HTLC {spender[:10]}...")
        signed = self._sign(
            self.token.functions.approve(spender, 2**256 - 1),
            GAS_APPROVE, "approve", {}
        )
        tx_hash = w3.eth.send_raw_transaction(bytes.fromhex(signed.raw[2:]))
        receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=120)
        if receipt['status'] != 1:
            raise TransactionReverted(f"Token approval failed: {_hex(tx_hash)}")

    def validate_address(self, address: str, role: str = "address") -> str:
        if not isinstance(address, str) or not Web3.is_address(address):
            raise InvalidParameters(f"Invalid EVM {role}: {address!r}")
        return Web3.to_checksum_address(address)

    def build_lock(self, request: LockRequest) -> SignedTx:
        self.check_lock_request(request)
        beneficiary = self.validate_address(request.beneficiary, "beneficiary")
        with self._rpc("lock"):
            if request.locker.lower() != self.address.lower():
                raise InvalidParameters(
                    f"No signing key for chain A locker {request.locker}"
                )
            w3 = self.web3

            balance = self.token.functions.balanceOf(self.address).call()
            if balance < request.amount:
                raise InsufficientFunds(
                    f"{self.config.token_symbol} balance {balance} < {request.amount}"
                )
            gas_cost = (GAS_NEW_SWAP + GAS_APPROVE) * w3.eth.gas_price
            if w3.eth.get_balance(self.address) < gas_cost:
                raise InsufficientFunds("Not enough ETH for gas")

            self._ensure_allowance(request.amount)

            log.info(
                f"Creating HTLC: {request.amount} {request.asset} to "
                f"{beneficiary[:10]}... (swap {request.swap_id})"
            )
            fn_call = self.contract.functions.newSwap(
                beneficiary,
                request.amount,
                _bytes32(request.hashlock, "hashlock"),
                request.timelock
            )
            return self._sign(fn_call, GAS_NEW_SWAP, "lock", {
                "swap_id": request.swap_id,
                "hashlock": normalize_hex32(request.hashlock, "hashlock"),
                "timelock": request.timelock,
            })

    def build_claim(self, ref: str, secret: str, hashlock: str) -> SignedTx:
        secret_hex, _ = self.check_preimage(secret, hashlock)
        with self._rpc("claim"):
            fn_call = self.contract.functions.claim(
                _bytes32(ref, "swapId"),
                bytes.fromhex(secret_hex)
            )
            return self._sign(fn_call, GAS_CLAIM, "claim", {"ref": ref})

    def build_refund(self, ref: str) -> SignedTx:
        with self._rpc("refund"):
            fn_call = self.contract.functions.refund(_bytes32(ref, "swapId"))
            return self._sign(fn_call, GAS_REFUND, "refund", {"ref": ref})

    def broadcast(self, signed: SignedTx) -> str:
        if not signed.raw:
            raise InvalidParameters(f"No signed payload for {signed.tx_hash}")
        try:
            with self._rpc(signed.action):
                tx_hash = self.web3.eth.send_raw_transaction(bytes.fromhex(signed.raw[2:]))
                return _hex(tx_hash)
        except StaleTransaction:
            # Nonce already used: fine if it was used by this very transaction
            if self._lookup_receipt(signed.tx_hash) is not None:
                return signed.tx_hash
            raise
        except TransientChainError as e:
            if "already known" in str(e).lower():
                return signed.tx_hash
            raise

    def _lookup_receipt(self, tx_hash: str):
        with self._rpc("receipt"):
            try:
                return self.web3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                return None

    def get_receipt(self, tx_hash: str, meta: Optional[Dict[str, Any]] = None) -> Optional[TxReceipt]:
        receipt = self._lookup_receipt(tx_hash)
        if receipt is None:
            return None

        with self._rpc("receipt"):
            depth = self.web3.eth.block_number - receipt['blockNumber'] + 1
        if depth < self.config.confirmations:
            return None

        if receipt['status'] != 1:
            return TxReceipt(
                tx_hash=tx_hash, success=False,
                block=receipt['blockNumber'], error="Transaction reverted"
            )

        ref = None
        if meta and "swap_id" in meta:
            ref = self._extract_swap_id(receipt)
            if ref is None:
                return TxReceipt(
                    tx_hash=tx_hash, success=False, block=receipt['blockNumber'],
                    error="Could not extract swapId from NewSwap event"
                )
        return TxReceipt(tx_hash=tx_hash, success=True, ref=ref, block=receipt['blockNumber'])

    def _extract_swap_id(self, receipt) -> Optional[str]:
        contract_lower = self.config.htlc_address.lower()
        for log_entry in receipt['logs']:
            log_addr = log_entry['address'].lower()
            topics = log_entry['topics']
            if log_addr == contract_lower and len(topics) >= 2 \
                    and _hex(topics[0]) == _hex(NEW_SWAP_TOPIC):
                return _hex(topics[1])
        return None

    def query_status(
        self,
        ref: str,
        hashlock: Optional[str] = None,
        confirmations: Optional[int] = None,
    ) -> EscrowState:
        depth = confirmations or self.config.confirmations
        with self._rpc("query"):
            block = max(self.web3.eth.block_number - depth + 1, 0)
            (sender, _receiver, amount, _hashlock, timelock,
             claimed, refunded, preimage) = self.contract.functions.swaps(
                _bytes32(ref, "swapId")
            ).call(block_identifier=block)

        if sender == ZERO_ADDRESS:
            return EscrowState(EscrowStatus.NOT_FOUND, ref)
        if claimed:
            return EscrowState(
                EscrowStatus.CLAIMED, ref,
                secret=bytes(preimage).hex(), amount=amount, timelock=timelock
            )
        if refunded:
            return EscrowState(EscrowStatus.REFUNDED, ref, amount=amount, timelock=timelock)
        return EscrowState(EscrowStatus.LOCKED, ref, amount=amount, timelock=timelock)

    def health(self) -> Dict[str, Any]:
        status = {"chain": self.name, "rpc_url": self.config.rpc_url}
        try:
            with self._rpc("health"):
                status["connected"] = self.web3.is_connected()
                status["block"] = self.web3.eth.block_number
        except SwapError as e:
            status["connected"] = False
            status["error"] = e.code
        return status
