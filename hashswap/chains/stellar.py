"""
Chain B adapter: Stellar claimable balances gated by a hashlock.

Claimable-balance predicates only know about time, so the hash condition is
carried by a throwaway escrow account:

    fund  (one tx, signed by locker + ephemeral escrow key)
        create_account(escrow)
        set_options(escrow): master weight 0, signer hashX(hashlock)
        change_trust(escrow, asset)             # issued assets only
        manage_data(escrow, "beneficiary")
        create_claimable_balance(asset, amount, claimants=[
            (escrow, before(timelock)),
            (locker, not before(timelock)),
        ])

    claim (source = escrow, signed only with the preimage)
        claim_claimable_balance -> payment to beneficiary -> cleanup -> merge

    refund (source = locker, after timelock)
        claim_claimable_balance

Only the holder of the preimage can move the escrow before the timelock, and
the claim transaction publishes the preimage as a hashX signature.

The escrow account's starting balance is not recovered after a refund
(nobody can sign for it without revealing the secret).
"""

import base64
import hashlib
import logging
from contextlib import contextmanager
from typing import Optional, Dict, Any, List

from stellar_sdk import (
    Asset,
    Claimant,
    ClaimPredicate,
    Keypair,
    Network,
    Server,
    Signer,
    TransactionBuilder,
)
from stellar_sdk.exceptions import (
    BaseHorizonError,
    BaseRequestError,
    Ed25519PublicKeyInvalidError,
    NotFoundError,
)

from ..core import CHAIN_B, normalize_hex32
from ..config import StellarConfig
from ..errors import (
    SwapError,
    ChainUnavailable,
    TransientChainError,
    StaleTransaction,
    InsufficientFunds,
    InvalidParameters,
    TransactionReverted,
)
from ..tokens import STELLAR_DECIMALS, to_display_amount, to_base_units
from .base import (
    ChainAdapter,
    EscrowState,
    EscrowStatus,
    LockRequest,
    SignedTx,
    TxReceipt,
)

log = logging.getLogger(__name__)

BENEFICIARY_KEY = "beneficiary"

INSUFFICIENT_CODES = ("tx_insufficient_balance", "op_underfunded", "op_low_reserve")
STALE_CODES = ("tx_bad_seq", "tx_too_late")


def _records(response: Dict[str, Any]) -> List[Dict[str, Any]]:
    return response.get("_embedded", {}).get("records", [])


def _parse_asset(value: str) -> Asset:
    """Horizon asset string ("native" or "CODE:ISSUER") -> Asset."""
    if value == "native":
        return Asset.native()
    code, issuer = value.split(":", 1)
    return Asset(code, issuer)


def _abs_before(predicate: Dict[str, Any]) -> Optional[int]:
    if "abs_before_epoch" in predicate:
        return int(predicate["abs_before_epoch"])
    return None


class StellarClaimableAdapter(ChainAdapter):
    """Hashlocked claimable balances on chain B."""

    chain = CHAIN_B
    name = "stellar"

    def __init__(self, config: StellarConfig, server: Optional[Server] = None):
        self.config = config
        self._server = server
        self._keypair = None
        self.assets = {
            "XLM": Asset.native(),
            "USDC": Asset("USDC", config.usdc_issuer),
        }

    @property
    def server(self) -> Server:
        if self._server is None:
            self._server = Server(horizon_url=self.config.horizon_url)
        return self._server

    @property
    def keypair(self) -> Keypair:
        if self._keypair is None:
            if not self.config.secret_key:
                raise InvalidParameters("STELLAR_SECRET is not configured")
            self._keypair = Keypair.from_secret(self.config.secret_key)
        return self._keypair

    @property
    def address(self) -> str:
        return self.keypair.public_key

    @property
    def network_passphrase(self) -> str:
        if self.config.network == "public":
            return Network.PUBLIC_NETWORK_PASSPHRASE
        return Network.TESTNET_NETWORK_PASSPHRASE

    def asset(self, symbol: str) -> Asset:
        asset = self.assets.get((symbol or "").upper())
        if asset is None:
            raise InvalidParameters(f"Unsupported Stellar asset {symbol!r}")
        return asset

    # -------------------------------------------------------------------------
    # Error translation
    # -------------------------------------------------------------------------

    @contextmanager
    def _horizon(self, action: str):
        try:
            yield
        except SwapError:
            raise
        except BaseHorizonError as e:
            raise self._classify(action, e)
        except BaseRequestError as e:
            raise ChainUnavailable(f"{action}: {e}")

    @staticmethod
    def _classify(action: str, error: BaseHorizonError) -> SwapError:
        extras = getattr(error, "extras", None) or {}
        codes = extras.get("result_codes", {}) or {}
        tx_code = codes.get("transaction")
        op_codes = codes.get("operations", []) or []
        detail = f"{action}: {tx_code} {op_codes}".strip()

        if tx_code in INSUFFICIENT_CODES or any(c in INSUFFICIENT_CODES for c in op_codes):
            return InsufficientFunds(detail)
        if tx_code in STALE_CODES:
            return StaleTransaction(detail)
        status = getattr(error, "status", None) or 0
        if status >= 500 or status == 429:
            return TransientChainError(f"{action}: Horizon status {status}")
        return TransactionReverted(detail)

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def _available(self, account: Dict[str, Any], asset: Asset) -> int:
        for entry in account.get("balances", []):
            if asset.is_native() and entry.get("asset_type") == "native":
                return to_base_units(entry["balance"], STELLAR_DECIMALS)
            if not asset.is_native() and entry.get("asset_code") == asset.code \
                    and entry.get("asset_issuer") == asset.issuer:
                return to_base_units(entry["balance"], STELLAR_DECIMALS)
        return 0

    def _balance_record(self, balance_id: str) -> Optional[Dict[str, Any]]:
        with self._horizon("claimable_balance"):
            try:
                return self.server.claimable_balances().claimable_balance(balance_id).call()
            except NotFoundError:
                return None

    @staticmethod
    def _escrow_claimant(claimants: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """The claimant allowed before the timelock is the hashX escrow account."""
        for claimant in claimants:
            if "abs_before" in claimant.get("predicate", {}):
                return claimant
        return None

    def _beneficiary(self, escrow: str) -> str:
        with self._horizon("escrow_account"):
            account = self.server.accounts().account_id(escrow).call()
        encoded = account.get("data", {}).get(BENEFICIARY_KEY)
        if not encoded:
            raise TransactionReverted(f"Escrow {escrow} has no beneficiary entry")
        return base64.b64decode(encoded).decode()

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    def _builder(self, source_account) -> TransactionBuilder:
        return TransactionBuilder(
            source_account=source_account,
            network_passphrase=self.network_passphrase,
            base_fee=self.config.base_fee,
        )

    def validate_address(self, address: str, role: str = "address") -> str:
        try:
            if not isinstance(address, str):
                raise TypeError(type(address).__name__)
            Keypair.from_public_key(address)
        except (Ed25519PublicKeyInvalidError, TypeError, ValueError):
            raise InvalidParameters(f"Invalid Stellar {role}: {address!r}")
        return address

    def build_lock(self, request: LockRequest) -> SignedTx:
        self.check_lock_request(request)
        if request.locker != self.address:
            raise InvalidParameters(f"No signing key for chain B locker {request.locker}")
        self.validate_address(request.beneficiary, "beneficiary")
        asset = self.asset(request.asset)
        amount = to_display_amount(request.amount, STELLAR_DECIMALS)
        hashlock = bytes.fromhex(normalize_hex32(request.hashlock, "hashlock"))

        with self._horizon("lock"):
            try:
                account_record = self.server.accounts().account_id(self.address).call()
            except NotFoundError:
                raise InsufficientFunds(f"Stellar account {self.address} is not funded")
            needed = request.amount if not asset.is_native() else 0
            needed_xlm = to_base_units(self.config.escrow_starting_balance, STELLAR_DECIMALS)
            if asset.is_native():
                needed_xlm += request.amount
            if self._available(account_record, asset) < needed or \
                    self._available(account_record, Asset.native()) < needed_xlm:
                raise InsufficientFunds(
                    f"Stellar balance too low for {amount} {request.asset}"
                )

            escrow = Keypair.random()
            before = ClaimPredicate.predicate_before_absolute_time(request.timelock)
            claimants = [
                Claimant(destination=escrow.public_key, predicate=before),
                Claimant(destination=self.address, predicate=ClaimPredicate.predicate_not(before)),
            ]

            source = self.server.load_account(self.address)
            builder = self._builder(source)
            builder.append_create_account_op(
                destination=escrow.public_key,
                starting_balance=self.config.escrow_starting_balance,
            )
            builder.append_set_options_op(
                master_weight=0,
                low_threshold=1,
                med_threshold=1,
                high_threshold=1,
                signer=Signer.sha256_hash(hashlock, 1),
                source=escrow.public_key,
            )
            if not asset.is_native():
                builder.append_change_trust_op(asset=asset, source=escrow.public_key)
            builder.append_manage_data_op(
                data_name=BENEFICIARY_KEY,
                data_value=request.beneficiary,
                source=escrow.public_key,
            )
            builder.append_create_claimable_balance_op(
                asset=asset, amount=amount, claimants=claimants
            )
            envelope = builder.set_timeout(self.config.tx_timeout).build()
            envelope.sign(self.keypair)
            envelope.sign(escrow)

        log.info(
            f"Funding claimable balance: {amount} {request.asset} for "
            f"{request.beneficiary[:8]}... via escrow {escrow.public_key[:8]}... "
            f"(swap {request.swap_id})"
        )
        return SignedTx(
            chain=self.chain,
            action="lock",
            tx_hash=envelope.hash_hex(),
            raw=envelope.to_xdr(),
            meta={
                "swap_id": request.swap_id,
                "escrow_account": escrow.public_key,
                "timelock": request.timelock,
            },
        )

    def build_claim(self, ref: str, secret: str, hashlock: str) -> SignedTx:
        secret_hex, hashlock_hex = self.check_preimage(secret, hashlock)
        record = self._balance_record(ref)
        if record is None:
            raise TransactionReverted(f"Claimable balance {ref} no longer exists")
        escrow = self._escrow_claimant(record.get("claimants", []))
        if escrow is None:
            raise TransactionReverted(f"Claimable balance {ref} has no hashlocked claimant")
        escrow_id = escrow["destination"]
        beneficiary = self._beneficiary(escrow_id)
        asset = _parse_asset(record["asset"])

        with self._horizon("claim"):
            source = self.server.load_account(escrow_id)
            builder = self._builder(source)
            builder.append_claim_claimable_balance_op(balance_id=ref)
            if not asset.is_native():
                builder.append_payment_op(
                    destination=beneficiary, asset=asset, amount=record["amount"]
                )
                builder.append_change_trust_op(asset=asset, limit="0")
            builder.append_manage_data_op(data_name=BENEFICIARY_KEY, data_value=None)
            builder.append_set_options_op(
                signer=Signer.sha256_hash(bytes.fromhex(hashlock_hex), 0)
            )
            builder.append_account_merge_op(destination=beneficiary)
            envelope = builder.set_timeout(self.config.tx_timeout).build()
            envelope.sign_hashx(bytes.fromhex(secret_hex))

        return SignedTx(
            chain=self.chain,
            action="claim",
            tx_hash=envelope.hash_hex(),
            raw=envelope.to_xdr(),
            meta={"ref": ref, "escrow_account": escrow_id},
        )

    def build_refund(self, ref: str) -> SignedTx:
        with self._horizon("refund"):
            source = self.server.load_account(self.address)
            envelope = (
                self._builder(source)
                .append_claim_claimable_balance_op(balance_id=ref)
                .set_timeout(self.config.tx_timeout)
                .build()
            )
            envelope.sign(self.keypair)
        return SignedTx(
            chain=self.chain,
            action="refund",
            tx_hash=envelope.hash_hex(),
            raw=envelope.to_xdr(),
            meta={"ref": ref},
        )

    def broadcast(self, signed: SignedTx) -> str:
        if not signed.raw:
            raise InvalidParameters(f"No signed envelope for {signed.tx_hash}")
        try:
            with self._horizon(signed.action):
                response = self.server.submit_transaction(
                    signed.raw, skip_memo_required_check=True
                )
                return response["hash"]
        except StaleTransaction:
            # Sequence already consumed: fine if it was consumed by this envelope
            if self._transaction(signed.tx_hash) is not None:
                return signed.tx_hash
            raise

    def _transaction(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        with self._horizon("transaction"):
            try:
                return self.server.transactions().transaction(tx_hash).call()
            except NotFoundError:
                return None

    def get_receipt(self, tx_hash: str, meta: Optional[Dict[str, Any]] = None) -> Optional[TxReceipt]:
        # Ledger close is final; there is no reorg depth to wait for.
        record = self._transaction(tx_hash)
        if record is None:
            return None
        ledger = record.get("ledger")
        if not record.get("successful", False):
            return TxReceipt(tx_hash=tx_hash, success=False, block=ledger, error="Transaction failed")

        ref = None
        escrow = (meta or {}).get("escrow_account")
        if meta and meta.get("swap_id") and escrow:
            ref = self._find_balance_id(escrow)
            if ref is None:
                return TxReceipt(
                    tx_hash=tx_hash, success=False, block=ledger,
                    error=f"No claimable balance found for escrow {escrow}"
                )
        return TxReceipt(tx_hash=tx_hash, success=True, ref=ref, block=ledger)

    def _find_balance_id(self, escrow: str) -> Optional[str]:
        with self._horizon("claimable_balances"):
            response = self.server.claimable_balances().for_claimant(escrow).call()
        for record in _records(response):
            if record.get("sponsor") in (None, self.address):
                return record["id"]
        return None

    def query_status(
        self,
        ref: str,
        hashlock: Optional[str] = None,
        confirmations: Optional[int] = None,
    ) -> EscrowState:
        record = self._balance_record(ref)
        if record is not None:
            escrow = self._escrow_claimant(record.get("claimants", [])) or {}
            return EscrowState(
                EscrowStatus.LOCKED, ref,
                amount=to_base_units(record["amount"], STELLAR_DECIMALS),
                timelock=_abs_before(escrow.get("predicate", {})),
            )

        with self._horizon("operations"):
            try:
                response = self.server.operations().for_claimable_balance(ref) \
                    .order(desc=True).limit(50).call()
            except NotFoundError:
                return EscrowState(EscrowStatus.NOT_FOUND, ref)
        operations = _records(response)

        escrow_id = None
        for op in operations:
            if op.get("type") == "create_claimable_balance":
                escrow = self._escrow_claimant(op.get("claimants", []))
                escrow_id = escrow["destination"] if escrow else None

        for op in operations:
            if op.get("type") != "claim_claimable_balance":
                continue
            tx_hash = op.get("transaction_hash")
            if escrow_id is not None and op.get("source_account") == escrow_id:
                return EscrowState(
                    EscrowStatus.CLAIMED, ref,
                    secret=self._revealed_preimage(tx_hash, hashlock),
                    tx_hash=tx_hash,
                )
            return EscrowState(EscrowStatus.REFUNDED, ref, tx_hash=tx_hash)

        return EscrowState(EscrowStatus.NOT_FOUND, ref)

    def _revealed_preimage(self, tx_hash: str, hashlock: Optional[str]) -> Optional[str]:
        """hashX signatures are the raw preimage; pick the one matching the hashlock."""
        record = self._transaction(tx_hash)
        if record is None:
            return None
        expected = bytes.fromhex(normalize_hex32(hashlock, "hashlock")) if hashlock else None
        for signature in record.get("signatures", []):
            raw = base64.b64decode(signature)
            if len(raw) != 32:
                continue
            if expected is None or hashlib.sha256(raw).digest() == expected:
                return raw.hex()
        return None

    def health(self) -> Dict[str, Any]:
        status = {"chain": self.name, "horizon_url": self.config.horizon_url}
        try:
            with self._horizon("health"):
                root = self.server.root().call()
            status["connected"] = True
            status["ledger"] = root.get("history_latest_ledger")
        except SwapError as e:
            status["connected"] = False
            status["error"] = e.code
        return status
