"""
Runtime configuration for hashswap.

Everything comes from environment variables. Private keys are kept on the
config objects only; they are never logged or returned by the API.
"""

import os
from dataclasses import dataclass, field
from typing import Optional, Mapping

from .core import (
    DEFAULT_TIMELOCK_SECONDS,
    MIN_TIMELOCK_SECONDS,
    MAX_TIMELOCK_SECONDS,
    CLAIM_SAFETY_MARGIN_SECONDS,
)
from .errors import InvalidParameters


# Sepolia defaults (same deployment the relayer scripts use)
DEFAULT_ETH_RPC_URL = "https://rpc.sepolia.org"
DEFAULT_ETH_CHAIN_ID = 11155111
SEPOLIA_USDC_ADDRESS = "0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238"

DEFAULT_HORIZON_URL = "https://horizon-testnet.stellar.org"
TESTNET_USDC_ISSUER = "GBBD47IF6LWK7P7MDEVSCWR7DPUWV3NY3DTQEVFL4NAT4AQH3ZLPF6GB"


@dataclass
class EVMConfig:
    """Chain A: EVM HTLC contract."""
    rpc_url: str = DEFAULT_ETH_RPC_URL
    chain_id: int = DEFAULT_ETH_CHAIN_ID
    htlc_address: str = ""
    token_address: str = SEPOLIA_USDC_ADDRESS
    token_symbol: str = "USDC"
    token_decimals: int = 6
    private_key: str = field(default="", repr=False)
    confirmations: int = 1
    gas_price_multiplier: float = 1.1


@dataclass
class StellarConfig:
    """Chain B: Stellar claimable balances."""
    horizon_url: str = DEFAULT_HORIZON_URL
    network: str = "testnet"        # testnet, public
    secret_key: str = field(default="", repr=False)
    usdc_issuer: str = TESTNET_USDC_ISSUER
    base_fee: int = 100             # stroops per operation
    escrow_starting_balance: str = "3"  # XLM, covers reserves and claim fee
    tx_timeout: int = 300           # seconds a signed envelope stays valid


@dataclass
class MonitorConfig:
    """Event monitor configuration."""
    poll_interval_ms: int = 5000
    confirmation_blocks: int = 1
    auto_claim: bool = True         # Claim A as soon as the secret shows up on B
    auto_refund: bool = True        # Refund outstanding locks after timelock
    max_workers: int = 8            # Swaps handled in parallel per poll


@dataclass
class OrchestratorConfig:
    default_timelock: int = DEFAULT_TIMELOCK_SECONDS
    min_timelock: int = MIN_TIMELOCK_SECONDS
    max_timelock: int = MAX_TIMELOCK_SECONDS
    claim_safety_margin: int = CLAIM_SAFETY_MARGIN_SECONDS
    confirm_timeout: int = 180      # seconds to wait for one receipt
    confirm_poll: float = 2.0
    retry_attempts: int = 3
    retry_backoff: float = 1.0
    retry_max_backoff: float = 30.0


@dataclass
class Settings:
    evm: EVMConfig = field(default_factory=EVMConfig)
    stellar: StellarConfig = field(default_factory=StellarConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    db_path: str = "~/.hashswap/swaps.json"
    keystore_path: str = "~/.hashswap/secrets.json"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env

        def _int(name, default):
            value = env.get(name)
            if value in (None, ""):
                return default
            try:
                return int(value)
            except ValueError:
                raise InvalidParameters(f"{name} must be an integer, got {value!r}")

        def _float(name, default):
            value = env.get(name)
            if value in (None, ""):
                return default
            try:
                return float(value)
            except ValueError:
                raise InvalidParameters(f"{name} must be a number, got {value!r}")

        def _bool(name, default):
            value = env.get(name)
            if value in (None, ""):
                return default
            return value.strip().lower() in ("1", "true", "yes", "on")

        confirmations = _int("CONFIRMATION_BLOCKS", 1)

        evm = EVMConfig(
            rpc_url=env.get("ETH_RPC_URL", DEFAULT_ETH_RPC_URL),
            chain_id=_int("ETH_CHAIN_ID", DEFAULT_ETH_CHAIN_ID),
            htlc_address=env.get("HTLC_ADDRESS", ""),
            token_address=env.get("ERC20_ADDRESS", SEPOLIA_USDC_ADDRESS),
            token_symbol=env.get("ERC20_SYMBOL", "USDC"),
            token_decimals=_int("ERC20_DECIMALS", 6),
            private_key=env.get("ETH_PRIVATE_KEY", ""),
            confirmations=confirmations,
        )
        stellar = StellarConfig(
            horizon_url=env.get("STELLAR_HORIZON_URL", DEFAULT_HORIZON_URL),
            network=env.get("STELLAR_NETWORK", "testnet"),
            secret_key=env.get("STELLAR_SECRET", ""),
            usdc_issuer=env.get("STELLAR_USDC_ISSUER", TESTNET_USDC_ISSUER),
        )
        monitor = MonitorConfig(
            poll_interval_ms=_int("POLL_INTERVAL_MS", 5000),
            confirmation_blocks=confirmations,
            auto_claim=_bool("AUTO_CLAIM", True),
            auto_refund=_bool("AUTO_REFUND", True),
            max_workers=_int("MONITOR_WORKERS", 8),
        )
        orchestrator = OrchestratorConfig(
            default_timelock=_int("DEFAULT_TIMELOCK_SECONDS", DEFAULT_TIMELOCK_SECONDS),
            min_timelock=_int("MIN_TIMELOCK_SECONDS", MIN_TIMELOCK_SECONDS),
            claim_safety_margin=_int("CLAIM_SAFETY_MARGIN_SECONDS", CLAIM_SAFETY_MARGIN_SECONDS),
            confirm_timeout=_int("CONFIRM_TIMEOUT_SECONDS", 180),
            retry_attempts=_int("RETRY_ATTEMPTS", 3),
            retry_backoff=_float("RETRY_BACKOFF_SECONDS", 1.0),
        )

        settings = cls(
            evm=evm,
            stellar=stellar,
            monitor=monitor,
            orchestrator=orchestrator,
            db_path=env.get("SWAP_DB_PATH", "~/.hashswap/swaps.json"),
            keystore_path=env.get("SWAP_KEYSTORE_PATH", "~/.hashswap/secrets.json"),
        )
        settings.validate()
        return settings

    def validate(self):
        o = self.orchestrator
        if o.claim_safety_margin < 0:
            raise InvalidParameters("CLAIM_SAFETY_MARGIN_SECONDS must not be negative")
        if o.min_timelock <= 2 * o.claim_safety_margin:
            raise InvalidParameters(
                "MIN_TIMELOCK_SECONDS must exceed twice the claim safety margin"
            )
        if not (o.min_timelock <= o.default_timelock <= o.max_timelock):
            raise InvalidParameters(
                f"DEFAULT_TIMELOCK_SECONDS must be within "
                f"[{o.min_timelock}, {o.max_timelock}]"
            )
        if self.monitor.poll_interval_ms <= 0:
            raise InvalidParameters("POLL_INTERVAL_MS must be positive")
        if self.monitor.confirmation_blocks < 1:
            raise InvalidParameters("CONFIRMATION_BLOCKS must be at least 1")
        if self.monitor.max_workers < 1:
            raise InvalidParameters("MONITOR_WORKERS must be at least 1")
        if not (0 <= self.evm.token_decimals <= 36):
            raise InvalidParameters("ERC20_DECIMALS must be between 0 and 36")
        if o.retry_attempts < 1:
            raise InvalidParameters("RETRY_ATTEMPTS must be at least 1")
        if self.stellar.network not in ("testnet", "public"):
            raise InvalidParameters("STELLAR_NETWORK must be 'testnet' or 'public'")
