"""
hashswap - Cross-chain HTLC atomic swaps between an EVM chain and Stellar.

The maker escrows an ERC20 token in an HTLC contract on chain A; the taker
funds a hashlocked claimable balance on chain B. Claiming B reveals the
secret, which then unlocks A.

Usage:
    from hashswap import Settings, build_services

    services = build_services(Settings.from_env())
    orch = services.orchestrator

    order = orch.create_order(maker, maker_stellar, "USDC", "XLM", 100, 100)
    orch.fill_order(order["swap_id"], taker_stellar, taker_eth)
    orch.lock_a(order["swap_id"])
    orch.fund_b(order["swap_id"])
    orch.claim_b(order["swap_id"])      # reveals the secret on Stellar
    orch.claim_a(order["swap_id"])      # completes on chain A
"""

from .core import (
    SwapPhase,
    Swap,
    generate_secret,
    verify_preimage,
    DEFAULT_TIMELOCK_SECONDS,
)
from .errors import (
    SwapError,
    TransientChainError,
    ChainUnavailable,
    InsufficientFunds,
    InvalidParameters,
    InvalidPhase,
    SwapNotFound,
    SecretMismatch,
    ExpiredBeforeCompletion,
    TransactionReverted,
    DuplicateEventDelivery,
)
from .config import Settings, EVMConfig, StellarConfig, MonitorConfig, OrchestratorConfig
from .tokens import TokenRegistry, default_registry
from .services import Services, build_services

__version__ = "0.1.0"
__all__ = [
    # Core types
    "SwapPhase",
    "Swap",
    "generate_secret",
    "verify_preimage",
    "DEFAULT_TIMELOCK_SECONDS",
    # Errors
    "SwapError",
    "TransientChainError",
    "ChainUnavailable",
    "InsufficientFunds",
    "InvalidParameters",
    "InvalidPhase",
    "SwapNotFound",
    "SecretMismatch",
    "ExpiredBeforeCompletion",
    "TransactionReverted",
    "DuplicateEventDelivery",
    # Config
    "Settings",
    "EVMConfig",
    "StellarConfig",
    "MonitorConfig",
    "OrchestratorConfig",
    # Tokens
    "TokenRegistry",
    "default_registry",
    # Wiring
    "Services",
    "build_services",
]
