"""Component wiring: everything is built once at process start and shared."""

import logging
from dataclasses import dataclass

from .config import Settings
from .tokens import TokenRegistry, default_registry
from .chains.base import ChainAdapter
from .chains.evm import EVMHtlcAdapter
from .chains.stellar import StellarClaimableAdapter
from .swap.ledger import SwapLedger, SecretVault
from .swap.orchestrator import SwapOrchestrator
from .swap.monitor import EventMonitor

log = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    tokens: TokenRegistry
    ledger: SwapLedger
    vault: SecretVault
    chain_a: ChainAdapter
    chain_b: ChainAdapter
    orchestrator: SwapOrchestrator
    monitor: EventMonitor


def build_services(
    settings: Settings,
    chain_a: ChainAdapter = None,
    chain_b: ChainAdapter = None,
    **orchestrator_kwargs,
) -> Services:
    """Construct the component graph. Adapters can be injected (tests, dry runs)."""
    tokens = default_registry(settings.evm, settings.stellar)
    ledger = SwapLedger(settings.db_path)
    vault = SecretVault(settings.keystore_path)
    chain_a = chain_a or EVMHtlcAdapter(settings.evm)
    chain_b = chain_b or StellarClaimableAdapter(settings.stellar)
    orchestrator = SwapOrchestrator(
        ledger, vault, chain_a, chain_b, tokens,
        config=settings.orchestrator,
        **orchestrator_kwargs,
    )
    monitor = EventMonitor(orchestrator, settings.monitor)
    log.info(f"Services ready: ledger {ledger.path}, chains {chain_a.name}/{chain_b.name}")
    return Services(
        settings=settings,
        tokens=tokens,
        ledger=ledger,
        vault=vault,
        chain_a=chain_a,
        chain_b=chain_b,
        orchestrator=orchestrator,
        monitor=monitor,
    )
