"""
Swap coordination for hashswap.

Orchestrates atomic swaps across chain A and chain B using HTLCs.
"""

from .ledger import SwapLedger, SecretVault
from .orchestrator import SwapOrchestrator, ChainEvent
from .monitor import EventMonitor

__all__ = ["SwapLedger", "SecretVault", "SwapOrchestrator", "ChainEvent", "EventMonitor"]
