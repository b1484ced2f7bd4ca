"""
Error taxonomy for hashswap.

Chain adapters translate transport and ledger failures into these types.
The orchestrator retries only `retryable` errors; everything else reaches
the caller unchanged.
"""


class SwapError(Exception):
    """Base class for every error raised by hashswap."""
    code = "swap_error"
    retryable = False

    def __init__(self, message: str = "", swap_id: str = None):
        super().__init__(message or self.code)
        self.swap_id = swap_id

    def to_dict(self):
        return {"error": self.code, "detail": str(self), "retryable": self.retryable}


class TransientChainError(SwapError):
    """Network error, timeout or nonce race. Safe to retry."""
    code = "transient_chain_error"
    retryable = True


class ChainUnavailable(TransientChainError):
    """RPC endpoint or Horizon server unreachable."""
    code = "chain_unavailable"


class StaleTransaction(TransientChainError):
    """A stored signed transaction can no longer be included (expired or nonce used)."""
    code = "stale_transaction"


class InsufficientFunds(SwapError):
    code = "insufficient_funds"


class InvalidParameters(SwapError):
    code = "invalid_parameters"


class InvalidPhase(SwapError):
    """Operation not allowed from the swap's current phase."""
    code = "invalid_phase"


class SwapNotFound(SwapError):
    code = "swap_not_found"


class SecretMismatch(SwapError):
    """SHA256(secret) != hashlock. Never retried with another secret."""
    code = "secret_mismatch"


class ExpiredBeforeCompletion(SwapError):
    """Timelock elapsed (or is too close) while a step was still outstanding."""
    code = "expired_before_completion"


class TransactionReverted(SwapError):
    """Chain accepted the transaction but execution failed."""
    code = "transaction_reverted"


class DuplicateEventDelivery(SwapError):
    """Event already processed for this swap. Absorbed by the orchestrator."""
    code = "duplicate_event"
