"""
Token allowlist.

Only the assets listed here can be swapped. Amounts are always integers in
the token's smallest unit (wei-style on chain A, stroops on chain B).
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional, Any

from .core import CHAIN_A, CHAIN_B
from .errors import InvalidParameters

CHAIN_NAMES = {
    CHAIN_A: "ethereum",
    CHAIN_B: "stellar",
}

STELLAR_DECIMALS = 7    # Stellar amounts always have 7 decimal places


@dataclass(frozen=True)
class Token:
    symbol: str
    chain: str              # CHAIN_A or CHAIN_B
    decimals: int
    name: str = ""
    address: Optional[str] = None   # ERC20 contract (chain A)
    issuer: Optional[str] = None    # Asset issuer (chain B), None = native
    escrowable: bool = True         # Can be locked by this deployment

    @property
    def native(self) -> bool:
        return self.address is None and self.issuer is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "chain": CHAIN_NAMES[self.chain],
            "decimals": self.decimals,
            "name": self.name,
            "address": self.address,
            "issuer": self.issuer,
            "native": self.native,
            "escrowable": self.escrowable,
        }


class TokenRegistry:
    """Fixed catalog of supported assets, keyed by (chain, symbol)."""

    def __init__(self, tokens: List[Token]):
        self._tokens: Dict[tuple, Token] = {}
        for token in tokens:
            self._tokens[(token.chain, token.symbol.upper())] = token

    def get(self, symbol: str, chain: str) -> Token:
        token = self._tokens.get((chain, (symbol or "").upper()))
        if token is None:
            raise InvalidParameters(
                f"Unsupported asset {symbol!r} on {CHAIN_NAMES.get(chain, chain)}"
            )
        return token

    def require_escrowable(self, symbol: str, chain: str) -> Token:
        token = self.get(symbol, chain)
        if not token.escrowable:
            raise InvalidParameters(
                f"{token.symbol} on {CHAIN_NAMES[chain]} cannot be escrowed by this HTLC"
            )
        return token

    def is_supported(self, symbol: str, chain: str) -> bool:
        return (chain, (symbol or "").upper()) in self._tokens

    def for_chain(self, chain: str) -> List[Token]:
        return [t for (c, _), t in sorted(self._tokens.items()) if c == chain]

    def to_dict(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            CHAIN_NAMES[chain]: [t.to_dict() for t in self.for_chain(chain)]
            for chain in (CHAIN_A, CHAIN_B)
        }


def default_registry(evm_config, stellar_config) -> TokenRegistry:
    """Catalog for the configured HTLC token and the Stellar testnet/pubnet assets."""
    tokens = [
        Token("ETH", CHAIN_A, 18, "Ether", escrowable=False),
        Token(
            evm_config.token_symbol.upper(), CHAIN_A, evm_config.token_decimals, "USD Coin",
            address=evm_config.token_address,
        ),
        Token("XLM", CHAIN_B, STELLAR_DECIMALS, "Stellar Lumens"),
        Token(
            "USDC", CHAIN_B, STELLAR_DECIMALS, "USD Coin",
            issuer=stellar_config.usdc_issuer,
        ),
    ]
    return TokenRegistry(tokens)


def to_display_amount(amount: int, decimals: int) -> str:
    """Base units -> fixed-point string, e.g. 1000000 (6 dp) -> '1.000000'."""
    if amount < 0:
        raise InvalidParameters("amount must not be negative")
    value = Decimal(amount) / (Decimal(10) ** decimals)
    return f"{value:.{decimals}f}"


def to_base_units(amount: str, decimals: int) -> int:
    """Fixed-point string -> base units. Rejects extra precision."""
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        raise InvalidParameters(f"Invalid amount {amount!r}")
    scaled = value * (Decimal(10) ** decimals)
    if scaled != scaled.to_integral_value() or scaled < 0:
        raise InvalidParameters(f"Amount {amount!r} does not fit {decimals} decimals")
    return int(scaled)
