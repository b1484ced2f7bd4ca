#!/usr/bin/env python3
"""
Example: USDC (Ethereum) -> XLM (Stellar) atomic swap through the HTTP API

Walks one swap through every phase against a running server.py:

1. Maker creates the order (hashlock published, secret kept server-side)
2. Taker fills it
3. Maker locks USDC in the HTLC contract on chain A
4. Taker funds the hashlocked claimable balance on chain B
5. Maker claims on B, revealing the secret
6. Taker claims on A with the revealed secret

The server must hold ETH_PRIVATE_KEY for the maker and STELLAR_SECRET for
the taker.

Usage:
    python examples/eth_to_stellar_swap.py --maker 0x... --maker-receiver G... \\
        --taker G... --taker-receiver 0x... --amount-in 1.5 --amount-out 10
    python examples/eth_to_stellar_swap.py --status swap_0123456789abcdef
"""

import sys
import time
import argparse
import logging
from decimal import Decimal

import httpx

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s'
)
log = logging.getLogger(__name__)

USDC_DECIMALS = 6
STELLAR_DECIMALS = 7


def to_units(amount: str, decimals: int) -> int:
    return int(Decimal(amount) * (Decimal(10) ** decimals))


class SwapAPI:
    """Minimal client for the /api/orders endpoints."""

    def __init__(self, base_url: str, timeout: float = 300.0):
        self.client = httpx.Client(base_url=base_url.rstrip("/"), timeout=timeout)

    def _call(self, method: str, path: str, retries: int = 5, **kwargs):
        for attempt in range(1, retries + 1):
            resp = self.client.request(method, f"/api{path}", **kwargs)
            if resp.status_code == 503 and attempt < retries:
                # Transaction submitted but not confirmed yet: the same call resumes it
                log.warning(f"{path}: pending ({resp.json()['detail']['detail']}), retrying")
                time.sleep(5)
                continue
            if resp.status_code >= 400:
                detail = resp.json().get("detail", {})
                raise SystemExit(f"{method} {path} failed ({resp.status_code}): {detail}")
            return resp.json().get("data", resp.json())

    def get(self, path: str, **kwargs):
        return self._call("GET", path, **kwargs)

    def post(self, path: str, **kwargs):
        return self._call("POST", path, **kwargs)


def show_status(api: SwapAPI, swap_id: str):
    order = api.get(f"/orders/{swap_id}")
    print(f"Swap:      {order['swap_id']}")
    print(f"Phase:     {order['phase']}")
    print(f"Amounts:   {order['making_amount']} {order['maker_asset']} -> "
          f"{order['taking_amount']} {order['taker_asset']}")
    print(f"Hashlock:  {order['hashlock']}")
    print(f"Expires:   {order['expires_in']}s")
    for action, tx_hash in order["tx_hashes"].items():
        print(f"  {action:8s} {tx_hash}")
    if order.get("failure"):
        print(f"Last failure: {order['failure']}")


def run_swap(api: SwapAPI, args):
    health = api.get("/health")
    log.info(f"Server: chain A {health['chains']['a']}, chain B {health['chains']['b']}")

    # =================================================================
    # 1. Create order
    # =================================================================
    order = api.post("/orders", json={
        "maker": args.maker,
        "maker_receiver": args.maker_receiver,
        "maker_asset": "USDC",
        "taker_asset": "XLM",
        "making_amount": to_units(args.amount_in, USDC_DECIMALS),
        "taking_amount": to_units(args.amount_out, STELLAR_DECIMALS),
        "timelock_duration": args.timelock,
    })
    swap_id = order["swap_id"]
    log.info(f"Order {swap_id} created, hashlock {order['hashlock'][:16]}...")

    # =================================================================
    # 2. Fill
    # =================================================================
    api.post(f"/orders/{swap_id}/fill", json={
        "taker": args.taker,
        "taker_receiver": args.taker_receiver,
        "making_amount": order["making_amount"],
        "taking_amount": order["taking_amount"],
    })
    log.info(f"Filled by {args.taker[:8]}...")

    # =================================================================
    # 3-4. Lock both sides
    # =================================================================
    locked = api.post(f"/orders/{swap_id}/escrow")
    log.info(f"Chain A escrow {locked['chain_refs'].get('a')}")
    funded = api.post(f"/orders/{swap_id}/fund")
    log.info(f"Chain B claimable balance {funded['chain_refs'].get('b')}")

    # =================================================================
    # 5-6. Claims
    # =================================================================
    claimed = api.post(f"/orders/{swap_id}/claim-other")
    log.info(f"Secret revealed on chain B: {claimed['secret'][:16]}...")

    done = api.get(f"/orders/{swap_id}")
    if done["phase"] != "claimed_on_a":
        # The monitor usually claims A on its own; do it explicitly otherwise
        done = api.post(f"/orders/{swap_id}/claim-first", json={"secret": claimed["secret"]})

    log.info(f"Swap {swap_id} finished: {done['phase']}")
    show_status(api, swap_id)


def main():
    parser = argparse.ArgumentParser(
        description="Run a USDC -> XLM atomic swap through the hashswap API"
    )
    parser.add_argument("--url", default="http://127.0.0.1:8080", help="Server base URL")
    parser.add_argument("--maker", help="Maker address on Ethereum (locks USDC)")
    parser.add_argument("--maker-receiver", help="Maker account on Stellar (receives XLM)")
    parser.add_argument("--taker", help="Taker account on Stellar (funds XLM)")
    parser.add_argument("--taker-receiver", help="Taker address on Ethereum (receives USDC)")
    parser.add_argument("--amount-in", default="1", help="USDC to lock")
    parser.add_argument("--amount-out", default="10", help="XLM to receive")
    parser.add_argument("--timelock", type=int, default=3600, help="Seconds until refund")
    parser.add_argument("--status", metavar="SWAP_ID", help="Show one swap and exit")
    args = parser.parse_args()

    api = SwapAPI(args.url)

    if args.status:
        show_status(api, args.status)
        return

    missing = [name for name in ("maker", "maker_receiver", "taker", "taker_receiver")
               if not getattr(args, name)]
    if missing:
        parser.print_help()
        sys.exit(f"\nMissing: {', '.join('--' + m.replace('_', '-') for m in missing)}")

    run_swap(api, args)


if __name__ == "__main__":
    main()
