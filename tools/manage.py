#!/usr/bin/env python3
"""
Supply-Chain Ledger Management CLI

Commands:
- serve: Run the ledger HTTP server
- seed-demo: Record the demo products and events on a running server
- verify-chain: Fetch the chain from a running server and check its links
- escrow-status: Connect to the escrow contract and print its state
- escrow-invoke: Perform one escrow action and wait for confirmation

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage serve --port 5000
    python -m tools.manage seed-demo --url http://localhost:5000
    python -m tools.manage verify-chain --scheme sha256
    python -m tools.manage escrow-status
    python -m tools.manage escrow-invoke lockFunds --value 1000000000000000000
    python -m tools.manage escrow-invoke resolveDispute --release-to-seller
"""

import argparse
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

DEFAULT_SERVER_URL = "http://localhost:5000"


def cmd_serve(args):
    """Run the ledger server with uvicorn."""
    import uvicorn
    from supplychain.config import LedgerConfig

    config = LedgerConfig.from_env()
    host = args.host or config.host
    port = args.port or config.port

    print(f"Starting ledger server on {host}:{port}")
    print(f"  Link scheme: {config.link_scheme.value}")
    print(f"  Auto-seed: {'on' if config.auto_seed else 'off'}")
    uvicorn.run("supplychain.main:app", host=host, port=port, reload=args.reload)


def cmd_seed_demo(args):
    """Record the demo products and events through the HTTP API."""
    import httpx
    from supplychain.core.ledger import DEMO_EVENTS, DEMO_PRODUCTS

    base_url = args.url.rstrip("/")
    added = 0
    with httpx.Client(base_url=base_url, timeout=10.0) as client:
        for product_id, description, owner in DEMO_PRODUCTS:
            response = client.post("/addProduct", json={
                "productId": product_id,
                "description": description,
                "owner": owner,
            })
            if response.status_code == 201:
                block = response.json()["block"]
                print(f"[OK] Block {block['index']}: {product_id}")
                added += 1
            else:
                print(f"[SKIP] {product_id}: {response.json().get('message')}")

        for product_id, event_type, key, value in DEMO_EVENTS:
            response = client.post("/addEvent", json={
                "productId": product_id,
                "eventType": event_type.value,
                "key": key,
                "value": value,
            })
            if response.status_code != 201:
                print(f"[FAIL] {event_type.value} for {product_id}: {response.json().get('message')}")
                return 1
            print(f"[OK] Event {event_type.value} for {product_id}")

        chain = client.get("/chain").json()

    print(f"\nSeeded {added} products. Chain length: {len(chain)}")
    return 0


def cmd_verify_chain(args):
    """Fetch the chain from a running server and check every link."""
    import httpx
    from supplychain.config import LinkScheme, get_link_scheme
    from supplychain.core import find_broken_link
    from supplychain.schemas import ProductBlock

    scheme = LinkScheme(args.scheme) if args.scheme else get_link_scheme()

    print(f"Fetching chain from {args.url}...")
    response = httpx.get(f"{args.url.rstrip('/')}/chain", timeout=10.0)
    response.raise_for_status()
    blocks = [ProductBlock.model_validate(item) for item in response.json()]
    print(f"Chain loaded: {len(blocks)} blocks (scheme: {scheme.value})")

    broken = find_broken_link(blocks, scheme)
    if broken is None:
        print("[OK] Chain links verified OK")
        if blocks:
            print(f"  Chain head: {blocks[-1].link_value[:48]}...")
        return 0
    print(f"[FAIL] Chain link verification FAILED at block {broken}")
    return 1


def _connect_escrow(args):
    from supplychain.config import EscrowConfig
    from supplychain.core import Web3Wallet, connect

    config = EscrowConfig.from_env()
    if args.contract:
        config.contract_address = args.contract
    if args.rpc_url:
        config.rpc_url = args.rpc_url

    wallet = Web3Wallet.from_config(config)
    return connect(wallet, config.contract_address, config.chain_id, config)


def _print_snapshot(session):
    snapshot = session.snapshot
    if snapshot is None:
        print("  State: unknown (read failed)")
        return
    state = snapshot.state.value if snapshot.state else f"unrecognised code {snapshot.state_code}"
    print(f"  State: {state}")
    print(f"  Buyer: {snapshot.buyer}")
    print(f"  Seller: {snapshot.seller}")
    print(f"  Arbitrator: {snapshot.arbitrator}")
    print(f"  Amount (wei): {snapshot.amount}")
    print(f"  Delivery deadline: {snapshot.delivery_deadline}")
    print(f"  Buyer confirmed delivery: {snapshot.buyer_confirmed_delivery}")
    print(f"  Seller requested payout: {snapshot.seller_requested_payout}")


def cmd_escrow_status(args):
    """Connect to the escrow contract and print the remote snapshot."""
    from supplychain.core import EscrowError

    try:
        session = _connect_escrow(args)
    except EscrowError as e:
        print(f"[FAIL] {e}")
        return 1

    print("=== Escrow Status ===\n")
    print(f"  Contract: {session.contract_address}")
    print(f"  Network: {session.network_id}")
    print(f"  Account: {session.connected_account}")
    print(f"  Roles: {', '.join(sorted(r.value for r in session.roles or ())) or 'none'}")
    _print_snapshot(session)
    actions = session.available_actions()
    print(f"  Available actions: {', '.join(a.value for a in actions) or 'none'}")
    session.close()
    return 0


def cmd_escrow_invoke(args):
    """Perform one escrow action."""
    from supplychain.core import ConfirmationTimeoutError, EscrowError, invoke

    call_args = ()
    if args.action == "resolveDispute":
        if args.release_to_seller is None:
            print("Error: resolveDispute needs --release-to-seller or --refund")
            return 1
        call_args = (args.release_to_seller,)

    try:
        session = _connect_escrow(args)
    except EscrowError as e:
        print(f"[FAIL] {e}")
        return 1

    try:
        receipt = invoke(session, args.action, *call_args, value=args.value)
    except ConfirmationTimeoutError as e:
        print(f"[PENDING] {e}")
        return 2
    except EscrowError as e:
        print(f"[FAIL] {e}")
        return 1
    finally:
        session.close()

    print(f"[OK] {args.action} confirmed")
    print(f"  Transaction: {receipt.tx_hash}")
    print(f"  Block: {receipt.block_number}")
    _print_snapshot(session)
    return 0


def _add_escrow_options(parser):
    parser.add_argument("--contract", help="Escrow contract address (default: ESCROW_CONTRACT_ADDRESS)")
    parser.add_argument("--rpc-url", help="JSON-RPC endpoint (default: ESCROW_RPC_URL)")


def main():
    parser = argparse.ArgumentParser(
        description="Supply-Chain Ledger Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # serve
    p_serve = subparsers.add_parser("serve", help="Run the ledger HTTP server")
    p_serve.add_argument("--host", help="Bind address (default: HOST or 0.0.0.0)")
    p_serve.add_argument("--port", type=int, help="Port (default: PORT or 5000)")
    p_serve.add_argument("--reload", action="store_true", help="Reload on code changes")

    # seed-demo
    p_seed = subparsers.add_parser("seed-demo", help="Record demo products on a running server")
    p_seed.add_argument("--url", default=DEFAULT_SERVER_URL, help="Ledger server URL")

    # verify-chain
    p_verify = subparsers.add_parser("verify-chain", help="Verify chain links on a running server")
    p_verify.add_argument("--url", default=DEFAULT_SERVER_URL, help="Ledger server URL")
    p_verify.add_argument(
        "--scheme",
        choices=["concat", "sha256"],
        help="Link scheme the server uses (default: SUPPLYCHAIN_LINK_SCHEME)",
    )

    # escrow-status
    p_status = subparsers.add_parser("escrow-status", help="Print the escrow contract state")
    _add_escrow_options(p_status)

    # escrow-invoke
    p_invoke = subparsers.add_parser("escrow-invoke", help="Perform one escrow action")
    p_invoke.add_argument(
        "action",
        choices=["lockFunds", "confirmDelivery", "requestPayout", "refundBuyer", "resolveDispute"],
    )
    outcome = p_invoke.add_mutually_exclusive_group()
    outcome.add_argument(
        "--release-to-seller", dest="release_to_seller", action="store_const", const=True,
        help="resolveDispute: pay the seller",
    )
    outcome.add_argument(
        "--refund", dest="release_to_seller", action="store_const", const=False,
        help="resolveDispute: refund the buyer",
    )
    p_invoke.add_argument("--value", type=int, help="Wei to send (lockFunds only)")
    _add_escrow_options(p_invoke)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "serve": cmd_serve,
        "seed-demo": cmd_seed_demo,
        "verify-chain": cmd_verify_chain,
        "escrow-status": cmd_escrow_status,
        "escrow-invoke": cmd_escrow_invoke,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
