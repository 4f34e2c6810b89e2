"""Operator command line.

    python -m hotwallet generate-key
    python -m hotwallet generate --network ETH
    python -m hotwallet import --network BTC [--path "m/84'/0'/0'/0/0"] < phrase.txt
    python -m hotwallet balance --network SOL --address <address> [--token USDC]
    python -m hotwallet fees --network ETH
    python -m hotwallet endpoints --network ETH

Every command prints JSON.
"""

import argparse
import asyncio
import getpass
import json
import logging
import sys
from dataclasses import asdict
from typing import Optional

from cryptography.fernet import Fernet

from hotwallet.config import get_settings
from hotwallet.errors import HotWalletError
from hotwallet.logging_setup import configure_logging
from hotwallet.networks import Network

logger = logging.getLogger(__name__)


def _print(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _read_phrase() -> str:
    if sys.stdin.isatty():
        return getpass.getpass("Seed phrase: ")
    return sys.stdin.readline().strip()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="hotwallet", description="Multi-chain hot wallet operator tools")
    networks = [n.value for n in Network]
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("generate-key", help="Generate a new master encryption key")

    generate = commands.add_parser("generate", help="Generate a wallet from a fresh mnemonic")
    generate.add_argument("--network", required=True, choices=networks)
    generate.add_argument("--path", help="Custom derivation path")

    importer = commands.add_parser("import", help="Import a wallet from a seed phrase (read from stdin)")
    importer.add_argument("--network", required=True, choices=networks)
    importer.add_argument("--path", help="Custom derivation path")

    balance = commands.add_parser("balance", help="Show an address balance")
    balance.add_argument("--network", required=True, choices=networks)
    balance.add_argument("--address", required=True)
    balance.add_argument("--token", help="Token symbol or contract/mint address")

    fees = commands.add_parser("fees", help="Show fee prices per priority tier")
    fees.add_argument("--network", required=True, choices=networks)

    endpoints = commands.add_parser("endpoints", help="Show endpoint pool health")
    endpoints.add_argument("--network", required=True, choices=networks)
    endpoints.add_argument("--check", action="store_true", help="Re-check unhealthy endpoints first")
    return parser


async def run_command(args: argparse.Namespace) -> dict:
    from hotwallet.facade import HotWallet

    if args.command == "generate-key":
        return {"master_key": Fernet.generate_key().decode()}

    async with HotWallet(get_settings()) as wallet:
        if args.command == "generate":
            if not wallet.settings.persist_wallets:
                logger.warning("PERSIST_WALLETS is off - the generated wallet is not stored")
            generated = await wallet.generate_wallet(args.network, args.path)
            return generated.model_dump(mode="json")

        if args.command == "import":
            info = await wallet.import_wallet(_read_phrase(), args.network, args.path)
            return info.model_dump(mode="json")

        if args.command == "balance":
            if args.token:
                result = await wallet.get_token_balance(args.network, args.address, args.token)
            else:
                result = await wallet.get_balance(args.network, args.address)
            return result.model_dump(mode="json")

        if args.command == "fees":
            prices = await wallet.gas.fee_prices(args.network)
            return {priority.value: asdict(price) for priority, price in prices.items()}

        if args.check:
            return await wallet.check_endpoints(args.network)
        return wallet.endpoint_status(args.network)


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()
    try:
        _print(asyncio.run(run_command(args)))
    except HotWalletError as e:
        print(json.dumps({"error": e.to_dict()}, indent=2), file=sys.stderr)
        return 1
    return 0
