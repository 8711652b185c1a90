"""
Ledger Worker Bot - Main Entry Point

Loads account credentials and proxies, binds them 1:1, and starts one
pipeline per account: identity fetch, reward summary, daily claim, then a
persistent worker channel that registers and heartbeats every 30 seconds.
Reward claims are re-checked every 12 hours.

Usage:
    python main.py                          # accounts/proxies from config/
    python main.py --accounts a.txt --proxies p.txt
    python main.py --heartbeat-mode http    # no persistent channel

Exit codes:
    0  normal shutdown (interrupt)
    1  unrecoverable startup misconfiguration (no valid accounts,
       unreadable proxy file, fewer proxies than accounts)
"""
from dotenv import load_dotenv

# Load environment variables from .env file into os.environ
load_dotenv()

import argparse
import asyncio
import logging
import random
import sys
from typing import List, Optional, Sequence, Tuple

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from core.config import BotSettings, ConfigurationError, HeartbeatMode
from core.logging_setup import setup_logging
from core.orchestrator import FarmScheduler
from core.proxy_manager import Proxy, ProxyManager
from core.registry import AccountRegistry
from ledger.accounts import Account, load_accounts
from ledger.assignments import AssignmentStore
from ledger.pipeline import AccountPipeline, RunContext

logger = logging.getLogger(__name__)

console = Console()


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Ledger Worker Bot - multi-account worker node")
    parser.add_argument("--accounts", type=str, help="Credential file (ownerAddress:token per line)")
    parser.add_argument("--proxies", type=str, help="Proxy file (one proxy URL per line)")
    parser.add_argument(
        "--heartbeat-mode",
        choices=[m.value for m in HeartbeatMode],
        help="websocket (persistent channel) or http (one-shot heartbeats)",
    )
    parser.add_argument("--verify-ssl", action="store_true", help="Enforce TLS certificate validation")
    parser.add_argument("--log-level", type=str, help="DEBUG, INFO, WARNING, ...")
    return parser.parse_args(argv)


def apply_overrides(settings: BotSettings, args: argparse.Namespace) -> BotSettings:
    if args.accounts:
        settings.accounts_file = args.accounts
    if args.proxies:
        settings.proxies_file = args.proxies
    if args.heartbeat_mode:
        settings.heartbeat_mode = HeartbeatMode(args.heartbeat_mode)
    if args.verify_ssl:
        settings.verify_ssl = True
    if args.log_level:
        settings.log_level = args.log_level
    return settings


def display_header() -> None:
    console.print(Panel.fit(
        "[bold cyan]Ledger Worker Bot[/bold cyan]\n"
        "multi-account worker node & daily reward claimer",
        box=box.ROUNDED,
    ))


def display_bindings(bindings: Sequence[Tuple[Account, Proxy]]) -> None:
    table = Table(title="Accounts", box=box.SIMPLE)
    table.add_column("#", justify="right")
    table.add_column("Owner address")
    table.add_column("Token")
    table.add_column("Proxy")
    for index, (account, proxy) in enumerate(bindings):
        table.add_row(str(index), account.owner_address, account.masked_token, proxy.masked())
    console.print(table)


def load_inputs(settings: BotSettings) -> List[Tuple[Account, Proxy]]:
    """Load credentials and proxies and bind them by position.

    Raises:
        ConfigurationError: No valid accounts, unreadable proxy file, or
            fewer proxies than accounts.
    """
    accounts = load_accounts(settings.accounts_file)
    proxy_manager = ProxyManager(settings)
    proxy_manager.load_proxies_from_file()
    return proxy_manager.assign_proxies(accounts)


def build_scheduler(settings: BotSettings, bindings: Sequence[Tuple[Account, Proxy]]) -> FarmScheduler:
    context = RunContext(
        settings=settings,
        assignments=AssignmentStore(
            settings.assignments_file,
            settings.gpu_catalog,
            max_storage=settings.max_storage_gb,
        ),
        registry=AccountRegistry(),
        rng=random.Random(),
    )
    pipelines = [
        AccountPipeline(index, account, proxy, context)
        for index, (account, proxy) in enumerate(bindings)
    ]
    return FarmScheduler(settings, pipelines)


async def main(argv: Optional[Sequence[str]] = None) -> int:
    """
    Main execution loop.

    1. Parses command line arguments and loads settings.
    2. Sets up logging and prints the banner.
    3. Loads and binds accounts/proxies (exit 1 on misconfiguration,
       before any network call).
    4. Starts the FarmScheduler and runs until interrupted.
    """
    args = parse_args(argv)
    settings = apply_overrides(BotSettings(), args)
    setup_logging(settings.log_level)
    display_header()

    try:
        bindings = load_inputs(settings)
    except ConfigurationError as e:
        logger.error(f"❌ [{e.error_type.value}] {e}")
        return 1

    if not settings.verify_ssl:
        logger.warning("⚠️ TLS certificate validation is disabled (set VERIFY_SSL=true to enforce it).")

    display_bindings(bindings)
    scheduler = build_scheduler(settings, bindings)

    try:
        await scheduler.run_forever()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("👋 Stopping (interrupted)...")
    finally:
        logger.info("🧹 Cleaning up resources...")
        await scheduler.close()
    return 0


def cli() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(0)


if __name__ == "__main__":
    cli()
