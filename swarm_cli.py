#!/usr/bin/env python3
"""
Swarm Bot CLI - Command Line Interface for Swarm Operations
===========================================================

Provides commands for:
- Creating the encrypted configuration
- Funding volume bot / market maker wallets from the main wallet
- Running the volume bot, market maker buy or market maker sell
- Extending a running market maker buy session
- Collecting every wallet back to the main wallet
- Monitoring gate and pool status

Usage:
    python swarm_cli.py init
    python swarm_cli.py fund market_maker
    python swarm_cli.py run market_maker_buy
    python swarm_cli.py extend 30
    python swarm_cli.py collect
    python swarm_cli.py status
"""

import os
import sys
import asyncio
import argparse
import getpass
from pathlib import Path

import yaml
from rich.table import Table
from rich.panel import Panel
from rich import box
from solders.keypair import Keypair

from config import ConfigManager, DEFAULT_CONFIG
from exchange import load_exchange, DryRunExchange
from utils import (
    console,
    setup_logging,
    format_sol,
    format_address,
    sol_to_lamports,
    validate_public_key,
    AllocationError,
    LaunchBlockedError,
    BotAlreadyRunningError,
    PersistenceError,
)
from swarm.extension import ConfigExtensionSource, MAX_EXTENSION_MINUTES
from swarm.gate import DistributionGate
from swarm.orchestrator import SwarmOrchestrator, BotVariant
from swarm.pool import WalletPoolStore, POOL_NAMES, MARKET_MAKER_POOL

PASSWORD_ENV = "SWARM_BOT_PASSWORD"
DRY_RUN_MAIN_BALANCE_SOL = 10.0


def print_banner():
    """Print the CLI banner."""
    banner = """
    Swarm Volume / Market Maker Bot
    ═══════════════════════════════
    Multi-wallet volume generation system
    """
    console.print(Panel(banner, style="bold cyan", box=box.DOUBLE))


def get_password(prompt: str = "Enter config password: ") -> str:
    """Get password from the environment or prompt for it."""
    password = os.environ.get(PASSWORD_ENV)
    if password:
        return password

    console.print(f"[yellow]{prompt}[/yellow]")
    password = getpass.getpass("> ")

    if len(password) < 8:
        console.print("[red]Password must be at least 8 characters[/red]")
        sys.exit(1)

    return password


def load_runtime(args, need_key: bool = True):
    """Load config, apply CLI overrides and build the orchestrator."""
    manager = ConfigManager(Path(args.config))
    if not manager.exists():
        console.print(f"[red]Config not found at {args.config}. Run 'init' first.[/red]")
        sys.exit(1)

    password = get_password() if need_key else None
    try:
        config = manager.load_config(password)
    except Exception as e:
        console.print(f"[red]Failed to load config: {e}[/red]")
        sys.exit(1)

    if args.dry_run:
        config.dry_run = True
    if args.data_dir:
        config.data_dir = args.data_dir

    setup_logging(config.log_level, config.log_file)

    try:
        config.validate()
    except ValueError as e:
        console.print(f"[red]Invalid configuration: {e}[/red]")
        sys.exit(1)

    if not need_key:
        return manager, config, None

    main_wallet = Keypair.from_base58_string(config.encrypted_private_key)
    try:
        exchange = load_exchange(config)
    except (ValueError, OSError, ImportError, AttributeError, TypeError) as e:
        console.print(f"[red]Cannot build exchange adapter: {e}[/red]")
        sys.exit(1)
    if isinstance(exchange, DryRunExchange):
        main_address = str(main_wallet.pubkey())
        if not exchange.balances.get(main_address):
            exchange.airdrop(main_address, sol_to_lamports(DRY_RUN_MAIN_BALANCE_SOL))
        console.print("[yellow][DRY RUN MODE] No real transactions will be executed[/yellow]")

    orchestrator = SwarmOrchestrator(
        config,
        exchange,
        main_wallet,
        pool_store=WalletPoolStore(config.data_dir, password=password),
        extension_source=ConfigExtensionSource(manager),
    )
    return manager, config, orchestrator


def init_command(args):
    """Handle init command - create the encrypted configuration."""
    print_banner()

    manager = ConfigManager(Path(args.config))
    if manager.exists() and not args.force:
        console.print(f"[red]{args.config} already exists (use --force to overwrite)[/red]")
        return

    if args.generate:
        keypair = Keypair()
        private_key = str(keypair)
        console.print(f"[green]Generated main wallet {keypair.pubkey()}[/green]")
    else:
        console.print("[yellow]Enter main wallet private key (base58):[/yellow]")
        private_key = getpass.getpass("> ")

    password = get_password("Create encryption password: ")
    if not os.environ.get(PASSWORD_ENV):
        console.print("[yellow]Confirm password:[/yellow]")
        if getpass.getpass("> ") != password:
            console.print("[red]Passwords don't match![/red]")
            return

    defaults = yaml.safe_load(DEFAULT_CONFIG)
    if args.token_mint:
        if not validate_public_key(args.token_mint):
            console.print(f"[red]Invalid token mint: {args.token_mint}[/red]")
            return
        defaults["token_mint"] = args.token_mint
    if args.data_dir:
        defaults["data_dir"] = args.data_dir

    try:
        manager.create_config(defaults, private_key, password)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        return

    console.print(f"[green]✓ Configuration written to {args.config}[/green]")


def status_command(args):
    """Handle status command - show gates and pools."""
    print_banner()
    _, config, _ = load_runtime(args, need_key=False)

    gate = DistributionGate(config.data_dir, config.distribute_to_run_delay_min)
    store = WalletPoolStore(config.data_dir)

    table = Table(title="Swarm Status", box=box.ROUNDED)
    table.add_column("Pool", style="cyan")
    table.add_column("Wallets", justify="right")
    table.add_column("Funded at", style="dim")
    table.add_column("Gate", style="green")

    for pool in POOL_NAMES:
        state = gate.state(pool)
        try:
            wallets = str(store.count(pool))
        except PersistenceError as e:
            wallets = f"[red]{e}[/red]"
        table.add_row(
            pool,
            wallets,
            state.last_funding_timestamp.isoformat(timespec="seconds") if state.occurred else "-",
            gate.describe(pool),
        )

    console.print(table)
    console.print(f"[dim]Token: {config.token_mint or '(not set)'}[/dim]")
    console.print(f"[dim]Pending extension: {config.additional_time_min} min[/dim]")


def fund_command(args):
    """Handle fund command - distribute SOL to fresh wallets."""
    print_banner()
    _, config, orchestrator = load_runtime(args)

    async def _fund():
        return await orchestrator.fund(args.pool)

    try:
        records = asyncio.run(_fund())
    except AllocationError as e:
        console.print(f"[red]Funding failed: {e}[/red]")
        sys.exit(1)

    table = Table(title=f"Funded {len(records)} wallets ({args.pool})", box=box.ROUNDED)
    table.add_column("#", style="cyan")
    table.add_column("Address", style="green")
    table.add_column("Amount", justify="right")
    for index, record in enumerate(records, 1):
        table.add_row(str(index), record.public_id, format_sol(record.allocated_amount))
    console.print(table)
    console.print(f"[dim]Trading available in {config.distribute_to_run_delay_min} min[/dim]")


def run_command(args):
    """Handle run command - run one bot variant until it ends or Ctrl+C."""
    print_banner()
    _, config, orchestrator = load_runtime(args)
    variant = BotVariant(args.variant)

    if not config.token_mint:
        console.print("[red]token_mint is not configured[/red]")
        sys.exit(1)

    async def _run():
        try:
            orchestrator.launch(variant)
        except (LaunchBlockedError, BotAlreadyRunningError) as e:
            console.print(f"[red]{e}[/red]")
            return False
        console.print(f"[bold green]Running {variant.value}...[/bold green]")
        console.print("[dim]Press Ctrl+C to stop\n[/dim]")
        try:
            await orchestrator.wait(variant)
        except asyncio.CancelledError:
            await orchestrator.stop(variant)
        finally:
            console.print(orchestrator.metrics.to_table())
        return True

    try:
        ok = asyncio.run(_run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Bot stopped by user[/yellow]")
        ok = True
    if not ok:
        sys.exit(1)


def extend_command(args):
    """Handle extend command - queue extra minutes for market maker buy."""
    manager, config, _ = load_runtime(args, need_key=False)

    if not 0 < args.minutes <= MAX_EXTENSION_MINUTES:
        console.print(f"[red]Minutes must be between 0 and {MAX_EXTENSION_MINUTES}[/red]")
        sys.exit(1)

    gate = DistributionGate(config.data_dir, config.distribute_to_run_delay_min)
    if not gate.can_launch(MARKET_MAKER_POOL):
        console.print(f"[red]Market maker is not running: {gate.describe(MARKET_MAKER_POOL)}[/red]")
        sys.exit(1)

    source = ConfigExtensionSource(manager)
    source.set(source.read() + args.minutes)
    console.print(f"[green]✓ {args.minutes} min queued; the running market maker picks it up next iteration[/green]")


def collect_command(args):
    """Handle collect command - sell and sweep everything back."""
    print_banner()
    _, config, orchestrator = load_runtime(args)
    pools = args.pools or list(POOL_NAMES)
    unknown = [p for p in pools if p not in POOL_NAMES]
    if unknown:
        console.print(f"[red]Unknown pools: {', '.join(unknown)}[/red]")
        sys.exit(1)

    console.print(f"[bold yellow]Collecting pools: {', '.join(pools)}[/bold yellow]")
    summary = asyncio.run(orchestrator.collect(pools))

    table = Table(title="Collection Summary", box=box.ROUNDED)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Wallets processed", str(summary.processed))
    table.add_row("Sold", str(len(summary.sold)))
    table.add_row("Swept", str(len(summary.swept)))
    table.add_row("Emptied", str(len(summary.collectible)))
    table.add_row("Failed", str(len(summary.failed)))
    console.print(table)

    for public_id in summary.failed:
        console.print(f"[red]✗ {format_address(public_id, 6)} still holds funds[/red]")
    console.print("[dim]Distribution gates disarmed; fund again before the next run[/dim]")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Swarm Volume / Market Maker Bot CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Create config with an encrypted main wallet key
  python swarm_cli.py init --token-mint <MINT>

  # Fund market maker wallets, wait for the cooldown, then run
  python swarm_cli.py fund market_maker
  python swarm_cli.py run market_maker_buy

  # Add 30 minutes to the running market maker
  python swarm_cli.py extend 30

  # Sell and sweep everything back to the main wallet
  python swarm_cli.py collect
        """
    )

    # Global options
    parser.add_argument('--config', default='./bot_config.yaml', help='Path to bot config')
    parser.add_argument('--data-dir', help='Override wallet/gate storage directory')
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Simulate operations without executing transactions'
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    init_parser = subparsers.add_parser('init', help='Create encrypted configuration')
    init_parser.add_argument('--token-mint', help='Token mint address')
    init_parser.add_argument('--generate', action='store_true', help='Generate a new main wallet')
    init_parser.add_argument('--force', action='store_true', help='Overwrite existing config')

    subparsers.add_parser('status', help='Show gate and pool status')

    fund_parser = subparsers.add_parser('fund', help='Fund fresh wallets from the main wallet')
    fund_parser.add_argument('pool', choices=list(POOL_NAMES), help='Pool to fund')

    run_parser = subparsers.add_parser('run', help='Run a bot variant')
    run_parser.add_argument('variant', choices=[v.value for v in BotVariant], help='Bot variant')

    extend_parser = subparsers.add_parser('extend', help='Extend the running market maker buy')
    extend_parser.add_argument('minutes', type=float, help='Additional minutes')

    collect_parser = subparsers.add_parser('collect', help='Sell and sweep all wallets')
    collect_parser.add_argument('pools', nargs='*', help=f"Pools: {', '.join(POOL_NAMES)} (default: all)")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    commands = {
        'init': init_command,
        'status': status_command,
        'fund': fund_command,
        'run': run_command,
        'extend': extend_command,
        'collect': collect_command,
    }
    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        return
    handler(args)


if __name__ == '__main__':
    main()
