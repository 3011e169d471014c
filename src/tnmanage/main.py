#!/usr/bin/env python3
"""
TrueNAS Manage - A command line tool to manage datasets and NFS shares on TrueNAS systems
"""

import argparse
import logging
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, TextIO

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from tnmanage import APP_NAME, __version__
from tnmanage.core import config_manager
from tnmanage.core.config_manager import ConfigError
from tnmanage.core.truenas_api import DatasetProperty, NFSShare, TrueNASClient, TrueNASError
from tnmanage.utils import ConfirmationError, confirm, format_bytes, setup_logging

logger = logging.getLogger('tnmanage.main')

NFS_MAPROOT_USER = "root"
NFS_MAPROOT_GROUP = "wheel"
# Plain decimal integer with optional sign, no spaces or underscores
INTEGER_RE = re.compile(r"[+-]?[0-9]+")


class CommandError(Exception):
    """Exception raised when a command fails; the message is shown to the user."""
    pass


@dataclass
class CommandContext:
    """Everything a command needs besides its parsed arguments."""
    console: Console
    config_path: Path
    environ: Dict[str, str] = field(default_factory=dict)
    stdin: Optional[TextIO] = None


def parse_host_list(value: str) -> List[str]:
    """argparse type for --nfs: comma-separated hosts."""
    return [host.strip() for host in value.split(',') if host.strip()]


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description='Manage datasets and NFS shares on TrueNAS'
    )
    parser.add_argument(
        '--config',
        type=Path,
        help='Path to configuration file (default: ~/.tnmanage)'
    )
    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug logging'
    )
    parser.add_argument(
        '--log-file',
        type=Path,
        metavar='PATH',
        help='Also write log messages to this file'
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    # Options shared by every command that talks to the server
    connection = argparse.ArgumentParser(add_help=False)
    connection.add_argument(
        '--server',
        default='',
        help='TrueNAS server URL (e.g., https://192.168.1.100)'
    )
    connection.add_argument(
        '--token',
        default='',
        help='TrueNAS API token'
    )

    force = argparse.ArgumentParser(add_help=False)
    force.add_argument(
        '-f', '--force',
        action='store_true',
        help='Skip confirmation prompt'
    )

    subparsers = parser.add_subparsers(dest='command', metavar='<command>')
    subparsers.required = True

    add_parser = subparsers.add_parser(
        'add',
        parents=[connection],
        help='Add a new dataset',
        description='Add a new dataset to TrueNAS with optional NFS share'
    )
    add_parser.add_argument('pool', metavar='poolname')
    add_parser.add_argument('dataset', metavar='datasetname')
    add_parser.add_argument('max_size', metavar='max-size-gb')
    add_parser.add_argument(
        '--nfs',
        action='append',
        type=parse_host_list,
        default=[],
        metavar='HOSTS',
        help='Authorized hosts for NFS share, comma separated (creates NFS share if specified)'
    )
    add_parser.set_defaults(func=add_dataset)

    list_parser = subparsers.add_parser(
        'list',
        parents=[connection],
        help='List all datasets in a pool',
        description='List all datasets in a specified pool on TrueNAS'
    )
    list_parser.add_argument('pool', metavar='poolname')
    list_parser.set_defaults(func=list_datasets)

    remove_parser = subparsers.add_parser(
        'remove',
        parents=[connection, force],
        help='Remove a dataset',
        description='Remove a dataset from TrueNAS by name'
    )
    remove_parser.add_argument('dataset', metavar='datasetname')
    remove_parser.set_defaults(func=remove_dataset)

    clear_parser = subparsers.add_parser(
        'clear',
        parents=[connection, force],
        help='Wipe/clear all data from a dataset',
        description='Delete all contents of a dataset. This operation cannot be undone!'
    )
    clear_parser.add_argument('dataset', metavar='datasetname')
    clear_parser.set_defaults(func=clear_dataset)

    config_parser = subparsers.add_parser(
        'config',
        help='Configure TrueNAS connection settings',
        description='Configure TrueNAS server URL and API token'
    )
    config_subparsers = config_parser.add_subparsers(dest='config_command', metavar='<setting>')
    config_subparsers.required = True

    server_parser = config_subparsers.add_parser(
        'server',
        help='Set the TrueNAS server URL',
        description='Set the TrueNAS server URL and save it to configuration'
    )
    server_parser.add_argument('url', metavar='serverurl')
    server_parser.set_defaults(func=config_server)

    token_parser = config_subparsers.add_parser(
        'token',
        help='Set the TrueNAS API token',
        description='Set the TrueNAS API token and save it to configuration'
    )
    token_parser.add_argument('token', metavar='token')
    token_parser.set_defaults(func=config_token)

    return parser.parse_args(argv)


# --- Helpers ---

def get_client(args: argparse.Namespace, ctx: CommandContext) -> TrueNASClient:
    """Build a client from --server/--token, or from the environment if either is missing."""
    try:
        if args.server and args.token:
            logger.debug("Using server and token from command line")
            return TrueNASClient.from_params(args.server, args.token)
        return TrueNASClient.from_environment(ctx.environ)
    except TrueNASError as e:
        raise CommandError(f"failed to create TrueNAS client: {e}") from e


def confirm_destructive(warning: str, ctx: CommandContext) -> bool:
    ctx.console.print(f"[bold red]WARNING:[/bold red] {warning}")
    try:
        return confirm(ctx.console, "Are you sure? (y/n): ", stream=ctx.stdin)
    except ConfirmationError as e:
        raise CommandError(str(e)) from e


def format_size(prop: Optional[DatasetProperty]) -> str:
    """Size column value: the parsed byte count, or '-' when missing."""
    if prop is None:
        return "-"
    parsed = prop.parsed_number()
    return format_bytes(parsed) if parsed is not None else "-"


# --- Commands ---

def add_dataset(args: argparse.Namespace, ctx: CommandContext) -> int:
    """Create a dataset and, if hosts were given, an NFS share for it."""
    if not INTEGER_RE.fullmatch(args.max_size):
        raise CommandError(f"invalid max size: {args.max_size!r} is not an integer")
    max_size_gb = int(args.max_size)

    nfs_hosts = [host for hosts in args.nfs for host in hosts]

    with get_client(args, ctx) as client:
        try:
            dataset_id = client.create_dataset(args.pool, args.dataset, max_size_gb)
        except TrueNASError as e:
            raise CommandError(f"failed to create dataset: {e}") from e

        ctx.console.print(f"Successfully created dataset '{escape(dataset_id)}'")

        if nfs_hosts:
            share = NFSShare(
                path=f"/mnt/{dataset_id}",
                comment=args.dataset,
                hosts=nfs_hosts,
                maproot_user=NFS_MAPROOT_USER,
                maproot_group=NFS_MAPROOT_GROUP,
                ro=False,
            )
            try:
                share_id = client.create_nfs_share(share)
            except TrueNASError as e:
                raise CommandError(f"failed to create NFS share: {e}") from e

            ctx.console.print(
                f"Successfully created NFS share (ID: {share_id}) for hosts: {escape(', '.join(nfs_hosts))}"
            )

    return 0


def list_datasets(args: argparse.Namespace, ctx: CommandContext) -> int:
    """Print the datasets of a pool as a table."""
    with get_client(args, ctx) as client:
        try:
            datasets = client.list_datasets(args.pool)
        except TrueNASError as e:
            raise CommandError(f"failed to list datasets: {e}") from e

    if not datasets:
        ctx.console.print(f"No datasets found in pool '{escape(args.pool)}'")
        return 0

    table = Table(box=box.SIMPLE_HEAD, show_edge=False, pad_edge=False)
    for column in ("NAME", "TYPE", "USED", "AVAILABLE", "MOUNTPOINT", "COMPRESSION"):
        table.add_column(column, no_wrap=True)

    for ds in datasets:
        compression = ds.compression.value_string() if ds.compression is not None else None

        table.add_row(
            escape(ds.id),
            escape(ds.type),
            format_size(ds.used),
            format_size(ds.available),
            escape(ds.mountpoint or "-"),
            escape(compression or "-"),
        )

    ctx.console.print(table)
    return 0


def remove_dataset(args: argparse.Namespace, ctx: CommandContext) -> int:
    """Delete a dataset after confirmation."""
    if not args.force:
        warning = f"This will permanently DELETE dataset '{escape(args.dataset)}' and all its data"
        if not confirm_destructive(warning, ctx):
            ctx.console.print("Operation cancelled")
            return 0

    with get_client(args, ctx) as client:
        try:
            client.delete_dataset(args.dataset)
        except TrueNASError as e:
            raise CommandError(f"failed to delete dataset: {e}") from e

    ctx.console.print(f"Successfully removed dataset '{escape(args.dataset)}'")
    return 0


def clear_dataset(args: argparse.Namespace, ctx: CommandContext) -> int:
    """Wipe a dataset (delete and recreate) after confirmation."""
    if not args.force:
        warning = f"This will DELETE ALL DATA in dataset '{escape(args.dataset)}'"
        if not confirm_destructive(warning, ctx):
            ctx.console.print("Operation cancelled")
            return 0

    with get_client(args, ctx) as client:
        try:
            client.clear_dataset(args.dataset)
        except TrueNASError as e:
            raise CommandError(f"failed to clear dataset: {e}") from e

    ctx.console.print(f"Successfully cleared dataset '{escape(args.dataset)}'")
    return 0


def config_server(args: argparse.Namespace, ctx: CommandContext) -> int:
    try:
        path = config_manager.save_config(config_manager.URL_KEY, args.url, ctx.config_path)
    except ConfigError as e:
        raise CommandError(f"failed to save server URL: {e}") from e

    ctx.console.print(f"Server URL set to: {escape(args.url)}")
    ctx.console.print(f"Configuration saved to {escape(str(path))}")
    return 0


def config_token(args: argparse.Namespace, ctx: CommandContext) -> int:
    try:
        path = config_manager.save_config(config_manager.API_KEY_KEY, args.token, ctx.config_path)
    except ConfigError as e:
        raise CommandError(f"failed to save API token: {e}") from e

    ctx.console.print("API token saved successfully")
    ctx.console.print(f"Configuration saved to {escape(str(path))}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the application."""
    args = parse_arguments(argv)

    setup_logging(args.debug, args.log_file)
    logger.debug(f"Starting {APP_NAME} v{__version__}")

    config_path = args.config or config_manager.get_config_path()
    ctx = CommandContext(
        console=Console(highlight=False),
        config_path=config_path,
        environ=config_manager.merge_environment(config_manager.load_config(config_path)),
        stdin=sys.stdin,
    )

    try:
        return args.func(args, ctx)
    except (CommandError, ConfigError, TrueNASError) as e:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
