import logging
import os
from logging import Logger
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler

root_logger = logging.getLogger("nethermind")
logger = root_logger.getChild("evm_decoder").getChild("cli")


def cli_logger_config(instrument_logger: Logger, verbose: bool = False) -> Console:
    rich_console = Console()
    instrument_logger.handlers.clear()

    instrument_logger.addHandler(RichHandler(show_path=False, console=rich_console))
    instrument_logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    return rich_console


def group_options(*options):
    """Decorator to group multiple click options together"""

    def wrapper(function):
        for option in reversed(options):
            function = option(function)
        return function

    return wrapper


def artifact_paths(paths: tuple[str, ...]) -> list[Path]:
    """Expands artifact arguments.  Directories are searched for JSON artifacts, files are kept as-is"""
    expanded: list[Path] = []
    for path in map(Path, paths):
        if path.is_dir():
            expanded.extend(sorted(path.glob("*.json")))
        else:
            expanded.append(path)
    return expanded


def parse_block(block: str) -> int | str:
    """Block identifiers can be integers, or tags like ``latest``"""
    return int(block) if block.isdigit() else block


# -------------------------------------------------------
#    CLI Connections & Configurations
# -------------------------------------------------------
json_rpc_option = click.option(
    "--json-rpc",
    "-rpc",
    "json_rpc",
    default=os.environ.get("JSON_RPC"),
    help="RPC url to fetch chain data from.  If not provided, will use the JSON_RPC environment variable",
)
artifacts_option = click.option(
    "--artifacts",
    "-a",
    "artifacts",
    multiple=True,
    required=True,
    type=click.Path(exists=True),
    help="Truffle artifact JSON file, or directory of artifacts.  Can be passed multiple times",
)
verbose_option = click.option(
    "--verbose",
    "-v",
    "verbose",
    is_flag=True,
    default=False,
    help="Print debug logs",
)


# -------------------------------------------------------
#    Filter Parameters
# -------------------------------------------------------
from_block_option = click.option(
    "--from-block",
    "-from",
    "from_block",
    default="latest",
    type=str,
    show_default=True,
    help="Start block. Can be an integer, or a block identifier string like 'earliest'",
)
to_block_option = click.option(
    "--to-block",
    "-to",
    "to_block",
    default="latest",
    type=str,
    show_default=True,
    help="End block. Can be an integer, or a block identifier string like 'pending'",
)
block_option = click.option(
    "--block",
    "-b",
    "block",
    default="latest",
    type=str,
    show_default=True,
    help="Block to read state at",
)
