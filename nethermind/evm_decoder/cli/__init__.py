import logging

import click

from nethermind.evm_decoder.cli.utils import (
    artifacts_option,
    block_option,
    from_block_option,
    group_options,
    json_rpc_option,
    to_block_option,
    verbose_option,
)

# isort: skip_file
# pylint: disable=too-many-arguments,import-outside-toplevel

root_logger = logging.getLogger("nethermind")
logger = root_logger.getChild("evm_decoder").getChild("cli")


def _load_project(artifacts: tuple[str, ...], json_rpc: str | None):
    from web3 import Web3

    from nethermind.evm_decoder import for_project
    from nethermind.evm_decoder.artifacts import ContractArtifact
    from nethermind.evm_decoder.cli.utils import artifact_paths

    if not json_rpc:
        raise click.UsageError("A JSON RPC url is required.  Pass --json-rpc or set the JSON_RPC environment variable")

    loaded = [ContractArtifact.from_json_file(path) for path in artifact_paths(artifacts)]
    return for_project(loaded, Web3(Web3.HTTPProvider(json_rpc)))


@click.group()
def evm_decoder_cli():
    """Command Line Interface for decoding EVM transactions, logs and contract storage"""


@evm_decoder_cli.command(name="decode-transaction")
@group_options(json_rpc_option, artifacts_option, verbose_option)
@click.argument("transaction_hash")
def decode_transaction(json_rpc: str | None, artifacts: tuple[str, ...], verbose: bool, transaction_hash: str):
    """Decodes the calldata of a transaction"""
    from nethermind.evm_decoder.cli.utils import cli_logger_config
    from nethermind.evm_decoder.decoding import result_table
    from nethermind.evm_decoder.types import DecodingKind

    console = cli_logger_config(root_logger, verbose)
    wire = _load_project(artifacts, json_rpc)

    decoded = wire.decode_transaction(transaction_hash)
    if decoded.kind == DecodingKind.unknown:
        console.print(f"[red]Transaction {transaction_hash} matched no known function")
        return

    title = f"{decoded.contract.name if decoded.contract else '?'}.{decoded.name} ({decoded.kind.value})"
    console.print(result_table(title, decoded.arguments, wire.type_table))


@evm_decoder_cli.command(name="decode-log")
@group_options(json_rpc_option, artifacts_option, from_block_option, to_block_option, verbose_option)
@click.option("--address", help="Only decode logs emitted by this address")
@click.option("--name", "event_name", help="Only show events with this name")
@click.option("--extra", is_flag=True, default=False, help="Include logs that match no known event")
def decode_log(
    json_rpc: str | None,
    artifacts: tuple[str, ...],
    from_block: str,
    to_block: str,
    verbose: bool,
    address: str | None,
    event_name: str | None,
    extra: bool,
):
    """Decodes the logs emitted in a block range"""
    from nethermind.evm_decoder.cli.utils import cli_logger_config, parse_block
    from nethermind.evm_decoder.decoding import result_table
    from nethermind.evm_decoder.types import EventOptions

    console = cli_logger_config(root_logger, verbose)
    wire = _load_project(artifacts, json_rpc)

    options = EventOptions(
        address=address,
        name=event_name,
        from_block=parse_block(from_block),
        to_block=parse_block(to_block),
        extra=extra,
    )
    log_count = 0
    for log in wire.events(options):
        log_count += 1
        if not log.decoded:
            topic = "0x" + log.topics[0].hex() if log.topics else "none"
            console.print(f"[yellow]Unknown log from {log.address} with topic {topic}")
            continue
        for decoding in log.decodings:
            title = f"{decoding.contract.name}.{decoding.name} @ {log.address} ({decoding.mode.value} mode)"
            console.print(result_table(title, decoding.arguments, wire.type_table))

    console.print(f"[green]Decoded {log_count} logs")


@evm_decoder_cli.command(name="variables")
@group_options(json_rpc_option, artifacts_option, block_option, verbose_option)
@click.argument("contract_name")
@click.argument("address")
@click.option(
    "--watch",
    "watch",
    multiple=True,
    help="Mapping entry to include, as name:key or name:key:key for nested mappings.  Can be passed multiple times",
)
def variables(
    json_rpc: str | None,
    artifacts: tuple[str, ...],
    block: str,
    verbose: bool,
    contract_name: str,
    address: str,
    watch: tuple[str, ...],
):
    """Decodes the state variables of a deployed contract"""
    from nethermind.evm_decoder.cli.utils import cli_logger_config, parse_block
    from nethermind.evm_decoder.decoders import ContractDecoder
    from nethermind.evm_decoder.decoding import result_table
    from nethermind.evm_decoder.exceptions import (
        ContractBeingDecodedHasNoNodeError,
        InvalidMappingKeyError,
        UnknownVariableError,
    )

    console = cli_logger_config(root_logger, verbose)
    wire = _load_project(artifacts, json_rpc)

    try:
        instance = ContractDecoder(wire, wire.contract(contract_name)).for_instance(address)
    except KeyError as exc:
        raise click.BadParameter(str(exc), param_hint="contract_name") from exc

    try:
        for entry in watch:
            name, *keys = entry.split(":")
            try:
                instance.watch_mapping_key(name, *keys)
            except (InvalidMappingKeyError, UnknownVariableError) as exc:
                raise click.BadParameter(f"{entry}: {exc}", param_hint="--watch") from exc

        state_variables = instance.state_variables(parse_block(block))
    except ContractBeingDecodedHasNoNodeError as exc:
        console.print(f"[red]{exc}")
        return

    rows = [(f"{variable.defining_class}.{variable.name}", variable.value) for variable in state_variables]
    console.print(result_table(f"{contract_name} @ {instance.address}", rows, wire.type_table))
