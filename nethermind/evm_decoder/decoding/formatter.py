import logging
from typing import Any, Sequence

from rich.table import Table

from nethermind.evm_decoder.exceptions import DecodingError
from nethermind.evm_decoder.types import (
    ContainerKind,
    ContainerResult,
    DecodingMode,
    EnumType,
    ErrorResult,
    MappingType,
    Result,
    TypeId,
    TypeTable,
    ValueResult,
)

root_logger = logging.getLogger("nethermind")
logger = root_logger.getChild("evm_decoder").getChild("formatter")


def error_result(type_id: TypeId | None, mode: DecodingMode, error: DecodingError) -> ErrorResult:
    """Converts a DecodingError raised while decoding a value into an ErrorResult"""
    logger.debug(f"Decoding error ({error.kind.value}) in {mode.value} mode: {error}")
    return ErrorResult(type_id=type_id, mode=mode, kind=error.kind, raw=error.raw, message=str(error))


def has_errors(result: Result) -> bool:
    """
    Returns True if a Result, or any Result nested inside it, is an ErrorResult that should cause a full mode
    decoding to be retried in ABI mode
    """
    match result:
        case ErrorResult(kind=kind):
            return kind.triggers_fallback()
        case ContainerResult(entries=entries):
            return any(has_errors(value) for _, value in entries)
        case _:
            return False


def to_abi_mode(result: Result, type_table: TypeTable) -> Result:
    """
    Projects a full mode Result into the Result ABI mode would have produced for the same bytes.  Struct members
    become positional, enums become their underlying integer, and contracts become plain addresses.  Raw bytes are
    kept unchanged.

    ABI mode Results are returned unchanged, so the projection is idempotent.
    """
    if result.mode == DecodingMode.abi:
        return result

    match result:
        case ValueResult(type_id=type_id, value=value, raw=raw):
            if isinstance(type_table[type_id], EnumType):
                value = int.from_bytes(raw, "big")
            return ValueResult(type_table.abi_type_of(type_id), DecodingMode.abi, value, raw)

        case ContainerResult(type_id=type_id, kind=kind, entries=entries, raw=raw):
            definition = type_table[type_id]
            match kind:
                case ContainerKind.struct:
                    projected_kind = ContainerKind.tuple
                    projected_entries = tuple((None, to_abi_mode(value, type_table)) for _, value in entries)
                case ContainerKind.mapping if isinstance(definition, MappingType):
                    projected_kind = kind
                    projected_entries = tuple(
                        (_project_key(key, definition.key, type_table), to_abi_mode(value, type_table))
                        for key, value in entries
                    )
                case _:
                    projected_kind = kind
                    projected_entries = tuple((key, to_abi_mode(value, type_table)) for key, value in entries)

            return ContainerResult(
                type_id=type_table.abi_type_of(type_id),
                mode=DecodingMode.abi,
                kind=projected_kind,
                entries=projected_entries,
                raw=raw,
            )

        case ErrorResult(type_id=type_id, kind=kind, raw=raw, message=message):
            return ErrorResult(
                type_id=type_table.abi_type_of(type_id) if type_id is not None else None,
                mode=DecodingMode.abi,
                kind=kind,
                raw=raw,
                message=message,
            )

        case _:
            raise TypeError(f"Cannot project {result} to ABI mode")


def _project_key(key: Any, key_type: TypeId, type_table: TypeTable) -> Any:
    definition = type_table[key_type]
    if isinstance(definition, EnumType) and key in definition.variants:
        return definition.variants.index(key)
    return key


def result_to_python(result: Result) -> Any:
    """
    Converts a Result into plain python values.  Structs and mappings become dicts, arrays become lists and
    tuples become tuples.  ErrorResults are returned as-is so failures remain visible.
    """
    match result:
        case ValueResult(value=value):
            return value
        case ContainerResult(kind=ContainerKind.struct | ContainerKind.mapping, entries=entries):
            return {key: result_to_python(value) for key, value in entries}
        case ContainerResult(kind=ContainerKind.array, entries=entries):
            return [result_to_python(value) for _, value in entries]
        case ContainerResult(entries=entries):
            return tuple(result_to_python(value) for _, value in entries)
        case _:
            return result


def result_table(title: str, rows: Sequence[tuple[str, Result]], type_table: TypeTable) -> Table:
    """
    Returns a rich table describing named Results.  Used for printing decoded arguments & state variables in the CLI

    :param title: Table title
    :param rows: ``(name, Result)`` pairs
    :param type_table: TypeTable the Results were decoded against
    """
    table = Table(title=f"[bold magenta]{title}", min_width=80, show_lines=True)
    table.add_column("Name")
    table.add_column("Type")
    table.add_column("Mode")
    table.add_column("Value")

    for name, result in rows:
        type_string = type_table.type_string(result.type_id) if result.type_id is not None else "?"
        if isinstance(result, ErrorResult):
            value = f"[red]{result.kind.value}: {result.message}"
        else:
            value = repr(result_to_python(result))
        table.add_row(name, type_string, result.mode.value, value)

    return table
