import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from nethermind.evm_decoder.exceptions import ContractBeingDecodedHasNoNodeError
from nethermind.evm_decoder.types import (
    DecoderConfig,
    DecodingMode,
    ErrorKind,
    ErrorResult,
    EventEntry,
    FunctionEntry,
    Result,
    StorageAllocation,
    TypeId,
    TypeTable,
)

from .abi_codec import AbiCodec
from .formatter import has_errors
from .storage_codec import StorageCodec, StorageReader

root_logger = logging.getLogger("nethermind")
logger = root_logger.getChild("evm_decoder").getChild("core")

Arguments = tuple[tuple[str, Result], ...]


@dataclass(frozen=True)
class CalldataRequest:
    """Decode the arguments of a function call or contract creation.  ``data`` excludes the selector"""

    entry: FunctionEntry
    data: bytes
    mode: DecodingMode = DecodingMode.full


@dataclass(frozen=True)
class LogRequest:
    """Decode the parameters of a log against one event entry"""

    event: EventEntry
    topics: tuple[bytes, ...]
    data: bytes
    mode: DecodingMode = DecodingMode.full


@dataclass(frozen=True)
class StorageRequest:
    """Decode a state variable.  Storage decoding is only available in full mode"""

    allocation: StorageAllocation | None
    contract_name: str
    variable: str
    reader: StorageReader
    watched_keys: tuple[tuple[Any, ...], ...] = field(default_factory=tuple)
    mode: DecodingMode = DecodingMode.full


DecodingRequest = CalldataRequest | LogRequest | StorageRequest


@dataclass(frozen=True)
class DecodedUnit:
    """Arguments of one decoding unit, all decoded in the same mode"""

    mode: DecodingMode
    arguments: Arguments

    @property
    def has_errors(self) -> bool:
        """True if any argument holds an ErrorResult that triggers fallback"""
        return any(has_errors(value) for _, value in self.arguments)


class DecodingCore:
    """
    Single decoding algorithm shared by every decoder.  Full mode is attempted whenever a request's entry carries
    AST resolved types.  If any argument of the full mode decoding holds an error, the whole unit is decoded again
    from the same bytes in ABI mode.  If ABI mode fails as well, the full mode decoding is returned.
    """

    type_table: TypeTable
    config: DecoderConfig
    abi_codec: AbiCodec

    def __init__(self, type_table: TypeTable, config: DecoderConfig | None = None):
        self.type_table = type_table
        self.config = config or DecoderConfig()
        self.abi_codec = AbiCodec(type_table, self.config)

    def decode(self, request: DecodingRequest) -> DecodedUnit:
        """
        Decodes a request.  Requests in ABI mode are decoded in ABI mode only.  Storage requests return a unit
        with a single argument named after the variable.

        :raises ContractBeingDecodedHasNoNodeError: If a storage request has no allocation to decode against
        """
        match request:
            case CalldataRequest(entry=entry, data=data, mode=mode):
                return self._with_fallback(
                    lambda type_ids, unit_mode: self.abi_codec.decode_parameters(type_ids, data, unit_mode),
                    entry.input_names,
                    entry.full_input_types if mode == DecodingMode.full else None,
                    entry.abi_input_types,
                )

            case LogRequest(event=event, topics=topics, data=data, mode=mode):
                return self._with_fallback(
                    lambda type_ids, unit_mode: self._decode_log(event, type_ids, topics, data, unit_mode),
                    event.param_names,
                    event.full_types if mode == DecodingMode.full else None,
                    event.abi_types,
                )

            case StorageRequest(allocation=None, contract_name=contract_name):
                raise ContractBeingDecodedHasNoNodeError(contract_name)

            case StorageRequest(allocation=allocation, variable=variable, reader=reader, watched_keys=keys):
                codec = StorageCodec(self.type_table, allocation, self.config)
                result = codec.decode_variable(variable, reader, keys)
                return DecodedUnit(DecodingMode.full, ((variable, result),))

            case _:
                raise TypeError(f"Unknown decoding request {request}")

    def _with_fallback(
        self,
        decode_fn: Callable[[Sequence[TypeId | None], DecodingMode], list[Result]],
        names: Sequence[str],
        full_types: Sequence[TypeId | None] | None,
        abi_types: Sequence[TypeId],
    ) -> DecodedUnit:
        if full_types is not None:
            full_unit = DecodedUnit(DecodingMode.full, tuple(zip(names, decode_fn(full_types, DecodingMode.full))))
            if not full_unit.has_errors:
                return full_unit

            abi_unit = DecodedUnit(DecodingMode.abi, tuple(zip(names, decode_fn(abi_types, DecodingMode.abi))))
            if not abi_unit.has_errors:
                logger.debug("Full mode decoding failed, falling back to ABI mode")
                return abi_unit

            logger.debug("Decoding failed in both modes, returning full mode errors")
            return full_unit

        return DecodedUnit(DecodingMode.abi, tuple(zip(names, decode_fn(abi_types, DecodingMode.abi))))

    def _decode_log(
        self,
        event: EventEntry,
        type_ids: Sequence[TypeId | None],
        topics: tuple[bytes, ...],
        data: bytes,
        mode: DecodingMode,
    ) -> list[Result]:
        # pylint: disable=too-many-arguments
        indexed_topics = list(topics if event.anonymous else topics[1:])
        unindexed = [type_id for type_id, indexed in zip(type_ids, event.indexed) if not indexed]
        data_results = iter(self.abi_codec.decode_parameters(unindexed, data, mode))

        results: list[Result] = []
        topic_index = 0
        for type_id, indexed in zip(type_ids, event.indexed, strict=True):
            if not indexed:
                results.append(next(data_results))
                continue

            if topic_index >= len(indexed_topics):
                results.append(ErrorResult(type_id, mode, ErrorKind.invalid_topic, b"", "Missing topic"))
            else:
                results.append(self.abi_codec.decode_topic(type_id, indexed_topics[topic_index], mode))
            topic_index += 1

        return results
