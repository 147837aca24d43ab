import logging
from typing import Sequence

from nethermind.evm_decoder.exceptions import DecodingError
from nethermind.evm_decoder.types import (
    ArrayType,
    ContainerKind,
    ContainerResult,
    DecoderConfig,
    DecodingMode,
    ElementaryKind,
    ElementaryType,
    ErrorKind,
    ErrorResult,
    Result,
    StructType,
    TupleType,
    TypeId,
    TypeTable,
    ValueResult,
)

from .elementary import WORD_SIZE, decode_string, decode_value, is_value_type
from .formatter import error_result

root_logger = logging.getLogger("nethermind")
logger = root_logger.getChild("evm_decoder").getChild("abi_codec")


class AbiCodec:
    """
    Decodes linear ABI encoded data (calldata, log data and log topics) into Results.  The same algorithm runs in
    both modes, the mode only changes which TypeIds are decoded and how strictly values are validated.
    """

    type_table: TypeTable
    config: DecoderConfig

    def __init__(self, type_table: TypeTable, config: DecoderConfig | None = None):
        self.type_table = type_table
        self.config = config or DecoderConfig()

    def decode_parameters(
        self, type_ids: Sequence[TypeId | None], data: bytes, mode: DecodingMode, base: int = 0
    ) -> list[Result]:
        """
        Decodes a list of parameters encoded as a tuple.  A parameter that fails to decode becomes an ErrorResult,
        and the remaining parameters are still decoded.

        :param type_ids: Parameter types.  None marks a type that failed to resolve
        :param data: Encoded data, without function selector
        :param mode: Mode tagged onto every Result
        :param base: Offset of the tuple within data.  Dynamic offsets are relative to it
        """
        results: list[Result] = []
        head = base
        for type_id in type_ids:
            if type_id is None:
                results.append(
                    ErrorResult(None, mode, ErrorKind.unresolved_type, data[head : head + WORD_SIZE], "Unresolved type")
                )
                head += WORD_SIZE
                continue

            try:
                if self.type_table.is_dynamic(type_id):
                    offset = self._read_uint(data, head)
                    if base + offset >= len(data) + (1 if offset == 0 else 0) or offset % WORD_SIZE:
                        raise DecodingError(
                            f"Offset {offset} points outside of {len(data)} bytes of data",
                            ErrorKind.malformed_length,
                            data[head : head + WORD_SIZE],
                        )
                    results.append(self._decode(type_id, data, base + offset, mode))
                else:
                    results.append(self._decode(type_id, data, head, mode))
            except DecodingError as exc:
                results.append(error_result(type_id, mode, exc))

            head += self.type_table.head_size(type_id)

        return results

    def decode_topic(self, type_id: TypeId | None, topic: bytes, mode: DecodingMode) -> Result:
        """
        Decodes an indexed event parameter.  Reference types are stored as the hash of their encoding, so they are
        returned as an ``indexed_reference_type`` ErrorResult carrying the hash.
        """
        if type_id is None:
            return ErrorResult(None, mode, ErrorKind.unresolved_type, topic, "Unresolved type")

        definition = self.type_table[type_id]
        if not is_value_type(definition):
            return ErrorResult(
                type_id, mode, ErrorKind.indexed_reference_type, topic, "Indexed reference types are stored as hashes"
            )

        try:
            return ValueResult(type_id, mode, self._decode_word(definition, topic, mode), topic)
        except DecodingError as exc:
            return error_result(type_id, mode, exc)

    def _decode(self, type_id: TypeId, data: bytes, position: int, mode: DecodingMode) -> Result:
        definition = self.type_table[type_id]

        if is_value_type(definition):
            word = self._read_word(data, position)
            return ValueResult(type_id, mode, self._decode_word(definition, word, mode), word)

        match definition:
            case ElementaryType(kind=ElementaryKind.bytes | ElementaryKind.string):
                length = self._read_uint(data, position)
                start = position + WORD_SIZE
                if start + length > len(data):
                    raise DecodingError(
                        f"Length prefix {length} exceeds the {len(data) - start} remaining bytes",
                        ErrorKind.malformed_length,
                        data[position:start],
                    )
                content = data[start : start + length]
                padded_end = start + -(-length // WORD_SIZE) * WORD_SIZE
                raw = data[position:padded_end]
                if definition.kind == ElementaryKind.string:
                    return ValueResult(type_id, mode, decode_string(content), raw)
                return ValueResult(type_id, mode, content, raw)

            case StructType(members=members) | TupleType(members=members):
                results = self.decode_parameters([member for _, member in members], data, mode, base=position)
                kind = ContainerKind.struct if isinstance(definition, StructType) else ContainerKind.tuple
                return ContainerResult(
                    type_id=type_id,
                    mode=mode,
                    kind=kind,
                    entries=tuple((name, result) for (name, _), result in zip(members, results, strict=True)),
                    raw=self._static_raw(type_id, data, position),
                )

            case ArrayType(element=element, length=length):
                if length is None:
                    length = self._read_uint(data, position)
                    position += WORD_SIZE
                    element_space = max(self.type_table.head_size(element), WORD_SIZE)
                    if length * element_space > len(data) - position:
                        raise DecodingError(
                            f"Array length {length} exceeds the {len(data) - position} remaining bytes",
                            ErrorKind.malformed_length,
                            data[position - WORD_SIZE : position],
                        )

                results = self.decode_parameters([element] * length, data, mode, base=position)
                return ContainerResult(
                    type_id=type_id,
                    mode=mode,
                    kind=ContainerKind.array,
                    entries=tuple(enumerate(results)),
                    raw=self._static_raw(type_id, data, position),
                )

            case _:
                raise DecodingError(
                    f"{self.type_table.type_string(type_id)} cannot be ABI decoded", ErrorKind.unresolved_type
                )

    def _decode_word(self, definition, word: bytes, mode: DecodingMode):
        return decode_value(definition, word, mode, padded=True, checksum=self.config.checksum_addresses)

    def _static_raw(self, type_id: TypeId, data: bytes, position: int) -> bytes:
        if self.type_table.is_dynamic(type_id):
            return b""
        return data[position : position + self.type_table.head_size(type_id)]

    @staticmethod
    def _read_word(data: bytes, position: int) -> bytes:
        word = data[position : position + WORD_SIZE]
        if len(word) < WORD_SIZE:
            raise DecodingError(
                f"Data truncated: needed 32 bytes at offset {position}, have {max(len(data) - position, 0)}",
                ErrorKind.truncated,
                word,
            )
        return word

    @classmethod
    def _read_uint(cls, data: bytes, position: int) -> int:
        return int.from_bytes(cls._read_word(data, position), "big")
