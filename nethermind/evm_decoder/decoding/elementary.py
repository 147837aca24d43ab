from decimal import Decimal
from typing import Any

from eth_utils import to_checksum_address

from nethermind.evm_decoder.exceptions import DecodingError
from nethermind.evm_decoder.types import (
    ContractType,
    DecodingMode,
    ElementaryKind,
    ElementaryType,
    EnumType,
    ErrorKind,
    TypeDefinition,
)

WORD_SIZE = 32
SIGNED_KINDS = (ElementaryKind.int, ElementaryKind.fixed)


def value_size(definition: TypeDefinition) -> int:
    """Number of significant bytes of a value type"""
    match definition:
        case ElementaryType():
            return definition.size
        case EnumType():
            return definition.size
        case ContractType():
            return 20
        case _:
            raise TypeError(f"{definition} is not a value type")


def is_value_type(definition: TypeDefinition) -> bool:
    """True for types that fit in a single word and are decoded by :func:`decode_value`"""
    match definition:
        case ElementaryType(kind=ElementaryKind.bytes | ElementaryKind.string):
            return False
        case ElementaryType() | EnumType() | ContractType():
            return True
        case _:
            return False


def unpad_word(definition: TypeDefinition, word: bytes) -> bytes:
    """
    Extracts the significant bytes of an ABI encoded word.  Fixed size bytes are right padded, everything else is
    left padded, with signed values sign extended.

    :raises DecodingError: If the word is too short, or the padding is not clean
    """
    if len(word) < WORD_SIZE:
        raise DecodingError(f"Expected a 32 byte word, got {len(word)} bytes", ErrorKind.truncated, word)

    size = value_size(definition)
    if isinstance(definition, ElementaryType) and definition.kind == ElementaryKind.fixed_bytes:
        value, padding = word[:size], word[size:]
        expected = b"\x00" * len(padding)
    else:
        value, padding = word[WORD_SIZE - size :], word[: WORD_SIZE - size]
        signed = isinstance(definition, ElementaryType) and definition.kind in SIGNED_KINDS
        fill = b"\xff" if signed and value and value[0] & 0x80 else b"\x00"
        expected = fill * len(padding)

    if padding != expected:
        raise DecodingError(f"Dirty padding in word 0x{word.hex()}", ErrorKind.padding, word)
    return value


def decode_value(
    definition: TypeDefinition,
    data: bytes,
    mode: DecodingMode,
    padded: bool = True,
    checksum: bool = True,
) -> Any:
    """
    Interprets the bytes of a value type.

    :param definition: Value type to decode
    :param data: 32 byte ABI word if ``padded``, otherwise exactly the significant bytes read from storage
    :param mode: Full mode rejects booleans other than 0 or 1, and out of range enums.  ABI mode accepts them
    :param padded: True for ABI encoded words
    :param checksum: Return addresses as checksummed hexstrings
    :raises DecodingError: If the bytes are not a valid encoding of the type
    """
    # pylint: disable=too-many-return-statements
    value = unpad_word(definition, data) if padded else data

    match definition:
        case EnumType(variants=variants):
            index = int.from_bytes(value, "big")
            if index >= len(variants):
                if mode == DecodingMode.full:
                    raise DecodingError(
                        f"Enum {definition.qualified_name} has no variant {index}", ErrorKind.enum_out_of_range, data
                    )
                return index
            return variants[index]

        case ContractType():
            return _format_address(value, checksum)

        case ElementaryType(kind=ElementaryKind.uint | ElementaryKind.ufixed):
            number = int.from_bytes(value, "big")
            if definition.kind == ElementaryKind.ufixed:
                return Decimal(number).scaleb(-definition.places)
            return number

        case ElementaryType(kind=ElementaryKind.int | ElementaryKind.fixed):
            number = int.from_bytes(value, "big", signed=True)
            if definition.kind == ElementaryKind.fixed:
                return Decimal(number).scaleb(-definition.places)
            return number

        case ElementaryType(kind=ElementaryKind.bool):
            flag = int.from_bytes(value, "big")
            if flag > 1 and mode == DecodingMode.full:
                raise DecodingError(f"Invalid boolean value {flag}", ErrorKind.invalid_bool, data)
            return flag != 0

        case ElementaryType(kind=ElementaryKind.address):
            return _format_address(value, checksum)

        case ElementaryType(kind=ElementaryKind.fixed_bytes):
            return bytes(value)

        case _:
            raise TypeError(f"{definition} is not a value type")


def decode_string(data: bytes) -> str:
    """Decodes UTF-8 string contents.  Malformed sequences are replaced, the raw bytes are kept on the Result"""
    return data.decode("utf-8", errors="replace")


def _format_address(value: bytes, checksum: bool) -> str:
    address = "0x" + value[-20:].hex()
    return to_checksum_address(address) if checksum else address
