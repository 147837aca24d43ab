import logging
from typing import Any, Sequence

from eth_abi import encode
from eth_typing import BlockIdentifier
from eth_utils import is_address, keccak, to_checksum_address

from nethermind.evm_decoder.exceptions import DecodingError, InvalidMappingKeyError
from nethermind.evm_decoder.provider import ChainProvider
from nethermind.evm_decoder.types import (
    ArrayType,
    ContainerKind,
    ContainerResult,
    ContractType,
    DecoderConfig,
    DecodingMode,
    ElementaryKind,
    ElementaryType,
    EnumType,
    ErrorKind,
    ErrorResult,
    MappingType,
    Result,
    SlotDescriptor,
    StorageAllocation,
    StructType,
    TypeId,
    TypeTable,
    ValueResult,
)

from .elementary import WORD_SIZE, decode_string, decode_value, is_value_type
from .formatter import error_result

root_logger = logging.getLogger("nethermind")
logger = root_logger.getChild("evm_decoder").getChild("storage_codec")

SLOT_MODULUS = 2**256
BOOL_KEYS = {"true": True, "false": False}
""" Text forms of bool mapping keys, as given on the command line """


class StorageReader:
    """
    Reads storage words of one contract at one block.  Words are cached for the lifetime of the reader, which
    is a single ``variables()`` or ``variable()`` call.
    """

    provider: ChainProvider
    address: str
    block: BlockIdentifier

    _cache: dict[int, bytes]

    def __init__(self, provider: ChainProvider, address: str, block: BlockIdentifier = "latest"):
        self.provider = provider
        self.address = address
        self.block = block
        self._cache = {}

    def read(self, slot: int) -> bytes:
        """Returns the 32 byte word stored in a slot"""
        slot %= SLOT_MODULUS
        word = self._cache.get(slot)
        if word is None:
            word = bytes(self.provider.get_storage_at(self.address, slot, self.block)).rjust(WORD_SIZE, b"\x00")
            self._cache[slot] = word
        return word

    @property
    def reads(self) -> int:
        """Number of distinct slots fetched from the provider"""
        return len(self._cache)


def data_slot(slot: int) -> int:
    """Slot where the data of a dynamic array or long byte string stored at ``slot`` begins"""
    return int.from_bytes(keccak(slot.to_bytes(WORD_SIZE, "big")), "big")


def normalize_key(type_table: TypeTable, key_type: TypeId, key: Any) -> Any:
    """
    Converts a user supplied mapping key to its canonical python value, so equal keys given in different
    forms (checksummed or lowercase addresses, enum names or indexes) compare equal.

    :raises InvalidMappingKeyError: If the key is not a valid value of the key type
    """
    # pylint: disable=too-many-return-statements
    definition = type_table[key_type]
    type_string = type_table.type_string(key_type)

    match definition:
        case ElementaryType(kind=ElementaryKind.address) | ContractType():
            if not isinstance(key, (str, bytes)) or not is_address(key):
                raise InvalidMappingKeyError(f"{key!r} is not a valid {type_string} key")
            return to_checksum_address(key)

        case ElementaryType(kind=ElementaryKind.uint | ElementaryKind.int):
            number = _to_int(key, type_string)
            signed = definition.kind == ElementaryKind.int
            if signed:
                low, high = -(2 ** (definition.bits - 1)), 2 ** (definition.bits - 1)
            else:
                low, high = 0, 2**definition.bits
            if not low <= number < high:
                raise InvalidMappingKeyError(f"{key!r} is out of range for {type_string}")
            return number

        case ElementaryType(kind=ElementaryKind.bool):
            if isinstance(key, str) and key.lower() in BOOL_KEYS:
                return BOOL_KEYS[key.lower()]
            if not isinstance(key, (bool, int)) or key not in (0, 1):
                raise InvalidMappingKeyError(f"{key!r} is not a valid bool key")
            return bool(key)

        case ElementaryType(kind=ElementaryKind.fixed_bytes):
            value = _to_key_bytes(key, type_string)
            if len(value) != definition.size:
                raise InvalidMappingKeyError(f"{type_string} keys must be {definition.size} bytes, got {len(value)}")
            return value

        case ElementaryType(kind=ElementaryKind.bytes):
            return _to_key_bytes(key, type_string)

        case ElementaryType(kind=ElementaryKind.string):
            if not isinstance(key, str):
                raise InvalidMappingKeyError(f"{key!r} is not a valid string key")
            return key

        case EnumType(variants=variants):
            if isinstance(key, str) and key in variants:
                return key
            if isinstance(key, str) and key.isdigit():
                key = int(key)
            if isinstance(key, int) and not isinstance(key, bool) and 0 <= key < len(variants):
                return variants[key]
            raise InvalidMappingKeyError(f"{key!r} is not a member of {type_string}")

        case _:
            raise InvalidMappingKeyError(f"{type_string} cannot be used as a mapping key")


def encode_key(type_table: TypeTable, key_type: TypeId, key: Any) -> bytes:
    """Encodes a normalized mapping key the way the compiler hashes it.  Strings and bytes are hashed unpadded"""
    definition = type_table[key_type]
    match definition:
        case ElementaryType(kind=ElementaryKind.string):
            return key.encode("utf-8")
        case ElementaryType(kind=ElementaryKind.bytes):
            return key
        case EnumType(variants=variants):
            return encode([type_table.abi_type_string(key_type)], [variants.index(key)])
        case _:
            return encode([type_table.abi_type_string(key_type)], [key])


def mapping_slot(type_table: TypeTable, key_type: TypeId, key: Any, slot: int) -> int:
    """Slot holding the value of a mapping entry"""
    encoded = encode_key(type_table, key_type, key) + slot.to_bytes(WORD_SIZE, "big")
    return int.from_bytes(keccak(encoded), "big")


class StorageCodec:
    """
    Decodes state variables from contract storage, using the layout computed by the StorageAllocator.  Storage
    decoding only exists in full mode.

    Mappings cannot be enumerated, so only entries whose key paths are watched are decoded.
    """

    type_table: TypeTable
    allocation: StorageAllocation
    config: DecoderConfig

    def __init__(self, type_table: TypeTable, allocation: StorageAllocation, config: DecoderConfig | None = None):
        self.type_table = type_table
        self.allocation = allocation
        self.config = config or DecoderConfig()

    def decode_variable(
        self, name: str, reader: StorageReader, watched_keys: Sequence[tuple[Any, ...]] = ()
    ) -> Result:
        """
        Decodes a state variable

        :param name: Variable name
        :param reader: StorageReader for the contract & block being decoded
        :param watched_keys: Watched key paths of this variable.  Each path is a tuple of normalized keys, one per
            level of nested mapping
        """
        variable = self.allocation[name]
        return self._decode_member(variable.type_id, variable.pointer, reader, watched_keys, ())

    def _decode_member(
        self,
        type_id: TypeId,
        pointer: SlotDescriptor,
        reader: StorageReader,
        watched_keys: Sequence[tuple[Any, ...]] = (),
        path: tuple[Any, ...] = (),
    ) -> Result:
        try:
            return self._decode(type_id, pointer, reader, watched_keys, path)
        except DecodingError as exc:
            return error_result(type_id, DecodingMode.full, exc)

    def _decode(
        self,
        type_id: TypeId,
        pointer: SlotDescriptor,
        reader: StorageReader,
        watched_keys: Sequence[tuple[Any, ...]],
        path: tuple[Any, ...],
    ) -> Result:
        # pylint: disable=too-many-arguments,too-many-locals
        definition = self.type_table[type_id]
        mode = DecodingMode.full

        if is_value_type(definition):
            word = reader.read(pointer.slot)
            start = WORD_SIZE - pointer.offset - pointer.length
            value_bytes = word[start : WORD_SIZE - pointer.offset]
            value = decode_value(
                definition, value_bytes, mode, padded=False, checksum=self.config.checksum_addresses
            )
            return ValueResult(type_id, mode, value, value_bytes)

        match definition:
            case ElementaryType(kind=ElementaryKind.bytes | ElementaryKind.string):
                content = self._read_byte_string(pointer.slot, reader)
                if definition.kind == ElementaryKind.string:
                    return ValueResult(type_id, mode, decode_string(content), content)
                return ValueResult(type_id, mode, content, content)

            case StructType(members=members):
                layout = self.allocation.struct_layouts[type_id]
                entries = tuple(
                    (
                        member.name,
                        self._decode_member(member.type_id, member.pointer.shifted(pointer.slot), reader),
                    )
                    for member in layout.members
                )
                logger.debug(f"Decoded struct {self.type_table.type_string(type_id)} with {len(members)} members")
                return ContainerResult(type_id, mode, ContainerKind.struct, entries)

            case ArrayType(element=element, length=length):
                if length is None:
                    length = int.from_bytes(reader.read(pointer.slot), "big")
                    if length > self.config.max_array_length:
                        return ErrorResult(
                            type_id,
                            mode,
                            ErrorKind.overlong_array,
                            reader.read(pointer.slot),
                            f"Array length {length} exceeds the limit of {self.config.max_array_length}",
                        )
                    start_slot = data_slot(pointer.slot)
                else:
                    start_slot = pointer.slot

                entries = tuple(
                    (index, self._decode_member(element, self._element_pointer(element, start_slot, index), reader))
                    for index in range(length)
                )
                return ContainerResult(type_id, mode, ContainerKind.array, entries)

            case MappingType(key=key_type, value=value_type):
                entries = []
                for key in self._child_keys(watched_keys, path):
                    slot = mapping_slot(self.type_table, key_type, key, pointer.slot)
                    value_pointer = self._pointer_at(value_type, slot)
                    entries.append(
                        (key, self._decode_member(value_type, value_pointer, reader, watched_keys, path + (key,)))
                    )
                return ContainerResult(type_id, mode, ContainerKind.mapping, tuple(entries))

            case _:
                raise DecodingError(
                    f"{self.type_table.type_string(type_id)} cannot be read from storage", ErrorKind.unresolved_type
                )

    def _read_byte_string(self, slot: int, reader: StorageReader) -> bytes:
        """
        Reads a string or bytes value.  Values shorter than 32 bytes are stored in the slot itself with
        ``length * 2`` in the lowest byte.  Longer values store ``length * 2 + 1`` and keep their data at
        ``keccak(slot)``
        """
        word = reader.read(slot)
        if word[-1] & 1 == 0:
            length = word[-1] // 2
            if length >= WORD_SIZE:
                raise DecodingError(f"Invalid short string length {length}", ErrorKind.malformed_length, word)
            return word[:length]

        length = (int.from_bytes(word, "big") - 1) // 2
        word_count = -(-length // WORD_SIZE)
        if word_count > self.config.max_array_length:
            raise DecodingError(
                f"Byte string of {length} bytes exceeds the limit of {self.config.max_array_length} words",
                ErrorKind.overlong_array,
                word,
            )

        start = data_slot(slot)
        content = b"".join(reader.read(start + index) for index in range(word_count))
        return content[:length]

    def _pointer_at(self, type_id: TypeId, slot: int) -> SlotDescriptor:
        size = self.allocation.storage_sizes[type_id]
        if size.whole_slots:
            return SlotDescriptor(slot, 0, size.slots * WORD_SIZE, size.indirection)
        return SlotDescriptor(slot, 0, size.size)

    def _element_pointer(self, element: TypeId, start_slot: int, index: int) -> SlotDescriptor:
        size = self.allocation.storage_sizes[element]
        if size.whole_slots:
            return SlotDescriptor(start_slot + index * size.slots, 0, size.slots * WORD_SIZE, size.indirection)

        per_slot = WORD_SIZE // size.size
        return SlotDescriptor(start_slot + index // per_slot, (index % per_slot) * size.size, size.size)

    @staticmethod
    def _child_keys(watched_keys: Sequence[tuple[Any, ...]], path: tuple[Any, ...]) -> list[Any]:
        """Keys watched directly below ``path``, in the order they were first watched"""
        keys: list[Any] = []
        depth = len(path)
        for key_path in watched_keys:
            if len(key_path) > depth and key_path[:depth] == path and key_path[depth] not in keys:
                keys.append(key_path[depth])
        return keys


def _to_int(key: Any, type_string: str) -> int:
    if isinstance(key, bool):
        raise InvalidMappingKeyError(f"{key!r} is not a valid {type_string} key")
    if isinstance(key, int):
        return key
    if isinstance(key, str):
        try:
            return int(key, 0)
        except ValueError as exc:
            raise InvalidMappingKeyError(f"{key!r} is not a valid {type_string} key") from exc
    raise InvalidMappingKeyError(f"{key!r} is not a valid {type_string} key")


def _to_key_bytes(key: Any, type_string: str) -> bytes:
    if isinstance(key, (bytes, bytearray)):
        return bytes(key)
    if isinstance(key, str) and key.startswith("0x"):
        try:
            return bytes.fromhex(key[2:])
        except ValueError as exc:
            raise InvalidMappingKeyError(f"{key!r} is not a valid {type_string} key") from exc
    raise InvalidMappingKeyError(f"{key!r} is not a valid {type_string} key")
