from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from .definitions import TypeId

# pylint: disable=invalid-name


class DecodingMode(Enum):
    """
    Mode that produced a decoding.  Full mode uses AST-resolved types and the computed storage layout, ABI mode
    only uses the shapes present in the ABI.
    """

    full = "full"
    abi = "abi"


class ErrorKind(Enum):
    """Kinds of per-value decoding failures"""

    truncated = "truncated"
    malformed_length = "malformed_length"
    padding = "padding"
    invalid_bool = "invalid_bool"
    enum_out_of_range = "enum_out_of_range"
    unresolved_type = "unresolved_type"
    invalid_selector = "invalid_selector"
    invalid_topic = "invalid_topic"
    overlong_array = "overlong_array"
    indexed_reference_type = "indexed_reference_type"

    def triggers_fallback(self) -> bool:
        """
        Indexed reference types are stored as hashes in log topics, so they are reported in both modes and never
        cause a retry in ABI mode
        """
        return self is not ErrorKind.indexed_reference_type


class ContainerKind(Enum):
    """Layout of a ContainerResult's entries"""

    struct = "struct"
    tuple = "tuple"
    array = "array"
    mapping = "mapping"


@dataclass(frozen=True, slots=True)
class ValueResult:
    """Decoded elementary value along with the exact bytes it was decoded from"""

    type_id: TypeId
    mode: DecodingMode
    value: Any
    raw: bytes


@dataclass(frozen=True, slots=True)
class ContainerResult:
    """
    Decoded struct, tuple, array or mapping.  Entries are ``(key, Result)`` pairs in declaration or index order.
    Keys are member names for structs, ``None`` for positional tuple members, indices for arrays and decoded
    key values for mappings.
    """

    type_id: TypeId
    mode: DecodingMode
    kind: ContainerKind
    entries: tuple[tuple[Any, "Result"], ...]
    raw: bytes = b""

    def __getitem__(self, key: Any) -> "Result":
        for entry_key, entry_value in self.entries:
            if entry_key == key:
                return entry_value
        if isinstance(key, int) and self.kind in (ContainerKind.tuple, ContainerKind.struct):
            return self.entries[key][1]
        raise KeyError(key)

    def __len__(self) -> int:
        return len(self.entries)

    def keys(self) -> list[Any]:
        """Returns the keys of the container entries in order"""
        return [key for key, _ in self.entries]

    def values(self) -> list["Result"]:
        """Returns the Results of the container entries in order"""
        return [value for _, value in self.entries]


@dataclass(frozen=True, slots=True)
class ErrorResult:
    """Value that could not be decoded.  Retains whatever raw bytes were read before the failure"""

    type_id: TypeId | None
    mode: DecodingMode
    kind: ErrorKind
    raw: bytes = b""
    message: str = field(default="", compare=False)


Result = Union[ValueResult, ContainerResult, ErrorResult]
