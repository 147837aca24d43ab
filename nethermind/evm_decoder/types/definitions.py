from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Union

# pylint: disable=invalid-name

TypeId = int
""" Index of a TypeDefinition within a TypeTable """


class ElementaryKind(Enum):
    """Elementary Solidity value kinds"""

    uint = "uint"
    int = "int"
    bool = "bool"
    address = "address"
    fixed_bytes = "fixed_bytes"
    bytes = "bytes"
    string = "string"
    fixed = "fixed"
    ufixed = "ufixed"


@dataclass(frozen=True, slots=True)
class ElementaryType:
    """
    Elementary type.  ``bits`` is the width of integer, fixed point and fixed bytes types.  ``places`` is only used
    by fixed point types.
    """

    kind: ElementaryKind
    bits: int = 256
    places: int = 0

    @property
    def size(self) -> int:
        """Number of bytes the value occupies when packed into storage"""
        match self.kind:
            case ElementaryKind.bool:
                return 1
            case ElementaryKind.address:
                return 20
            case ElementaryKind.bytes | ElementaryKind.string:
                return 32
            case _:
                return self.bits // 8


@dataclass(frozen=True, slots=True)
class StructType:
    """Named struct with ordered ``(member name, TypeId)`` pairs"""

    qualified_name: str
    members: tuple[tuple[str, TypeId], ...]


@dataclass(frozen=True, slots=True)
class EnumType:
    """Named enum with ordered variant names"""

    qualified_name: str
    variants: tuple[str, ...]

    @property
    def size(self) -> int:
        """Number of bytes needed to store the largest variant index"""
        size = 1
        while 256**size < len(self.variants):
            size += 1
        return size


@dataclass(frozen=True, slots=True)
class ContractType:
    """Reference to a contract, interface or library.  Encoded as an address"""

    name: str
    contract_kind: str = "contract"


@dataclass(frozen=True, slots=True)
class ArrayType:
    """Array of ``element``.  ``length`` is None for dynamic arrays"""

    element: TypeId
    length: int | None = None

    @property
    def is_dynamic_length(self) -> bool:
        """True for ``T[]`` arrays"""
        return self.length is None


@dataclass(frozen=True, slots=True)
class MappingType:
    """Storage mapping from ``key`` to ``value``"""

    key: TypeId
    value: TypeId


@dataclass(frozen=True, slots=True)
class TupleType:
    """ABI tuple.  Members are positional, names are the optional ABI component names"""

    members: tuple[tuple[str | None, TypeId], ...]


TypeDefinition = Union[ElementaryType, StructType, EnumType, ContractType, ArrayType, MappingType, TupleType]


class TypeTable:
    """
    Arena of TypeDefinitions addressed by integer TypeIds.  References between types are TypeIds, so recursive
    structs are safe to represent.  Unnamed definitions are interned by structural equality, named definitions
    are reserved by their qualified name before being defined.

    Once frozen, the table is read-only and can be shared between any number of decoders.
    """

    _definitions: list[TypeDefinition | None]
    _interned: dict[TypeDefinition, TypeId]
    _named: dict[str, TypeId]
    _abi_projection: dict[TypeId, TypeId]
    _dynamic: dict[TypeId, bool]
    _frozen: bool

    def __init__(self):
        self._definitions = []
        self._interned = {}
        self._named = {}
        self._abi_projection = {}
        self._dynamic = {}
        self._frozen = False

    def __getitem__(self, type_id: TypeId) -> TypeDefinition:
        definition = self._definitions[type_id]
        if definition is None:
            raise KeyError(f"TypeId {type_id} was reserved but never defined")
        return definition

    def __len__(self) -> int:
        return len(self._definitions)

    def __iter__(self) -> Iterator[tuple[TypeId, TypeDefinition]]:
        for type_id, definition in enumerate(self._definitions):
            if definition is not None:
                yield type_id, definition

    @property
    def frozen(self) -> bool:
        """True once the table is read-only"""
        return self._frozen

    def _check_mutable(self):
        if self._frozen:
            raise RuntimeError("TypeTable is frozen and can no longer be modified")

    def intern(self, definition: TypeDefinition) -> TypeId:
        """Returns the TypeId of an unnamed definition, adding it to the table if it is not already present"""
        existing = self._interned.get(definition)
        if existing is not None:
            return existing

        self._check_mutable()
        self._definitions.append(definition)
        type_id = len(self._definitions) - 1
        self._interned[definition] = type_id
        return type_id

    def reserve(self, qualified_name: str) -> TypeId:
        """Reserves a TypeId for a named declaration.  Reserving the same name twice returns the same TypeId"""
        existing = self._named.get(qualified_name)
        if existing is not None:
            return existing

        self._check_mutable()
        self._definitions.append(None)
        type_id = len(self._definitions) - 1
        self._named[qualified_name] = type_id
        return type_id

    def define(self, type_id: TypeId, definition: TypeDefinition):
        """Sets the definition of a reserved TypeId"""
        self._check_mutable()
        self._definitions[type_id] = definition

    def is_defined(self, type_id: TypeId) -> bool:
        """True if the TypeId has a definition"""
        return 0 <= type_id < len(self._definitions) and self._definitions[type_id] is not None

    def named(self, qualified_name: str) -> TypeId | None:
        """Returns the TypeId reserved for a qualified name, or None"""
        return self._named.get(qualified_name)

    def freeze(self):
        """Precomputes ABI projections and head encodings for every type, then makes the table read-only"""
        for type_id in range(len(self._definitions)):
            if self._definitions[type_id] is None:
                continue
            try:
                self._project(type_id, set(), {})
            except KeyError:
                # References a declaration that failed to resolve.  Never reachable from a resolved type
                continue

        for type_id, _ in self:
            try:
                self._dynamic[type_id] = self._compute_dynamic(type_id)
            except KeyError:
                continue
        self._frozen = True

    # ---------------------------------------------------------------
    #   ABI Projection
    # ---------------------------------------------------------------

    def abi_type_of(self, type_id: TypeId) -> TypeId:
        """
        Returns the TypeId of the ABI-mode equivalent of a type.  Structs become tuples, enums become unsigned
        integers and contract types become addresses.  ABI types project to themselves.
        """
        if not self._frozen:
            return self._project(type_id, set(), {})
        return self._abi_projection[type_id]

    def _project(self, type_id: TypeId, in_progress: set[TypeId], placeholders: dict[TypeId, TypeId]) -> TypeId:
        # pylint: disable=too-many-return-statements
        if type_id in self._abi_projection:
            return self._abi_projection[type_id]

        definition = self[type_id]
        match definition:
            case ElementaryType():
                projected = type_id

            case TupleType(members=members) if all(
                self._project(member, in_progress, placeholders) == member for _, member in members
            ):
                projected = type_id

            case EnumType():
                projected = self.intern(ElementaryType(ElementaryKind.uint, definition.size * 8))

            case ContractType():
                projected = self.intern(ElementaryType(ElementaryKind.address, 160))

            case ArrayType(element=element, length=length):
                projected = self.intern(ArrayType(self._project(element, in_progress, placeholders), length))

            case MappingType(key=key, value=value):
                projected = self.intern(
                    MappingType(
                        self._project(key, in_progress, placeholders),
                        self._project(value, in_progress, placeholders),
                    )
                )

            case StructType(members=members) | TupleType(members=members):
                if type_id in in_progress:
                    # Recursive struct, only reachable through dynamic arrays and mappings
                    if type_id not in placeholders:
                        self._definitions.append(None)
                        placeholders[type_id] = len(self._definitions) - 1
                    return placeholders[type_id]

                in_progress.add(type_id)
                keep_names = isinstance(definition, TupleType)
                tuple_def = TupleType(
                    tuple(
                        (name if keep_names else None, self._project(member, in_progress, placeholders))
                        for name, member in members
                    )
                )
                in_progress.discard(type_id)

                if type_id in placeholders:
                    projected = placeholders.pop(type_id)
                    self._definitions[projected] = tuple_def
                else:
                    projected = self.intern(tuple_def)

            case _:
                raise TypeError(f"Cannot project {definition} to ABI")

        self._abi_projection[type_id] = projected
        self._abi_projection.setdefault(projected, projected)
        return projected

    # ---------------------------------------------------------------
    #   Type Descriptions
    # ---------------------------------------------------------------

    def abi_type_string(self, type_id: TypeId) -> str:
        """
        Canonical ABI type string of a type, ie ``(uint256,address)[]``.  Matches the strings used for computing
        function selectors and event topics.
        """
        definition = self[type_id]
        match definition:
            case ElementaryType():
                return _elementary_name(definition)
            case EnumType():
                return f"uint{definition.size * 8}"
            case ContractType():
                return "address"
            case ArrayType(element=element, length=length):
                return f"{self.abi_type_string(element)}[{'' if length is None else length}]"
            case StructType(members=members) | TupleType(members=members):
                return f"({','.join(self.abi_type_string(member) for _, member in members)})"
            case MappingType():
                raise TypeError("Mappings do not have an ABI representation")
            case _:
                raise TypeError(f"Unknown type definition {definition}")

    def type_string(self, type_id: TypeId) -> str:
        """Human readable Solidity-style description of a type, ie ``struct Token.Account[]``"""
        definition = self[type_id]
        match definition:
            case ElementaryType():
                return _elementary_name(definition)
            case StructType(qualified_name=name):
                return f"struct {name}"
            case EnumType(qualified_name=name):
                return f"enum {name}"
            case ContractType(name=name, contract_kind=kind):
                return f"{kind} {name}"
            case ArrayType(element=element, length=length):
                return f"{self.type_string(element)}[{'' if length is None else length}]"
            case MappingType(key=key, value=value):
                return f"mapping({self.type_string(key)} => {self.type_string(value)})"
            case TupleType(members=members):
                return f"({','.join(self.type_string(member) for _, member in members)})"
            case _:
                raise TypeError(f"Unknown type definition {definition}")

    # ---------------------------------------------------------------
    #   ABI Encoding Properties
    # ---------------------------------------------------------------

    def is_dynamic(self, type_id: TypeId) -> bool:
        """True if the type is encoded in the tail of an ABI encoding, and is referenced by an offset in the head"""
        if self._frozen and type_id in self._dynamic:
            return self._dynamic[type_id]
        return self._compute_dynamic(type_id)

    def _compute_dynamic(self, type_id: TypeId) -> bool:
        definition = self[type_id]
        match definition:
            case ElementaryType(kind=ElementaryKind.bytes | ElementaryKind.string):
                return True
            case ArrayType(element=element, length=length):
                return length is None or self._compute_dynamic(element)
            case StructType(members=members) | TupleType(members=members):
                return any(self._compute_dynamic(member) for _, member in members)
            case MappingType():
                return True
            case _:
                return False

    def head_size(self, type_id: TypeId) -> int:
        """Number of bytes the type occupies in the head of an ABI encoding"""
        if self.is_dynamic(type_id):
            return 32

        definition = self[type_id]
        match definition:
            case ArrayType(element=element, length=length):
                return self.head_size(element) * (length or 0)
            case StructType(members=members) | TupleType(members=members):
                return sum(self.head_size(member) for _, member in members)
            case _:
                return 32


def _elementary_name(definition: ElementaryType) -> str:
    match definition.kind:
        case ElementaryKind.uint | ElementaryKind.int:
            return f"{definition.kind.value}{definition.bits}"
        case ElementaryKind.fixed | ElementaryKind.ufixed:
            return f"{definition.kind.value}{definition.bits}x{definition.places}"
        case ElementaryKind.fixed_bytes:
            return f"bytes{definition.bits // 8}"
        case _:
            return definition.kind.value
