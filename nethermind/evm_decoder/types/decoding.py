from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from eth_typing import BlockIdentifier, ChecksumAddress

from .definitions import TypeId
from .results import DecodingMode, Result

# pylint: disable=invalid-name


class DecoderState(Enum):
    """Lifecycle of a ContractDecoder"""

    uninitialized = "uninitialized"
    initializing = "initializing"
    ready = "ready"
    degraded = "degraded"


class DecodingKind(Enum):
    """What a transaction or log was decoded as"""

    function = "function"
    constructor = "constructor"
    fallback = "fallback"
    receive = "receive"
    unknown = "unknown"
    event = "event"
    anonymous = "anonymous"


class Indirection(Enum):
    """
    Direct variables store their value in their own slot.  Dynamic variables (dynamic arrays, mappings, strings
    and bytes) use their slot as a seed for computing the location of their data
    """

    direct = "direct"
    dynamic = "dynamic"


@dataclass
class DecoderConfig:
    """Tunable limits & formatting for decoders"""

    max_array_length: int = 10_000
    """ Dynamic storage arrays longer than this are returned as ErrorResults instead of being read slot by slot """

    checksum_addresses: bool = True
    """ If True, decoded addresses are returned as checksummed hexstrings.  Otherwise, lowercase hexstrings """


# ---------------------------------------------------------------
#   Resolved Contract Metadata
# ---------------------------------------------------------------


@dataclass(frozen=True)
class FunctionEntry:
    """Resolved function, constructor, fallback or receive entry of an ABI"""

    name: str
    signature: str
    selector: bytes
    kind: DecodingKind
    abi: dict[str, Any]
    input_names: tuple[str, ...]
    abi_input_types: tuple[TypeId, ...]
    full_input_types: tuple[TypeId | None, ...] | None = None
    """ Input types resolved from the AST.  None if the entry could not be correlated with the AST """


@dataclass(frozen=True)
class EventEntry:
    """Resolved event entry of an ABI"""

    name: str
    signature: str
    topic: bytes
    anonymous: bool
    abi: dict[str, Any]
    param_names: tuple[str, ...]
    indexed: tuple[bool, ...]
    abi_types: tuple[TypeId, ...]
    full_types: tuple[TypeId | None, ...] | None = None
    """ Parameter types resolved from the AST.  None if the entry could not be correlated with the AST """

    declaration_id: int | None = None
    """ AST id of the EventDefinition.  Identical for an event inherited by several contracts """

    @property
    def indexed_count(self) -> int:
        """Number of parameters stored in log topics"""
        return sum(self.indexed)

    def origin_key(self) -> tuple:
        """Key identifying where an event was declared, used to report inherited events once"""
        if self.declaration_id is not None:
            return ("ast", self.declaration_id)
        return ("abi", self.signature, self.indexed, self.anonymous)


@dataclass(eq=False)
class ContractTypeInfo:
    """
    Resolved identity of a contract.  Holds the ABI entries, the correlated AST ContractDefinition if there is
    one, and the linearized inheritance chain.
    """

    name: str
    abi: list[dict[str, Any]]
    contract_kind: str = "contract"

    ast_node: dict[str, Any] | None = None
    """ AST ContractDefinition correlated with this contract.  None if the AST is missing or unusable """

    ancestors: tuple[str, ...] = ()
    """ Linearized inheritance chain, most-derived first.  Includes the contract itself """

    ancestor_ids: tuple[int, ...] = ()
    """ AST ids of the linearized inheritance chain, most-derived first """

    bytecode: str | None = None
    deployed_bytecode: str | None = None

    functions: dict[bytes, FunctionEntry] = field(default_factory=dict)
    """ Mapping from 4 byte selectors to function entries """

    events: dict[bytes, list[EventEntry]] = field(default_factory=dict)
    """ Mapping from topic0 to event entries.  Multiple entries share a topic if indexing differs """

    anonymous_events: list[EventEntry] = field(default_factory=list)
    constructor: FunctionEntry | None = None
    fallback: FunctionEntry | None = None
    receive: FunctionEntry | None = None

    @property
    def full_mode_available(self) -> bool:
        """True if the contract carries AST-resolved declarations"""
        return self.ast_node is not None

    @property
    def ast_id(self) -> int | None:
        """AST id of the ContractDefinition"""
        return self.ast_node["id"] if self.ast_node else None

    def __repr__(self) -> str:
        return f"ContractTypeInfo({self.name}, full_mode={self.full_mode_available})"


# ---------------------------------------------------------------
#   Storage Layout
# ---------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SlotDescriptor:
    """
    Location of a value in storage.  ``offset`` is counted in bytes from the low-order end of the slot.
    For dynamic values, ``slot`` is the seed for computing where the data lives.
    """

    slot: int
    offset: int
    length: int
    indirection: Indirection = Indirection.direct

    def shifted(self, base_slot: int) -> "SlotDescriptor":
        """Returns a descriptor moved by ``base_slot`` slots, used to place struct members"""
        return SlotDescriptor(self.slot + base_slot, self.offset, self.length, self.indirection)


@dataclass(frozen=True, slots=True)
class MemberAllocation:
    """Location of a struct member relative to the start of the struct"""

    name: str
    type_id: TypeId
    pointer: SlotDescriptor


@dataclass(frozen=True, slots=True)
class StructLayout:
    """Storage layout of a struct type"""

    members: tuple[MemberAllocation, ...]
    slots: int


@dataclass(frozen=True, slots=True)
class StorageSize:
    """
    Space a type occupies in storage.  Value types pack into ``size`` bytes.  Whole slot types (structs, static
    arrays and dynamic types) always start a new slot and occupy ``slots`` full slots.
    """

    size: int
    slots: int
    whole_slots: bool
    indirection: Indirection = Indirection.direct


@dataclass(frozen=True, slots=True)
class StateVariableAllocation:
    """Location of a state variable"""

    name: str
    defining_contract: str
    type_id: TypeId
    pointer: SlotDescriptor


@dataclass(frozen=True)
class StorageAllocation:
    """Storage layout of a contract.  Computed once and never modified"""

    contract_name: str
    variables: tuple[StateVariableAllocation, ...]
    struct_layouts: dict[TypeId, StructLayout] = field(default_factory=dict)
    storage_sizes: dict[TypeId, StorageSize] = field(default_factory=dict)
    """ Sizes of every type reachable from the state variables, including mapping values and array elements """

    def __getitem__(self, name: str) -> StateVariableAllocation:
        for variable in self.variables:
            if variable.name == name:
                return variable
        raise KeyError(name)

    def __contains__(self, name: object) -> bool:
        return any(variable.name == name for variable in self.variables)

    def names(self) -> list[str]:
        """Returns variable names in allocation order"""
        return [variable.name for variable in self.variables]


# ---------------------------------------------------------------
#   Decoding Outputs
# ---------------------------------------------------------------


@dataclass(frozen=True)
class DecodedTransaction:
    """Decoded transaction calldata along with what it was matched against"""

    kind: DecodingKind
    mode: DecodingMode
    data: bytes
    selector: bytes = b""
    contract: ContractTypeInfo | None = None
    """ Contract the calldata was decoded against.  None for unknown calldata """

    function: FunctionEntry | None = None
    arguments: tuple[tuple[str, Result], ...] = ()
    transaction_hash: str | None = None
    to_address: ChecksumAddress | None = None

    @property
    def name(self) -> str | None:
        """Name of the decoded function"""
        return self.function.name if self.function else None

    def argument(self, name: str) -> Result:
        """Returns a decoded argument by name"""
        for arg_name, value in self.arguments:
            if arg_name == name:
                return value
        raise KeyError(name)


@dataclass(frozen=True)
class LogDecoding:
    """One interpretation of a log"""

    kind: DecodingKind
    mode: DecodingMode
    event: EventEntry
    contract: ContractTypeInfo
    arguments: tuple[tuple[str, Result], ...]

    @property
    def name(self) -> str:
        """Name of the decoded event"""
        return self.event.name

    def argument(self, name: str) -> Result:
        """Returns a decoded argument by name"""
        for arg_name, value in self.arguments:
            if arg_name == name:
                return value
        raise KeyError(name)


@dataclass(frozen=True)
class DecodedLog:
    """
    All interpretations of a single log.  A log whose topic0 matched no known event has no decodings, and is only
    returned from event queries when ``extra`` is requested
    """

    address: ChecksumAddress | None
    topics: tuple[bytes, ...]
    data: bytes
    decodings: tuple[LogDecoding, ...] = ()
    contract: ContractTypeInfo | None = None
    """ Contract identified at the emitting address, if any """

    block_number: int | None = None
    transaction_hash: str | None = None
    log_index: int | None = None

    @property
    def decoded(self) -> bool:
        """False for raw entries"""
        return len(self.decodings) > 0


@dataclass(frozen=True)
class StateVariable:
    """Decoded state variable"""

    name: str
    defining_class: str
    value: Result


@dataclass(frozen=True)
class ContractState:
    """Account-level state of a contract instance"""

    class_name: str
    address: ChecksumAddress
    code: bytes
    balance: int
    nonce: int


@dataclass
class EventOptions:
    """Filters for event queries"""

    address: str | None = None
    """ Only return logs emitted by this address """

    name: str | None = None
    """ Only return decodings of events with this name """

    from_block: BlockIdentifier = "latest"
    to_block: BlockIdentifier = "latest"

    extra: bool = False
    """ If True, logs matching no known event are returned as raw, undecoded entries """
