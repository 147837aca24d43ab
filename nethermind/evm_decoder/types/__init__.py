from .decoding import (
    ContractState,
    ContractTypeInfo,
    DecodedLog,
    DecodedTransaction,
    DecoderConfig,
    DecoderState,
    DecodingKind,
    EventEntry,
    EventOptions,
    FunctionEntry,
    Indirection,
    LogDecoding,
    MemberAllocation,
    SlotDescriptor,
    StateVariable,
    StateVariableAllocation,
    StorageAllocation,
    StorageSize,
    StructLayout,
)
from .definitions import (
    ArrayType,
    ContractType,
    ElementaryKind,
    ElementaryType,
    EnumType,
    MappingType,
    StructType,
    TupleType,
    TypeDefinition,
    TypeId,
    TypeTable,
)
from .results import (
    ContainerKind,
    ContainerResult,
    DecodingMode,
    ErrorKind,
    ErrorResult,
    Result,
    ValueResult,
)
