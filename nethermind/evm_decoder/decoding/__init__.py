from .abi_codec import AbiCodec
from .allocation import StorageAllocator
from .core import (
    CalldataRequest,
    DecodedUnit,
    DecodingCore,
    DecodingRequest,
    LogRequest,
    StorageRequest,
)
from .formatter import has_errors, result_table, result_to_python, to_abi_mode
from .resolver import ResolvedProject, TypeResolver
from .storage_codec import StorageCodec, StorageReader, mapping_slot, normalize_key
