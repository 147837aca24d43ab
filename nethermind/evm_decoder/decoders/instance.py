import logging
import threading
from dataclasses import replace
from typing import Any

from eth_typing import BlockIdentifier, ChecksumAddress
from eth_utils import to_checksum_address

from nethermind.evm_decoder.decoding import StorageReader, StorageRequest, mapping_slot, normalize_key
from nethermind.evm_decoder.exceptions import InvalidMappingKeyError, UnknownVariableError
from nethermind.evm_decoder.types import (
    ContractState,
    DecodedLog,
    DecodedTransaction,
    EventOptions,
    MappingType,
    Result,
    StateVariable,
    StorageAllocation,
)
from nethermind.evm_decoder.utils import to_bytes

from .contract import ContractDecoder
from .wire import EventStream

root_logger = logging.getLogger("nethermind")
logger = root_logger.getChild("evm_decoder").getChild("instance")

KeyPath = tuple[str, tuple[Any, ...]]


class ContractInstanceDecoder:
    """
    Decoder bound to a deployed contract.  Adds state variable decoding to the ContractDecoder it was created from.

    Mapping entries cannot be enumerated from storage.  Entries are only decoded once their keys are registered
    with :meth:`watch_mapping_key`.
    """

    contract_decoder: ContractDecoder
    address: ChecksumAddress

    _watched: dict[KeyPath, int]
    """ Watched key paths, mapped to the slot holding the watched entry.  Ordered by registration """

    _watch_lock: threading.Lock

    def __init__(self, contract_decoder: ContractDecoder, address: str):
        self.contract_decoder = contract_decoder
        self.address = to_checksum_address(address)
        self._watched = {}
        self._watch_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"ContractInstanceDecoder({self.contract_decoder.name} at {self.address})"

    def init(self) -> "ContractInstanceDecoder":
        """
        Initializes the underlying ContractDecoder.  Artifacts without deployed bytecode cannot be identified by
        code, so the instance registers its address with the WireDecoder instead.
        """
        self.contract_decoder.init()
        contract = self.contract_decoder.contract
        wire = self.contract_decoder.wire
        if not contract.deployed_bytecode:
            code = to_bytes(wire.provider.get_code(self.address))
            if not code:
                logger.warning(f"No code deployed at {self.address}")
            wire.register_address(self.address, contract)
        elif wire.identify(self.address) is not contract:
            logger.warning(f"Code at {self.address} does not match the deployed bytecode of {contract.name}")
        return self

    @property
    def wire(self):
        """Project wide WireDecoder"""
        return self.contract_decoder.wire

    # ---------------------------------------------------------------
    #   State Variables
    # ---------------------------------------------------------------

    def variables(self, block: BlockIdentifier = "latest") -> dict[str, Result]:
        """
        Decodes every state variable of the contract.  Mappings only contain watched entries.

        :param block: Block to read storage at
        :raises ContractBeingDecodedHasNoNodeError: If the contract has no usable AST
        """
        return {variable.name: variable.value for variable in self.state_variables(block)}

    def state_variables(self, block: BlockIdentifier = "latest") -> list[StateVariable]:
        """Decodes every state variable, along with the contract that declares it"""
        allocation = self.contract_decoder.storage_allocation()
        reader = StorageReader(self.wire.provider, self.address, block)
        watched = self._watched_snapshot()

        state_variables = []
        for variable in allocation.variables:
            result = self._decode_variable(allocation, variable.name, reader, watched)
            state_variables.append(StateVariable(variable.name, variable.defining_contract, result))

        logger.debug(f"Decoded {len(state_variables)} variables of {self.address} with {reader.reads} storage reads")
        return state_variables

    def variable(self, name: str, block: BlockIdentifier = "latest") -> Result:
        """
        Decodes a single state variable

        :raises UnknownVariableError: If the contract has no variable with the name
        :raises ContractBeingDecodedHasNoNodeError: If the contract has no usable AST
        """
        allocation = self.contract_decoder.storage_allocation()
        if name not in allocation:
            raise UnknownVariableError(f"{self.contract_decoder.name} has no state variable {name}")

        reader = StorageReader(self.wire.provider, self.address, block)
        return self._decode_variable(allocation, name, reader, self._watched_snapshot())

    def _decode_variable(
        self,
        allocation: StorageAllocation,
        name: str,
        reader: StorageReader,
        watched: list[KeyPath],
    ) -> Result:
        request = StorageRequest(
            allocation=allocation,
            contract_name=self.contract_decoder.name,
            variable=name,
            reader=reader,
            watched_keys=tuple(keys for variable, keys in watched if variable == name),
        )
        return self.wire.core.decode(request).arguments[0][1]

    # ---------------------------------------------------------------
    #   Watched Mapping Keys
    # ---------------------------------------------------------------

    def watch_mapping_key(self, name: str, *keys: Any) -> int:
        """
        Registers a mapping entry to be decoded by :meth:`variables` and :meth:`variable`.  Nested mappings take
        one key per level, ie ``watch_mapping_key("allowances", owner, spender)``.  Watching an entry twice has
        no effect.

        :param name: Name of a mapping state variable
        :param keys: Keys of the entry
        :return: Slot holding the watched entry
        :raises InvalidMappingKeyError: If the variable is not a mapping, too many keys are given, or a key is not a
            valid value of its key type
        """
        key_path, slot = self._resolve_key_path(name, keys)
        with self._watch_lock:
            if key_path not in self._watched:
                self._watched[key_path] = slot
                logger.debug(f"Watching {name}{''.join(f'[{key}]' for key in key_path[1])} at slot {hex(slot)}")
        return slot

    def unwatch_mapping_key(self, name: str, *keys: Any):
        """Stops decoding a watched mapping entry, and every entry nested under it"""
        (variable, key_path), _ = self._resolve_key_path(name, keys)
        with self._watch_lock:
            for watched_variable, watched_keys in list(self._watched):
                if watched_variable == variable and watched_keys[: len(key_path)] == key_path:
                    del self._watched[(watched_variable, watched_keys)]

    def watched_keys(self) -> list[KeyPath]:
        """Watched key paths, in registration order"""
        return self._watched_snapshot()

    def _watched_snapshot(self) -> list[KeyPath]:
        with self._watch_lock:
            return list(self._watched)

    def _resolve_key_path(self, name: str, keys: tuple[Any, ...]) -> tuple[KeyPath, int]:
        allocation = self.contract_decoder.storage_allocation()
        if name not in allocation:
            raise UnknownVariableError(f"{self.contract_decoder.name} has no state variable {name}")
        if not keys:
            raise InvalidMappingKeyError("At least one mapping key is required")

        type_table = self.wire.type_table
        variable = allocation[name]
        type_id, slot = variable.type_id, variable.pointer.slot
        normalized = []
        for key in keys:
            definition = type_table[type_id]
            if not isinstance(definition, MappingType):
                prefix = name + "".join(f"[{k}]" for k in normalized)
                raise InvalidMappingKeyError(f"{prefix} is a {type_table.type_string(type_id)}, not a mapping")
            key_value = normalize_key(type_table, definition.key, key)
            slot = mapping_slot(type_table, definition.key, key_value, slot)
            normalized.append(key_value)
            type_id = definition.value

        return (name, tuple(normalized)), slot

    # ---------------------------------------------------------------
    #   Account State, Transactions & Logs
    # ---------------------------------------------------------------

    def state(self, block: BlockIdentifier = "latest") -> ContractState:
        """Returns the code, balance and nonce of the instance"""
        provider = self.wire.provider
        return ContractState(
            class_name=self.contract_decoder.name,
            address=self.address,
            code=to_bytes(provider.get_code(self.address, block)),
            balance=provider.get_balance(self.address, block),
            nonce=provider.get_transaction_count(self.address, block),
        )

    def decode_transaction(self, transaction: dict[str, Any] | str) -> DecodedTransaction:
        """Decodes a transaction against every contract of the project, preferring this contract"""
        return self.contract_decoder.decode_transaction(transaction)

    def decode_log(self, log: dict[str, Any]) -> DecodedLog:
        """Decodes a log against the events of every contract of the project"""
        return self.contract_decoder.decode_log(log)

    def events(self, options: EventOptions | None = None) -> EventStream:
        """Returns a stream of decoded logs.  Defaults to logs emitted by this instance"""
        options = options or EventOptions()
        if options.address is None:
            options = replace(options, address=self.address)
        return self.contract_decoder.events(options)

    def abify_calldata_decoding(self, decoding: DecodedTransaction) -> DecodedTransaction:
        """Projects a full mode transaction decoding to ABI mode"""
        return self.contract_decoder.abify_calldata_decoding(decoding)

    def abify_log_decoding(self, decoding):
        """Projects a full mode log decoding to ABI mode"""
        return self.contract_decoder.abify_log_decoding(decoding)
