import logging
import threading
from typing import Any

from nethermind.evm_decoder.decoding import StorageAllocator
from nethermind.evm_decoder.exceptions import (
    ContractAllocationFailedError,
    ContractBeingDecodedHasNoNodeError,
    ContractNotFoundError,
)
from nethermind.evm_decoder.types import (
    ContractTypeInfo,
    DecodedLog,
    DecodedTransaction,
    DecoderState,
    EventOptions,
    LogDecoding,
    StorageAllocation,
)

from .wire import EventStream, WireDecoder

root_logger = logging.getLogger("nethermind")
logger = root_logger.getChild("evm_decoder").getChild("contract")


class ContractDecoder:
    """
    Decoder scoped to a single contract type.  Computes the contract's storage layout on :meth:`init`, and delegates
    transaction and log decoding to the project's WireDecoder, preferring this contract's entries.

    If the contract has no AST, or its layout cannot be computed, the decoder is ``degraded``: decodings of its own
    entries are made in ABI mode, and state variables are unavailable.
    """

    wire: WireDecoder
    contract: ContractTypeInfo
    state: DecoderState

    allocation: StorageAllocation | None
    """ Storage layout of the contract.  None until initialized, and for degraded decoders """

    _init_lock: threading.Lock

    def __init__(self, wire: WireDecoder, contract: ContractTypeInfo):
        self.wire = wire
        self.contract = contract
        self.state = DecoderState.uninitialized
        self.allocation = None
        self._init_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"ContractDecoder({self.contract.name}, state={self.state.value})"

    @property
    def name(self) -> str:
        """Name of the contract"""
        return self.contract.name

    def init(self) -> "ContractDecoder":
        """
        Computes the storage layout of the contract.  Calling init more than once has no effect.  Allocation
        failures are logged, and move the decoder to the ``degraded`` state instead of raising.
        """
        with self._init_lock:
            if self.state in (DecoderState.ready, DecoderState.degraded):
                return self

            self.state = DecoderState.initializing
            if not self.contract.full_mode_available:
                logger.warning(f"No AST available for {self.contract.name}.  Decoding in ABI mode only")
                self.state = DecoderState.degraded
                return self

            try:
                self.allocation = StorageAllocator(self.wire.project).allocate(self.contract)
            except ContractAllocationFailedError as exc:
                logger.warning(f"Could not compute storage layout of {self.contract.name}: {exc}")
                self.state = DecoderState.degraded
                return self

            self.state = DecoderState.ready
            logger.info(f"Initialized ContractDecoder for {self.contract.name}")
            return self

    @property
    def degraded(self) -> bool:
        """True if full mode decoding is unavailable"""
        self.init()
        return self.state == DecoderState.degraded

    def storage_allocation(self) -> StorageAllocation:
        """
        Returns the storage layout of the contract

        :raises ContractBeingDecodedHasNoNodeError: If the decoder is degraded
        """
        self.init()
        if self.allocation is None:
            raise ContractBeingDecodedHasNoNodeError(self.contract.name)
        return self.allocation

    def _candidates(self) -> list[ContractTypeInfo]:
        """Every contract of the project, with this contract preferred"""
        return [self.contract, *(contract for contract in self.wire.contracts if contract is not self.contract)]

    def _abi_only(self) -> tuple[ContractTypeInfo, ...]:
        return (self.contract,) if self.degraded else ()

    def decode_transaction(self, transaction: dict[str, Any] | str) -> DecodedTransaction:
        """
        Decodes a transaction against every contract of the project.  Functions of this contract take precedence,
        and transactions to addresses that cannot be identified are assumed to be sent to this contract.
        """
        return self.wire._decode_transaction(  # pylint: disable=protected-access
            transaction, self._candidates(), receiver=self.contract, abi_only=self._abi_only()
        )

    def decode_log(self, log: dict[str, Any]) -> DecodedLog:
        """Decodes a log against the events of every contract of the project, listing this contract's first"""
        return self.wire._decode_log(log, self._candidates(), self._abi_only())  # pylint: disable=protected-access

    def events(self, options: EventOptions | None = None) -> EventStream:
        """Returns a stream of decoded logs"""
        return EventStream(self.wire, options or EventOptions(), self._candidates(), self._abi_only())

    def abify_calldata_decoding(self, decoding: DecodedTransaction) -> DecodedTransaction:
        """Projects a full mode transaction decoding to ABI mode"""
        return self.wire.abify_calldata_decoding(decoding)

    def abify_log_decoding(self, decoding: LogDecoding) -> LogDecoding:
        """Projects a full mode log decoding to ABI mode"""
        return self.wire.abify_log_decoding(decoding)

    def deployed_address(self) -> str | None:
        """Address the contract was deployed to on the provider's network, read from the artifact's ``networks``"""
        return self.wire.artifact(self.contract.name).address_for_network(self.wire.provider.get_network_id())

    def for_instance(self, address: str | None = None) -> "ContractInstanceDecoder":
        """
        Returns a decoder for an instance of this contract

        :param address: Address of the instance.  Defaults to the address the artifact was deployed to on the
            provider's network
        :raises ContractNotFoundError: If no address is supplied and the artifact has no deployment on the network
        """
        # pylint: disable=import-outside-toplevel
        from .instance import ContractInstanceDecoder

        if address is None:
            address = self.deployed_address()
            if address is None:
                raise ContractNotFoundError(
                    f"{self.contract.name} has no deployment on network {self.wire.provider.get_network_id()}"
                )

        return ContractInstanceDecoder(self, address).init()
