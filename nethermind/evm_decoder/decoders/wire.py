import logging
import re
import threading
from dataclasses import replace
from typing import Any, Collection, Iterator, Sequence

from eth_typing import ChecksumAddress
from eth_utils import to_checksum_address

from nethermind.evm_decoder.artifacts import ContractArtifact
from nethermind.evm_decoder.decoding import (
    CalldataRequest,
    DecodingCore,
    LogRequest,
    ResolvedProject,
    TypeResolver,
    to_abi_mode,
)
from nethermind.evm_decoder.provider import ChainProvider
from nethermind.evm_decoder.types import (
    ContractTypeInfo,
    DecodedLog,
    DecodedTransaction,
    DecoderConfig,
    DecodingKind,
    DecodingMode,
    EventEntry,
    EventOptions,
    FunctionEntry,
    LogDecoding,
    TypeTable,
)
from nethermind.evm_decoder.utils import bytecode_pattern, matches_code, to_bytes, to_hex

root_logger = logging.getLogger("nethermind")
logger = root_logger.getChild("evm_decoder").getChild("wire")


def _initial_mode(contract: ContractTypeInfo, abi_only: Collection[ContractTypeInfo]) -> DecodingMode:
    return DecodingMode.abi if any(contract is excluded for excluded in abi_only) else DecodingMode.full


class WireDecoder:
    """
    Project wide decoder.  Resolves every supplied artifact into a single TypeTable, and decodes transactions and
    logs against all of them.

    When the destination of a transaction or the emitter of a log can be identified by comparing its on-chain
    code with the artifacts' deployed bytecode, decoding is scoped to the identified contract.
    """

    provider: ChainProvider
    config: DecoderConfig
    artifacts: list[ContractArtifact]
    project: ResolvedProject
    core: DecodingCore

    _deployed_patterns: list[tuple[ContractTypeInfo, re.Pattern]]
    _creation_patterns: list[tuple[ContractTypeInfo, re.Pattern]]

    _identified: dict[ChecksumAddress, ContractTypeInfo | None]
    """ Cache of contract identification by address.  None is cached for addresses that matched no artifact """

    _lock: threading.Lock

    def __init__(
        self,
        artifacts: Sequence[ContractArtifact],
        provider: ChainProvider,
        config: DecoderConfig | None = None,
    ):
        self.provider = provider
        self.config = config or DecoderConfig()
        self.artifacts = list(artifacts)
        self.project = TypeResolver(self.artifacts).resolve()
        self.core = DecodingCore(self.project.type_table, self.config)

        self._deployed_patterns, self._creation_patterns = [], []
        for contract in self.project.contracts:
            if contract.deployed_bytecode and (pattern := bytecode_pattern(contract.deployed_bytecode)):
                self._deployed_patterns.append((contract, pattern))
            if contract.bytecode and (pattern := bytecode_pattern(contract.bytecode, prefix=True)):
                self._creation_patterns.append((contract, pattern))

        self._identified = {}
        self._lock = threading.Lock()
        logger.info(f"Initialized WireDecoder for {len(self.contracts)} contracts")

    @property
    def contracts(self) -> list[ContractTypeInfo]:
        """Contracts of the project, in the order their artifacts were supplied"""
        return self.project.contracts

    @property
    def type_table(self) -> TypeTable:
        """TypeTable shared by every decoder of the project"""
        return self.project.type_table

    def contract(self, name: str) -> ContractTypeInfo:
        """
        Returns a contract by name

        :raises KeyError: If no artifact has the name
        """
        contract = self.project.contract(name)
        if contract is None:
            raise KeyError(f"No artifact named {name}")
        return contract

    def artifact(self, name: str) -> ContractArtifact:
        """
        Returns the artifact a contract was resolved from

        :raises KeyError: If no artifact has the name
        """
        for artifact in self.artifacts:
            if artifact.contract_name == name:
                return artifact
        raise KeyError(f"No artifact named {name}")

    # ---------------------------------------------------------------
    #   Contract Identification
    # ---------------------------------------------------------------

    def identify(self, address: str) -> ContractTypeInfo | None:
        """
        Identifies the contract deployed at an address by comparing its code with the deployed bytecode of every
        artifact.  Compiler metadata and library link placeholders are ignored.  Results are cached.
        """
        address = to_checksum_address(address)
        with self._lock:
            if address in self._identified:
                return self._identified[address]

        code = to_bytes(self.provider.get_code(address))
        identified = next(
            (contract for contract, pattern in self._deployed_patterns if matches_code(pattern, code)), None
        )
        if identified:
            logger.debug(f"Identified {identified.name} at {address}")

        with self._lock:
            return self._identified.setdefault(address, identified)

    def register_address(self, address: str, contract: ContractTypeInfo):
        """Marks an address as an instance of a contract, used when the contract cannot be identified by code"""
        address = to_checksum_address(address)
        with self._lock:
            self._identified[address] = contract
        logger.debug(f"Registered {address} as an instance of {contract.name}")

    # ---------------------------------------------------------------
    #   Transactions
    # ---------------------------------------------------------------

    def decode_transaction(self, transaction: dict[str, Any] | str) -> DecodedTransaction:
        """
        Decodes the calldata of a transaction.  Contract creations are matched against the creation code of each
        artifact, and their constructor arguments decoded.

        :param transaction: Transaction dict with ``input`` (or ``data``) and ``to`` keys, or a transaction hash
            to fetch from the provider
        """
        return self._decode_transaction(transaction, self.contracts)

    def _decode_transaction(
        self,
        transaction: dict[str, Any] | str,
        candidates: Sequence[ContractTypeInfo],
        receiver: ContractTypeInfo | None = None,
        abi_only: Collection[ContractTypeInfo] = (),
    ) -> DecodedTransaction:
        """
        :param candidates: Contracts to match the calldata against, in order of preference
        :param receiver: Contract presumed to be deployed at the destination if it cannot be identified by code
        :param abi_only: Contracts decoded in ABI mode only
        """
        if isinstance(transaction, str):
            transaction = self.provider.get_transaction(transaction)

        data = to_bytes(transaction.get("input", transaction.get("data")))
        tx_hash = transaction.get("hash")
        provenance = {
            "transaction_hash": to_hex(to_bytes(tx_hash)) if tx_hash is not None else None,
            "to_address": to_checksum_address(transaction["to"]) if transaction.get("to") else None,
        }

        if provenance["to_address"] is None:
            return self._decode_creation(data, candidates, abi_only, provenance)

        identified = self.identify(provenance["to_address"])
        if identified is not None and identified in candidates:
            receiver, candidates = identified, [identified]
        elif receiver is None and len(candidates) == 1:
            receiver = candidates[0]

        if len(data) >= 4:
            selector = data[:4]
            for contract in candidates:
                entry = contract.functions.get(selector)
                if entry is not None:
                    return self._decode_call(contract, entry, data[4:], data, abi_only, provenance)
        else:
            selector = b""

        # Fallback & receive are only decoded when the receiving contract is known
        if receiver is not None:
            if not data and receiver.receive is not None:
                return self._decode_call(receiver, receiver.receive, b"", data, abi_only, provenance)
            if receiver.fallback is not None:
                return self._decode_call(receiver, receiver.fallback, b"", data, abi_only, provenance)

        logger.debug(f"No function matches selector 0x{selector.hex()}")
        return DecodedTransaction(
            kind=DecodingKind.unknown, mode=DecodingMode.abi, data=data, selector=selector, **provenance
        )

    def _decode_creation(
        self,
        data: bytes,
        candidates: Sequence[ContractTypeInfo],
        abi_only: Collection[ContractTypeInfo],
        provenance: dict[str, Any],
    ) -> DecodedTransaction:
        hex_data = data.hex()
        for contract, pattern in self._creation_patterns:
            if contract not in candidates or (match := pattern.match(hex_data)) is None:
                continue

            arguments = data[len(match.group(1)) // 2 :]
            if contract.constructor is None:
                return DecodedTransaction(
                    kind=DecodingKind.constructor, mode=DecodingMode.abi, data=data, contract=contract, **provenance
                )
            return self._decode_call(contract, contract.constructor, arguments, data, abi_only, provenance)

        logger.debug("Contract creation matched no known creation code")
        return DecodedTransaction(kind=DecodingKind.unknown, mode=DecodingMode.abi, data=data, **provenance)

    def _decode_call(
        self,
        contract: ContractTypeInfo,
        entry: FunctionEntry,
        arguments: bytes,
        data: bytes,
        abi_only: Collection[ContractTypeInfo],
        provenance: dict[str, Any],
    ) -> DecodedTransaction:
        # pylint: disable=too-many-arguments
        unit = self.core.decode(CalldataRequest(entry, arguments, _initial_mode(contract, abi_only)))
        return DecodedTransaction(
            kind=entry.kind,
            mode=unit.mode,
            data=data,
            selector=entry.selector,
            contract=contract,
            function=entry,
            arguments=unit.arguments,
            **provenance,
        )

    # ---------------------------------------------------------------
    #   Logs
    # ---------------------------------------------------------------

    def decode_log(self, log: dict[str, Any]) -> DecodedLog:
        """
        Decodes a log against every matching event.  Logs can have several interpretations when artifacts share
        event signatures.  Interpretations are returned in artifact order, and an event inherited by several
        contracts is reported once.  If the emitting contract is identified and declares a matching event,
        only its interpretations are returned.

        :param log: Log dict with ``address``, ``topics`` and ``data`` keys, as returned by ``eth_getLogs``
        """
        return self._decode_log(log, self.contracts)

    def _decode_log(
        self,
        log: dict[str, Any],
        candidates: Sequence[ContractTypeInfo],
        abi_only: Collection[ContractTypeInfo] = (),
    ) -> DecodedLog:
        address = to_checksum_address(log["address"]) if log.get("address") else None
        topics = tuple(to_bytes(topic) for topic in log.get("topics", []))
        data = to_bytes(log.get("data"))

        identified = self.identify(address) if address else None
        matches = self._matching_events(topics, candidates)
        if identified is not None and any(contract is identified for contract, _ in matches):
            matches = [(contract, event) for contract, event in matches if contract is identified]

        decodings, seen = [], set()
        for contract, event in matches:
            if event.origin_key() in seen:
                continue

            unit = self.core.decode(LogRequest(event, topics, data, _initial_mode(contract, abi_only)))
            if event.anonymous and unit.has_errors:
                continue

            seen.add(event.origin_key())
            decodings.append(
                LogDecoding(
                    kind=DecodingKind.anonymous if event.anonymous else DecodingKind.event,
                    mode=unit.mode,
                    event=event,
                    contract=contract,
                    arguments=unit.arguments,
                )
            )

        tx_hash = log.get("transactionHash")
        return DecodedLog(
            address=address,
            topics=topics,
            data=data,
            decodings=tuple(decodings),
            contract=identified,
            block_number=log.get("blockNumber"),
            transaction_hash=to_hex(to_bytes(tx_hash)) if tx_hash is not None else None,
            log_index=log.get("logIndex"),
        )

    @staticmethod
    def _matching_events(
        topics: tuple[bytes, ...], candidates: Sequence[ContractTypeInfo]
    ) -> list[tuple[ContractTypeInfo, EventEntry]]:
        matches = []
        if topics:
            for contract in candidates:
                matches.extend(
                    (contract, event)
                    for event in contract.events.get(topics[0], [])
                    if event.indexed_count == len(topics) - 1
                )
        if matches:
            return matches

        # Anonymous events are only tried for logs no named event matches
        for contract in candidates:
            matches.extend(
                (contract, event) for event in contract.anonymous_events if event.indexed_count == len(topics)
            )
        return matches

    def events(self, options: EventOptions | None = None) -> "EventStream":
        """
        Returns a stream of decoded logs.  Logs are fetched from the provider each time the stream is iterated.

        :param options: Address, block range and event name filters.  If ``extra`` is set, logs that match no event
            are included as undecoded entries
        """
        return EventStream(self, options or EventOptions(), self.contracts)

    # ---------------------------------------------------------------
    #   ABI Projection
    # ---------------------------------------------------------------

    def abify_calldata_decoding(self, decoding: DecodedTransaction) -> DecodedTransaction:
        """Projects a full mode transaction decoding to ABI mode"""
        return replace(
            decoding,
            mode=DecodingMode.abi,
            arguments=tuple((name, to_abi_mode(value, self.type_table)) for name, value in decoding.arguments),
        )

    def abify_log_decoding(self, decoding: LogDecoding) -> LogDecoding:
        """Projects a full mode log decoding to ABI mode"""
        return replace(
            decoding,
            mode=DecodingMode.abi,
            arguments=tuple((name, to_abi_mode(value, self.type_table)) for name, value in decoding.arguments),
        )


class EventStream:
    """
    Restartable iterable of decoded logs.  Every iteration issues a fresh ``get_logs`` query, so logs emitted
    between iterations are picked up.
    """

    wire: WireDecoder
    options: EventOptions
    candidates: Sequence[ContractTypeInfo]
    abi_only: Collection[ContractTypeInfo]

    def __init__(
        self,
        wire: WireDecoder,
        options: EventOptions,
        candidates: Sequence[ContractTypeInfo],
        abi_only: Collection[ContractTypeInfo] = (),
    ):
        self.wire = wire
        self.options = options
        self.candidates = candidates
        self.abi_only = abi_only

    def filter_params(self) -> dict[str, Any]:
        """``eth_getLogs`` filter for the stream's options"""
        params: dict[str, Any] = {"fromBlock": self.options.from_block, "toBlock": self.options.to_block}
        if self.options.address:
            params["address"] = to_checksum_address(self.options.address)
        return params

    def __iter__(self) -> Iterator[DecodedLog]:
        logs = self.wire.provider.get_logs(self.filter_params())
        logger.debug(f"Decoding {len(logs)} logs")

        for log in logs:
            decoded = self.wire._decode_log(log, self.candidates, self.abi_only)  # pylint: disable=protected-access
            if self.options.name is not None:
                decoded = replace(
                    decoded,
                    decodings=tuple(decoding for decoding in decoded.decodings if decoding.name == self.options.name),
                )
                if not decoded.decodings and decoded.topics and self._is_known(decoded.topics[0]):
                    # Recognized event with another name
                    continue

            if decoded.decoded or self.options.extra:
                yield decoded

    def _is_known(self, topic: bytes) -> bool:
        return any(topic in contract.events for contract in self.candidates)
