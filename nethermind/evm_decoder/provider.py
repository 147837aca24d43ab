import logging
from typing import Any, Protocol, runtime_checkable

from eth_typing import BlockIdentifier
from eth_utils import to_checksum_address
from web3 import Web3

root_logger = logging.getLogger("nethermind")
logger = root_logger.getChild("evm_decoder").getChild("provider")


@runtime_checkable
class ChainProvider(Protocol):
    """
    Chain data consumed by the decoders.  Implementations may be slow or raise.  Exceptions are propagated to
    callers unchanged, and decoders never retry.
    """

    def get_code(self, address: str, block: BlockIdentifier = "latest") -> bytes:
        """Returns the runtime code at an address"""
        raise NotImplementedError()

    def get_storage_at(self, address: str, slot: int, block: BlockIdentifier = "latest") -> bytes:
        """Returns the 32 byte word stored in a slot"""
        raise NotImplementedError()

    def get_transaction(self, transaction_hash: str) -> dict[str, Any]:
        """Returns a transaction by hash"""
        raise NotImplementedError()

    def get_logs(self, filter_params: dict[str, Any]) -> list[dict[str, Any]]:
        """Returns logs matching an eth_getLogs filter"""
        raise NotImplementedError()

    def get_balance(self, address: str, block: BlockIdentifier = "latest") -> int:
        """Returns the wei balance of an address"""
        raise NotImplementedError()

    def get_transaction_count(self, address: str, block: BlockIdentifier = "latest") -> int:
        """Returns the nonce of an address"""
        raise NotImplementedError()

    def get_network_id(self) -> str:
        """Returns the network id used to look up deployed addresses in artifacts"""
        raise NotImplementedError()


class Web3Provider:
    """Adapts a :class:`~web3.Web3` connection to the ChainProvider protocol"""

    w3: Web3

    def __init__(self, w3: Web3):
        self.w3 = w3

    def get_code(self, address: str, block: BlockIdentifier = "latest") -> bytes:
        return bytes(self.w3.eth.get_code(to_checksum_address(address), block_identifier=block))

    def get_storage_at(self, address: str, slot: int, block: BlockIdentifier = "latest") -> bytes:
        word = bytes(self.w3.eth.get_storage_at(to_checksum_address(address), slot, block_identifier=block))
        return word.rjust(32, b"\x00")

    def get_transaction(self, transaction_hash: str) -> dict[str, Any]:
        return dict(self.w3.eth.get_transaction(transaction_hash))  # type: ignore[arg-type]

    def get_logs(self, filter_params: dict[str, Any]) -> list[dict[str, Any]]:
        logger.debug(f"Querying logs with filter {filter_params}")
        return [dict(log) for log in self.w3.eth.get_logs(filter_params)]  # type: ignore[arg-type]

    def get_balance(self, address: str, block: BlockIdentifier = "latest") -> int:
        return self.w3.eth.get_balance(to_checksum_address(address), block_identifier=block)

    def get_transaction_count(self, address: str, block: BlockIdentifier = "latest") -> int:
        return self.w3.eth.get_transaction_count(to_checksum_address(address), block_identifier=block)

    def get_network_id(self) -> str:
        return str(self.w3.net.version)


def as_provider(provider: Web3 | ChainProvider) -> ChainProvider:
    """Wraps :class:`~web3.Web3` connections.  Objects already implementing ChainProvider are returned as-is"""
    if isinstance(provider, Web3):
        return Web3Provider(provider)
    return provider
