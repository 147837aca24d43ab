import random
from typing import Any

import pytest
from eth_utils import to_checksum_address

from nethermind.evm_decoder import for_artifact, for_project
from nethermind.evm_decoder.utils import to_bytes
from tests.resources.artifacts import other_artifact, token_artifact


class FakeProvider:
    """In-memory ChainProvider.  Storage, code and logs are set directly by tests"""

    def __init__(self, network_id: str = "1"):
        self.network_id = network_id
        self.storage: dict[str, dict[int, bytes]] = {}
        self.code: dict[str, bytes] = {}
        self.balances: dict[str, int] = {}
        self.nonces: dict[str, int] = {}
        self.transactions: dict[str, dict[str, Any]] = {}
        self.logs: list[dict[str, Any]] = []
        self.get_logs_calls = 0
        self.storage_reads = 0

    def set_storage(self, address: str, slot: int, value: int | bytes):
        word = value.rjust(32, b"\x00") if isinstance(value, bytes) else value.to_bytes(32, "big")
        self.storage.setdefault(to_checksum_address(address), {})[slot] = word

    def set_code(self, address: str, code: str | bytes):
        self.code[to_checksum_address(address)] = to_bytes(code)

    def get_code(self, address: str, block="latest") -> bytes:
        return self.code.get(to_checksum_address(address), b"")

    def get_storage_at(self, address: str, slot: int, block="latest") -> bytes:
        self.storage_reads += 1
        return self.storage.get(to_checksum_address(address), {}).get(slot, b"\x00" * 32)

    def get_transaction(self, transaction_hash: str) -> dict[str, Any]:
        return self.transactions[transaction_hash]

    def get_logs(self, filter_params: dict[str, Any]) -> list[dict[str, Any]]:
        self.get_logs_calls += 1
        address = filter_params.get("address")
        return [log for log in self.logs if address is None or to_checksum_address(log["address"]) == address]

    def get_balance(self, address: str, block="latest") -> int:
        return self.balances.get(to_checksum_address(address), 0)

    def get_transaction_count(self, address: str, block="latest") -> int:
        return self.nonces.get(to_checksum_address(address), 0)

    def get_network_id(self) -> str:
        return self.network_id


@pytest.fixture(name="random_address")
def fixture_random_address():
    def _generate_random_address():
        return to_checksum_address(random.randbytes(20).hex())

    return _generate_random_address


@pytest.fixture(name="provider")
def fixture_provider():
    return FakeProvider()


@pytest.fixture(name="token_decoder")
def fixture_token_decoder(provider):
    return for_artifact(token_artifact(), provider)


@pytest.fixture(name="project")
def fixture_project(provider):
    return for_project([token_artifact(), other_artifact()], provider)
