import pytest
from eth_abi import encode
from eth_utils import function_signature_to_4byte_selector, keccak

from nethermind.evm_decoder import for_artifact, for_artifact_at, for_deployed_artifact
from nethermind.evm_decoder.decoding import normalize_key
from nethermind.evm_decoder.exceptions import (
    ContractBeingDecodedHasNoNodeError,
    ContractNotFoundError,
    InvalidMappingKeyError,
    UnknownVariableError,
)
from nethermind.evm_decoder.types import (
    ContainerKind,
    DecoderConfig,
    DecoderState,
    DecodingKind,
    DecodingMode,
    ElementaryKind,
    ElementaryType,
    ErrorKind,
    ErrorResult,
)
from tests.resources.artifacts import (
    TOKEN_DEPLOYED_CODE,
    other_artifact,
    packed_artifact,
    token_artifact,
    token_artifact_without_ast,
)


def _slot(value: int) -> int:
    return int.from_bytes(keccak(value.to_bytes(32, "big")), "big")


def _mapping_slot(key: bytes, slot: int) -> int:
    return int.from_bytes(keccak(key + slot.to_bytes(32, "big")), "big")


def _address_key(address: str) -> bytes:
    return encode(["address"], [address])


@pytest.fixture(name="token_address")
def fixture_token_address(provider, random_address):
    address = random_address()
    provider.set_code(address, TOKEN_DEPLOYED_CODE)
    return address


@pytest.fixture(name="instance")
def fixture_instance(token_decoder, token_address):
    return token_decoder.for_instance(token_address)


def test_decode_value_types(instance, provider, token_address, random_address):
    owner = random_address()
    provider.set_storage(token_address, 0, b"Token".ljust(31, b"\x00") + bytes([10]))
    provider.set_storage(token_address, 1, 18 | (1 << 8) | (int(owner, 16) << 16))

    variables = instance.variables()

    assert list(variables) == instance.contract_decoder.storage_allocation().names()
    assert "MAX_SUPPLY" not in variables
    assert variables["name"].value == "Token"
    assert variables["decimals"].value == 18
    assert variables["status"].value == "Paused"
    assert variables["owner"].value == owner
    assert all(result.mode == DecodingMode.full for result in variables.values())


def test_decode_long_string(instance, provider, token_address):
    name = "A token name longer than thirty two bytes"
    provider.set_storage(token_address, 0, len(name) * 2 + 1)
    encoded = name.encode()
    provider.set_storage(token_address, _slot(0), encoded[:32])
    provider.set_storage(token_address, _slot(0) + 1, encoded[32:].ljust(32, b"\x00"))

    assert instance.variable("name").value == name


def test_decode_array_and_struct(instance, provider, token_address, random_address):
    owner = random_address()
    provider.set_storage(token_address, 3, 2)
    provider.set_storage(token_address, _slot(3), 11)
    provider.set_storage(token_address, _slot(3) + 1, 22)
    provider.set_storage(token_address, 4, 500 | (1 << 128))
    provider.set_storage(token_address, 5, int(owner, 16))

    values = instance.variable("values")
    account = instance.variable("account")

    assert values.kind == ContainerKind.array
    assert [value.value for value in values.values()] == [11, 22]
    assert account.kind == ContainerKind.struct
    assert account["balance"].value == 500
    assert account["frozen"].value is True
    assert account["owner"].value == owner


def test_overlong_array(provider, random_address):
    address = random_address()
    instance = for_artifact_at(token_artifact(), address, provider, config=DecoderConfig(max_array_length=2))
    provider.set_storage(address, 3, 5)

    values = instance.variable("values")

    assert isinstance(values, ErrorResult)
    assert values.kind == ErrorKind.overlong_array


# ---------------------------------------------------------------
#   Mappings
# ---------------------------------------------------------------


def test_unwatched_mapping_is_empty(instance):
    balances = instance.variable("balances")

    assert balances.kind == ContainerKind.mapping
    assert len(balances) == 0


def test_watched_mapping_keys(instance, provider, token_address, random_address):
    holder = random_address()
    expected_slot = _mapping_slot(_address_key(holder), 2)
    provider.set_storage(token_address, expected_slot, 1000)

    assert instance.watch_mapping_key("balances", holder) == expected_slot
    # Equal keys given in another form are only watched once
    assert instance.watch_mapping_key("balances", holder.lower()) == expected_slot

    balances = instance.variable("balances")
    assert balances.keys() == [holder]
    assert balances[holder].value == 1000
    assert instance.watched_keys() == [("balances", (holder,))]


def test_nested_mapping(instance, provider, token_address, random_address):
    owner, spender = random_address(), random_address()
    inner_slot = _mapping_slot(_address_key(owner), 6)
    provider.set_storage(token_address, _mapping_slot(_address_key(spender), inner_slot), 77)

    instance.watch_mapping_key("allowances", owner, spender)
    allowances = instance.variable("allowances")

    assert allowances.keys() == [owner]
    assert allowances[owner].kind == ContainerKind.mapping
    assert allowances[owner][spender].value == 77


def test_enum_mapping_key(instance, provider, token_address):
    provider.set_storage(token_address, _mapping_slot(encode(["uint8"], [1]), 7), 1)

    instance.watch_mapping_key("enabled", 1)
    instance.watch_mapping_key("enabled", "Paused")

    enabled = instance.variable("enabled")
    assert enabled.keys() == ["Paused"]
    assert enabled["Paused"].value is True


def test_duplicate_watch_decoded_once(instance, provider, token_address, random_address):
    holder = random_address()
    provider.set_storage(token_address, _mapping_slot(_address_key(holder), 2), 3)

    instance.watch_mapping_key("balances", holder)
    instance.watch_mapping_key("balances", holder.lower())
    balances = instance.variables()["balances"]

    assert balances.keys() == [holder]
    assert balances[holder].value == 3


def test_text_mapping_keys(token_decoder):
    type_table = token_decoder.wire.type_table
    bool_type = type_table.intern(ElementaryType(ElementaryKind.bool, 8))
    status_type = type_table.named("enum Token.Status")

    assert normalize_key(type_table, bool_type, "true") is True
    assert normalize_key(type_table, bool_type, "False") is False
    assert normalize_key(type_table, status_type, "1") == "Paused"
    with pytest.raises(InvalidMappingKeyError):
        normalize_key(type_table, bool_type, "yes")
    with pytest.raises(InvalidMappingKeyError):
        normalize_key(type_table, status_type, "2")


def test_unwatch_mapping_key(instance, random_address):
    first, second, spender = random_address(), random_address(), random_address()
    instance.watch_mapping_key("balances", first)
    instance.watch_mapping_key("balances", second)
    instance.watch_mapping_key("allowances", first, spender)

    instance.unwatch_mapping_key("balances", first)
    instance.unwatch_mapping_key("allowances", first)

    assert instance.watched_keys() == [("balances", (second,))]


def test_invalid_mapping_keys(instance, random_address):
    with pytest.raises(InvalidMappingKeyError):
        instance.watch_mapping_key("name", "key")
    with pytest.raises(InvalidMappingKeyError):
        instance.watch_mapping_key("balances", "not an address")
    with pytest.raises(InvalidMappingKeyError):
        instance.watch_mapping_key("balances", random_address(), 1)
    with pytest.raises(InvalidMappingKeyError):
        instance.watch_mapping_key("enabled", 2)
    with pytest.raises(InvalidMappingKeyError):
        instance.watch_mapping_key("balances")


def test_unknown_variable(instance, random_address):
    with pytest.raises(UnknownVariableError):
        instance.variable("MAX_SUPPLY")
    with pytest.raises(UnknownVariableError):
        instance.watch_mapping_key("missing", random_address())


# ---------------------------------------------------------------
#   Initialization & Degraded Decoders
# ---------------------------------------------------------------


def test_decoder_without_ast_is_degraded(provider, random_address):
    decoder = for_artifact(token_artifact_without_ast(), provider)
    instance = decoder.for_instance(random_address())

    assert decoder.state == DecoderState.degraded
    with pytest.raises(ContractBeingDecodedHasNoNodeError):
        instance.variables()
    with pytest.raises(ContractBeingDecodedHasNoNodeError):
        instance.watch_mapping_key("balances", random_address())

    data = function_signature_to_4byte_selector("setStatus(uint8)") + encode(["uint8"], [1])
    decoded = instance.decode_transaction({"to": instance.address, "input": data})
    assert decoded.mode == DecodingMode.abi
    assert decoded.argument("status").value == 1

    log = {
        "address": instance.address,
        "topics": [keccak(text="StatusChanged(uint8)")],
        "data": encode(["uint8"], [1]),
    }
    (decoding,) = instance.decode_log(log).decodings
    assert decoding.mode == DecodingMode.abi


def test_init_is_idempotent(token_decoder):
    allocation = token_decoder.storage_allocation()

    assert token_decoder.init() is token_decoder
    assert token_decoder.state == DecoderState.ready
    assert token_decoder.storage_allocation() is allocation


def test_instance_requires_deployment(token_decoder):
    with pytest.raises(ContractNotFoundError):
        token_decoder.for_instance()


def test_deployed_artifact(provider, random_address):
    address = random_address()
    artifact = token_artifact()
    artifact["networks"] = {"1": {"address": address.lower()}}

    assert for_artifact(artifact, provider).deployed_address() == address
    assert for_deployed_artifact(artifact, provider).address == address


def test_instance_registers_address(provider, random_address):
    address = random_address()
    decoder = for_artifact(packed_artifact(), provider)

    decoder.for_instance(address)

    assert decoder.wire.identify(address) is decoder.contract


def test_instance_state(instance, provider, token_address):
    provider.balances[token_address] = 5
    provider.nonces[token_address] = 1

    state = instance.state()

    assert state.class_name == "Token"
    assert state.address == token_address
    assert state.code == bytes.fromhex(TOKEN_DEPLOYED_CODE[2:])
    assert (state.balance, state.nonce) == (5, 1)


def test_events_default_to_instance_address(instance, provider, token_address, random_address):
    other_address = random_address()
    for address in (token_address, other_address):
        provider.logs.append(
            {"address": address, "topics": [keccak(text="StatusChanged(uint8)")], "data": encode(["uint8"], [0])}
        )

    logs = list(instance.events())

    assert [log.address for log in logs] == [token_address]
    assert logs[0].decodings[0].argument("status").value == "Active"


# ---------------------------------------------------------------
#   Project Wide Decoding
# ---------------------------------------------------------------


@pytest.fixture(name="project_instance")
def fixture_project_instance(provider, token_address):
    return for_artifact_at(token_artifact(), token_address, provider, artifacts=[other_artifact()])


def test_decoders_decode_logs_of_other_contracts(project_instance, random_address):
    log = {
        "address": random_address(),
        "topics": [keccak(text="TotalChanged(uint256)")],
        "data": encode(["uint256"], [42]),
    }

    for decoder in (project_instance.wire, project_instance.contract_decoder, project_instance):
        # The anonymous Token event has the same shape, but is not tried once a named event matches
        (decoding,) = decoder.decode_log(log).decodings
        assert decoding.contract.name == "Other"
        assert decoding.kind == DecodingKind.event
        assert decoding.mode == DecodingMode.full
        assert decoding.argument("total").value == 42


def test_decoders_decode_transactions_of_other_contracts(project_instance, random_address):
    data = function_signature_to_4byte_selector("setTotal(uint256)") + encode(["uint256"], [7])
    transaction = {"to": random_address(), "input": "0x" + data.hex()}

    for decoder in (project_instance.wire, project_instance.contract_decoder, project_instance):
        decoded = decoder.decode_transaction(transaction)
        assert decoded.name == "setTotal"
        assert decoded.contract.name == "Other"
        assert decoded.argument("total_").value == 7


def test_contract_decoder_presumes_its_own_receive(project_instance, random_address):
    transaction = {"to": random_address(), "input": "0x", "value": 1}

    assert project_instance.wire.decode_transaction(transaction).kind == DecodingKind.unknown
    assert project_instance.contract_decoder.decode_transaction(transaction).kind == DecodingKind.receive


def test_degraded_decoder_keeps_full_mode_for_other_contracts(provider, random_address):
    decoder = for_artifact(token_artifact_without_ast(), provider, artifacts=[other_artifact()])
    address = random_address()
    total_log = {"address": address, "topics": [keccak(text="TotalChanged(uint256)")], "data": encode(["uint256"], [1])}
    status_log = {"address": address, "topics": [keccak(text="StatusChanged(uint8)")], "data": encode(["uint8"], [1])}

    (total,) = decoder.decode_log(total_log).decodings
    (status,) = decoder.decode_log(status_log).decodings

    assert decoder.degraded
    assert total.mode == DecodingMode.full
    assert status.mode == DecodingMode.abi
    assert status.argument("status").value == 1
