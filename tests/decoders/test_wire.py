from eth_abi import encode
from eth_utils import function_signature_to_4byte_selector, keccak

from nethermind.evm_decoder import for_project
from nethermind.evm_decoder.types import (
    DecodingKind,
    DecodingMode,
    ErrorKind,
    ErrorResult,
    EventOptions,
)
from tests.resources.artifacts import (
    OTHER_DEPLOYED_CODE,
    TOKEN_CREATION_CODE,
    TOKEN_DEPLOYED_CODE,
    inheritance_artifacts,
)

TX_HASH = "0x" + "11" * 32


def _call(function_sig: str, types: list[str], values: list, to: str) -> dict:
    data = function_signature_to_4byte_selector(function_sig) + encode(types, values)
    return {"hash": TX_HASH, "to": to, "input": "0x" + data.hex()}


def _log(address: str, event_sig: str, topics: list[bytes], data: bytes = b"", **extra) -> dict:
    return {
        "address": address,
        "topics": [keccak(text=event_sig), *topics] if event_sig else topics,
        "data": "0x" + data.hex(),
        **extra,
    }


def _transfer_log(address: str, sender: str, receiver: str, value: int) -> dict:
    topics = [encode(["address"], [sender]), encode(["address"], [receiver])]
    return _log(address, "Transfer(address,address,uint256)", topics, encode(["uint256"], [value]))


# ---------------------------------------------------------------
#   Transactions
# ---------------------------------------------------------------


def test_decode_transfer(project, random_address):
    receiver, token_address = random_address(), random_address()

    transaction = _call("transfer(address,uint256)", ["address", "uint256"], [receiver, 500], token_address)

    decoded = project.decode_transaction(transaction)

    assert decoded.kind == DecodingKind.function
    assert decoded.mode == DecodingMode.full
    assert decoded.name == "transfer"
    assert decoded.contract.name == "Token"
    assert decoded.argument("to").value == receiver
    assert decoded.argument("amount").value == 500
    assert decoded.transaction_hash == TX_HASH
    assert decoded.to_address == token_address


def test_decode_transaction_by_hash(project, provider, random_address):
    provider.transactions[TX_HASH] = _call("setStatus(uint8)", ["uint8"], [1], random_address())

    decoded = project.decode_transaction(TX_HASH)

    assert decoded.name == "setStatus"
    assert decoded.argument("status").value == "Paused"


def test_invalid_bool_falls_back_to_abi_mode(project, random_address):
    decoded = project.decode_transaction(_call("setFlag(bool)", ["uint256"], [2], random_address()))

    assert decoded.mode == DecodingMode.abi
    assert decoded.argument("flag").value is True


def test_enum_out_of_range_falls_back_to_abi_mode(project, random_address):
    decoded = project.decode_transaction(_call("setStatus(uint8)", ["uint8"], [5], random_address()))

    assert decoded.mode == DecodingMode.abi
    assert decoded.argument("status").value == 5
    assert all(not isinstance(value, ErrorResult) for _, value in decoded.arguments)


def test_struct_argument(project, random_address):
    owner = random_address()
    transaction = _call("setAccount((uint128,bool,address))", ["(uint128,bool,address)"], [(7, False, owner)], owner)

    account = project.decode_transaction(transaction).argument("account")

    assert account.keys() == ["balance", "frozen", "owner"]
    assert account["owner"].value == owner


def test_unknown_selector(project, random_address):
    decoded = project.decode_transaction({"to": random_address(), "input": "0xdeadbeef"})

    assert decoded.kind == DecodingKind.unknown
    assert decoded.selector == bytes.fromhex("deadbeef")
    assert decoded.contract is None


def test_receive_on_identified_contract(project, provider, random_address):
    token_address = random_address()
    provider.set_code(token_address, TOKEN_DEPLOYED_CODE)

    decoded = project.decode_transaction({"to": token_address, "input": "0x", "value": 10})

    assert decoded.kind == DecodingKind.receive
    assert decoded.contract.name == "Token"
    assert decoded.arguments == ()


def test_empty_calldata_to_unknown_contract(project, random_address):
    assert project.decode_transaction({"to": random_address(), "input": "0x"}).kind == DecodingKind.unknown


def test_decode_constructor(project):
    arguments = encode(["string", "uint8"], ["Token", 18])

    decoded = project.decode_transaction({"to": None, "input": TOKEN_CREATION_CODE + arguments.hex()})

    assert decoded.kind == DecodingKind.constructor
    assert decoded.contract.name == "Token"
    assert decoded.mode == DecodingMode.full
    assert decoded.argument("name_").value == "Token"
    assert decoded.argument("decimals_").value == 18
    assert decoded.to_address is None


def test_unknown_creation_code(project):
    decoded = project.decode_transaction({"to": None, "input": "0x6001600101"})

    assert decoded.kind == DecodingKind.unknown


def test_abify_calldata(project, random_address):
    decoded = project.decode_transaction(_call("setStatus(uint8)", ["uint8"], [1], random_address()))

    projected = project.abify_calldata_decoding(decoded)

    assert projected.mode == DecodingMode.abi
    assert projected.argument("status").value == 1
    assert project.abify_calldata_decoding(projected) == projected


# ---------------------------------------------------------------
#   Logs
# ---------------------------------------------------------------


def test_decode_transfer_log(project, random_address):
    sender, receiver = random_address(), random_address()
    log = _transfer_log(random_address(), sender, receiver, 25)
    log.update({"blockNumber": 12, "transactionHash": TX_HASH, "logIndex": 3})

    decoded = project.decode_log(log)

    # Token and Other both declare Transfer, and the emitter is unknown
    assert [decoding.contract.name for decoding in decoded.decodings] == ["Token", "Other"]
    for decoding in decoded.decodings:
        assert decoding.kind == DecodingKind.event
        assert decoding.mode == DecodingMode.full
        assert decoding.argument("from").value == sender
        assert decoding.argument("to").value == receiver
        assert decoding.argument("value").value == 25

    assert decoded.block_number == 12
    assert decoded.transaction_hash == TX_HASH
    assert decoded.log_index == 3


def test_identified_emitter_scopes_decodings(project, provider, random_address):
    other_address = random_address()
    provider.set_code(other_address, OTHER_DEPLOYED_CODE)

    decoded = project.decode_log(_transfer_log(other_address, random_address(), random_address(), 1))

    assert decoded.contract.name == "Other"
    assert [decoding.contract.name for decoding in decoded.decodings] == ["Other"]


def test_indexed_string_keeps_full_mode(project, random_address):
    label_hash = keccak(text="label")
    log = _log(random_address(), "Named(string,uint256)", [label_hash], encode(["uint256"], [4]))

    (decoding,) = project.decode_log(log).decodings

    assert decoding.mode == DecodingMode.full
    assert decoding.argument("label").kind == ErrorKind.indexed_reference_type
    assert decoding.argument("label").raw == label_hash
    assert decoding.argument("value").value == 4


def test_anonymous_event(project, random_address):
    log = _log(random_address(), "", [encode(["uint256"], [9])], encode(["uint256"], [10]))

    (decoding,) = project.decode_log(log).decodings

    assert decoding.kind == DecodingKind.anonymous
    assert decoding.name == "Anon"
    assert decoding.argument("id").value == 9
    assert decoding.argument("value").value == 10


def test_unknown_topic(project, random_address):
    decoded = project.decode_log(_log(random_address(), "Unknown(uint256)", [encode(["uint256"], [1])]))

    assert not decoded.decoded
    assert decoded.decodings == ()


def test_abify_log(project, random_address):
    log = _log(random_address(), "StatusChanged(uint8)", [], encode(["uint8"], [1]))
    (decoding,) = project.decode_log(log).decodings

    projected = project.abify_log_decoding(decoding)

    assert decoding.argument("status").value == "Paused"
    assert projected.mode == DecodingMode.abi
    assert projected.argument("status").value == 1


def test_inherited_event_decoded_once(provider):
    wire = for_project(inheritance_artifacts(), provider)

    decoded = wire.decode_log(_log("0x" + "22" * 20, "Ping(uint256)", [], encode(["uint256"], [3])))

    (decoding,) = decoded.decodings
    assert decoding.contract.name == "Base"
    assert decoding.argument("value").value == 3


# ---------------------------------------------------------------
#   Event Streams
# ---------------------------------------------------------------


def test_event_stream_is_restartable(project, provider, random_address):
    token_address = random_address()
    provider.logs.append(_transfer_log(token_address, random_address(), random_address(), 1))
    stream = project.events(EventOptions(address=token_address, from_block=0))

    assert len(list(stream)) == 1

    provider.logs.append(_transfer_log(token_address, random_address(), random_address(), 2))
    second = list(stream)

    assert provider.get_logs_calls == 2
    assert [log.decodings[0].argument("value").value for log in second] == [1, 2]
    assert stream.filter_params() == {"fromBlock": 0, "toBlock": "latest", "address": token_address}


def test_event_stream_filters(project, provider, random_address):
    emitter = random_address()
    provider.logs.extend(
        [
            _transfer_log(emitter, random_address(), random_address(), 1),
            _log(emitter, "StatusChanged(uint8)", [], encode(["uint8"], [0])),
            _log(emitter, "Unknown(uint256)", [encode(["uint256"], [1])]),
        ]
    )

    assert len(list(project.events())) == 2
    assert len(list(project.events(EventOptions(extra=True)))) == 3

    named = list(project.events(EventOptions(name="Transfer", extra=True)))
    assert [log.decoded for log in named] == [True, False]
    assert {decoding.name for decoding in named[0].decodings} == {"Transfer"}
