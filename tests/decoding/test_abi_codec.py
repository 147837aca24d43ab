from decimal import Decimal

import pytest
from eth_abi import encode
from eth_utils import keccak, to_checksum_address

from nethermind.evm_decoder.decoding import AbiCodec
from nethermind.evm_decoder.types import (
    ArrayType,
    ContainerKind,
    ContainerResult,
    DecodingMode,
    ElementaryKind,
    ElementaryType,
    EnumType,
    ErrorKind,
    ErrorResult,
    StructType,
    TupleType,
    TypeTable,
    ValueResult,
)

OWNER = to_checksum_address("0x" + "ab" * 20)


@pytest.fixture(name="types")
def fixture_types():
    table = TypeTable()
    types = {
        "address": table.intern(ElementaryType(ElementaryKind.address, 160)),
        "uint256": table.intern(ElementaryType(ElementaryKind.uint, 256)),
        "int8": table.intern(ElementaryType(ElementaryKind.int, 8)),
        "bool": table.intern(ElementaryType(ElementaryKind.bool, 8)),
        "bytes4": table.intern(ElementaryType(ElementaryKind.fixed_bytes, 32)),
        "string": table.intern(ElementaryType(ElementaryKind.string, 256)),
        "bytes": table.intern(ElementaryType(ElementaryKind.bytes, 256)),
        "fixed": table.intern(ElementaryType(ElementaryKind.ufixed, 128, 2)),
    }
    types["uint256[]"] = table.intern(ArrayType(types["uint256"]))

    types["Status"] = table.reserve("enum Token.Status")
    table.define(types["Status"], EnumType("Token.Status", ("Active", "Paused")))

    types["Pair"] = table.reserve("struct Token.Pair")
    table.define(types["Pair"], StructType("Token.Pair", (("label", types["string"]), ("amount", types["uint256"]))))
    types["Entry"] = table.intern(TupleType((("id", types["uint256"]), ("active", types["bool"]))))
    types["Entry[]"] = table.intern(ArrayType(types["Entry"]))

    table.freeze()
    return table, types


def _values(results):
    return [result.value for result in results]


@pytest.mark.parametrize("mode", [DecodingMode.full, DecodingMode.abi])
def test_decode_static_values(types, mode):
    table, ids = types
    data = encode(
        ["address", "uint256", "int8", "bool", "bytes4", "uint256"],
        [OWNER, 10, -5, True, b"\x01\x02\x03\x04", 1234],
    )
    type_ids = [ids["address"], ids["uint256"], ids["int8"], ids["bool"], ids["bytes4"], ids["fixed"]]

    results = AbiCodec(table).decode_parameters(type_ids, data, mode)

    assert _values(results) == [OWNER, 10, -5, True, b"\x01\x02\x03\x04", Decimal("12.34")]
    assert all(result.mode == mode for result in results)
    assert results[1].raw == (10).to_bytes(32, "big")


@pytest.mark.parametrize("mode", [DecodingMode.full, DecodingMode.abi])
def test_decode_dynamic_values(types, mode):
    table, ids = types
    data = encode(["string", "uint256[]", "bytes"], ["hello", [1, 2, 3], b"\xff"])

    text, numbers, raw_bytes = AbiCodec(table).decode_parameters(
        [ids["string"], ids["uint256[]"], ids["bytes"]], data, mode
    )

    assert all(result.mode == mode for result in (text, numbers, raw_bytes))
    assert text.value == "hello"
    assert isinstance(numbers, ContainerResult)
    assert numbers.kind == ContainerKind.array
    assert numbers.keys() == [0, 1, 2]
    assert [value.value for value in numbers.values()] == [1, 2, 3]
    assert raw_bytes.value == b"\xff"


def test_decode_structs_and_tuples(types):
    table, ids = types
    data = encode(["(string,uint256)", "(uint256,bool)[]"], [("hi", 7), [(1, True), (2, False)]])

    pair, entries = AbiCodec(table).decode_parameters([ids["Pair"], ids["Entry[]"]], data, DecodingMode.full)

    assert pair.kind == ContainerKind.struct
    assert pair.keys() == ["label", "amount"]
    assert pair["label"].value == "hi"
    assert pair["amount"].value == 7

    assert len(entries) == 2
    assert entries[1].kind == ContainerKind.tuple
    assert entries[1]["id"].value == 2
    assert entries[1]["active"].value is False


def test_invalid_bool_depends_on_mode(types):
    table, ids = types
    data = (2).to_bytes(32, "big")
    codec = AbiCodec(table)

    (full,) = codec.decode_parameters([ids["bool"]], data, DecodingMode.full)
    (abi,) = codec.decode_parameters([ids["bool"]], data, DecodingMode.abi)

    assert isinstance(full, ErrorResult)
    assert full.kind == ErrorKind.invalid_bool
    assert full.raw == data
    assert isinstance(abi, ValueResult)
    assert abi.value is True


def test_enum_out_of_range(types):
    table, ids = types
    data = (5).to_bytes(32, "big")
    codec = AbiCodec(table)

    (full,) = codec.decode_parameters([ids["Status"]], data, DecodingMode.full)
    (abi,) = codec.decode_parameters([table.abi_type_of(ids["Status"])], data, DecodingMode.abi)
    (valid,) = codec.decode_parameters([ids["Status"]], (1).to_bytes(32, "big"), DecodingMode.full)

    assert full.kind == ErrorKind.enum_out_of_range
    assert abi.value == 5
    assert valid.value == "Paused"


def test_truncated_value_keeps_siblings(types):
    table, ids = types
    data = encode(["uint256"], [5])

    first, second = AbiCodec(table).decode_parameters([ids["uint256"], ids["uint256"]], data, DecodingMode.full)

    assert first.value == 5
    assert isinstance(second, ErrorResult)
    assert second.kind == ErrorKind.truncated


def test_malformed_offset(types):
    table, ids = types
    data = (4096).to_bytes(32, "big") + encode(["uint256"], [1])

    text, number = AbiCodec(table).decode_parameters([ids["string"], ids["uint256"]], data, DecodingMode.abi)

    assert text.kind == ErrorKind.malformed_length
    assert number.value == 1


def test_dirty_padding(types):
    table, ids = types
    word = b"\x01" + b"\x00" * 11 + bytes.fromhex("ab" * 20)

    (result,) = AbiCodec(table).decode_parameters([ids["address"]], word, DecodingMode.abi)

    assert result.kind == ErrorKind.padding


def test_unresolved_parameter(types):
    table, ids = types
    data = encode(["uint256", "uint256"], [1, 2])

    unresolved, resolved = AbiCodec(table).decode_parameters([None, ids["uint256"]], data, DecodingMode.full)

    assert unresolved.kind == ErrorKind.unresolved_type
    assert resolved.value == 2


def test_decode_topics(types):
    table, ids = types
    codec = AbiCodec(table)
    address_topic = encode(["address"], [OWNER])
    string_topic = keccak(text="hello")

    assert codec.decode_topic(ids["address"], address_topic, DecodingMode.full).value == OWNER

    hashed = codec.decode_topic(ids["string"], string_topic, DecodingMode.full)
    assert hashed.kind == ErrorKind.indexed_reference_type
    assert hashed.raw == string_topic
    assert not hashed.kind.triggers_fallback()
