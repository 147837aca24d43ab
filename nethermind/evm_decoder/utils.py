import re
from typing import Any

from eth_typing import ABIEvent, ABIFunction
from hexbytes import HexBytes

LINK_PLACEHOLDER = re.compile(r"__.{38}")
""" Unlinked library references in Truffle/solc bytecode are 40 character placeholders starting with __ """


def to_bytes(value: str | bytes | bytearray | HexBytes | None) -> bytes:
    """
    Converts hexstrings & byte-like values returned from RPC providers to bytes

    >>> to_bytes("0x0a0b")
    b'\\n\\x0b'
    >>> to_bytes(HexBytes("0x0a0b"))
    b'\\n\\x0b'
    """
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        hex_str = value[2:] if value.startswith(("0x", "0X")) else value
        if len(hex_str) % 2:
            hex_str = "0" + hex_str
        return bytes.fromhex(hex_str)
    raise TypeError(f"Cannot convert {type(value)} to bytes")


def to_hex(value: bytes | None) -> str:
    """Converts bytes to a 0x prefixed hexstring"""
    return "0x" + (value or b"").hex()


def abi_to_signature(abi: ABIFunction | ABIEvent | dict[str, Any]) -> str:
    """
    Converts ABI to signature.

    >>> abi_to_signature({"name": "transfer", "type": "function", "inputs": [
    ...     {"name": "to", "type": "address"}, {"name": "amount", "type": "uint256"}
    ... ]})
    'transfer(address,uint256)'

    """
    collapsed = [collapse_if_tuple(abi_input) for abi_input in abi.get("inputs", [])]
    return f"{abi['name']}({','.join(collapsed)})"


def collapse_if_tuple(abi_params: dict[str, Any]) -> str:
    """
    Converts a tuple from a dict to a parenthesized list of its types.

    >>> collapse_if_tuple(
    ...     {
    ...         'components': [
    ...             {'name': 'anAddress', 'type': 'address'},
    ...             {'name': 'anInt', 'type': 'uint256'},
    ...             {'name': 'someBytes', 'type': 'bytes'},
    ...         ],
    ...         'type': 'tuple',
    ...     }
    ... )
    '(address,uint256,bytes)'
    """

    typ = abi_params["type"]
    if not isinstance(typ, str):
        raise TypeError(f"The 'type' must be a string, but got {typ} of type {type(typ)}")

    if not typ.startswith("tuple"):
        return typ

    delimited = ",".join(collapse_if_tuple(c) for c in abi_params["components"])
    # Whatever comes after "tuple" is the array dims, of the form "", "[]", or "[k]"
    array_dim = typ[5:]
    return f"({delimited}){array_dim}"


def filter_functions(contract_abi: list[dict[str, Any]]) -> list[ABIFunction]:
    """Filters out all non-function ABIs"""
    return [abi for abi in contract_abi if abi.get("type", "function") == "function"]  # type: ignore


def filter_events(contract_abi: list[dict[str, Any]]) -> list[ABIEvent]:
    """Filters out all non-event ABIs"""
    return [abi for abi in contract_abi if abi.get("type") == "event"]  # type: ignore


def filter_abi_type(contract_abi: list[dict[str, Any]], abi_type: str) -> dict[str, Any] | None:
    """Returns the first ABI entry of a type, ie the constructor or fallback function"""
    for abi in contract_abi:
        if abi.get("type") == abi_type:
            return abi
    return None


def strip_metadata(code: bytes) -> bytes:
    """
    Removes the CBOR encoded compiler metadata appended to deployed bytecode.  The final 2 bytes of the
    bytecode encode the length of the metadata.  Bytecode without a CBOR map before the length is returned unchanged.
    """
    if len(code) < 2:
        return code
    metadata_length = int.from_bytes(code[-2:], "big")
    metadata_start = len(code) - 2 - metadata_length
    if metadata_start < 0 or metadata_length == 0:
        return code
    if code[metadata_start] & 0xE0 != 0xA0:  # CBOR major type 5 (map)
        return code
    return code[:metadata_start]


def bytecode_pattern(bytecode: str, prefix: bool = False) -> re.Pattern | None:
    """
    Builds a regex matching bytecode from an artifact.  Library link placeholders match any address, and
    compiler metadata is ignored.

    :param bytecode: Hexstring of bytecode, possibly containing link placeholders
    :param prefix: If True, the pattern matches creation code followed by constructor arguments
    :return: Compiled pattern, or None if the artifact has no bytecode
    """
    hex_code = bytecode[2:] if bytecode.startswith("0x") else bytecode
    if not hex_code:
        return None

    placeholders = list(LINK_PLACEHOLDER.finditer(hex_code))
    if not placeholders:
        if not prefix:
            hex_code = strip_metadata(bytes.fromhex(hex_code)).hex()
        pattern = re.escape(hex_code.lower())
    else:
        pieces, last_end = [], 0
        for placeholder in placeholders:
            pieces.append(re.escape(hex_code[last_end : placeholder.start()].lower()))
            pieces.append("[0-9a-f]{40}")
            last_end = placeholder.end()
        pieces.append(re.escape(hex_code[last_end:].lower()))
        pattern = "".join(pieces)

    if prefix:
        return re.compile(f"^({pattern})")
    return re.compile(f"^{pattern}$")


def matches_code(pattern: re.Pattern | None, code: bytes) -> bool:
    """Checks on-chain code against a pattern from :func:`bytecode_pattern`"""
    if pattern is None or not code:
        return False
    return pattern.match(code.hex()) is not None or pattern.match(strip_metadata(code).hex()) is not None
