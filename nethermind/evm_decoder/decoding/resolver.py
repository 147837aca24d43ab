import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterator

from eth_abi.exceptions import ABITypeError, ParseError
from eth_abi.grammar import BasicType, normalize, parse
from eth_utils.abi import (
    event_signature_to_log_topic,
    function_signature_to_4byte_selector,
)

from nethermind.evm_decoder.artifacts import ContractArtifact
from nethermind.evm_decoder.exceptions import TypeResolutionError
from nethermind.evm_decoder.types import (
    ArrayType,
    ContractType,
    ContractTypeInfo,
    DecodingKind,
    ElementaryKind,
    ElementaryType,
    EnumType,
    EventEntry,
    FunctionEntry,
    MappingType,
    StructType,
    TupleType,
    TypeId,
    TypeTable,
)
from nethermind.evm_decoder.utils import (
    abi_to_signature,
    collapse_if_tuple,
    filter_abi_type,
    filter_events,
    filter_functions,
)

root_logger = logging.getLogger("nethermind")
logger = root_logger.getChild("evm_decoder").getChild("resolver")

DECLARATION_NODES = ("StructDefinition", "EnumDefinition", "ContractDefinition")
LOCATION_SUFFIX = re.compile(r" (storage|memory|calldata)( ref| pointer)?")
ARRAY_DIMENSION = re.compile(r"\[(\d*)\]")


@dataclass(frozen=True)
class VariableDeclaration:
    """State variable declared by a contract, with its type resolved against the TypeTable"""

    name: str
    type_id: TypeId | None
    type_string: str
    constant: bool = False
    immutable: bool = False


@dataclass
class ResolvedProject:
    """Output of the TypeResolver.  Shared read-only by every decoder built from the same artifacts"""

    type_table: TypeTable
    contracts: list[ContractTypeInfo]

    state_variables: dict[int, tuple[VariableDeclaration, ...]] = field(default_factory=dict)
    """ State variable declarations for each AST ContractDefinition id, in declaration order """

    contract_names: dict[int, str] = field(default_factory=dict)
    """ Mapping from AST ContractDefinition ids to contract names """

    linearizations: dict[int, tuple[int, ...]] = field(default_factory=dict)
    """ linearizedBaseContracts of every AST ContractDefinition, most-derived first """

    def contract(self, name: str) -> ContractTypeInfo | None:
        """Returns the ContractTypeInfo for a contract name"""
        for contract in self.contracts:
            if contract.name == name:
                return contract
        return None


def walk_ast(node: Any) -> Iterator[dict[str, Any]]:
    """Yields every AST node nested within a node, including the node itself"""
    if isinstance(node, dict):
        if "nodeType" in node:
            yield node
        for value in node.values():
            if isinstance(value, (dict, list)):
                yield from walk_ast(value)
    elif isinstance(node, list):
        for value in node:
            yield from walk_ast(value)


def strip_location(type_string: str) -> str:
    """
    Removes data locations from compiler type strings

    >>> strip_location("struct Token.Account storage ref")
    'struct Token.Account'
    """
    return LOCATION_SUFFIX.sub("", type_string)


def parse_elementary(type_str: str) -> ElementaryType | None:
    """
    Parses an elementary Solidity or ABI type name.  Returns None for anything that is not an elementary type

    >>> parse_elementary("uint")
    ElementaryType(kind=<ElementaryKind.uint: 'uint'>, bits=256, places=0)
    """
    type_str = type_str.strip()
    if type_str == "address payable":
        type_str = "address"

    try:
        parsed = parse(normalize(type_str))
        parsed.validate()
    except (ParseError, ABITypeError):
        return None

    if not isinstance(parsed, BasicType) or parsed.arrlist:
        return None

    match parsed.base, parsed.sub:
        case "uint", bits:
            return ElementaryType(ElementaryKind.uint, bits)
        case "int", bits:
            return ElementaryType(ElementaryKind.int, bits)
        case "bool", _:
            return ElementaryType(ElementaryKind.bool, 8)
        case "address", _:
            return ElementaryType(ElementaryKind.address, 160)
        case "string", _:
            return ElementaryType(ElementaryKind.string, 256)
        case "bytes", None | "":
            return ElementaryType(ElementaryKind.bytes, 256)
        case "bytes", size:
            return ElementaryType(ElementaryKind.fixed_bytes, size * 8)
        case "fixed", (bits, places):
            return ElementaryType(ElementaryKind.fixed, bits, places)
        case "ufixed", (bits, places):
            return ElementaryType(ElementaryKind.ufixed, bits, places)
        case _:
            return None


class TypeResolver:
    """
    Merges the type declarations of a set of artifacts into a single TypeTable, and resolves every artifact's ABI
    entries against it.

    When an artifact carries an AST containing its ContractDefinition, structs, enums, contract types and exact
    integer widths are taken from the AST, and ABI entries are correlated with their AST definitions to enable full
    mode decoding.  Artifacts without a usable AST only get ABI-inferable types.
    """

    artifacts: list[ContractArtifact]
    type_table: TypeTable

    _nodes: dict[int, dict[str, Any]]
    """ Every AST node with an id, across all supplied artifacts """

    _unindexed: set[str]
    """ Artifacts whose AST ids collide with another compilation's.  Their ASTs are ignored """

    _declarations: dict[str, dict[str, Any]]
    """ Mapping from qualified type keys (``struct Token.Account``) to their first declaration node """

    _signatures: dict[str, tuple]
    _resolved: dict[int, TypeId | None]
    _in_progress: set[int]

    def __init__(self, artifacts: list[ContractArtifact]):
        self.artifacts = artifacts
        self.type_table = TypeTable()
        self._nodes = {}
        self._unindexed = set()
        self._declarations = {}
        self._signatures = {}
        self._resolved = {}
        self._in_progress = set()

    def resolve(self) -> ResolvedProject:
        """
        Builds the TypeTable and ContractTypeInfo for every artifact

        :raises TypeResolutionError: If two declarations with the same qualified name are incompatible
        """
        for artifact in self.artifacts:
            if artifact.ast:
                self._index_ast(artifact.ast, artifact.contract_name)

        for node in list(self._nodes.values()):
            if node["nodeType"] in DECLARATION_NODES:
                self._resolve_declaration(node)

        state_variables, contract_names, linearizations = {}, {}, {}
        for node in self._nodes.values():
            if node["nodeType"] == "ContractDefinition":
                contract_names[node["id"]] = node["name"]
                linearizations[node["id"]] = tuple(node.get("linearizedBaseContracts", [node["id"]]))
                state_variables[node["id"]] = self._state_variables(node)

        contracts = [self._contract_info(artifact) for artifact in self.artifacts]

        self.type_table.freeze()
        logger.info(
            f"Resolved {len(self.type_table)} types for {len(contracts)} contracts "
            f"({sum(c.full_mode_available for c in contracts)} with AST)"
        )
        return ResolvedProject(
            type_table=self.type_table,
            contracts=contracts,
            state_variables=state_variables,
            contract_names=contract_names,
            linearizations=linearizations,
        )

    # ---------------------------------------------------------------
    #   AST Indexing & Declarations
    # ---------------------------------------------------------------

    @staticmethod
    def _same_node(first: dict[str, Any], second: dict[str, Any]) -> bool:
        return all(first.get(attr) == second.get(attr) for attr in ("nodeType", "name", "src"))

    def _index_ast(self, ast: dict[str, Any], artifact_name: str):
        nodes = [node for node in walk_ast(ast) if node.get("id") is not None]

        # Node ids are only unique within a compilation.  An AST reusing the ids of a previously loaded
        # compilation cannot be correlated with it, so the artifact is decoded in ABI mode
        for node in nodes:
            existing = self._nodes.get(node["id"])
            if existing is not None and not self._same_node(existing, node):
                logger.warning(
                    f"AST node {node['id']} from {artifact_name} conflicts with a previously loaded node.  "
                    f"Artifacts were compiled separately, so {artifact_name} is decoded in ABI mode"
                )
                self._unindexed.add(artifact_name)
                return

        for node in nodes:
            if node["id"] in self._nodes:
                continue
            self._nodes[node["id"]] = node
            if node["nodeType"] in DECLARATION_NODES:
                self._register_declaration(node)

    def _register_declaration(self, node: dict[str, Any]):
        key = self._declaration_key(node)
        signature = self._declaration_signature(node)

        existing_signature = self._signatures.get(key)
        if existing_signature is None:
            self._signatures[key] = signature
            self._declarations[key] = node
            return

        if existing_signature != signature:
            raise TypeResolutionError(
                f"Conflicting declarations for {key}: {existing_signature} and {signature}.  Artifacts from "
                f"incompatible builds cannot be decoded together"
            )
        logger.debug(f"Merging duplicate declaration of {key} (AST id {node['id']})")

    @staticmethod
    def _declaration_key(node: dict[str, Any]) -> str:
        match node["nodeType"]:
            case "StructDefinition":
                return f"struct {node.get('canonicalName') or node['name']}"
            case "EnumDefinition":
                return f"enum {node.get('canonicalName') or node['name']}"
            case _:
                return f"contract {node['name']}"

    @staticmethod
    def _declaration_signature(node: dict[str, Any]) -> tuple:
        match node["nodeType"]:
            case "StructDefinition":
                return (
                    "struct",
                    tuple(
                        (member["name"], strip_location(member.get("typeDescriptions", {}).get("typeString", "")))
                        for member in node.get("members", [])
                    ),
                )
            case "EnumDefinition":
                return "enum", tuple(member["name"] for member in node.get("members", []))
            case _:
                return "contract", node.get("contractKind", "contract")

    def _resolve_declaration(self, node: dict[str, Any]) -> TypeId | None:
        """Defines the TypeDefinition of a struct, enum or contract node.  Returns None if it cannot be resolved"""
        key = self._declaration_key(node)
        declaration = self._declarations.get(key, node)
        node_id = declaration["id"]

        type_id = self.type_table.reserve(key)
        if node_id in self._resolved:
            return self._resolved[node_id]
        if node_id in self._in_progress:
            # Recursive struct.  The reserved TypeId is defined once the outer resolution completes
            return type_id

        self._in_progress.add(node_id)
        qualified_name = key.split(" ", 1)[1]

        match declaration["nodeType"]:
            case "StructDefinition":
                members = []
                for member in declaration.get("members", []):
                    member_type = self.resolve_type_name(member.get("typeName"))
                    if member_type is None:
                        logger.debug(f"Could not resolve member {member['name']} of {key}")
                        break
                    members.append((member["name"], member_type))
                else:
                    self.type_table.define(type_id, StructType(qualified_name, tuple(members)))

            case "EnumDefinition":
                variants = tuple(member["name"] for member in declaration.get("members", []))
                self.type_table.define(type_id, EnumType(qualified_name, variants))

            case _:
                self.type_table.define(
                    type_id, ContractType(declaration["name"], declaration.get("contractKind", "contract"))
                )

        self._in_progress.discard(node_id)
        result = type_id if self.type_table.is_defined(type_id) else None
        self._resolved[node_id] = result
        return result

    # ---------------------------------------------------------------
    #   AST Type Names
    # ---------------------------------------------------------------

    def resolve_type_name(self, type_name: dict[str, Any] | None) -> TypeId | None:
        """
        Resolves an AST type name node to a TypeId.  Returns None for references that cannot be resolved, which
        disables full mode for values of that type.
        """
        # pylint: disable=too-many-return-statements
        if type_name is None:
            return None

        type_string = strip_location(type_name.get("typeDescriptions", {}).get("typeString", ""))

        match type_name["nodeType"]:
            case "ElementaryTypeName":
                elementary = parse_elementary(type_name.get("name") or type_string)
                if elementary is None and type_string:
                    elementary = parse_elementary(type_string)
                return self.type_table.intern(elementary) if elementary else None

            case "UserDefinedTypeName" | "IdentifierPath":
                target = self._nodes.get(type_name.get("referencedDeclaration", -1))
                if target is None:
                    target = self._declarations.get(type_string)
                if target is None:
                    logger.debug(f"Unresolved type reference {type_string}")
                    return None

                if target["nodeType"] == "UserDefinedValueTypeDefinition":
                    return self.resolve_type_name(target.get("underlyingType"))
                if target["nodeType"] in DECLARATION_NODES:
                    return self._resolve_declaration(target)
                return None

            case "ArrayTypeName":
                element = self.resolve_type_name(type_name.get("baseType"))
                if element is None:
                    return None
                return self.type_table.intern(ArrayType(element, self._array_length(type_name, type_string)))

            case "Mapping":
                key = self.resolve_type_name(type_name.get("keyType"))
                value = self.resolve_type_name(type_name.get("valueType"))
                if key is None or value is None:
                    return None
                return self.type_table.intern(MappingType(key, value))

            case "FunctionTypeName":
                if type_name.get("visibility") != "external":
                    return None
                return self.type_table.intern(ElementaryType(ElementaryKind.fixed_bytes, 192))

            case _:
                return None

    @staticmethod
    def _array_length(type_name: dict[str, Any], type_string: str) -> int | None:
        length = type_name.get("length")
        if length is None:
            return None
        if length.get("nodeType") == "Literal" and length.get("value") is not None:
            return int(str(length["value"]).replace("_", ""), 0)

        # Lengths given by constants are only available through the compiler's type string
        dimensions = ARRAY_DIMENSION.findall(type_string)
        if dimensions and dimensions[-1]:
            return int(dimensions[-1])
        return None

    # ---------------------------------------------------------------
    #   ABI Types
    # ---------------------------------------------------------------

    def abi_param_type(self, param: dict[str, Any]) -> TypeId:
        """Resolves the type of an ABI parameter.  Tuples keep their component names"""
        type_str: str = param["type"]
        if type_str.startswith("tuple"):
            members = tuple(
                (component.get("name") or None, self.abi_param_type(component)) for component in param["components"]
            )
            type_id = self.type_table.intern(TupleType(members))
            dimensions = type_str[5:]
        else:
            base = type_str[: type_str.index("[")] if "[" in type_str else type_str
            elementary = parse_elementary(base)
            if elementary is None:
                raise TypeResolutionError(f"Invalid ABI type {type_str}")
            type_id = self.type_table.intern(elementary)
            dimensions = type_str[len(base) :]

        for dimension in ARRAY_DIMENSION.findall(dimensions):
            type_id = self.type_table.intern(ArrayType(type_id, int(dimension) if dimension else None))
        return type_id

    # ---------------------------------------------------------------
    #   Contracts
    # ---------------------------------------------------------------

    def _state_variables(self, contract_node: dict[str, Any]) -> tuple[VariableDeclaration, ...]:
        variables = []
        for node in contract_node.get("nodes", []):
            if node.get("nodeType") != "VariableDeclaration" or not node.get("stateVariable", True):
                continue
            mutability = node.get("mutability", "constant" if node.get("constant") else "mutable")
            variables.append(
                VariableDeclaration(
                    name=node["name"],
                    type_id=self.resolve_type_name(node.get("typeName")),
                    type_string=strip_location(node.get("typeDescriptions", {}).get("typeString", "")),
                    constant=mutability == "constant",
                    immutable=mutability == "immutable",
                )
            )
        return tuple(variables)

    def _find_contract_node(self, artifact: ContractArtifact) -> dict[str, Any] | None:
        if not artifact.ast or artifact.contract_name in self._unindexed:
            return None
        for node in walk_ast(artifact.ast):
            if node["nodeType"] == "ContractDefinition" and node.get("name") == artifact.contract_name:
                indexed = self._nodes.get(node["id"])
                return indexed if indexed is not None and self._same_node(indexed, node) else None
        return None

    def _contract_info(self, artifact: ContractArtifact) -> ContractTypeInfo:
        contract_node = self._find_contract_node(artifact)
        if artifact.ast and contract_node is None and artifact.contract_name not in self._unindexed:
            logger.warning(
                f"AST supplied for {artifact.contract_name} does not define the contract.  Decoding in ABI mode"
            )

        ancestor_ids: tuple[int, ...] = ()
        ancestors: tuple[str, ...] = (artifact.contract_name,)
        chain: list[dict[str, Any]] = []
        if contract_node is not None:
            ancestor_ids = tuple(contract_node.get("linearizedBaseContracts", [contract_node["id"]]))
            chain = [
                self._nodes[ancestor]
                for ancestor in ancestor_ids
                if self._nodes.get(ancestor, {}).get("nodeType") == "ContractDefinition"
            ]
            ancestors = tuple(node["name"] for node in chain)

        info = ContractTypeInfo(
            name=artifact.contract_name,
            abi=artifact.abi,
            contract_kind=contract_node.get("contractKind", "contract") if contract_node else "contract",
            ast_node=contract_node,
            ancestors=ancestors,
            ancestor_ids=ancestor_ids,
            bytecode=artifact.bytecode,
            deployed_bytecode=artifact.deployed_bytecode,
        )

        for abi_function in filter_functions(artifact.abi):
            entry = self._function_entry(abi_function, chain, DecodingKind.function)
            info.functions.setdefault(entry.selector, entry)

        for abi_event in filter_events(artifact.abi):
            event = self._event_entry(abi_event, chain)
            if event.anonymous:
                info.anonymous_events.append(event)
            else:
                info.events.setdefault(event.topic, []).append(event)

        for kind in (DecodingKind.constructor, DecodingKind.fallback, DecodingKind.receive):
            abi_entry = filter_abi_type(artifact.abi, kind.value)
            if abi_entry is not None:
                named_entry = {"name": kind.value, "inputs": [], **abi_entry}
                setattr(info, kind.value, self._function_entry(named_entry, chain[:1], kind))

        logger.debug(
            f"Resolved {info.name}: {len(info.functions)} functions, {len(info.events)} events, "
            f"ancestors {list(info.ancestors)}"
        )
        return info

    def _function_entry(
        self, abi_function: dict[str, Any], chain: list[dict[str, Any]], kind: DecodingKind
    ) -> FunctionEntry:
        inputs = abi_function.get("inputs", [])
        signature = abi_to_signature(abi_function)

        definitions = [
            node
            for contract in chain
            for node in contract.get("nodes", [])
            if node.get("nodeType") == "FunctionDefinition" and self._is_function_match(node, abi_function, kind)
        ]
        return FunctionEntry(
            name=abi_function["name"],
            signature=signature,
            selector=function_signature_to_4byte_selector(signature) if kind == DecodingKind.function else b"",
            kind=kind,
            abi=abi_function,
            input_names=tuple(param.get("name", "") for param in inputs),
            abi_input_types=tuple(self.abi_param_type(param) for param in inputs),
            full_input_types=self._correlate_parameters(definitions, inputs),
        )

    @staticmethod
    def _is_function_match(node: dict[str, Any], abi_function: dict[str, Any], kind: DecodingKind) -> bool:
        node_kind = node.get("kind") or ("constructor" if node.get("isConstructor") else "function")
        if kind == DecodingKind.function:
            return node_kind == "function" and node.get("name") == abi_function["name"]
        return node_kind == kind.value

    def _event_entry(self, abi_event: dict[str, Any], chain: list[dict[str, Any]]) -> EventEntry:
        inputs = abi_event.get("inputs", [])
        signature = abi_to_signature(abi_event)

        definitions = [
            node
            for contract in chain
            for node in contract.get("nodes", [])
            if node.get("nodeType") == "EventDefinition" and node.get("name") == abi_event["name"]
        ]
        full_types = self._correlate_parameters(definitions, inputs)
        declaration_id = None
        if full_types is not None:
            declaration_id = next(
                node["id"] for node in definitions if self._correlate_parameters([node], inputs) is not None
            )

        return EventEntry(
            name=abi_event["name"],
            signature=signature,
            topic=event_signature_to_log_topic(signature),
            anonymous=abi_event.get("anonymous", False),
            abi=abi_event,
            param_names=tuple(param.get("name", "") for param in inputs),
            indexed=tuple(param.get("indexed", False) for param in inputs),
            abi_types=tuple(self.abi_param_type(param) for param in inputs),
            full_types=full_types,
            declaration_id=declaration_id,
        )

    def _correlate_parameters(
        self, definitions: list[dict[str, Any]], abi_params: list[dict[str, Any]]
    ) -> tuple[TypeId | None, ...] | None:
        """
        Finds the AST definition whose parameters match the ABI parameters.  Unresolvable AST parameters are kept
        as None, as long as every resolvable parameter matches the ABI type.
        """
        abi_types = [collapse_if_tuple(param) for param in abi_params]
        for definition in definitions:
            params = definition.get("parameters", {}).get("parameters", [])
            if len(params) != len(abi_params):
                continue

            resolved = tuple(self.resolve_type_name(param.get("typeName")) for param in params)
            if all(
                type_id is None or self._abi_string(type_id) == abi_type
                for type_id, abi_type in zip(resolved, abi_types, strict=True)
            ):
                return resolved
        return None

    def _abi_string(self, type_id: TypeId) -> str | None:
        try:
            return self.type_table.abi_type_string(type_id)
        except (TypeError, KeyError):
            return None
