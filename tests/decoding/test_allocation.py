import pytest

from nethermind.evm_decoder.artifacts import ContractArtifact
from nethermind.evm_decoder.decoding import StorageAllocator, TypeResolver
from nethermind.evm_decoder.exceptions import ContractAllocationFailedError
from nethermind.evm_decoder.types import Indirection, SlotDescriptor
from tests.resources.artifacts import (
    inheritance_artifacts,
    packed_artifact,
    token_artifact,
    token_artifact_without_ast,
    uint_artifact,
)


def _allocate(name, *artifacts):
    project = TypeResolver([ContractArtifact.from_dict(artifact) for artifact in artifacts]).resolve()
    return StorageAllocator(project).allocate(project.contract(name))


def test_value_types_pack_into_slots():
    allocation = _allocate("Packed", packed_artifact())

    assert allocation.names() == ["a", "b", "c", "small", "tail"]
    assert allocation["a"].pointer == SlotDescriptor(0, 0, 1)
    assert allocation["b"].pointer == SlotDescriptor(0, 1, 2)
    assert allocation["c"].pointer == SlotDescriptor(1, 0, 32)

    # Four uint64 values fit in each slot
    assert allocation["small"].pointer == SlotDescriptor(2, 0, 64)
    assert allocation["tail"].pointer == SlotDescriptor(4, 0, 1)


def test_token_layout():
    allocation = _allocate("Token", token_artifact())

    assert "MAX_SUPPLY" not in allocation
    assert allocation["name"].pointer == SlotDescriptor(0, 0, 32, Indirection.dynamic)
    assert allocation["decimals"].pointer == SlotDescriptor(1, 0, 1)
    assert allocation["status"].pointer == SlotDescriptor(1, 1, 1)
    assert allocation["owner"].pointer == SlotDescriptor(1, 2, 20)
    assert allocation["balances"].pointer.slot == 2
    assert allocation["values"].pointer.slot == 3
    assert allocation["account"].pointer.slot == 4
    assert allocation["allowances"].pointer.slot == 6
    assert allocation["enabled"].pointer.slot == 7
    assert all(variable.defining_contract == "Token" for variable in allocation.variables)


def test_struct_layout():
    allocation = _allocate("Token", token_artifact())
    layout = allocation.struct_layouts[allocation["account"].type_id]

    assert layout.slots == 2
    balance, frozen, owner = layout.members
    assert (balance.pointer.slot, balance.pointer.offset) == (0, 0)
    assert (frozen.pointer.slot, frozen.pointer.offset) == (0, 16)
    assert (owner.pointer.slot, owner.pointer.offset) == (1, 0)


def test_inherited_variables_come_first():
    allocation = _allocate("Derived", *inheritance_artifacts())

    assert allocation.names() == ["x", "y"]
    assert allocation["x"].pointer.slot == 0
    assert allocation["x"].defining_contract == "Base"
    assert allocation["y"].pointer.slot == 1
    assert allocation["y"].defining_contract == "Derived"


def test_allocation_is_deterministic():
    first = _allocate("Token", token_artifact())
    second = _allocate("Token", token_artifact())

    assert [variable.pointer for variable in first.variables] == [variable.pointer for variable in second.variables]


def test_missing_ast_fails():
    with pytest.raises(ContractAllocationFailedError):
        _allocate("Token", token_artifact_without_ast())


def test_missing_ancestor_fails():
    derived = inheritance_artifacts()[1]
    derived_node = next(node for node in derived["ast"]["nodes"] if node["name"] == "Derived")
    derived_node["linearizedBaseContracts"].append(99_999)

    with pytest.raises(ContractAllocationFailedError):
        _allocate("Derived", derived)


def test_inheritance_cycle_fails():
    base, derived = inheritance_artifacts()
    base_node, derived_node = base["ast"]["nodes"]
    base_node["linearizedBaseContracts"].append(derived_node["id"])

    with pytest.raises(ContractAllocationFailedError, match="cycle"):
        _allocate("Derived", base, derived)


def test_separately_compiled_artifacts():
    first = uint_artifact("First", ["alpha"])

    assert _allocate("First", first, uint_artifact("Second", ["beta", "gamma"])).names() == ["alpha"]
    with pytest.raises(ContractAllocationFailedError):
        _allocate("Second", first, uint_artifact("Second", ["beta", "gamma"]))
    with pytest.raises(ContractAllocationFailedError):
        _allocate("Second", first, uint_artifact("Second", ["beta"]))
