import logging
from math import ceil

from nethermind.evm_decoder.exceptions import ContractAllocationFailedError
from nethermind.evm_decoder.types import (
    ArrayType,
    ContractType,
    ContractTypeInfo,
    ElementaryKind,
    ElementaryType,
    EnumType,
    Indirection,
    MappingType,
    MemberAllocation,
    SlotDescriptor,
    StateVariableAllocation,
    StorageAllocation,
    StorageSize,
    StructLayout,
    StructType,
    TypeId,
)

from .resolver import ResolvedProject

root_logger = logging.getLogger("nethermind")
logger = root_logger.getChild("evm_decoder").getChild("allocation")

WORD_SIZE = 32


class StorageAllocator:
    """
    Computes the storage layout of contracts, following the rules the Solidity compiler uses:

        * Inherited variables are laid out base-to-derived, in the reverse of ``linearizedBaseContracts``
        * Value types are packed low-order first into the current slot, and start a new slot if they do not fit
        * Structs and static arrays start a new slot, and the variable after them starts a new slot
        * Dynamic arrays, mappings, strings and bytes occupy a full slot used as a seed for their data location

    Allocations are deterministic, so the same contract always yields the same layout.
    """

    project: ResolvedProject

    def __init__(self, project: ResolvedProject):
        self.project = project

    def allocate(self, contract: ContractTypeInfo) -> StorageAllocation:
        """
        Computes the StorageAllocation of a contract

        :raises ContractAllocationFailedError: If the contract has no AST, the inheritance chain is cyclic or
            references unknown contracts, or a variable type cannot be resolved
        """
        if not contract.full_mode_available:
            raise ContractAllocationFailedError(f"Contract {contract.name} has no AST to compute storage layout from")

        chain = self._linearize(contract)

        sizes: dict[TypeId, StorageSize] = {}
        struct_layouts: dict[TypeId, StructLayout] = {}
        variables: list[StateVariableAllocation] = []
        slot, offset = 0, 0

        for contract_id in reversed(chain):
            contract_name = self.project.contract_names[contract_id]
            for declaration in self.project.state_variables.get(contract_id, ()):
                if declaration.constant or declaration.immutable:
                    continue
                if declaration.type_id is None:
                    raise ContractAllocationFailedError(
                        f"Cannot resolve type '{declaration.type_string}' of {contract_name}.{declaration.name}"
                    )

                self._collect(declaration.type_id, sizes, struct_layouts)
                pointer, slot, offset = self._place(sizes[declaration.type_id], slot, offset)
                variables.append(
                    StateVariableAllocation(
                        name=declaration.name,
                        defining_contract=contract_name,
                        type_id=declaration.type_id,
                        pointer=pointer,
                    )
                )
                logger.debug(
                    f"Allocated {contract_name}.{declaration.name} to slot {pointer.slot} offset {pointer.offset}"
                )

        logger.info(f"Computed storage layout for {contract.name}: {len(variables)} variables")
        return StorageAllocation(
            contract_name=contract.name,
            variables=tuple(variables),
            struct_layouts=struct_layouts,
            storage_sizes=sizes,
        )

    def _linearize(self, contract: ContractTypeInfo) -> tuple[int, ...]:
        chain = contract.ancestor_ids
        if not chain:
            raise ContractAllocationFailedError(f"Contract {contract.name} has no inheritance information")
        if len(set(chain)) != len(chain):
            raise ContractAllocationFailedError(f"Inheritance chain of {contract.name} contains a cycle")

        for position, ancestor_id in enumerate(chain):
            if ancestor_id not in self.project.contract_names:
                raise ContractAllocationFailedError(
                    f"Contract {contract.name} inherits from AST node {ancestor_id}, which was not supplied"
                )
            # Ancestors may only inherit from contracts after them in the linearization
            if set(self.project.linearizations.get(ancestor_id, ())) & set(chain[:position]):
                raise ContractAllocationFailedError(f"Inheritance chain of {contract.name} contains a cycle")

        return chain

    @staticmethod
    def _place(size: StorageSize, slot: int, offset: int) -> tuple[SlotDescriptor, int, int]:
        """Places a value at the cursor.  Returns the value's descriptor and the advanced cursor"""
        if size.whole_slots:
            if offset > 0:
                slot, offset = slot + 1, 0
            pointer = SlotDescriptor(slot, 0, size.slots * WORD_SIZE, size.indirection)
            return pointer, slot + size.slots, 0

        if offset + size.size > WORD_SIZE:
            slot, offset = slot + 1, 0
        pointer = SlotDescriptor(slot, offset, size.size)
        return pointer, slot, offset + size.size

    def _collect(self, type_id: TypeId, sizes: dict[TypeId, StorageSize], struct_layouts: dict[TypeId, StructLayout]):
        """Computes the size of a type and every type reachable from it"""
        if type_id in sizes:
            return

        definition = self.project.type_table[type_id]
        match definition:
            case ElementaryType(kind=ElementaryKind.bytes | ElementaryKind.string):
                sizes[type_id] = StorageSize(WORD_SIZE, 1, True, Indirection.dynamic)

            case ElementaryType():
                sizes[type_id] = StorageSize(definition.size, 1, False)

            case EnumType():
                sizes[type_id] = StorageSize(definition.size, 1, False)

            case ContractType():
                sizes[type_id] = StorageSize(20, 1, False)

            case MappingType(key=key, value=value):
                sizes[type_id] = StorageSize(WORD_SIZE, 1, True, Indirection.dynamic)
                self._collect(key, sizes, struct_layouts)
                self._collect(value, sizes, struct_layouts)

            case ArrayType(element=element, length=None):
                sizes[type_id] = StorageSize(WORD_SIZE, 1, True, Indirection.dynamic)
                self._collect(element, sizes, struct_layouts)

            case ArrayType(element=element, length=length):
                self._collect(element, sizes, struct_layouts)
                sizes[type_id] = StorageSize(WORD_SIZE, self._static_array_slots(sizes[element], length), True)

            case StructType(members=members):
                # Reserve a placeholder so recursive references through dynamic types terminate
                sizes[type_id] = StorageSize(WORD_SIZE, 1, True)
                layout = self._struct_layout(members, sizes, struct_layouts)
                struct_layouts[type_id] = layout
                sizes[type_id] = StorageSize(WORD_SIZE, layout.slots, True)

            case _:
                raise ContractAllocationFailedError(f"Type {definition} cannot be stored in contract storage")

    @staticmethod
    def _static_array_slots(element: StorageSize, length: int) -> int:
        if element.whole_slots:
            return element.slots * length
        per_slot = WORD_SIZE // element.size
        return ceil(length / per_slot)

    def _struct_layout(
        self,
        members: tuple[tuple[str, TypeId], ...],
        sizes: dict[TypeId, StorageSize],
        struct_layouts: dict[TypeId, StructLayout],
    ) -> StructLayout:
        allocations = []
        slot, offset = 0, 0
        for name, member_type in members:
            self._collect(member_type, sizes, struct_layouts)
            pointer, slot, offset = self._place(sizes[member_type], slot, offset)
            allocations.append(MemberAllocation(name, member_type, pointer))

        total_slots = slot + (1 if offset > 0 else 0)
        return StructLayout(members=tuple(allocations), slots=max(total_slots, 1))
