from nethermind.evm_decoder.types.results import ErrorKind


class TypeResolutionError(Exception):
    """

    Raised when two declarations sharing a qualified name are structurally incompatible.  This usually means
    artifacts from different versions of a project were loaded together.  Fatal to the decoding session.

    """


class ContractAllocationFailedError(Exception):
    """

    Raised when the storage layout of a contract cannot be computed.  The following conditions will result in this
    error being raised:

        * The contract artifact has no AST, or the AST does not contain the contract
        * The inheritance chain contains a cycle, or references a contract that was not supplied
        * A state variable's type cannot be resolved

    """


class ContractBeingDecodedHasNoNodeError(Exception):
    """

    Raised when state variables are requested for a contract without usable AST information.  Transactions and
    logs can still be decoded in ABI mode.

    """

    def __init__(self, contract_name: str):
        super().__init__(f"Contract {contract_name} has no usable AST node.  State variables cannot be decoded")
        self.contract_name = contract_name


class ContractNotFoundError(Exception):
    """

    Raised when an instance decoder is requested without an address, and the artifact has no deployed address for
    the provider's network

    """


class UnknownVariableError(Exception):
    """Raised when a state variable name is not part of the contract's storage layout"""


class InvalidMappingKeyError(Exception):
    """Raised when watching a mapping key on a variable that is not a mapping, or with a key of the wrong type"""


class DecodingError(Exception):
    """

    Raised when bytes cannot be decoded as the requested type.  Caught per value, and converted into an ErrorResult
    so sibling values still decode

    """

    kind: ErrorKind
    raw: bytes

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.truncated, raw: bytes = b""):
        super().__init__(message)
        self.kind = kind
        self.raw = raw
