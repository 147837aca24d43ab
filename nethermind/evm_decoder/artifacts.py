import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from eth_utils import to_checksum_address
from web3.contract import Contract

root_logger = logging.getLogger("nethermind")
logger = root_logger.getChild("evm_decoder").getChild("artifacts")


@dataclass
class ContractArtifact:
    """
    Compiled contract metadata, in the shape of a Truffle artifact.  Only ``contract_name`` and ``abi`` are required.
    The AST enables full mode decoding, and bytecode enables identifying the contract on-chain.
    """

    contract_name: str
    abi: list[dict[str, Any]]
    bytecode: str | None = None
    deployed_bytecode: str | None = None
    ast: dict[str, Any] | None = None
    networks: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, artifact: dict[str, Any]) -> "ContractArtifact":
        """
        Loads an artifact from a Truffle style artifact dictionary

        :param artifact: Dict with ``contractName``, ``abi`` and optional ``bytecode``, ``deployedBytecode``,
            ``ast`` (or ``legacyAST``) and ``networks`` keys
        """
        return cls(
            contract_name=artifact["contractName"],
            abi=artifact["abi"],
            bytecode=_normalize_bytecode(artifact.get("bytecode")),
            deployed_bytecode=_normalize_bytecode(artifact.get("deployedBytecode")),
            ast=artifact.get("ast") or artifact.get("legacyAST") or None,
            networks=artifact.get("networks", {}),
        )

    @classmethod
    def from_json_file(cls, path: str | Path) -> "ContractArtifact":
        """Loads an artifact from a Truffle build JSON file"""
        with open(path, "r", encoding="utf-8") as artifact_file:
            return cls.from_dict(json.load(artifact_file))

    @classmethod
    def from_web3_contract(cls, contract: type[Contract] | Contract, contract_name: str | None = None):
        """
        Builds an ABI-only artifact from a web3 contract factory or instance.  Web3 contracts carry no AST, so
        decoders built from this artifact only operate in ABI mode.
        """
        bytecode = getattr(contract, "bytecode", None)
        bytecode_runtime = getattr(contract, "bytecode_runtime", None)
        return cls(
            contract_name=contract_name or getattr(contract, "contract_name", None) or "Contract",
            abi=list(contract.abi),
            bytecode=_normalize_bytecode(bytecode.hex() if isinstance(bytecode, bytes) else bytecode),
            deployed_bytecode=_normalize_bytecode(
                bytecode_runtime.hex() if isinstance(bytecode_runtime, bytes) else bytecode_runtime
            ),
        )

    def address_for_network(self, network_id: str | int) -> str | None:
        """Returns the checksummed address the artifact was deployed to on a network, or None"""
        network = self.networks.get(str(network_id))
        if not network or not network.get("address"):
            return None
        return to_checksum_address(network["address"])


def find_artifact_for_contract(
    contract: type[Contract] | Contract, artifacts: list[ContractArtifact]
) -> ContractArtifact | None:
    """Finds the artifact describing a web3 contract by comparing ABIs"""
    contract_abi = list(contract.abi)
    for artifact in artifacts:
        if artifact.abi == contract_abi:
            return artifact
    return None


def _normalize_bytecode(bytecode: str | None) -> str | None:
    if not bytecode:
        return None
    hex_code = bytecode[2:] if bytecode.startswith("0x") else bytecode
    return hex_code.lower() if hex_code else None
