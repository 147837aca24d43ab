import logging
from typing import Any, Sequence

from eth_typing import ChecksumAddress
from web3 import Web3
from web3.contract import Contract

from .artifacts import ContractArtifact, find_artifact_for_contract
from .decoders import ContractDecoder, ContractInstanceDecoder, EventStream, WireDecoder
from .provider import ChainProvider, Web3Provider, as_provider
from .types import DecoderConfig, EventOptions

root_logger = logging.getLogger("nethermind")
logger = root_logger.getChild("evm_decoder")

ArtifactLike = ContractArtifact | dict[str, Any]


def _load_artifacts(artifacts: Sequence[ArtifactLike] | None) -> list[ContractArtifact]:
    return [
        artifact if isinstance(artifact, ContractArtifact) else ContractArtifact.from_dict(artifact)
        for artifact in artifacts or []
    ]


def _with_artifact(artifact: ContractArtifact, artifacts: list[ContractArtifact]) -> list[ContractArtifact]:
    if any(existing.contract_name == artifact.contract_name for existing in artifacts):
        return artifacts
    return [artifact, *artifacts]


def _contract_artifact(contract: type[Contract] | Contract, artifacts: list[ContractArtifact]) -> ContractArtifact:
    artifact = find_artifact_for_contract(contract, artifacts)
    if artifact is None:
        logger.info("No artifact matches the contract ABI.  Decoding with an ABI only artifact")
        artifact = ContractArtifact.from_web3_contract(contract)
    return artifact


def for_project(
    artifacts: Sequence[ArtifactLike],
    provider: Web3 | ChainProvider,
    config: DecoderConfig | None = None,
) -> WireDecoder:
    """
    Builds a decoder for every contract of a project

    :param artifacts: Truffle style artifacts, as ContractArtifacts or artifact dicts
    :param provider: Web3 connection, or any object implementing ChainProvider
    :param config: Decoding limits & formatting
    """
    return WireDecoder(_load_artifacts(artifacts), as_provider(provider), config)


def for_artifact(
    artifact: ArtifactLike,
    provider: Web3 | ChainProvider,
    artifacts: Sequence[ArtifactLike] | None = None,
    config: DecoderConfig | None = None,
) -> ContractDecoder:
    """
    Builds a decoder for one contract type

    :param artifact: Artifact of the contract to decode
    :param provider: Web3 connection, or any object implementing ChainProvider
    :param artifacts: Other artifacts of the project.  Needed for inherited contracts and types declared elsewhere
    :param config: Decoding limits & formatting
    """
    (contract_artifact,) = _load_artifacts([artifact])
    wire = WireDecoder(_with_artifact(contract_artifact, _load_artifacts(artifacts)), as_provider(provider), config)
    return ContractDecoder(wire, wire.contract(contract_artifact.contract_name)).init()


def for_contract(
    contract: type[Contract] | Contract,
    artifacts: Sequence[ArtifactLike] | None = None,
    config: DecoderConfig | None = None,
) -> ContractDecoder:
    """
    Builds a decoder for the contract type of a web3 contract.  The contract's artifact is looked up in
    ``artifacts`` by ABI.  Without a matching artifact, the decoder runs in ABI mode only.
    """
    loaded = _load_artifacts(artifacts)
    return for_artifact(_contract_artifact(contract, loaded), contract.w3, loaded, config)


def for_deployed_artifact(
    artifact: ArtifactLike,
    provider: Web3 | ChainProvider,
    artifacts: Sequence[ArtifactLike] | None = None,
    config: DecoderConfig | None = None,
) -> ContractInstanceDecoder:
    """
    Builds a decoder for the instance an artifact was deployed to, read from the artifact's ``networks``

    :raises ContractNotFoundError: If the artifact has no deployment on the provider's network
    """
    return for_artifact(artifact, provider, artifacts, config).for_instance()


def for_deployed_contract(
    contract: type[Contract] | Contract,
    artifacts: Sequence[ArtifactLike] | None = None,
    config: DecoderConfig | None = None,
) -> ContractInstanceDecoder:
    """Builds a decoder for the deployed instance of a web3 contract's artifact"""
    return for_contract(contract, artifacts, config).for_instance()


def for_artifact_at(
    artifact: ArtifactLike,
    address: str,
    provider: Web3 | ChainProvider,
    artifacts: Sequence[ArtifactLike] | None = None,
    config: DecoderConfig | None = None,
) -> ContractInstanceDecoder:
    """Builds a decoder for an instance of an artifact at an address"""
    return for_artifact(artifact, provider, artifacts, config).for_instance(address)


def for_contract_at(
    contract: type[Contract] | Contract,
    address: str,
    artifacts: Sequence[ArtifactLike] | None = None,
    config: DecoderConfig | None = None,
) -> ContractInstanceDecoder:
    """Builds a decoder for an instance of a web3 contract type at an address"""
    return for_contract(contract, artifacts, config).for_instance(address)


def for_contract_instance(
    contract: Contract,
    artifacts: Sequence[ArtifactLike] | None = None,
    config: DecoderConfig | None = None,
) -> ContractInstanceDecoder:
    """Builds a decoder for a web3 contract instance, at the instance's address"""
    address: ChecksumAddress = contract.address
    return for_contract_at(contract, address, artifacts, config)


__all__ = [
    "ChainProvider",
    "ContractArtifact",
    "ContractDecoder",
    "ContractInstanceDecoder",
    "DecoderConfig",
    "EventOptions",
    "EventStream",
    "Web3Provider",
    "WireDecoder",
    "for_artifact",
    "for_artifact_at",
    "for_contract",
    "for_contract_at",
    "for_contract_instance",
    "for_deployed_artifact",
    "for_deployed_contract",
    "for_project",
]
