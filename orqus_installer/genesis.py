"""
Genesis resolution for both layers.

The consensus (CometBFT) and execution (orqus-reth) genesis documents must be
identical to the rest of the network, so each is obtained at most once per
installation and reused afterwards. Sources are tried in a strict order:

Consensus genesis:  existing file > explicit GENESIS_URL > first peer's RPC
                    (non-validators only) > freshly synthesized document
Execution genesis:  existing file > explicit RETH_GENESIS_URL > release artifact

Presence of a file is what counts, not its content hash.
"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Tuple

import requests

from .config import InstallerConfig
from .errors import ArtifactFetchFailed, GenesisFetchFailed, InvalidConfiguration, InvalidGenesisFormat
from .identity import Identity
from .roles import signs_blocks
from .state import InstallationLayout, write_atomic

logger = logging.getLogger(__name__)

PEER_RPC_PORT = 26657
PEER_TIMEOUT = 10
EXPLICIT_TIMEOUT = 30
DOWNLOAD_TIMEOUT = 120


class GenesisSource(str, Enum):
    EXISTING = "existing"
    EXPLICIT_URL = "explicit-url"
    PEER = "peer"
    SYNTHESIZED = "synthesized"
    RELEASE_ARTIFACT = "release-artifact"


@dataclass(frozen=True)
class ChainIdentity:
    chain_id: str
    consensus_genesis: Path
    execution_genesis: Path
    consensus_source: GenesisSource
    execution_source: GenesisSource


@dataclass
class FetchedGenesis:
    document: dict
    text: str
    wrapped: bool

    def serialized(self) -> str:
        """RPC envelopes are unwrapped and re-serialized; raw documents are kept byte for byte."""
        if self.wrapped:
            return json.dumps(self.document, indent=2) + "\n"
        return self.text


def peer_genesis_url(peer: str) -> str:
    """Map a ``node_id@host:port`` peer descriptor to its CometBFT RPC /genesis endpoint."""
    address = peer.split('@', 1)[-1].strip()
    if address.startswith('['):
        if ']' not in address:
            raise InvalidConfiguration(f"Malformed peer address: {peer}", hint="Expected node_id@[ipv6]:port")
        host = address[1:address.index(']')]
        return f"http://[{host}]:{PEER_RPC_PORT}/genesis"
    host = address.rsplit(':', 1)[0] if ':' in address else address
    return f"http://{host}:{PEER_RPC_PORT}/genesis"


def parse_genesis_response(body: bytes) -> FetchedGenesis:
    """
    Accept either a raw genesis document or the CometBFT RPC envelope
    ``{"result": {"genesis": {...}}}``.
    """
    try:
        text = body.decode('utf-8')
    except UnicodeDecodeError as e:
        raise InvalidGenesisFormat(f"Genesis response is not UTF-8: {e}")
    try:
        data = json.loads(text)
    except ValueError as e:
        raise InvalidGenesisFormat(f"Genesis response is not valid JSON: {e}")
    if not isinstance(data, dict):
        raise InvalidGenesisFormat("Genesis response is not a JSON object")

    result = data.get('result')
    if isinstance(result, dict) and isinstance(result.get('genesis'), dict):
        return FetchedGenesis(document=result['genesis'], text=text, wrapped=True)
    return FetchedGenesis(document=data, text=text, wrapped=False)


def genesis_timestamp(now: datetime) -> str:
    """RFC 3339 UTC timestamp with nanosecond precision, as CometBFT writes it."""
    now = now.astimezone(timezone.utc)
    return now.strftime('%Y-%m-%dT%H:%M:%S.') + f"{now.microsecond * 1000:09d}Z"


class GenesisResolver:
    """Produces a consistent pair of genesis documents before any process starts"""

    def __init__(self, config: InstallerConfig, layout: InstallationLayout, identity: Identity,
                 session=None, clock: Callable[[], datetime] = None):
        self.config = config
        self.layout = layout
        self.identity = identity
        self.session = session or requests.Session()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def resolve(self, release_provider: Callable = None) -> ChainIdentity:
        """
        Resolve both documents and return the agreed chain identity.

        release_provider is called only when the execution genesis has to come
        from the release artifact.
        """
        chain_id, consensus_source = self.resolve_consensus_genesis()
        try:
            execution_source = self.resolve_execution_genesis(release_provider)
        except BaseException:
            # a retry must resolve the consensus genesis again rather than reuse this one
            if consensus_source is not GenesisSource.EXISTING:
                logger.warning("Discarding the consensus genesis obtained by this failed install")
                self.layout.consensus_genesis.unlink(missing_ok=True)
            raise
        self._check_consistency(chain_id, consensus_source, execution_source)
        return ChainIdentity(
            chain_id=chain_id,
            consensus_genesis=self.layout.consensus_genesis,
            execution_genesis=self.layout.execution_genesis,
            consensus_source=consensus_source,
            execution_source=execution_source,
        )

    # Consensus layer

    def resolve_consensus_genesis(self) -> Tuple[str, GenesisSource]:
        genesis_file = self.layout.consensus_genesis

        if genesis_file.exists():
            logger.info("CometBFT genesis already exists, reusing it")
            return self._read_chain_id(genesis_file), GenesisSource.EXISTING

        if self.config.genesis_url:
            url = self.config.genesis_url
            logger.info(f"Downloading CometBFT genesis from {url}...")
            try:
                fetched = self._fetch(url, EXPLICIT_TIMEOUT)
            except requests.RequestException as e:
                raise GenesisFetchFailed(f"Failed to download genesis from {url}: {e}")
            chain_id = self._store_consensus(fetched)
            logger.info(f"CometBFT genesis downloaded (chain_id: {chain_id})")
            return chain_id, GenesisSource.EXPLICIT_URL

        if not signs_blocks(self.config.role) and self.config.persistent_peers:
            fetched = self._fetch_from_peer(self.config.persistent_peers[0])
            if fetched is not None:
                chain_id = self._store_consensus(fetched)
                logger.info(f"CometBFT genesis fetched from peer (chain_id: {chain_id})")
                return chain_id, GenesisSource.PEER

        return self._synthesize(), GenesisSource.SYNTHESIZED

    def _fetch_from_peer(self, peer) -> Optional[FetchedGenesis]:
        url = peer_genesis_url(peer)
        logger.info(f"Fetching CometBFT genesis from peer {url}...")
        try:
            fetched = self._fetch(url, PEER_TIMEOUT)
            _require_chain_id(fetched.document)
            return fetched
        except (requests.RequestException, InvalidGenesisFormat) as e:
            if self.config.strict_peer_genesis:
                raise GenesisFetchFailed(
                    f"Could not fetch genesis from peer {peer}: {e}",
                    hint="Set GENESIS_URL or make the peer's RPC reachable",
                )
            logger.warning(f"Could not fetch genesis from peer ({e}), generating new genesis")
            return None

    def _store_consensus(self, fetched: FetchedGenesis) -> str:
        chain_id = _require_chain_id(fetched.document)
        write_atomic(self.layout.consensus_genesis, fetched.serialized())
        return chain_id

    def _synthesize(self) -> str:
        """
        Build a genesis with this node as the only validator. Correct only for
        bootstrapping a brand-new network.
        """
        logger.info("Generating new CometBFT genesis...")
        validator = self.identity.validator_info()
        chain_id = self.config.chain_id
        document = {
            "genesis_time": genesis_timestamp(self.clock()),
            "chain_id": chain_id,
            "initial_height": "1",
            "consensus_params": {
                "block": {"max_bytes": "22020096", "max_gas": "-1"},
                "evidence": {
                    "max_age_num_blocks": "100000",
                    "max_age_duration": "172800000000000",
                    "max_bytes": "1048576",
                },
                "validator": {"pub_key_types": ["ed25519"]},
                "version": {"app": "0"},
                "abci": {"vote_extensions_enable_height": "0"},
            },
            "validators": [
                {
                    "address": validator['address'],
                    "pub_key": {"type": validator['pub_key_type'], "value": validator['pub_key']},
                    "power": "1",
                    "name": self.config.moniker,
                }
            ],
            "app_hash": "",
        }
        write_atomic(self.layout.consensus_genesis, json.dumps(document, indent=2) + "\n")
        logger.info("CometBFT genesis generated")
        return chain_id

    def _read_chain_id(self, path) -> str:
        try:
            with open(path, 'r') as f:
                document = json.load(f)
        except ValueError as e:
            raise InvalidGenesisFormat(f"Existing genesis {path} is not valid JSON: {e}")
        return _require_chain_id(document)

    # Execution layer

    def resolve_execution_genesis(self, release_provider: Callable = None) -> GenesisSource:
        genesis_file = self.layout.execution_genesis
        if genesis_file.exists():
            logger.info("Reth genesis file already exists, skipping download")
            return GenesisSource.EXISTING

        if self.config.reth_genesis_url:
            url = self.config.reth_genesis_url
            source = GenesisSource.EXPLICIT_URL
            logger.info("Downloading reth genesis from custom URL...")
        else:
            if release_provider is None:
                raise ArtifactFetchFailed("No release available to take the reth genesis from")
            url = release_provider().artifact_url('genesis.json')
            source = GenesisSource.RELEASE_ARTIFACT
            logger.info("Downloading reth genesis from release...")

        try:
            self._download_to(url, genesis_file)
        except requests.RequestException as e:
            genesis_file.unlink(missing_ok=True)
            if source is GenesisSource.EXPLICIT_URL:
                raise GenesisFetchFailed(f"Failed to download reth genesis from {url}: {e}")
            raise ArtifactFetchFailed(f"Failed to download reth genesis from {url}: {e}")

        try:
            with open(genesis_file, 'r') as f:
                document = json.load(f)
            if not isinstance(document, dict):
                raise ValueError("top-level value is not an object")
        except (ValueError, UnicodeDecodeError) as e:
            genesis_file.unlink(missing_ok=True)
            raise InvalidGenesisFormat(f"Downloaded reth genesis is not valid JSON: {e}")

        logger.info(f"Reth genesis downloaded from {url}")
        return source

    def execution_chain_id(self) -> Optional[str]:
        try:
            with open(self.layout.execution_genesis, 'r') as f:
                chain_id = json.load(f).get('config', {}).get('chainId')
        except (OSError, ValueError, AttributeError):
            return None
        return None if chain_id is None else str(chain_id)

    # Shared

    def _fetch(self, url, timeout) -> FetchedGenesis:
        response = self.session.get(url, timeout=timeout)
        response.raise_for_status()
        return parse_genesis_response(response.content)

    def _download_to(self, url, path: Path):
        response = self.session.get(url, timeout=DOWNLOAD_TIMEOUT)
        response.raise_for_status()
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'wb') as f:
            f.write(response.content)

    def _check_consistency(self, chain_id, consensus_source, execution_source):
        if consensus_source is GenesisSource.SYNTHESIZED and not signs_blocks(self.config.role):
            logger.warning(
                f"{self.config.role.value} node is combining a freshly synthesized consensus genesis "
                f"with an execution genesis from {execution_source.value}; this node will not join "
                f"an existing network. Set GENESIS_URL to fetch the network's genesis."
            )
        execution_chain_id = self.execution_chain_id()
        if execution_chain_id is not None and execution_chain_id != chain_id:
            logger.warning(
                f"Execution genesis chainId {execution_chain_id} differs from consensus chain_id {chain_id}"
            )


def _require_chain_id(document) -> str:
    chain_id = document.get('chain_id') if isinstance(document, dict) else None
    if not chain_id:
        raise InvalidGenesisFormat("Genesis document has no chain_id")
    return str(chain_id)
