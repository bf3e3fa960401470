"""
Leaderboard aggregation.

Current NFT ownership is rebuilt from the contract's Transfer log (last write
wins per token id), each live token is resolved to an artifact through its
metadata reference, and owners are ranked by how many artifacts they hold.
Only a failure to read the Transfer log fails the whole view; every other
lookup degrades the one token or owner it concerns.
"""
import json
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Union

from eth_abi import decode
from eth_abi.exceptions import DecodingError

from config import ZERO_ADDRESS
from content_store import parse_content_id
from errors import BurnforgeError, UpstreamServiceFailed
from ledger import TRANSFER_EVENT, CallRequest, decode_topic_address, topic_to_int

log = logging.getLogger(__name__)

CHECKPOINT_KEY = 'leaderboard:checkpoint'

LINK_METADATA = 'metadata'
LINK_REDEMPTION = 'redemption'
LINK_MINTER = 'minter'
LINK_UNLINKED = 'unlinked'

LEGACY_MINTER_ADDRESS = 'minter_address'


@dataclass(frozen=True)
class InternalReference:
    token_id: int


@dataclass(frozen=True)
class ContentReference:
    content_id: str


@dataclass(frozen=True)
class DirectReference:
    url: str


MetadataReference = Union[InternalReference, ContentReference, DirectReference]


def classify_reference(uri, internal_prefix):
    """Decide once what kind of reference a token URI is. None for empty URIs."""
    if not uri:
        return None
    if internal_prefix and uri.startswith(internal_prefix):
        tail = uri[len(internal_prefix):].strip('/').split('?')[0]
        if tail.isdigit():
            return InternalReference(int(tail))
    content_id = parse_content_id(uri)
    if content_id:
        return ContentReference(content_id)
    if uri.startswith(('http://', 'https://')):
        return DirectReference(uri)
    return None


@dataclass
class TokenOwnership:
    token_id: int
    owner: str
    last_block: int
    minter: Optional[str] = None


def fold_transfers(events, tokens=None):
    """Replay Transfer logs into token id -> TokenOwnership, later events winning."""
    tokens = {} if tokens is None else tokens
    for event in sorted(events, key=lambda e: (e.block_number, e.log_index)):
        if len(event.topics) < 4:
            continue
        sender = decode_topic_address(event.topics[1])
        owner = decode_topic_address(event.topics[2])
        token_id = topic_to_int(event.topics[3])
        current = tokens.get(token_id)
        minter = current.minter if current else None
        if sender == ZERO_ADDRESS:
            minter = owner
        tokens[token_id] = TokenOwnership(token_id, owner, event.block_number, minter)
    return tokens


class FullReplay:
    """Rebuild ownership from genesis on every run."""

    name = 'full'

    def load(self, ledger, nft_contract, genesis_block=0, chunk_size=None):
        events = ledger.get_event_logs(nft_contract, TRANSFER_EVENT, from_block=genesis_block,
                                       chunk_size=chunk_size)
        return fold_transfers(events)


class IncrementalCheckpoint:
    """Persist the folded ownership map and replay only blocks after it."""

    name = 'incremental'

    def __init__(self, kv, key=CHECKPOINT_KEY):
        self.kv = kv
        self.key = key

    def _read(self):
        try:
            raw = self.kv.get(self.key)
        except BurnforgeError as e:
            log.warning(f'Leaderboard checkpoint unreadable, replaying from genesis: {e}')
            return None, {}
        if not raw:
            return None, {}
        try:
            state = json.loads(raw)
            tokens = {
                int(token_id): TokenOwnership(int(token_id), owner, block, minter)
                for token_id, (owner, block, minter) in state['tokens'].items()
            }
            return int(state['lastBlock']), tokens
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            log.warning(f'Leaderboard checkpoint corrupt, replaying from genesis: {e!r}')
            return None, {}

    def load(self, ledger, nft_contract, genesis_block=0, chunk_size=None):
        last_block, tokens = self._read()
        head = ledger.block_number()
        start = genesis_block if last_block is None else last_block + 1
        if start <= head:
            events = ledger.get_event_logs(nft_contract, TRANSFER_EVENT, from_block=start, to_block=head,
                                           chunk_size=chunk_size)
            fold_transfers(events, tokens)
        state = {
            'lastBlock': max(head, last_block or 0),
            'tokens': {str(t.token_id): [t.owner, t.last_block, t.minter] for t in tokens.values()},
        }
        try:
            self.kv.set(self.key, json.dumps(state))
        except BurnforgeError as e:
            log.warning(f'Leaderboard checkpoint not saved: {e}')
        return tokens


def checkpoint_strategy(name, kv):
    if name == 'incremental':
        return IncrementalCheckpoint(kv)
    if name == 'full':
        return FullReplay()
    raise ValueError(f'Unknown leaderboard checkpoint strategy: {name}')


def _iso_to_ms(value):
    if isinstance(value, (int, float)):
        return int(value)
    if not value:
        return None
    try:
        return int(datetime.fromisoformat(value.replace('Z', '+00:00')).timestamp() * 1000)
    except ValueError:
        return None


@dataclass
class TokenArtifact:
    token_id: int
    image_url: str = ''
    timestamp: Optional[int] = None
    link: str = LINK_UNLINKED
    last_block: int = 0

    def to_dict(self):
        return {
            'tokenId': str(self.token_id),
            'imageUrl': self.image_url,
            'timestamp': self.timestamp,
            'link': self.link,
        }


@dataclass
class LeaderboardEntry:
    owner_address: str
    total_count: int = 0
    total_quantity: int = 0
    most_recent_artifact_url: str = ''
    most_recent_timestamp: Optional[int] = None
    per_token_artifacts: List[TokenArtifact] = field(default_factory=list)
    display_name: Optional[str] = None

    def to_dict(self):
        return {
            'address': self.owner_address,
            'displayName': self.display_name,
            'totalCount': self.total_count,
            'totalQuantity': self.total_quantity,
            'mostRecentArtifactUrl': self.most_recent_artifact_url,
            'mostRecentTimestamp': self.most_recent_timestamp,
            'tokens': [a.to_dict() for a in self.per_token_artifacts],
        }


@dataclass
class LeaderboardResult:
    entries: List[LeaderboardEntry]
    error: Optional[str] = None

    def to_dict(self):
        body = {'entries': [e.to_dict() for e in self.entries]}
        if self.error:
            body['error'] = self.error
        return body


def rank(entries):
    """Count descending, then quantity descending, then address for a total order."""
    return sorted(entries, key=lambda e: (-e.total_count, -e.total_quantity, e.owner_address))


def group_by_owner(artifacts, owners, per_token_quantity):
    grouped = {}
    for artifact in artifacts:
        owner = owners[artifact.token_id]
        entry = grouped.setdefault(owner, LeaderboardEntry(owner_address=owner))
        entry.per_token_artifacts.append(artifact)
        entry.total_count += 1
        entry.total_quantity += per_token_quantity

    for entry in grouped.values():
        entry.per_token_artifacts.sort(
            key=lambda a: (a.timestamp or 0, a.last_block, a.token_id), reverse=True,
        )
        latest = entry.per_token_artifacts[0]
        entry.most_recent_artifact_url = latest.image_url
        entry.most_recent_timestamp = latest.timestamp
    return list(grouped.values())


class LeaderboardAggregator:
    def __init__(self, ledger, nft_contract, metadata_store, content_store, replay_guard,
                 per_token_quantity, dead_address, internal_prefix=None, checkpoint=None,
                 genesis_block=0, chunk_size=None, name_registry=None,
                 name_function='getName(address)', legacy_link_policy=LINK_UNLINKED, max_workers=8):
        self.ledger = ledger
        self.nft_contract = nft_contract
        self.metadata_store = metadata_store
        self.content_store = content_store
        self.replay_guard = replay_guard
        self.per_token_quantity = per_token_quantity
        self.dead_address = dead_address.lower()
        self.internal_prefix = internal_prefix
        self.checkpoint = checkpoint or FullReplay()
        self.genesis_block = genesis_block
        self.chunk_size = chunk_size
        self.name_registry = name_registry
        self.name_function = name_function
        self.legacy_link_policy = legacy_link_policy
        self.max_workers = max_workers

    def build(self):
        try:
            tokens = self.checkpoint.load(self.ledger, self.nft_contract, self.genesis_block, self.chunk_size)
        except UpstreamServiceFailed as e:
            log.error(f'Leaderboard event log fetch failed: {e}')
            return LeaderboardResult(entries=[], error='Failed to read NFT transfer history')

        live = {
            token_id: ownership for token_id, ownership in tokens.items()
            if ownership.owner not in (self.dead_address, ZERO_ADDRESS)
        }
        uris = self._token_uris(sorted(live))
        artifacts = self._resolve_all(live, uris)
        owners = {token_id: ownership.owner for token_id, ownership in live.items()}
        entries = rank(group_by_owner(artifacts, owners, self.per_token_quantity))
        self._attach_names(entries)
        log.info(f'Leaderboard built: {len(live)} live tokens across {len(entries)} owners')
        return LeaderboardResult(entries=entries)

    def _token_uris(self, token_ids):
        if not token_ids:
            return {}
        requests = [CallRequest(self.nft_contract, 'tokenURI(uint256)', (token_id,)) for token_id in token_ids]
        try:
            results = self.ledger.batch_call(requests)
        except UpstreamServiceFailed as e:
            log.warning(f'tokenURI batch failed, resolving tokens without references: {e}')
            return {}
        uris = {}
        for token_id, result in zip(token_ids, results):
            if not result.success:
                continue
            try:
                (uris[token_id],) = decode(['string'], result.data)
            except (DecodingError, ValueError) as e:
                log.warning(f'Undecodable tokenURI for token {token_id}: {e}')
        return uris

    def _link(self, artifact, ownership):
        """Attach a redemption record to a token without metadata indirection."""
        record = self.replay_guard.find_by_token(artifact.token_id)
        if record is not None:
            artifact.link = LINK_REDEMPTION
        elif self.legacy_link_policy == LEGACY_MINTER_ADDRESS and ownership.minter:
            record = self.replay_guard.latest_for(ownership.minter)
            if record is not None:
                artifact.link = LINK_MINTER
        if record is not None:
            artifact.timestamp = record.created_at
            artifact.image_url = artifact.image_url or record.content_url

    def _resolve_all(self, live, uris):
        artifacts = []
        to_fetch = []
        # Store lookups stay on the request thread; only gateway fetches fan out
        for token_id, ownership in live.items():
            artifact = TokenArtifact(token_id=token_id, last_block=ownership.last_block)
            reference = classify_reference(uris.get(token_id), self.internal_prefix)
            try:
                lookup_id = reference.token_id if isinstance(reference, InternalReference) else token_id
                record = self.metadata_store.get(lookup_id)
                if record is not None:
                    artifact.image_url = record.image_url
                    artifact.timestamp = _iso_to_ms(record.created_at)
                    artifact.link = LINK_METADATA
                else:
                    self._link(artifact, ownership)
            except BurnforgeError as e:
                log.warning(f'Store lookup failed for token {token_id}: {e}')
            if artifact.link != LINK_METADATA and isinstance(reference, (ContentReference, DirectReference)):
                to_fetch.append((artifact, reference))
            artifacts.append(artifact)

        if to_fetch:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                list(pool.map(lambda pair: self._fetch_document(*pair), to_fetch))
        return artifacts

    def _fetch_document(self, artifact, reference):
        try:
            if isinstance(reference, ContentReference):
                document = self.content_store.fetch_json(reference.content_id)
            else:
                document = json.loads(self.content_store.fetch_url(reference.url))
            image = document.get('image') or document.get('image_url') or ''
            content_id = parse_content_id(image)
            if image.startswith('ipfs://') and content_id:
                image = self.content_store.gateway_url(content_id)
            artifact.image_url = image or artifact.image_url
            if artifact.timestamp is None:
                for attribute in document.get('attributes') or []:
                    if attribute.get('trait_type') == 'Timestamp':
                        artifact.timestamp = _iso_to_ms(attribute.get('value'))
        except (BurnforgeError, ValueError, AttributeError, TypeError) as e:
            # Placeholder: the token still counts, it just has no image
            log.warning(f'Metadata fetch failed for token {artifact.token_id}: {e}')

    def _attach_names(self, entries):
        if not self.name_registry or not entries:
            return
        requests = [CallRequest(self.name_registry, self.name_function, (e.owner_address,)) for e in entries]
        try:
            results = self.ledger.batch_call(requests)
        except UpstreamServiceFailed as e:
            log.warning(f'Name lookup failed: {e}')
            return
        for entry, result in zip(entries, results):
            if not result.success or not result.data:
                continue
            try:
                (name,) = decode(['string'], result.data)
            except (DecodingError, ValueError) as e:
                log.warning(f'Undecodable name for {entry.owner_address}: {e}')
                continue
            entry.display_name = name or None
