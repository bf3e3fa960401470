import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Optional

log = logging.getLogger(__name__)

METADATA_PREFIX = 'nft:metadata:'
MINT_SEQUENCE_KEY = 'burn:mint_seq'


def iso_now():
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


@dataclass
class NFTMetadataRecord:
    minted_token_id: int
    content_url: str
    claimant_address: str
    burn_tx_id: str
    transfer_tx_id: Optional[str] = None
    content_id: Optional[str] = None
    permanent_storage_id: Optional[str] = None
    permanent_url: Optional[str] = None
    created_at: str = field(default_factory=iso_now)

    @property
    def image_url(self):
        return self.permanent_url or self.content_url


class MetadataStore:
    """NFT metadata keyed by minted token id. Records are written once."""

    def __init__(self, kv):
        self.kv = kv

    def put(self, record):
        key = METADATA_PREFIX + str(record.minted_token_id)
        stored = self.kv.set_if_absent(key, json.dumps(asdict(record)))
        if not stored:
            log.warning(f'Metadata for token {record.minted_token_id} already stored, keeping the original')
        return stored

    def get(self, token_id):
        raw = self.kv.get(METADATA_PREFIX + str(token_id))
        if raw is None:
            return None
        return NFTMetadataRecord(**json.loads(raw))

    def next_sequence(self):
        return self.kv.increment(MINT_SEQUENCE_KEY)


def token_name(collection_name, number):
    return f'{collection_name} {int(number):04d}'


def build_attributes(claimant, burn_tx_id, transfer_tx_id, storage, timestamp):
    attributes = [
        {'trait_type': 'Burner', 'value': claimant},
        {'trait_type': 'Burn Tx', 'value': burn_tx_id},
        {'trait_type': 'Storage', 'value': storage},
        {'trait_type': 'Timestamp', 'value': timestamp},
    ]
    if transfer_tx_id:
        attributes.append({'trait_type': 'Transfer Tx', 'value': transfer_tx_id})
    return attributes


def render_metadata(record, collection_name, external_url):
    """ERC-721 metadata JSON for the dynamic metadata endpoint."""
    on_chain = bool(record.permanent_storage_id)
    image = record.image_url
    return {
        'name': token_name(collection_name, record.minted_token_id),
        'description': f'Forged for {record.claimant_address}. Burn tx: {record.burn_tx_id}',
        'image': image,
        'image_url': image,
        'external_url': external_url,
        'attributes': build_attributes(
            record.claimant_address,
            record.burn_tx_id,
            record.transfer_tx_id,
            'Permanent (On-Chain)' if on_chain else 'IPFS',
            record.created_at,
        ),
        'properties': {
            'ipfs_backup': record.content_url,
            'permanent_storage_id': record.permanent_storage_id,
            'on_chain': on_chain,
        },
    }


def build_mint_document(collection_name, number, image, content_url, claimant, burn_tx_id,
                        transfer_tx_id=None, permanent_storage_id=None, external_url=None):
    """Metadata document pinned before a mint; its content URL becomes the token URI."""
    return {
        'name': token_name(collection_name, number),
        'description': f'Forged for {claimant}. Burn tx: {burn_tx_id}',
        'image': image,
        'external_url': external_url,
        'attributes': build_attributes(
            claimant,
            burn_tx_id,
            transfer_tx_id,
            'Permanent (On-Chain)' if permanent_storage_id else 'IPFS',
            iso_now(),
        ),
        'properties': {
            'ipfs_backup': content_url,
            'permanent_storage_id': permanent_storage_id,
            'on_chain': bool(permanent_storage_id),
        },
    }
