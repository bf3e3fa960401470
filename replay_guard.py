"""
Replay guard: the durable record of which burn transactions have been redeemed.

The record key `burn:tx:<burnTxHash>` is written with a conditional insert, so
under any amount of concurrency a burn produces exactly one RedemptionRecord.
The in-flight claim is a short-lived lease that stops two requests for the same
burn from both running generation while the first one is still working.
"""
import enum
import json
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Optional

log = logging.getLogger(__name__)

RECORD_PREFIX = 'burn:tx:'
CLAIM_PREFIX = 'burn:claim:'
MINT_CLAIM_PREFIX = 'burn:mint_claim:'
PAYMENT_PREFIX = 'burn:payment:'
TRANSFER_PREFIX = 'burn:transfer:'
TOKEN_INDEX_PREFIX = 'burn:token:'
LATEST_PREFIX = 'burn:latest:'
ADDRESS_COUNT_PREFIX = 'burn:count:'
GALLERY_KEY = 'burn:gallery'
TOTAL_TOKENS_KEY = 'burn:total_tokens'


class RecordOutcome(enum.Enum):
    INSERTED = 'inserted'
    ALREADY_EXISTS = 'already_exists'


def now_ms():
    return int(time.time() * 1000)


_FIELDS = {
    'primary_tx_id': 'txHash',
    'claimant_address': 'burner',
    'content_id': 'contentId',
    'content_url': 'contentUrl',
    'created_at': 'timestamp',
    'burned_quantity': 'burnedQuantity',
    'minted_token_id': 'mintedTokenId',
    'transfer_tx_id': 'transferTxHash',
    'image_url': 'imageUrl',
    'storage_quote': 'storageQuote',
    'permanent_storage_id': 'permanentStorageId',
    'warning': 'warning',
}


@dataclass
class RedemptionRecord:
    primary_tx_id: str
    claimant_address: str
    content_id: Optional[str]
    content_url: str
    created_at: int = field(default_factory=now_ms)
    burned_quantity: int = 0
    minted_token_id: Optional[int] = None
    transfer_tx_id: Optional[str] = None
    image_url: Optional[str] = None
    storage_quote: Optional[dict] = None
    permanent_storage_id: Optional[str] = None
    warning: Optional[str] = None

    def to_dict(self):
        return {_FIELDS[name]: value for name, value in asdict(self).items()}

    @classmethod
    def from_dict(cls, data):
        reverse = {camel: name for name, camel in _FIELDS.items()}
        return cls(**{reverse[k]: v for k, v in data.items() if k in reverse})

    def serialize(self):
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def deserialize(cls, raw):
        return cls.from_dict(json.loads(raw))


class ReplayGuard:
    def __init__(self, kv, claim_ttl=600):
        self.kv = kv
        self.claim_ttl = claim_ttl

    def exists(self, tx_id):
        return self.kv.exists(RECORD_PREFIX + tx_id.lower())

    def claim(self, tx_id):
        """Take the in-flight lease for tx_id. False if another request holds it."""
        return self.kv.set_if_absent(CLAIM_PREFIX + tx_id.lower(), str(now_ms()), ttl=self.claim_ttl)

    def release(self, tx_id):
        self.kv.delete(CLAIM_PREFIX + tx_id.lower())

    def claim_mint(self, tx_id):
        return self.kv.set_if_absent(MINT_CLAIM_PREFIX + tx_id.lower(), str(now_ms()), ttl=self.claim_ttl)

    def release_mint(self, tx_id):
        self.kv.delete(MINT_CLAIM_PREFIX + tx_id.lower())

    def _bind(self, key, tx_id):
        if self.kv.set_if_absent(key, tx_id.lower()):
            return True
        return self.kv.get(key) == tx_id.lower()

    def claim_payment(self, payment_tx_id, tx_id):
        """Bind a storage payment to one burn. True if it is unused or already bound to tx_id."""
        return self._bind(PAYMENT_PREFIX + payment_tx_id.lower(), tx_id)

    def claim_transfer(self, transfer_tx_id, tx_id):
        """Bind a treasury transfer to one burn, the same way as claim_payment."""
        return self._bind(TRANSFER_PREFIX + transfer_tx_id.lower(), tx_id)

    def record_once(self, tx_id, record):
        """Persist record unless tx_id already has one. The insert is the redemption gate."""
        tx_id = tx_id.lower()
        if not self.kv.set_if_absent(RECORD_PREFIX + tx_id, record.serialize()):
            log.warning(f'Redemption record for {tx_id} already exists')
            return RecordOutcome.ALREADY_EXISTS

        claimant = record.claimant_address.lower()
        self.kv.sorted_set_add(GALLERY_KEY, record.created_at, record.serialize())
        self.kv.increment(TOTAL_TOKENS_KEY, record.burned_quantity)
        self.kv.increment(ADDRESS_COUNT_PREFIX + claimant)
        self.kv.set(LATEST_PREFIX + claimant, tx_id)
        if record.minted_token_id is not None:
            self.kv.set(TOKEN_INDEX_PREFIX + str(record.minted_token_id), tx_id)
        log.info(f'Redemption record stored for {tx_id}')
        return RecordOutcome.INSERTED

    def get(self, tx_id):
        raw = self.kv.get(RECORD_PREFIX + tx_id.lower())
        return RedemptionRecord.deserialize(raw) if raw else None

    def attach_token_id(self, tx_id, token_id, permanent_storage_id=None, warning=None):
        """Late enrichment: the only mutation a record ever sees."""
        record = self.get(tx_id)
        if record is None:
            return None
        old = record.serialize()
        record.minted_token_id = token_id
        if permanent_storage_id is not None:
            record.permanent_storage_id = permanent_storage_id
        if warning is not None:
            record.warning = warning
        record.storage_quote = None

        self.kv.set(RECORD_PREFIX + tx_id.lower(), record.serialize())
        self.kv.sorted_set_remove(GALLERY_KEY, old)
        self.kv.sorted_set_add(GALLERY_KEY, record.created_at, record.serialize())
        if token_id is not None:
            self.kv.set(TOKEN_INDEX_PREFIX + str(token_id), tx_id.lower())
        return record

    def recent(self, limit=20, offset=0):
        return [
            RedemptionRecord.deserialize(raw)
            for raw in self.kv.sorted_set_range(GALLERY_KEY, offset=offset, limit=limit)
        ]

    def count(self):
        return self.kv.sorted_set_count(GALLERY_KEY)

    def total_burned(self, per_burn_quantity):
        total = self.kv.get_counter(TOTAL_TOKENS_KEY)
        if total is None:
            # Gallery predates the counter; seed it once
            total = self.count() * per_burn_quantity
            self.kv.set_counter(TOTAL_TOKENS_KEY, total)
        return total

    def has_redeemed(self, address):
        return (self.kv.get_counter(ADDRESS_COUNT_PREFIX + address.lower()) or 0) > 0

    def find_by_token(self, token_id):
        tx_id = self.kv.get(TOKEN_INDEX_PREFIX + str(token_id))
        return self.get(tx_id) if tx_id else None

    def latest_for(self, address):
        tx_id = self.kv.get(LATEST_PREFIX + address.lower())
        return self.get(tx_id) if tx_id else None
