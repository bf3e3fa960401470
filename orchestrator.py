"""
Burn-and-mint orchestration.

redeem() walks one burn through
Idle -> VerifyingBurn -> VerifyingTransfer -> Generating -> Pinning -> [Bridging]
-> Minting -> Persisted. Nothing irreversible happens before both legs verify.
After generation starts, pinning and minting failures are absorbed into a
degraded result because the caller's tokens are already gone.

When permanent storage is requested the run stops after pinning with a fee
quote; finalize() later verifies the storage payment, deploys and mints.
"""
import enum
import logging
from dataclasses import dataclass
from typing import Optional

from errors import (
    AlreadyRedeemed,
    BurnforgeError,
    ConfigurationMissing,
    InvalidBurn,
    InvalidInput,
    InvalidPayment,
    InvalidTransfer,
    NotFound,
)
from metadata_store import NFTMetadataRecord, build_mint_document
from permanent_storage import FeeQuote
from replay_guard import RecordOutcome, RedemptionRecord
from verification import verify_payment, verify_transfer_leg

log = logging.getLogger(__name__)

PIN_WARNING = 'Image generated but IPFS pinning failed'
METADATA_WARNING = 'Image pinned but NFT metadata pinning failed; NFT not minted'
MINT_WARNING = 'Image pinned but NFT minting failed'
PERSIST_WARNING = 'Result could not be recorded; it will appear in the gallery once reconciled'
STORAGE_WARNING = 'Permanent storage unavailable; minted with the IPFS image'


class Stage(enum.Enum):
    IDLE = 'idle'
    VERIFYING_BURN = 'verifying_burn'
    VERIFYING_TRANSFER = 'verifying_transfer'
    GENERATING = 'generating'
    PINNING = 'pinning'
    BRIDGING = 'bridging'
    MINTING = 'minting'
    PERSISTED = 'persisted'
    FAILED = 'failed'


@dataclass
class BurnAttempt:
    burn_tx_id: str
    transfer_tx_id: str
    claimant_address: str
    image_bytes: bytes
    content_type: str = 'image/png'
    wants_permanent_storage: bool = False


@dataclass
class RedemptionResult:
    burn_tx_id: str
    image_url: Optional[str]
    content_id: Optional[str]
    content_url: Optional[str]
    minted_token_id: Optional[int] = None
    permanent_storage_id: Optional[str] = None
    storage_quote: Optional[FeeQuote] = None
    pending_mint: bool = False
    warning: Optional[str] = None
    stage: Stage = Stage.PERSISTED

    def to_dict(self):
        return {
            'burnTxHash': self.burn_tx_id,
            'imageUrl': self.image_url,
            'contentId': self.content_id,
            'contentUrl': self.content_url,
            'mintedTokenId': str(self.minted_token_id) if self.minted_token_id is not None else None,
            'permanentStorageId': self.permanent_storage_id,
            'storageQuote': self.storage_quote.to_dict() if self.storage_quote else None,
            'pendingMint': self.pending_mint,
            'warning': self.warning,
            'tokensBurned': True,
        }


class BurnMintOrchestrator:
    def __init__(self, ledger, replay_guard, metadata_store, content_store, generator, minter,
                 policy, bridge=None, collection_name='BURNFORGE', external_url=None):
        self.ledger = ledger
        self.replay_guard = replay_guard
        self.metadata_store = metadata_store
        self.content_store = content_store
        self.generator = generator
        self.minter = minter
        self.policy = policy
        self.bridge = bridge
        self.collection_name = collection_name
        self.external_url = external_url

    def _enter(self, stage, tx_id):
        log.info(f'[{tx_id}] {stage.value}')

    def redeem(self, attempt):
        tx_id = attempt.burn_tx_id.lower()
        claimant = attempt.claimant_address.lower()

        if self.replay_guard.exists(tx_id):
            raise AlreadyRedeemed('This burn transaction has already been used', details={'txHash': tx_id})

        self._enter(Stage.VERIFYING_BURN, tx_id)
        verify_transfer_leg(self.ledger, tx_id, claimant, self.policy.dead_address,
                            self.policy, InvalidBurn, 'Burn')
        self._enter(Stage.VERIFYING_TRANSFER, tx_id)
        verify_transfer_leg(self.ledger, attempt.transfer_tx_id.lower(), claimant,
                            self.policy.treasury_address, self.policy, InvalidTransfer, 'Transfer')

        if not self.replay_guard.claim(tx_id):
            raise AlreadyRedeemed('This burn transaction is already being redeemed',
                                  details={'txHash': tx_id})
        # A run that finished while this one was verifying has already released its claim
        if self.replay_guard.exists(tx_id):
            self.replay_guard.release(tx_id)
            raise AlreadyRedeemed('This burn transaction has already been used', details={'txHash': tx_id})

        self._enter(Stage.GENERATING, tx_id)
        try:
            if not self.replay_guard.claim_transfer(attempt.transfer_tx_id, tx_id):
                raise InvalidTransfer('Transfer already used for another burn',
                                      tx_id=attempt.transfer_tx_id.lower())
            image_url = self.generator.generate(attempt.image_bytes, attempt.content_type)
        except Exception:
            self._enter(Stage.FAILED, tx_id)
            self.replay_guard.release(tx_id)
            raise

        result = RedemptionResult(burn_tx_id=tx_id, image_url=image_url, content_id=None, content_url=None)

        self._enter(Stage.PINNING, tx_id)
        artifact = None
        try:
            artifact = self.content_store.fetch_url(image_url)
            pin = self.content_store.put(artifact, {
                'name': f'burn-{tx_id[:10]}',
                'burner': claimant,
                'txHash': tx_id,
            }, filename=f'{tx_id}.png')
            result.content_id, result.content_url = pin.content_id, pin.url
        except BurnforgeError as e:
            log.warning(f'[{tx_id}] pinning failed, returning raw generation URL: {e}')
            result.warning = PIN_WARNING

        metadata = None
        if result.content_id:
            if attempt.wants_permanent_storage and self.bridge is not None and self.bridge.enabled:
                self._enter(Stage.BRIDGING, tx_id)
                try:
                    result.storage_quote = self.bridge.estimate_fee(len(artifact))
                    result.pending_mint = True
                except BurnforgeError as e:
                    log.warning(f'[{tx_id}] fee estimate failed, minting with IPFS image: {e}')
                    result.warning = STORAGE_WARNING

            if not result.pending_mint:
                self._enter(Stage.MINTING, tx_id)
                metadata, mint_warning = self._mint(
                    tx_id, attempt.transfer_tx_id.lower(), claimant, result.content_id, result.content_url,
                )
                result.warning = mint_warning or result.warning
                if metadata is not None:
                    result.minted_token_id = metadata.minted_token_id

        record = RedemptionRecord(
            primary_tx_id=tx_id,
            claimant_address=claimant,
            content_id=result.content_id,
            content_url=result.content_url or image_url,
            burned_quantity=self.policy.burned_quantity,
            minted_token_id=result.minted_token_id,
            transfer_tx_id=attempt.transfer_tx_id.lower(),
            image_url=image_url,
            storage_quote=result.storage_quote.to_dict() if result.storage_quote else None,
            warning=result.warning,
        )
        self._persist(tx_id, record, metadata, result)
        return result

    def _persist(self, tx_id, record, metadata, result):
        try:
            outcome = self.replay_guard.record_once(tx_id, record)
        except BurnforgeError as e:
            # Claim is left to expire so the burn cannot be redeemed again meanwhile
            log.error(f'[{tx_id}] failed to persist redemption record: {e}')
            result.warning = result.warning or PERSIST_WARNING
            outcome = None
        if outcome is RecordOutcome.ALREADY_EXISTS:
            raise AlreadyRedeemed('This burn transaction has already been used', details={'txHash': tx_id})

        if metadata is not None:
            try:
                self.metadata_store.put(metadata)
            except BurnforgeError as e:
                log.error(f'[{tx_id}] failed to store metadata for token {metadata.minted_token_id}: {e}')
                result.warning = result.warning or PERSIST_WARNING

        if outcome is RecordOutcome.INSERTED:
            self.replay_guard.release(tx_id)
        result.stage = Stage.PERSISTED
        self._enter(Stage.PERSISTED, tx_id)

    def _mint(self, tx_id, transfer_tx_id, claimant, content_id, content_url,
              permanent_storage_id=None, permanent_url=None):
        """Pin the token metadata and mint. Returns (NFTMetadataRecord or None, warning)."""
        if not self.minter.enabled:
            log.info(f'[{tx_id}] minting not configured, skipping')
            return None, None

        try:
            number = self.metadata_store.next_sequence()
            document = build_mint_document(
                self.collection_name, number,
                image=permanent_url or f'ipfs://{content_id}',
                content_url=content_url,
                claimant=claimant,
                burn_tx_id=tx_id,
                transfer_tx_id=transfer_tx_id,
                permanent_storage_id=permanent_storage_id,
                external_url=self.external_url,
            )
            metadata_pin = self.content_store.put_json(document, name=f'{tx_id[:10]}-metadata.json')
        except BurnforgeError as e:
            log.error(f'[{tx_id}] NFT metadata pinning failed: {e}')
            return None, METADATA_WARNING

        try:
            token_id = self.minter.mint(claimant, f'ipfs://{metadata_pin.content_id}')
        except BurnforgeError as e:
            log.error(f'[{tx_id}] NFT minting failed: {e}')
            return None, MINT_WARNING

        return NFTMetadataRecord(
            minted_token_id=token_id,
            content_url=content_url,
            claimant_address=claimant,
            burn_tx_id=tx_id,
            transfer_tx_id=transfer_tx_id,
            content_id=content_id,
            permanent_storage_id=permanent_storage_id,
            permanent_url=permanent_url,
        ), None

    def finalize(self, burn_tx_id, payment_tx_id=None):
        """Mint a redemption that stopped at its storage quote."""
        tx_id = burn_tx_id.lower()
        record = self.replay_guard.get(tx_id)
        if record is None:
            raise NotFound('No redemption found for this burn transaction', details={'txHash': tx_id})
        if record.minted_token_id is not None:
            raise AlreadyRedeemed('NFT already minted for this burn',
                                  details={'txHash': tx_id, 'mintedTokenId': str(record.minted_token_id)})
        if not record.content_id:
            raise InvalidInput('Redemption has no pinned artifact to mint', details={'txHash': tx_id})
        if payment_tx_id and not record.storage_quote:
            raise InvalidInput('Redemption has no storage quote', details={'txHash': tx_id})
        if payment_tx_id and (self.bridge is None or not self.bridge.enabled):
            raise ConfigurationMissing('WARREN_API_KEY')
        if not self.replay_guard.claim_mint(tx_id):
            raise AlreadyRedeemed('Mint already in progress for this burn', details={'txHash': tx_id})

        result = RedemptionResult(
            burn_tx_id=tx_id,
            image_url=record.image_url,
            content_id=record.content_id,
            content_url=record.content_url,
        )
        try:
            permanent_storage_id = permanent_url = None
            if payment_tx_id:
                permanent_storage_id, permanent_url, result.warning = self._bridge(
                    tx_id, payment_tx_id.lower(), record,
                )
                result.permanent_storage_id = permanent_storage_id

            self._enter(Stage.MINTING, tx_id)
            metadata, mint_warning = self._mint(
                tx_id, record.transfer_tx_id, record.claimant_address, record.content_id,
                record.content_url, permanent_storage_id, permanent_url,
            )
        except BurnforgeError:
            self.replay_guard.release_mint(tx_id)
            raise

        result.warning = result.warning or mint_warning
        if metadata is None:
            # Nothing was minted; finalisation may be retried
            self.replay_guard.release_mint(tx_id)
            return result

        result.minted_token_id = metadata.minted_token_id
        try:
            self.replay_guard.attach_token_id(tx_id, metadata.minted_token_id, permanent_storage_id,
                                              warning=result.warning)
            self.metadata_store.put(metadata)
        except BurnforgeError as e:
            log.error(f'[{tx_id}] failed to record minted token {metadata.minted_token_id}: {e}')
            result.warning = result.warning or PERSIST_WARNING
        self._enter(Stage.PERSISTED, tx_id)
        return result

    def _bridge(self, tx_id, payment_tx_id, record):
        """Verify the storage payment and deploy. Returns (storage id, url, warning)."""
        quote = FeeQuote.from_dict(record.storage_quote)
        self._enter(Stage.BRIDGING, tx_id)
        verify_payment(self.ledger, payment_tx_id, quote.relayer_address, quote.fee_wei, InvalidPayment)
        if not self.replay_guard.claim_payment(payment_tx_id, tx_id):
            raise InvalidPayment('Payment already used for another burn', tx_id=payment_tx_id)

        try:
            artifact = self.content_store.get(record.content_id)
            deployed = self.bridge.deploy(artifact, payment_tx_id, record.claimant_address)
        except BurnforgeError as e:
            log.error(f'[{tx_id}] permanent storage deploy failed: {e}')
            return None, None, STORAGE_WARNING
        return deployed.storage_id, self.bridge.resolve_url(deployed.storage_id), None
