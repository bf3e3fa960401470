"""
Shared on-chain verification for the two legs of a burn.

A leg is verified from its receipt alone: the transaction must have succeeded,
and one Transfer log emitted by the token contract must move at least the
per-leg minimum from the claimant to the expected destination.
"""
import logging
import re
from dataclasses import dataclass

from web3 import Web3

from errors import InvalidInput
from ledger import TRANSFER_TOPIC, data_to_int, decode_topic_address, same_address

log = logging.getLogger(__name__)

TX_HASH = re.compile(r'^0x[0-9a-fA-F]{64}$')


@dataclass(frozen=True)
class BurnPolicy:
    """Token amounts are integers in the token's smallest unit."""

    token_contract: str
    burn_amount: int
    decimals: int
    dead_address: str
    treasury_address: str
    min_confirmations: int = 0

    @classmethod
    def from_config(cls, config):
        decimals = config['TOKEN_DECIMALS']
        return cls(
            token_contract=config['TOKEN_CONTRACT'],
            burn_amount=config['BURN_AMOUNT'] * 10 ** decimals,
            decimals=decimals,
            dead_address=config['DEAD_ADDRESS'],
            treasury_address=config['TREASURY_ADDRESS'],
            min_confirmations=config.get('MIN_CONFIRMATIONS', 0),
        )

    @property
    def minimum_leg(self):
        # Each leg carries half of the canonical amount; larger legs are accepted
        return self.burn_amount // 2

    @property
    def burned_quantity(self):
        """Whole tokens destroyed by one redemption (the burn leg)."""
        return self.minimum_leg // 10 ** self.decimals


def is_tx_hash(value):
    return isinstance(value, str) and bool(TX_HASH.match(value))


def require_tx_hash(value, field):
    if not is_tx_hash(value):
        raise InvalidInput(f'Invalid {field}', details={'field': field})
    return value.lower()


def require_address(value, field='address'):
    if not isinstance(value, str) or not Web3.is_address(value):
        raise InvalidInput(f'Invalid {field}', details={'field': field})
    return value.lower()


def find_transfer(receipt, token_contract, destination, sender=None):
    """First Transfer log from token_contract to destination, as (sender, amount).

    With sender given, logs from any other address are skipped.
    """
    for entry in receipt.logs:
        if not same_address(entry.address, token_contract):
            continue
        if len(entry.topics) < 3 or entry.topics[0] != TRANSFER_TOPIC:
            continue
        if decode_topic_address(entry.topics[2]) != destination.lower():
            continue
        frm = decode_topic_address(entry.topics[1])
        if sender is not None and frm != sender.lower():
            continue
        return frm, data_to_int(entry.data)
    return None


def verify_transfer_leg(ledger, tx_id, claimant, destination, policy, error_cls, label):
    """Raise error_cls unless tx_id moved the minimum from claimant to destination.

    Returns the amount transferred, in the token's smallest unit.
    """
    receipt = ledger.get_transaction_receipt(tx_id)
    if receipt is None:
        raise error_cls(f'{label} transaction not yet final', tx_id=tx_id, retryable=True)
    if not receipt.success:
        raise error_cls(f'{label} transaction failed on-chain', tx_id=tx_id)

    if policy.min_confirmations:
        confirmations = ledger.block_number() - receipt.block_number + 1
        if confirmations < policy.min_confirmations:
            raise error_cls(
                f'{label} transaction not yet final',
                tx_id=tx_id,
                retryable=True,
                details={'confirmations': confirmations},
            )

    found = find_transfer(receipt, policy.token_contract, destination, sender=claimant)
    if found is None:
        if find_transfer(receipt, policy.token_contract, destination) is not None:
            raise error_cls(f'{label} sender does not match claimant', tx_id=tx_id)
        raise error_cls(f'No {label.lower()} transfer to {destination} found', tx_id=tx_id)
    sender, amount = found

    if amount < policy.minimum_leg:
        raise error_cls(
            f'Insufficient {label.lower()} amount',
            tx_id=tx_id,
            details={'required': str(policy.minimum_leg), 'observed': str(amount)},
        )

    log.info(f'{label} verified: {tx_id} moved {amount} from {sender}')
    return amount


def verify_payment(ledger, tx_id, relayer_address, fee_wei, error_cls):
    """Raise error_cls unless tx_id paid at least fee_wei to the relayer."""
    receipt = ledger.get_transaction_receipt(tx_id)
    if receipt is None:
        raise error_cls('Payment transaction not yet final', tx_id=tx_id, retryable=True)
    if not receipt.success:
        raise error_cls('Payment transaction failed on-chain', tx_id=tx_id)
    tx = ledger.get_transaction(tx_id)
    if tx is None:
        raise error_cls('Payment transaction not yet final', tx_id=tx_id, retryable=True)
    if not same_address(tx.to, relayer_address):
        raise error_cls('Payment was not sent to the storage relayer', tx_id=tx_id)
    if tx.value < fee_wei:
        raise error_cls(
            'Insufficient storage payment',
            tx_id=tx_id,
            details={'required': str(fee_wei), 'observed': str(tx.value)},
        )
    log.info(f'Storage payment verified: {tx_id} paid {tx.value} wei')
    return tx
