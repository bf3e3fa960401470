import logging

from eth_account import Account
from requests.exceptions import RequestException
from web3 import Web3
from web3.exceptions import Web3Exception

from config import ZERO_ADDRESS
from errors import ConfigurationMissing, UpstreamServiceFailed
from ledger import TRANSFER_TOPIC, same_address, topic_to_int

log = logging.getLogger(__name__)

MINT_ABI = [
    {
        'type': 'function',
        'name': 'mint',
        'inputs': [
            {'name': 'to', 'type': 'address'},
            {'name': 'tokenURI', 'type': 'string'},
        ],
        'outputs': [{'name': '', 'type': 'uint256'}],
        'stateMutability': 'nonpayable',
    },
]


def parse_minted_token_id(receipt, nft_contract):
    """Token id from the ERC-721 Transfer log (topics[3]) the mint emitted."""
    for entry in receipt.logs:
        if not same_address(entry.address, nft_contract):
            continue
        if len(entry.topics) >= 4 and entry.topics[0] == TRANSFER_TOPIC:
            return topic_to_int(entry.topics[3])
    return None


class NFTMinter:
    def __init__(self, ledger, nft_contract, private_key, chain_id=None, gas_limit=300000):
        self.ledger = ledger
        self.nft_contract = nft_contract
        self.private_key = private_key
        self.chain_id = chain_id
        self.gas_limit = gas_limit
        self.account = Account.from_key(private_key) if private_key else None

    @property
    def enabled(self):
        return bool(self.account) and bool(self.nft_contract) and not same_address(self.nft_contract, ZERO_ADDRESS)

    def mint(self, to, token_uri):
        """Mint to `to` and return the new token id."""
        if not self.enabled:
            raise ConfigurationMissing('MINTER_PRIVATE_KEY', 'NFT minting not configured')

        w3 = self.ledger.w3
        contract = w3.eth.contract(address=Web3.to_checksum_address(self.nft_contract), abi=MINT_ABI)
        try:
            nonce = w3.eth.get_transaction_count(self.account.address, 'pending')
            tx = contract.functions.mint(Web3.to_checksum_address(to), token_uri).build_transaction({
                'from': self.account.address,
                'nonce': nonce,
                'gas': self.gas_limit,
                'gasPrice': w3.eth.gas_price,
                'chainId': self.chain_id or self.ledger.chain_id(),
            })
            signed_tx = w3.eth.account.sign_transaction(tx, self.private_key)
        except (Web3Exception, RequestException, ValueError) as e:
            log.error(f'Mint transaction build failed: {e}')
            raise UpstreamServiceFailed('mint', f'Mint transaction build failed: {e.__class__.__name__}')

        receipt = self.ledger.send_signed_transaction(signed_tx.raw_transaction)
        log.info(f'Mint transaction mined: {receipt.transaction_hash}')
        if not receipt.success:
            raise UpstreamServiceFailed('mint', 'Mint transaction reverted',
                                        details={'mintTxHash': receipt.transaction_hash})

        token_id = parse_minted_token_id(receipt, self.nft_contract)
        if token_id is None:
            raise UpstreamServiceFailed('mint', 'Failed to parse tokenId from mint receipt',
                                        details={'mintTxHash': receipt.transaction_hash})
        log.info(f'Minted token {token_id} to {to}')
        return token_id
