# tests/conftest.py
import hashlib
import io
import json
import threading

import pytest
from PIL import Image

from app import create_app
from errors import NotFound, UpstreamServiceFailed
from ledger import TRANSFER_TOPIC, CallResult, LogEvent, Receipt, TransactionInfo, address_topic
from permanent_storage import DeployResult, FeeQuote
from content_store import PinResult

DEAD = '0x000000000000000000000000000000000000dead'
TOKEN = '0x1111111111111111111111111111111111111111'
TREASURY = '0x2222222222222222222222222222222222222222'
NFT = '0x3333333333333333333333333333333333333333'
RELAYER = '0x4444444444444444444444444444444444444444'
ALICE = '0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa'
BOB = '0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb'
CAROL = '0xcccccccccccccccccccccccccccccccccccccccc'
ZERO = '0x0000000000000000000000000000000000000000'

UNIT = 10 ** 18
HALF = 1000 * UNIT // 2

BURN_TX = '0x' + 'aa' * 32
TRANSFER_TX = '0x' + 'bb' * 32
PAYMENT_TX = '0x' + 'cc' * 32


def tx(n):
    return '0x' + f'{n:064x}'


def erc20_transfer(frm, to, amount, token=TOKEN):
    return LogEvent(
        address=token,
        topics=[TRANSFER_TOPIC, address_topic(frm), address_topic(to)],
        data=amount.to_bytes(32, 'big'),
    )


def nft_transfer(frm, to, token_id, block, index=0, contract=NFT):
    return LogEvent(
        address=contract,
        topics=[TRANSFER_TOPIC, address_topic(frm), address_topic(to), '0x' + f'{token_id:064x}'],
        data=b'',
        block_number=block,
        log_index=index,
    )


class FakeLedger:
    def __init__(self):
        self.receipts = {}
        self.transactions = {}
        self.events = []
        self.calls = {}
        self.batch = {}
        self.head = 100
        self.fail_logs = False
        self.fail_batch = False
        self.log_requests = []

    def add_receipt(self, tx_id, logs, success=True, block=90):
        self.receipts[tx_id.lower()] = Receipt(transaction_hash=tx_id, success=success, block_number=block, logs=logs)

    def add_burn(self, tx_id=BURN_TX, claimant=ALICE, amount=HALF, destination=DEAD):
        self.add_receipt(tx_id, [erc20_transfer(claimant, destination, amount)])

    def add_transfer(self, tx_id=TRANSFER_TX, claimant=ALICE, amount=HALF, destination=TREASURY):
        self.add_receipt(tx_id, [erc20_transfer(claimant, destination, amount)])

    def add_payment(self, tx_id=PAYMENT_TX, sender=ALICE, to=RELAYER, value=10 ** 15, success=True):
        self.add_receipt(tx_id, [], success=success)
        self.transactions[tx_id.lower()] = TransactionInfo(tx_id, sender, to, value, 90)

    def get_transaction_receipt(self, tx_id):
        return self.receipts.get(tx_id.lower())

    def get_transaction(self, tx_id):
        return self.transactions.get(tx_id.lower())

    def block_number(self):
        return self.head

    def chain_id(self):
        return 1

    def call(self, contract_address, signature, args=()):
        key = (contract_address.lower(), signature)
        if key not in self.calls:
            raise UpstreamServiceFailed('ledger', f'no stub for {signature}')
        return self.calls[key]

    def get_event_logs(self, contract_address, event_signature, from_block=0, to_block='latest', chunk_size=None):
        self.log_requests.append((from_block, to_block))
        if self.fail_logs:
            raise UpstreamServiceFailed('ledger', 'get_logs failed')
        last = self.head if to_block == 'latest' else to_block
        return [e for e in self.events
                if e.address.lower() == contract_address.lower() and from_block <= e.block_number <= last]

    def batch_call(self, requests):
        if self.fail_batch:
            raise UpstreamServiceFailed('ledger', 'multicall failed')
        results = []
        for req in requests:
            key = (req.signature, req.args)
            data = self.batch.get(key)
            results.append(CallResult(success=data is not None, data=data or b''))
        return results


class FakeGenerator:
    def __init__(self, url='https://replicate.delivery/out.png'):
        self.url = url
        self.error = None
        self.calls = 0
        self._lock = threading.Lock()

    def generate(self, source_image, content_type='image/png', prompt=None, negative_prompt=None):
        with self._lock:
            self.calls += 1
        if self.error:
            raise self.error
        return self.url


class FakeContentStore:
    def __init__(self):
        self.blobs = {}
        self.remote = {'https://replicate.delivery/out.png': b'generated-artifact-bytes'}
        self.fail_put = False
        self.fail_put_json = False
        self.fail_get = False
        self.pins = []

    def _cid(self, data):
        return 'bafk' + hashlib.sha256(data).hexdigest()[:40]

    def gateway_url(self, content_id):
        return f'https://gateway.pinata.cloud/ipfs/{content_id}'

    def put(self, data, metadata=None, filename='artifact.png', content_type='image/png'):
        if self.fail_put:
            raise UpstreamServiceFailed('content_store', 'Failed to pin file to IPFS: ConnectionError')
        cid = self._cid(data)
        self.blobs[cid] = data
        self.pins.append(('file', cid, metadata))
        return PinResult(content_id=cid, url=self.gateway_url(cid))

    def put_json(self, document, name=None):
        if self.fail_put_json:
            raise UpstreamServiceFailed('content_store', 'Failed to pin metadata to IPFS')
        data = json.dumps(document, sort_keys=True).encode('utf-8')
        cid = self._cid(data)
        self.blobs[cid] = data
        self.pins.append(('json', cid, document))
        return PinResult(content_id=cid, url=self.gateway_url(cid))

    def get(self, content_id):
        if self.fail_get or content_id not in self.blobs:
            raise NotFound(f'Content {content_id} not retrievable from any gateway')
        return self.blobs[content_id]

    def fetch_json(self, content_id):
        return json.loads(self.get(content_id))

    def fetch_url(self, url):
        if url not in self.remote:
            raise UpstreamServiceFailed('content_store', 'Failed to download artifact: HTTPError')
        return self.remote[url]


class FakeMinter:
    def __init__(self, enabled=False, token_id=7):
        self.enabled = enabled
        self.next_token_id = token_id
        self.error = None
        self.minted = []

    def mint(self, to, token_uri):
        if self.error:
            raise self.error
        token_id = self.next_token_id
        self.next_token_id += 1
        self.minted.append((to, token_uri, token_id))
        return token_id


class FakeBridge:
    def __init__(self, enabled=True, fee_wei=10 ** 15):
        self.enabled = enabled
        self.fee_wei = fee_wei
        self.error = None
        self.deployed = []

    def estimate_fee(self, byte_size):
        return FeeQuote(fee_wei=self.fee_wei, relayer_address=RELAYER, chunk_count=1, size=byte_size)

    def deploy(self, data, payment_tx_id, sender_address):
        if self.error:
            raise self.error
        self.deployed.append((data, payment_tx_id, sender_address))
        return DeployResult(storage_id='42', registry_address='0xregistry')

    def resolve_url(self, storage_id):
        return f'https://thewarren.app/api/onchain-image/registry?registry=0xregistry&id={storage_id}'


class FakeMessaging:
    def __init__(self, enabled=True):
        self.enabled = enabled
        self.published = []
        self.error = None
        self.subscribed = []
        self.incoming = []
        self.stream_error = None

    def publish(self, channel, message, name='message'):
        if self.error:
            raise self.error
        self.published.append((channel, message))

    def subscribe(self, channel):
        self.subscribed.append(channel)
        for message in list(self.incoming):
            yield message
        if self.stream_error:
            raise self.stream_error

    def create_token_request(self, client_id, capability, now_ms=None, nonce=None):
        return {'keyName': 'app.key', 'clientId': client_id, 'capability': json.dumps(capability), 'mac': 'x'}


@pytest.fixture()
def ledger():
    return FakeLedger()


@pytest.fixture()
def generator():
    return FakeGenerator()


@pytest.fixture()
def content_store():
    return FakeContentStore()


@pytest.fixture()
def minter():
    return FakeMinter()


@pytest.fixture()
def bridge():
    return FakeBridge()


@pytest.fixture()
def messaging():
    return FakeMessaging()


@pytest.fixture()
def test_config(tmp_path):
    return {
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f'sqlite:///{tmp_path / "burnforge.db"}',
        'TOKEN_CONTRACT': TOKEN,
        'TOKEN_DECIMALS': 18,
        'BURN_AMOUNT': 1000,
        'DEAD_ADDRESS': DEAD,
        'TREASURY_ADDRESS': TREASURY,
        'NFT_CONTRACT': NFT,
        'MIN_CONFIRMATIONS': 0,
        'PUBLIC_BASE_URL': 'https://burnforge.test',
        'COLLECTION_NAME': 'BURNFORGE',
        'NAME_REGISTRY_ADDRESS': None,
        'LEADERBOARD_CHECKPOINT': 'full',
        'LEGACY_LINK_POLICY': 'unlinked',
        'CHAT_RATE_LIMIT_SECONDS': 2,
        'LOG_LEVEL': 'DEBUG',
    }


@pytest.fixture()
def app(test_config, ledger, generator, content_store, minter, bridge, messaging):
    return create_app(test_config, collaborators={
        'ledger': ledger,
        'generator': generator,
        'content_store': content_store,
        'minter': minter,
        'bridge': bridge,
        'messaging': messaging,
    })


@pytest.fixture()
def ctx(app):
    with app.app_context():
        yield app


@pytest.fixture()
def client(app):
    with app.test_client() as c:
        yield c


@pytest.fixture()
def services(app):
    return app.extensions['burnforge']


@pytest.fixture()
def png_bytes():
    buf = io.BytesIO()
    Image.new('RGB', (32, 32), (200, 30, 90)).save(buf, format='PNG')
    return buf.getvalue()
