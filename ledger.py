"""
Ledger client: the one place that talks JSON-RPC to the chain.

Receipts and logs are normalised into plain dataclasses (hex-string topics,
bytes data) so verification and aggregation never handle web3 AttributeDicts.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from web3 import Web3
from web3.exceptions import TimeExhausted, TransactionNotFound, Web3Exception
from requests.exceptions import RequestException

from errors import UpstreamServiceFailed

log = logging.getLogger(__name__)

TRANSFER_EVENT = 'Transfer(address,address,uint256)'
TRANSFER_TOPIC = Web3.to_hex(Web3.keccak(text=TRANSFER_EVENT))

AGGREGATE3 = 'aggregate3((address,bool,bytes)[])'
MULTICALL_BATCH_SIZE = 200

_SIGNATURE = re.compile(r'^\s*(\w+)\((.*)\)\s*$')


@dataclass
class LogEvent:
    address: str
    topics: List[str]
    data: bytes
    block_number: int = 0
    log_index: int = 0
    transaction_hash: str = ''


@dataclass
class Receipt:
    transaction_hash: str
    success: bool
    block_number: int
    logs: List[LogEvent] = field(default_factory=list)


@dataclass
class TransactionInfo:
    transaction_hash: str
    sender: str
    to: Optional[str]
    value: int
    block_number: Optional[int]


@dataclass
class CallRequest:
    contract_address: str
    signature: str
    args: tuple = ()


@dataclass
class CallResult:
    success: bool
    data: bytes


def function_selector(signature):
    return Web3.keccak(text=signature)[:4]


def signature_types(signature):
    match = _SIGNATURE.match(signature)
    if not match:
        raise ValueError(f'Bad function signature: {signature}')
    inner = match.group(2).strip()
    if not inner:
        return []
    depth, start, types = 0, 0, []
    for i, ch in enumerate(inner):
        if ch == '(':
            depth += 1
        elif ch == ')':
            depth -= 1
        elif ch == ',' and depth == 0:
            types.append(inner[start:i].strip())
            start = i + 1
    types.append(inner[start:].strip())
    return types


def encode_call(signature, args=()):
    types = signature_types(signature)
    return function_selector(signature) + encode(types, list(args))


def decode_topic_address(topic):
    topic = topic.lower()
    if topic.startswith('0x'):
        topic = topic[2:]
    return '0x' + topic[-40:]


def topic_to_int(topic):
    return int(topic, 16)


def data_to_int(data):
    if not data:
        return 0
    return int.from_bytes(bytes(data)[:32], 'big')


def address_topic(address):
    return '0x' + '0' * 24 + address.lower()[2:]


def same_address(a, b):
    return bool(a) and bool(b) and a.lower() == b.lower()


def _hex(value):
    if isinstance(value, str):
        return value if value.startswith('0x') else '0x' + value
    return Web3.to_hex(value)


def _int(value):
    if value is None:
        return 0
    if isinstance(value, str):
        return int(value, 16)
    return int(value)


def _to_log(raw):
    data = raw.get('data') or b''
    if isinstance(data, str):
        data = Web3.to_bytes(hexstr=data)
    return LogEvent(
        address=raw['address'],
        topics=[_hex(t).lower() for t in raw['topics']],
        data=bytes(data),
        block_number=_int(raw.get('blockNumber')),
        log_index=_int(raw.get('logIndex')),
        transaction_hash=_hex(raw['transactionHash']) if raw.get('transactionHash') else '',
    )


def _to_receipt(raw):
    return Receipt(
        transaction_hash=_hex(raw['transactionHash']),
        success=_int(raw.get('status')) == 1,
        block_number=_int(raw.get('blockNumber')),
        logs=[_to_log(entry) for entry in raw.get('logs', [])],
    )


class Web3LedgerClient:
    def __init__(self, rpc_url, timeout=20, multicall_address=None, use_sync_send=False,
                 receipt_timeout=120):
        self.rpc_url = rpc_url
        self.w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={'timeout': timeout}))
        self.multicall_address = multicall_address
        self.use_sync_send = use_sync_send
        self.receipt_timeout = receipt_timeout

    def _rpc_failed(self, what, e):
        log.error(f'Ledger {what} failed: {e}')
        return UpstreamServiceFailed('ledger', f'Ledger {what} failed: {e.__class__.__name__}')

    def block_number(self):
        try:
            return self.w3.eth.block_number
        except (Web3Exception, RequestException, ValueError) as e:
            raise self._rpc_failed('block_number', e)

    def chain_id(self):
        try:
            return self.w3.eth.chain_id
        except (Web3Exception, RequestException, ValueError) as e:
            raise self._rpc_failed('chain_id', e)

    def get_transaction_receipt(self, tx_id):
        """Normalised receipt, or None while the transaction is unknown or pending."""
        try:
            raw = self.w3.eth.get_transaction_receipt(tx_id)
        except TransactionNotFound:
            return None
        except (Web3Exception, RequestException, ValueError) as e:
            raise self._rpc_failed('get_transaction_receipt', e)
        return _to_receipt(raw)

    def get_transaction(self, tx_id):
        try:
            raw = self.w3.eth.get_transaction(tx_id)
        except TransactionNotFound:
            return None
        except (Web3Exception, RequestException, ValueError) as e:
            raise self._rpc_failed('get_transaction', e)
        return TransactionInfo(
            transaction_hash=_hex(raw['hash']),
            sender=raw['from'],
            to=raw.get('to'),
            value=int(raw['value']),
            block_number=raw.get('blockNumber'),
        )

    def call(self, contract_address, signature, args=()):
        try:
            return bytes(self.w3.eth.call({
                'to': Web3.to_checksum_address(contract_address),
                'data': Web3.to_hex(encode_call(signature, args)),
            }))
        except (Web3Exception, RequestException, ValueError) as e:
            raise self._rpc_failed(f'call {signature}', e)

    def send_signed_transaction(self, raw_transaction):
        """Broadcast a signed transaction and return its receipt."""
        raw_hex = Web3.to_hex(raw_transaction)
        try:
            if self.use_sync_send:
                # EIP-7966: node returns the receipt directly
                response = self.w3.provider.make_request('eth_sendRawTransactionSync', [raw_hex])
                if response.get('error'):
                    raise ValueError(response['error'].get('message', response['error']))
                return _to_receipt(response['result'])
            tx_hash = self.w3.eth.send_raw_transaction(raw_transaction)
            log.info(f'Transaction sent with hash: {Web3.to_hex(tx_hash)}')
            raw = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        except TimeExhausted as e:
            raise self._rpc_failed('wait_for_transaction_receipt', e)
        except (Web3Exception, RequestException, ValueError) as e:
            raise self._rpc_failed('send_raw_transaction', e)
        return _to_receipt(raw)

    def get_event_logs(self, contract_address, event_signature, from_block=0, to_block='latest',
                       chunk_size=None):
        topic0 = Web3.to_hex(Web3.keccak(text=event_signature))
        address = Web3.to_checksum_address(contract_address)
        try:
            if not chunk_size:
                raw_logs = self.w3.eth.get_logs({
                    'address': address,
                    'topics': [topic0],
                    'fromBlock': from_block,
                    'toBlock': to_block,
                })
                return [_to_log(entry) for entry in raw_logs]

            last = self.w3.eth.block_number if to_block == 'latest' else int(to_block)
            events = []
            start = from_block
            while start <= last:
                end = min(start + chunk_size - 1, last)
                raw_logs = self.w3.eth.get_logs({
                    'address': address,
                    'topics': [topic0],
                    'fromBlock': start,
                    'toBlock': end,
                })
                events.extend(_to_log(entry) for entry in raw_logs)
                start = end + 1
            return events
        except (Web3Exception, RequestException, ValueError) as e:
            raise self._rpc_failed('get_logs', e)

    def batch_call(self, requests):
        """Run many read calls; one Multicall3 round trip per batch when configured."""
        if not requests:
            return []
        if not self.multicall_address:
            return [self._single(req) for req in requests]

        results = []
        for i in range(0, len(requests), MULTICALL_BATCH_SIZE):
            batch = requests[i:i + MULTICALL_BATCH_SIZE]
            calls = [
                (Web3.to_checksum_address(req.contract_address), True, encode_call(req.signature, req.args))
                for req in batch
            ]
            raw = self.call(self.multicall_address, AGGREGATE3, (calls,))
            try:
                (decoded,) = decode(['(bool,bytes)[]'], raw)
            except (DecodingError, ValueError) as e:
                raise self._rpc_failed('multicall decode', e)
            results.extend(CallResult(success=bool(ok), data=bytes(data)) for ok, data in decoded)
        return results

    def _single(self, req):
        try:
            return CallResult(success=True, data=self.call(req.contract_address, req.signature, req.args))
        except UpstreamServiceFailed:
            return CallResult(success=False, data=b'')
