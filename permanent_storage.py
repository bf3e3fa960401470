"""
Permanent storage bridge to the Warren partner API.

The caller pays the quoted fee to the relayer out of band; deploy() then hands
the bytes and the payment proof to Warren, which writes them on-chain.
"""
import base64
import logging
from dataclasses import dataclass

from requests.exceptions import RequestException

from errors import ConfigurationMissing, UpstreamServiceFailed
from http_client import build_session

log = logging.getLogger(__name__)


@dataclass
class FeeQuote:
    fee_wei: int
    relayer_address: str
    chunk_count: int = 0
    size: int = 0

    def to_dict(self):
        return {
            'feeWei': str(self.fee_wei),
            'relayerAddress': self.relayer_address,
            'chunkCount': self.chunk_count,
            'size': self.size,
        }

    @classmethod
    def from_dict(cls, data):
        return cls(
            fee_wei=int(data['feeWei']),
            relayer_address=data['relayerAddress'],
            chunk_count=data.get('chunkCount', 0),
            size=data.get('size', 0),
        )


@dataclass
class DeployResult:
    storage_id: str
    registry_address: str
    chunk_count: int = 0


class WarrenBridge:
    def __init__(self, api_key, base_url='https://thewarren.app', registry=None, timeout=60,
                 session=None):
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')
        self.registry = registry
        self.timeout = timeout
        self.session = session or build_session()

    @property
    def enabled(self):
        return bool(self.api_key)

    def _post(self, path, payload, what):
        if not self.api_key:
            raise ConfigurationMissing('WARREN_API_KEY')
        try:
            response = self.session.post(
                f'{self.base_url}{path}',
                json=payload,
                headers={'X-Warren-Partner-Key': self.api_key},
                timeout=self.timeout,
            )
        except RequestException as e:
            log.error(f'Warren {what} failed: {e}')
            raise UpstreamServiceFailed('permanent_storage', f'Warren {what} failed: {e.__class__.__name__}')
        if not response.ok:
            log.error(f'Warren {what} failed: {response.status_code} {response.text[:200]}')
            raise UpstreamServiceFailed(
                'permanent_storage',
                f'Warren {what} failed',
                details={'upstreamStatus': response.status_code},
            )
        return response.json()

    def estimate_fee(self, byte_size):
        data = self._post('/api/partner/estimate-fee', {'size': byte_size, 'type': 'image'}, 'estimate')
        return FeeQuote(
            fee_wei=int(data['totalWei']),
            relayer_address=data['relayerAddress'],
            chunk_count=data.get('chunkCount', 0),
            size=byte_size,
        )

    def deploy(self, data, payment_tx_id, sender_address):
        result = self._post('/api/partner/deploy', {
            'data': base64.b64encode(data).decode('ascii'),
            'siteType': 'image',
            'paymentTxHash': payment_tx_id,
            'senderAddress': sender_address,
        }, 'deploy')
        log.info(f'Warren deploy stored {len(data)} bytes as {result["tokenId"]}')
        return DeployResult(
            storage_id=str(result['tokenId']),
            registry_address=result.get('registryAddress') or self.registry,
            chunk_count=result.get('chunkCount', 0),
        )

    def resolve_url(self, storage_id):
        return f'{self.base_url}/api/onchain-image/registry?registry={self.registry}&id={storage_id}'
