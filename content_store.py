"""
Content store over Pinata pinning and public IPFS gateways.

Pins are content addressed (CIDv1), so pinning the same bytes twice yields the
same content id. Retrieval races every configured gateway and keeps the first
complete body.
"""
import json
import logging
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass
from urllib.parse import urlparse

from requests.exceptions import RequestException

from errors import ConfigurationMissing, NotFound, UpstreamServiceFailed
from http_client import DownloadTooLarge, build_session, download_bytes

log = logging.getLogger(__name__)


@dataclass
class PinResult:
    content_id: str
    url: str


def parse_content_id(value):
    """Content id from ipfs://CID, a gateway URL, or a bare CID; None otherwise."""
    if not value:
        return None
    if value.startswith('ipfs://'):
        path = value[len('ipfs://'):]
        if path.startswith('ipfs/'):
            path = path[len('ipfs/'):]
        return path.strip('/') or None
    if value.startswith('http'):
        path = urlparse(value).path
        marker = path.lower().find('/ipfs/')
        if marker == -1:
            return None
        return path[marker + len('/ipfs/'):].strip('/') or None
    if value.startswith(('Qm', 'bafy', 'bafk')):
        return value
    return None


class PinataContentStore:
    def __init__(self, jwt, api_url='https://api.pinata.cloud', gateways=None, timeout=30,
                 max_bytes=20 * 1024 * 1024, session=None):
        self.jwt = jwt
        self.api_url = api_url.rstrip('/')
        self.gateways = [g.rstrip('/') for g in (gateways or ['https://gateway.pinata.cloud/ipfs'])]
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.session = session or build_session()

    def _headers(self):
        if not self.jwt:
            raise ConfigurationMissing('PINATA_JWT')
        return {'Authorization': f'Bearer {self.jwt}'}

    def gateway_url(self, content_id):
        return f'{self.gateways[0]}/{content_id}'

    def _pin_response(self, response, what):
        if not response.ok:
            log.error(f'Pinata {what} upload failed: {response.status_code} {response.text[:200]}')
            raise UpstreamServiceFailed('content_store', f'Failed to pin {what} to IPFS')
        content_id = response.json()['IpfsHash']
        log.info(f'Pinned {what} as {content_id}')
        return PinResult(content_id=content_id, url=self.gateway_url(content_id))

    def put(self, data, metadata=None, filename='artifact.png', content_type='image/png'):
        metadata = metadata or {}
        pinata_metadata = {
            'name': metadata.get('name', filename),
            'keyvalues': {k: str(v)[:200] for k, v in metadata.items() if k != 'name'},
        }
        try:
            response = self.session.post(
                f'{self.api_url}/pinning/pinFileToIPFS',
                files={'file': (filename, data, content_type)},
                data={
                    'pinataMetadata': json.dumps(pinata_metadata),
                    'pinataOptions': json.dumps({'cidVersion': 1}),
                },
                headers=self._headers(),
                timeout=self.timeout,
            )
        except RequestException as e:
            log.error(f'Pinata file upload failed: {e}')
            raise UpstreamServiceFailed('content_store', f'Failed to pin file to IPFS: {e.__class__.__name__}')
        return self._pin_response(response, 'file')

    def put_json(self, document, name=None):
        body = {
            'pinataContent': document,
            'pinataMetadata': {'name': name or document.get('name', 'metadata.json')},
            'pinataOptions': {'cidVersion': 1},
        }
        try:
            response = self.session.post(
                f'{self.api_url}/pinning/pinJSONToIPFS',
                json=body,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except RequestException as e:
            log.error(f'Pinata JSON upload failed: {e}')
            raise UpstreamServiceFailed('content_store', f'Failed to pin metadata to IPFS: {e.__class__.__name__}')
        return self._pin_response(response, 'metadata')

    def fetch_url(self, url):
        """Download an external artifact within the store's size limit."""
        try:
            return download_bytes(self.session, url, self.max_bytes, self.timeout)
        except (RequestException, DownloadTooLarge) as e:
            log.error(f'Artifact download failed {url}: {e}')
            raise UpstreamServiceFailed('content_store', f'Failed to download artifact: {e.__class__.__name__}')

    def candidates(self, content_id):
        return [f'{gateway}/{content_id}' for gateway in self.gateways]

    def get(self, content_id):
        """Bytes for content_id from whichever gateway answers first."""
        urls = self.candidates(content_id)
        pool = ThreadPoolExecutor(max_workers=len(urls))
        pending = {pool.submit(download_bytes, self.session, url, self.max_bytes, self.timeout): url
                   for url in urls}
        try:
            while pending:
                done, _ = wait(pending, timeout=self.timeout, return_when=FIRST_COMPLETED)
                if not done:
                    break
                for future in done:
                    url = pending.pop(future)
                    try:
                        return future.result()
                    except (RequestException, DownloadTooLarge) as e:
                        log.warning(f'Gateway fetch failed {url}: {e}')
        finally:
            # Losing gateways are abandoned, not awaited
            pool.shutdown(wait=False, cancel_futures=True)
        raise NotFound(f'Content {content_id} not retrievable from any gateway',
                       details={'contentId': content_id})

    def fetch_json(self, content_id):
        raw = self.get(content_id)
        try:
            return json.loads(raw)
        except ValueError:
            raise UpstreamServiceFailed('content_store', f'Content {content_id} is not JSON')
