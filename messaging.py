"""
Ably REST client: publish, SSE subscribe and signed token requests.

Browsers never see the API key; they receive a token request signed here and
scoped to one client id and one channel.
"""
import base64
import hashlib
import hmac
import json
import logging
import secrets
import time
from urllib.parse import quote

from requests.exceptions import RequestException

from errors import ConfigurationMissing, UpstreamServiceFailed
from http_client import build_session

log = logging.getLogger(__name__)


class AblyChannelClient:
    def __init__(self, api_key, rest_url='https://rest.ably.io', realtime_url='https://realtime.ably.io',
                 timeout=10, token_ttl_ms=60 * 60 * 1000, session=None):
        self.api_key = api_key
        self.rest_url = rest_url.rstrip('/')
        self.realtime_url = realtime_url.rstrip('/')
        self.timeout = timeout
        self.token_ttl_ms = token_ttl_ms
        self.session = session or build_session()

    @property
    def enabled(self):
        return bool(self.api_key)

    def _key_parts(self):
        if not self.api_key or ':' not in self.api_key:
            raise ConfigurationMissing('ABLY_API_KEY', 'Chat not configured')
        return self.api_key.split(':', 1)

    def _auth(self):
        return tuple(self._key_parts())

    def publish(self, channel, message, name='message'):
        try:
            response = self.session.post(
                f'{self.rest_url}/channels/{quote(channel, safe="")}/messages',
                json={'name': name, 'data': json.dumps(message)},
                auth=self._auth(),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except RequestException as e:
            log.error(f'Ably publish to {channel} failed: {e}')
            raise UpstreamServiceFailed('messaging', f'Publish failed: {e.__class__.__name__}')

    def subscribe(self, channel):
        """Yield messages from the channel's server-sent event stream until closed."""
        try:
            response = self.session.get(
                f'{self.realtime_url}/sse',
                params={'channels': channel, 'v': '1.2'},
                auth=self._auth(),
                stream=True,
                timeout=(self.timeout, None),
            )
            response.raise_for_status()
        except RequestException as e:
            log.error(f'Ably subscribe to {channel} failed: {e}')
            raise UpstreamServiceFailed('messaging', f'Subscribe failed: {e.__class__.__name__}')

        with response:
            for line in response.iter_lines(decode_unicode=True):
                if not line or not line.startswith('data:'):
                    continue
                try:
                    event = json.loads(line[len('data:'):].strip())
                except ValueError:
                    continue
                yield _decode_data(event.get('data'))

    def create_token_request(self, client_id, capability, now_ms=None, nonce=None):
        """Signed token request the client exchanges with Ably for a scoped token."""
        key_name, key_secret = self._key_parts()
        request = {
            'keyName': key_name,
            'ttl': self.token_ttl_ms,
            'capability': json.dumps(capability, separators=(',', ':'), sort_keys=True),
            'clientId': client_id,
            'timestamp': now_ms if now_ms is not None else int(time.time() * 1000),
            'nonce': nonce or secrets.token_hex(16),
        }
        signed = '\n'.join([
            request['keyName'],
            str(request['ttl']),
            request['capability'],
            request['clientId'],
            str(request['timestamp']),
            request['nonce'],
        ]) + '\n'
        digest = hmac.new(key_secret.encode('utf-8'), signed.encode('utf-8'), hashlib.sha256).digest()
        request['mac'] = base64.b64encode(digest).decode('ascii')
        return request


def _decode_data(data):
    if isinstance(data, str):
        try:
            return json.loads(data)
        except ValueError:
            return data
    return data
