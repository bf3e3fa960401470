import logging

import requests
from requests.adapters import HTTPAdapter, Retry

log = logging.getLogger(__name__)

RETRY_POLICY = Retry(
    total=3,
    backoff_factor=0.5,
    status_forcelist=(429, 500, 502, 503, 504),
    allowed_methods=('GET', 'HEAD'),
    raise_on_status=False,
)


def build_session(user_agent='burnforge/1.0'):
    """Shared requests session; idempotent GETs retry, POSTs never do."""
    session = requests.Session()
    session.headers.update({'User-Agent': user_agent})
    session.mount('https://', HTTPAdapter(max_retries=RETRY_POLICY))
    session.mount('http://', HTTPAdapter(max_retries=RETRY_POLICY))
    return session


class DownloadTooLarge(Exception):
    pass


def download_bytes(session, url, max_bytes, timeout=30):
    """GET url and return its body, refusing anything past max_bytes.

    Raises requests.RequestException on transport or HTTP errors.
    """
    with session.get(url, timeout=timeout, stream=True) as r:
        r.raise_for_status()
        total = 0
        chunks = []
        for chunk in r.iter_content(chunk_size=64 * 1024):
            if not chunk:
                continue
            total += len(chunk)
            if total > max_bytes:
                raise DownloadTooLarge(f'{url} is larger than {max_bytes} bytes')
            chunks.append(chunk)
        return b''.join(chunks)
