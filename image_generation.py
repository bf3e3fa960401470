import base64
import logging
import time

from requests.exceptions import RequestException

from errors import ConfigurationMissing, GenerationFailed
from http_client import build_session

log = logging.getLogger(__name__)

TERMINAL = ('succeeded', 'failed', 'canceled')


def to_data_uri(image_bytes, content_type='image/png'):
    return f'data:{content_type};base64,{base64.b64encode(image_bytes).decode("ascii")}'


class ReplicateImageGenerator:
    """Replicate predictions API; waits inline, then polls until done or timed out."""

    def __init__(self, api_token, model, prompt, negative_prompt=None, timeout=120,
                 poll_interval=2.0, api_url='https://api.replicate.com/v1', session=None):
        self.api_token = api_token
        self.model = model
        self.prompt = prompt
        self.negative_prompt = negative_prompt
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.api_url = api_url.rstrip('/')
        self.session = session or build_session()

    def _headers(self):
        if not self.api_token:
            raise ConfigurationMissing('REPLICATE_API_TOKEN')
        return {
            'Authorization': f'Bearer {self.api_token}',
            'Prefer': f'wait={min(int(self.timeout), 60)}',
        }

    def generate(self, source_image, content_type='image/png', prompt=None, negative_prompt=None):
        """Return the URL of the generated image."""
        payload = {
            'input': {
                'prompt': prompt or self.prompt,
                'negative_prompt': negative_prompt or self.negative_prompt,
                'input_images': [to_data_uri(source_image, content_type)],
                'aspect_ratio': '1:1',
            }
        }
        deadline = time.monotonic() + self.timeout
        try:
            response = self.session.post(
                f'{self.api_url}/models/{self.model}/predictions',
                json=payload,
                headers=self._headers(),
                timeout=self.timeout,
            )
            if not response.ok:
                log.error(f'Replicate error: {response.status_code} {response.text[:200]}')
                raise GenerationFailed('Image generation failed', details={'upstreamStatus': response.status_code})
            prediction = response.json()

            while prediction.get('status') not in TERMINAL:
                if time.monotonic() >= deadline:
                    raise GenerationFailed('Image generation timed out')
                time.sleep(self.poll_interval)
                poll = self.session.get(
                    prediction['urls']['get'],
                    headers={'Authorization': f'Bearer {self.api_token}'},
                    timeout=self.timeout,
                )
                poll.raise_for_status()
                prediction = poll.json()
        except RequestException as e:
            log.error(f'Replicate error: {e}')
            raise GenerationFailed(f'Image generation failed: {e.__class__.__name__}')
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            log.error(f'Malformed Replicate prediction: {e!r}')
            raise GenerationFailed('Malformed prediction response')

        if prediction['status'] != 'succeeded':
            log.error(f'Replicate prediction {prediction.get("id")} {prediction["status"]}: {prediction.get("error")}')
            raise GenerationFailed('Image generation failed')

        output = prediction.get('output')
        image_url = output[0] if isinstance(output, list) and output else output
        if not isinstance(image_url, str):
            raise GenerationFailed('Unexpected generation output')
        log.info(f'Replicate prediction {prediction.get("id")} produced {image_url}')
        return image_url
