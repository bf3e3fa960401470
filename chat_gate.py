import json
import logging
import re
import secrets

from markupsafe import escape

from errors import (
    AccessDenied,
    BurnforgeError,
    ConfigurationMissing,
    InvalidInput,
    NameUnavailable,
    RateLimited,
)
from replay_guard import now_ms

log = logging.getLogger(__name__)

MESSAGES_KEY = 'chat:messages'
RATE_PREFIX = 'chat:ratelimit:'
NAME_PREFIX = 'chat:name:'
NAME_TAKEN_PREFIX = 'chat:name:taken:'

ANON = 'Anon'
MAX_TEXT = 280
NAME_PATTERN = re.compile(r'^[a-zA-Z0-9 ]{2,20}$')


def truncate_address(address):
    return f'{address[:6]}...{address[-4:]}'


def sanitize_text(text):
    return str(escape(text.strip()[:MAX_TEXT]))


class ChatGate:
    """Chat open only to addresses that have redeemed at least one burn."""

    def __init__(self, replay_guard, kv, messaging, channel='burnchat', rate_limit_seconds=2,
                 history_limit=500):
        self.replay_guard = replay_guard
        self.kv = kv
        self.messaging = messaging
        self.channel = channel
        self.rate_limit_seconds = rate_limit_seconds
        self.history_limit = history_limit

    def _require_burner(self, address):
        if not self.replay_guard.has_redeemed(address):
            raise AccessDenied('Must burn to chat')

    def authorize(self, address):
        address = address.lower()
        self._require_burner(address)
        log.info(f'Chat token issued for {address}')
        return self.messaging.create_token_request(
            client_id=address,
            capability={self.channel: ['subscribe', 'presence']},
        )

    def stream(self, address):
        """Live channel messages for a burner. Access is checked before the stream opens."""
        address = address.lower()
        if not self.messaging.enabled:
            raise ConfigurationMissing('ABLY_API_KEY', 'Chat not configured')
        self._require_burner(address)
        log.info(f'Chat stream opened for {address}')
        return self.messaging.subscribe(self.channel)

    def post_message(self, address, text):
        address = address.lower()
        if not isinstance(text, str) or not text.strip():
            raise InvalidInput('Text required')
        if not self.messaging.enabled:
            raise ConfigurationMissing('ABLY_API_KEY', 'Chat not configured')
        self._require_burner(address)

        if not self.kv.set_if_absent(RATE_PREFIX + address, '1', ttl=self.rate_limit_seconds):
            raise RateLimited('Slow down')

        message = {
            'id': f'{now_ms()}-{secrets.token_hex(3)}',
            'address': address,
            'displayName': self.kv.get(NAME_PREFIX + address) or truncate_address(address),
            'text': sanitize_text(text),
            'timestamp': now_ms(),
        }
        self.kv.list_push(MESSAGES_KEY, json.dumps(message), max_length=self.history_limit)
        try:
            self.messaging.publish(self.channel, message)
        except BurnforgeError as e:
            # Stored messages still reach clients through history
            log.warning(f'Chat message {message["id"]} stored but not published: {e}')
        return message

    def recent_messages(self, limit=50, before=None):
        limit = max(1, min(int(limit), 100))
        if before is None:
            return [json.loads(raw) for raw in self.kv.list_range(MESSAGES_KEY, limit=limit)]
        older = [
            message for message in (json.loads(raw) for raw in self.kv.list_range(MESSAGES_KEY))
            if message['timestamp'] < before
        ]
        return older[-limit:]

    def get_name(self, address):
        return {
            'name': self.kv.get(NAME_PREFIX + address.lower()),
            'default': truncate_address(address),
        }

    def set_name(self, address, name=None, is_anon=False):
        address = address.lower()
        name_key = NAME_PREFIX + address

        if is_anon or not name:
            self._release_name(address)
            if is_anon:
                self.kv.set(name_key, ANON)
                return {'name': ANON}
            self.kv.delete(name_key)
            return {'name': None, 'default': truncate_address(address)}

        trimmed = name.strip()
        if not NAME_PATTERN.match(trimmed):
            raise InvalidInput('Name must be 2-20 letters, numbers or spaces')

        taken_key = NAME_TAKEN_PREFIX + trimmed.lower()
        if not self.kv.set_if_absent(taken_key, address) and self.kv.get(taken_key) != address:
            raise NameUnavailable('Name already taken')

        old = self.kv.get(name_key)
        if old and old.lower() != trimmed.lower():
            self._release_name(address)
        self.kv.set(name_key, trimmed)
        return {'name': trimmed}

    def _release_name(self, address):
        old = self.kv.get(NAME_PREFIX + address)
        if old and old != ANON:
            taken_key = NAME_TAKEN_PREFIX + old.lower()
            if self.kv.get(taken_key) == address:
                self.kv.delete(taken_key)
