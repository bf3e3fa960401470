import os

from dotenv import load_dotenv

load_dotenv()

DEAD_ADDRESS = '0x000000000000000000000000000000000000dEaD'
ZERO_ADDRESS = '0x0000000000000000000000000000000000000000'
MULTICALL3_ADDRESS = '0xcA11bde05977b3631167028862bE2a173976CA11'

DEFAULT_GATEWAYS = [
    'https://gateway.pinata.cloud/ipfs',
    'https://ipfs.io/ipfs',
    'https://dweb.link/ipfs',
    'https://w3s.link/ipfs',
]

DEFAULT_PROMPT = (
    'Black and white studio portrait, sharpened jawline and cheekbones, keep the original '
    'face, hair, clothes and eye shape, both eyes glowing pink-purple (#FF8AA8, #F786C6) '
    'with one thin straight horizontal laser line through both eyes, dramatic side light, '
    'dark charcoal background (#19191A), heavy film grain, square 1:1 framing'
)

DEFAULT_NEGATIVE_PROMPT = (
    '3D render, cartoon, single glowing eye, missing laser, curved or diagonal lasers, '
    'distorted or replaced eyes, different face, changed hair, changed clothes, aged skin, '
    'plastic skin, text, watermark'
)

basedir = os.path.abspath(os.path.dirname(__file__))


def _bool(name, default='false'):
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


def _int(name, default):
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return default
    return int(value)


def _list(name, default):
    value = os.getenv(name)
    if not value:
        return list(default)
    return [item.strip().rstrip('/') for item in value.split(',') if item.strip()]


class Config:
    """Settings read from the environment; loaded with app.config.from_object()."""

    SQLALCHEMY_DATABASE_URI = os.getenv(
        'DATABASE_URL',
        'sqlite:///' + os.path.join(basedir, 'instance', 'burnforge.db'),
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

    # Chain
    RPC_URL = os.getenv('RPC_URL', 'https://mainnet.megaeth.com/rpc')
    CHAIN_ID = _int('CHAIN_ID', None)
    RPC_TIMEOUT = _int('RPC_TIMEOUT', 20)
    MIN_CONFIRMATIONS = _int('MIN_CONFIRMATIONS', 0)
    USE_SYNC_SEND = _bool('USE_SYNC_SEND')
    MULTICALL_ADDRESS = os.getenv('MULTICALL_ADDRESS', MULTICALL3_ADDRESS)

    # Burn policy
    TOKEN_CONTRACT = os.getenv('TOKEN_CONTRACT', ZERO_ADDRESS)
    TOKEN_DECIMALS = _int('TOKEN_DECIMALS', 18)
    BURN_AMOUNT = _int('BURN_AMOUNT', 1000)
    DEAD_ADDRESS = os.getenv('DEAD_ADDRESS', DEAD_ADDRESS)
    TREASURY_ADDRESS = os.getenv('TREASURY_ADDRESS', ZERO_ADDRESS)

    # NFT
    NFT_CONTRACT = os.getenv('NFT_CONTRACT', ZERO_ADDRESS)
    MINTER_PRIVATE_KEY = os.getenv('MINTER_PRIVATE_KEY')
    MINT_GAS_LIMIT = _int('MINT_GAS_LIMIT', 300000)
    COLLECTION_NAME = os.getenv('COLLECTION_NAME', 'BURNFORGE')
    PUBLIC_BASE_URL = os.getenv('PUBLIC_BASE_URL', 'http://localhost:5000').rstrip('/')

    # Leaderboard
    NFT_GENESIS_BLOCK = _int('NFT_GENESIS_BLOCK', 0)
    LOG_CHUNK_SIZE = _int('LOG_CHUNK_SIZE', None)
    NAME_REGISTRY_ADDRESS = os.getenv('NAME_REGISTRY_ADDRESS')
    NAME_REGISTRY_FUNCTION = os.getenv('NAME_REGISTRY_FUNCTION', 'getName(address)')
    LEADERBOARD_CHECKPOINT = os.getenv('LEADERBOARD_CHECKPOINT', 'full')
    LEGACY_LINK_POLICY = os.getenv('LEGACY_LINK_POLICY', 'unlinked')

    # Content store
    PINATA_JWT = os.getenv('PINATA_JWT')
    PINATA_API_URL = os.getenv('PINATA_API_URL', 'https://api.pinata.cloud')
    IPFS_GATEWAYS = _list('IPFS_GATEWAYS', DEFAULT_GATEWAYS)

    # Generation
    REPLICATE_API_TOKEN = os.getenv('REPLICATE_API_TOKEN')
    REPLICATE_MODEL = os.getenv('REPLICATE_MODEL', 'black-forest-labs/flux-2-max')
    GENERATION_PROMPT = os.getenv('GENERATION_PROMPT', DEFAULT_PROMPT)
    GENERATION_NEGATIVE_PROMPT = os.getenv('GENERATION_NEGATIVE_PROMPT', DEFAULT_NEGATIVE_PROMPT)
    GENERATION_TIMEOUT = _int('GENERATION_TIMEOUT', 120)

    # Permanent storage
    WARREN_API_KEY = os.getenv('WARREN_API_KEY')
    WARREN_BASE_URL = os.getenv('WARREN_BASE_URL', 'https://thewarren.app').rstrip('/')
    WARREN_REGISTRY = os.getenv('WARREN_REGISTRY', '0xb7f14622ea97b26524BE743Ab6D9FA519Afbe756')

    # Chat
    ABLY_API_KEY = os.getenv('ABLY_API_KEY')
    CHAT_CHANNEL = os.getenv('CHAT_CHANNEL', 'burnchat')
    CHAT_RATE_LIMIT_SECONDS = _int('CHAT_RATE_LIMIT_SECONDS', 2)

    HTTP_TIMEOUT = _int('HTTP_TIMEOUT', 30)
    MAX_IMAGE_BYTES = _int('MAX_IMAGE_BYTES', 4 * 1024 * 1024)
    MAX_CONTENT_LENGTH = MAX_IMAGE_BYTES + 1024 * 1024
    CLAIM_TTL_SECONDS = _int('CLAIM_TTL_SECONDS', 600)
