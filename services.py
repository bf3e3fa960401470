"""One configured client per external system, built once per app and injected."""
from dataclasses import dataclass

from chat_gate import ChatGate
from content_store import PinataContentStore
from image_generation import ReplicateImageGenerator
from kv_store import KeyValueStore
from leaderboard import LeaderboardAggregator, checkpoint_strategy
from ledger import Web3LedgerClient
from messaging import AblyChannelClient
from metadata_store import MetadataStore
from minter import NFTMinter
from orchestrator import BurnMintOrchestrator
from permanent_storage import WarrenBridge
from replay_guard import ReplayGuard
from verification import BurnPolicy


@dataclass
class Services:
    policy: BurnPolicy
    kv: object
    ledger: object
    replay_guard: ReplayGuard
    metadata_store: MetadataStore
    content_store: object
    bridge: object
    generator: object
    minter: object
    messaging: object
    orchestrator: BurnMintOrchestrator
    leaderboard: LeaderboardAggregator
    chat: ChatGate


def build_services(config, kv=None, ledger=None, content_store=None, bridge=None, generator=None,
                   minter=None, messaging=None):
    """Wire the pipeline from config; any collaborator may be passed in instead."""
    policy = BurnPolicy.from_config(config)
    kv = kv or KeyValueStore()
    ledger = ledger or Web3LedgerClient(
        config['RPC_URL'],
        timeout=config['RPC_TIMEOUT'],
        multicall_address=config['MULTICALL_ADDRESS'],
        use_sync_send=config['USE_SYNC_SEND'],
    )
    content_store = content_store or PinataContentStore(
        config['PINATA_JWT'],
        api_url=config['PINATA_API_URL'],
        gateways=config['IPFS_GATEWAYS'],
        timeout=config['HTTP_TIMEOUT'],
    )
    bridge = bridge or WarrenBridge(
        config['WARREN_API_KEY'],
        base_url=config['WARREN_BASE_URL'],
        registry=config['WARREN_REGISTRY'],
    )
    generator = generator or ReplicateImageGenerator(
        config['REPLICATE_API_TOKEN'],
        config['REPLICATE_MODEL'],
        config['GENERATION_PROMPT'],
        negative_prompt=config['GENERATION_NEGATIVE_PROMPT'],
        timeout=config['GENERATION_TIMEOUT'],
    )
    minter = minter or NFTMinter(
        ledger,
        config['NFT_CONTRACT'],
        config['MINTER_PRIVATE_KEY'],
        chain_id=config['CHAIN_ID'],
        gas_limit=config['MINT_GAS_LIMIT'],
    )
    messaging = messaging or AblyChannelClient(config['ABLY_API_KEY'], timeout=config['HTTP_TIMEOUT'])

    replay_guard = ReplayGuard(kv, claim_ttl=config['CLAIM_TTL_SECONDS'])
    metadata_store = MetadataStore(kv)
    base_url = config['PUBLIC_BASE_URL']

    orchestrator = BurnMintOrchestrator(
        ledger, replay_guard, metadata_store, content_store, generator, minter, policy,
        bridge=bridge,
        collection_name=config['COLLECTION_NAME'],
        external_url=base_url,
    )
    leaderboard = LeaderboardAggregator(
        ledger,
        config['NFT_CONTRACT'],
        metadata_store,
        content_store,
        replay_guard,
        per_token_quantity=policy.burned_quantity,
        dead_address=policy.dead_address,
        internal_prefix=f'{base_url}/api/metadata/',
        checkpoint=checkpoint_strategy(config['LEADERBOARD_CHECKPOINT'], kv),
        genesis_block=config['NFT_GENESIS_BLOCK'],
        chunk_size=config['LOG_CHUNK_SIZE'],
        name_registry=config['NAME_REGISTRY_ADDRESS'],
        name_function=config['NAME_REGISTRY_FUNCTION'],
        legacy_link_policy=config['LEGACY_LINK_POLICY'],
    )
    chat = ChatGate(
        replay_guard, kv, messaging,
        channel=config['CHAT_CHANNEL'],
        rate_limit_seconds=config['CHAT_RATE_LIMIT_SECONDS'],
    )
    return Services(
        policy=policy,
        kv=kv,
        ledger=ledger,
        replay_guard=replay_guard,
        metadata_store=metadata_store,
        content_store=content_store,
        bridge=bridge,
        generator=generator,
        minter=minter,
        messaging=messaging,
        orchestrator=orchestrator,
        leaderboard=leaderboard,
        chat=chat,
    )
