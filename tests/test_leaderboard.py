import json

from eth_abi import encode

from conftest import ALICE, BOB, CAROL, DEAD, NFT, ZERO, nft_transfer, tx
from config import MULTICALL3_ADDRESS
from leaderboard import (
    CHECKPOINT_KEY,
    LEGACY_MINTER_ADDRESS,
    LINK_METADATA,
    LINK_MINTER,
    LINK_REDEMPTION,
    LINK_UNLINKED,
    ContentReference,
    DirectReference,
    IncrementalCheckpoint,
    InternalReference,
    LeaderboardAggregator,
    LeaderboardEntry,
    classify_reference,
    fold_transfers,
    rank,
)
from ledger import Web3LedgerClient
from metadata_store import NFTMetadataRecord
from replay_guard import RedemptionRecord

PREFIX = 'https://burnforge.test/api/metadata/'


def make_aggregator(services, ledger, **kwargs):
    options = dict(
        per_token_quantity=500,
        dead_address=DEAD,
        internal_prefix=PREFIX,
    )
    options.update(kwargs)
    return LeaderboardAggregator(
        ledger, NFT, services.metadata_store, services.content_store, services.replay_guard, **options
    )


def set_uri(ledger, token_id, uri):
    ledger.batch[('tokenURI(uint256)', (token_id,))] = encode(['string'], [uri])


def test_classify_reference():
    assert classify_reference(PREFIX + '12', PREFIX) == InternalReference(12)
    assert classify_reference('ipfs://bafkabc', PREFIX) == ContentReference('bafkabc')
    assert classify_reference('https://ipfs.io/ipfs/QmXyz', PREFIX) == ContentReference('QmXyz')
    assert classify_reference('https://example.com/meta/1.json', PREFIX) == DirectReference('https://example.com/meta/1.json')
    assert classify_reference('', PREFIX) is None


def test_fold_transfers_last_write_wins():
    events = [
        nft_transfer(ZERO, ALICE, 1, block=10),
        nft_transfer(ALICE, BOB, 1, block=12),
        nft_transfer(ZERO, CAROL, 2, block=11),
    ]

    tokens = fold_transfers(events)

    assert tokens[1].owner == BOB
    assert tokens[1].minter == ALICE
    assert tokens[1].last_block == 12
    assert tokens[2].owner == CAROL


def test_tokens_sent_to_dead_address_are_excluded(ctx, services, ledger):
    for token_id in range(1, 6):
        ledger.events.append(nft_transfer(ZERO, ALICE if token_id % 2 else BOB, token_id, block=token_id))
    ledger.events.append(nft_transfer(ALICE, DEAD, 1, block=20))
    ledger.events.append(nft_transfer(BOB, DEAD, 2, block=21))

    result = make_aggregator(services, ledger).build()

    live = sum(entry.total_count for entry in result.entries)
    assert live == 5 - 2
    assert result.error is None
    assert all(entry.owner_address != DEAD for entry in result.entries)


def test_ranking_is_count_then_quantity_then_address(ctx, services, ledger):
    ledger.events += [
        nft_transfer(ZERO, CAROL, 1, block=1),
        nft_transfer(ZERO, ALICE, 2, block=2),
        nft_transfer(ZERO, BOB, 3, block=3),
        nft_transfer(ZERO, ALICE, 4, block=4),
    ]

    result = make_aggregator(services, ledger).build()

    assert [e.owner_address for e in result.entries] == [ALICE, BOB, CAROL]
    assert result.entries[0].total_count == 2
    assert result.entries[0].total_quantity == 1000


def test_rank_orders_pairs_totally():
    entries = [
        LeaderboardEntry(BOB, total_count=2, total_quantity=100),
        LeaderboardEntry(ALICE, total_count=2, total_quantity=300),
        LeaderboardEntry(CAROL, total_count=5, total_quantity=1),
    ]

    ranked = rank(entries)

    for a, b in zip(ranked, ranked[1:]):
        assert (a.total_count, a.total_quantity) >= (b.total_count, b.total_quantity)
    assert [e.owner_address for e in ranked] == [CAROL, ALICE, BOB]


def test_internal_reference_resolves_from_metadata_store(ctx, services, ledger):
    ledger.events.append(nft_transfer(ZERO, ALICE, 1, block=5))
    set_uri(ledger, 1, PREFIX + '1')
    services.metadata_store.put(NFTMetadataRecord(
        minted_token_id=1,
        content_url='https://gateway.pinata.cloud/ipfs/bafkimage',
        claimant_address=ALICE,
        burn_tx_id=tx(1),
        created_at='2025-01-02T03:04:05Z',
    ))

    entry = make_aggregator(services, ledger).build().entries[0]

    artifact = entry.per_token_artifacts[0]
    assert artifact.link == LINK_METADATA
    assert artifact.image_url == 'https://gateway.pinata.cloud/ipfs/bafkimage'
    assert entry.most_recent_artifact_url == artifact.image_url
    assert entry.most_recent_timestamp == 1735787045000


def test_content_reference_fetches_document(ctx, services, ledger, content_store):
    ledger.events.append(nft_transfer(ZERO, BOB, 3, block=5))
    document = {'name': 'legacy', 'image': 'ipfs://bafkimg'}
    content_store.blobs['bafkdoc'] = json.dumps(document).encode()
    set_uri(ledger, 3, 'ipfs://bafkdoc')

    artifact = make_aggregator(services, ledger).build().entries[0].per_token_artifacts[0]

    assert artifact.image_url == 'https://gateway.pinata.cloud/ipfs/bafkimg'
    assert artifact.link == LINK_UNLINKED
    assert artifact.timestamp is None


def test_redemption_link_by_minted_token_id(ctx, services, ledger, content_store):
    ledger.events.append(nft_transfer(ZERO, BOB, 3, block=5))
    content_store.blobs['bafkdoc'] = json.dumps({'image': 'ipfs://bafkimg'}).encode()
    set_uri(ledger, 3, 'ipfs://bafkdoc')
    services.replay_guard.record_once(tx(9), RedemptionRecord(
        primary_tx_id=tx(9), claimant_address=BOB, content_id='bafkimg',
        content_url='https://gateway.pinata.cloud/ipfs/bafkimg', created_at=1700000000000,
        minted_token_id=3,
    ))

    artifact = make_aggregator(services, ledger).build().entries[0].per_token_artifacts[0]

    assert artifact.link == LINK_REDEMPTION
    assert artifact.timestamp == 1700000000000


def test_minter_address_policy_links_legacy_tokens(ctx, services, ledger):
    ledger.events.append(nft_transfer(ZERO, ALICE, 4, block=5))
    services.replay_guard.record_once(tx(8), RedemptionRecord(
        primary_tx_id=tx(8), claimant_address=ALICE, content_id='bafkold',
        content_url='https://gateway.pinata.cloud/ipfs/bafkold', created_at=1600000000000,
    ))

    unlinked = make_aggregator(services, ledger).build().entries[0].per_token_artifacts[0]
    linked = make_aggregator(services, ledger, legacy_link_policy=LEGACY_MINTER_ADDRESS).build().entries[0].per_token_artifacts[0]

    assert unlinked.link == LINK_UNLINKED
    assert unlinked.image_url == ''
    assert linked.link == LINK_MINTER
    assert linked.image_url == 'https://gateway.pinata.cloud/ipfs/bafkold'


def test_unreachable_metadata_yields_placeholder(ctx, services, ledger):
    ledger.events.append(nft_transfer(ZERO, ALICE, 1, block=1))
    ledger.events.append(nft_transfer(ZERO, ALICE, 2, block=2))
    set_uri(ledger, 1, 'ipfs://bafkmissing')
    set_uri(ledger, 2, 'https://example.com/broken.json')

    result = make_aggregator(services, ledger).build()

    assert result.error is None
    assert result.entries[0].total_count == 2
    assert all(a.image_url == '' for a in result.entries[0].per_token_artifacts)


def test_token_uri_batch_failure_degrades(ctx, services, ledger):
    ledger.events.append(nft_transfer(ZERO, ALICE, 1, block=1))
    ledger.fail_batch = True

    result = make_aggregator(services, ledger).build()

    assert result.entries[0].total_count == 1


def test_event_log_failure_is_the_only_fatal_error(ctx, services, ledger):
    ledger.fail_logs = True

    result = make_aggregator(services, ledger).build()

    assert result.entries == []
    assert result.error
    assert result.to_dict()['entries'] == []


def test_display_names_from_registry(ctx, services, ledger):
    registry = '0x5555555555555555555555555555555555555555'
    ledger.events += [nft_transfer(ZERO, ALICE, 1, block=1), nft_transfer(ZERO, BOB, 2, block=2)]
    ledger.batch[('getName(address)', (ALICE,))] = encode(['string'], ['chad'])

    result = make_aggregator(services, ledger, name_registry=registry).build()

    names = {e.owner_address: e.display_name for e in result.entries}
    assert names == {ALICE: 'chad', BOB: None}


def test_incremental_checkpoint_replays_only_new_blocks(ctx, services, ledger):
    ledger.events.append(nft_transfer(ZERO, ALICE, 1, block=50))
    aggregator = make_aggregator(services, ledger, checkpoint=IncrementalCheckpoint(services.kv))

    first = aggregator.build()
    ledger.events.append(nft_transfer(ALICE, BOB, 1, block=150))
    ledger.events.append(nft_transfer(ZERO, CAROL, 2, block=160))
    ledger.head = 200
    second = aggregator.build()

    assert ledger.log_requests == [(0, 100), (101, 200)]
    assert [e.owner_address for e in first.entries] == [ALICE]
    assert sorted(e.owner_address for e in second.entries) == [BOB, CAROL]


def test_corrupt_checkpoint_replays_from_genesis(ctx, services, ledger):
    ledger.events.append(nft_transfer(ZERO, ALICE, 1, block=50))
    aggregator = make_aggregator(services, ledger, checkpoint=IncrementalCheckpoint(services.kv))

    for raw in ('not json', '{"lastBlock": 5}', '{"lastBlock": 5, "tokens": {"1": "oops"}}'):
        ledger.log_requests.clear()
        services.kv.set(CHECKPOINT_KEY, raw)

        result = aggregator.build()

        assert ledger.log_requests == [(0, 100)]
        assert result.error is None
        assert [e.owner_address for e in result.entries] == [ALICE]


def test_undecodable_multicall_response_degrades(ctx, services, monkeypatch):
    client = Web3LedgerClient('http://127.0.0.1:8545', multicall_address=MULTICALL3_ADDRESS)
    monkeypatch.setattr(client, 'block_number', lambda: 100)
    monkeypatch.setattr(client, 'get_event_logs', lambda *a, **kw: [nft_transfer(ZERO, ALICE, 1, block=1)])
    monkeypatch.setattr(client, 'call', lambda *a, **kw: b'')

    result = make_aggregator(services, client).build()

    assert result.error is None
    assert result.entries[0].total_count == 1
    assert result.entries[0].per_token_artifacts[0].image_url == ''
