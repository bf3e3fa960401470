import io

from conftest import ALICE, BURN_TX, DEAD, NFT, TOKEN, TRANSFER_TX, UNIT, ZERO, nft_transfer
from errors import UpstreamServiceFailed
from metadata_store import NFTMetadataRecord


def redeem_form(png_bytes, **overrides):
    form = {
        'burnTxHash': BURN_TX,
        'transferTxHash': TRANSFER_TX,
        'burnerAddress': ALICE,
        'image': (io.BytesIO(png_bytes), 'selfie.png', 'image/png'),
    }
    form.update(overrides)
    return form


def test_health(client):
    assert client.get('/health').get_json() == {'status': 'ok'}


def test_generate_redeems_burn(client, ledger, png_bytes):
    ledger.add_burn()
    ledger.add_transfer()

    response = client.post('/api/generate', data=redeem_form(png_bytes), content_type='multipart/form-data')

    assert response.status_code == 200
    body = response.get_json()
    assert body['burnTxHash'] == BURN_TX
    assert body['tokensBurned'] is True
    assert body['contentUrl'].startswith('https://gateway.pinata.cloud/ipfs/')
    assert body['mintedTokenId'] is None


def test_generate_accepts_dev_tx_alias(client, ledger, png_bytes):
    ledger.add_burn()
    ledger.add_transfer()
    form = redeem_form(png_bytes)
    form['devTxHash'] = form.pop('transferTxHash')

    response = client.post('/api/generate', data=form, content_type='multipart/form-data')

    assert response.status_code == 200


def test_generate_twice_conflicts(client, ledger, png_bytes):
    ledger.add_burn()
    ledger.add_transfer()
    client.post('/api/generate', data=redeem_form(png_bytes), content_type='multipart/form-data')

    response = client.post('/api/generate', data=redeem_form(png_bytes), content_type='multipart/form-data')

    assert response.status_code == 409
    assert response.get_json()['code'] == 'already_redeemed'


def test_generate_rejects_bad_hash(client, png_bytes):
    response = client.post('/api/generate', data=redeem_form(png_bytes, burnTxHash='0x12'),
                           content_type='multipart/form-data')

    assert response.status_code == 400
    assert response.get_json()['field'] == 'burnTxHash'


def test_generate_rejects_non_image(client):
    form = redeem_form(b'', image=(io.BytesIO(b'not really a png'), 'selfie.png', 'image/png'))

    response = client.post('/api/generate', data=form, content_type='multipart/form-data')

    assert response.status_code == 400
    assert response.get_json()['error'] == 'Invalid image data'


def test_generate_rejects_wrong_content_type(client, png_bytes):
    form = redeem_form(png_bytes, image=(io.BytesIO(png_bytes), 'selfie.gif', 'image/gif'))

    response = client.post('/api/generate', data=form, content_type='multipart/form-data')

    assert response.status_code == 400


def test_generate_invalid_burn_is_400(client, ledger, png_bytes, generator):
    ledger.add_burn(destination=TOKEN)
    ledger.add_transfer()

    response = client.post('/api/generate', data=redeem_form(png_bytes), content_type='multipart/form-data')

    assert response.status_code == 400
    assert response.get_json()['code'] == 'invalid_burn'
    assert generator.calls == 0


def test_metadata_endpoint(client, services, app):
    with app.app_context():
        services.metadata_store.put(NFTMetadataRecord(
            minted_token_id=5,
            content_url='https://gateway.pinata.cloud/ipfs/bafkimg',
            claimant_address=ALICE,
            burn_tx_id=BURN_TX,
            content_id='bafkimg',
        ))

    response = client.get('/api/metadata/5')

    assert response.status_code == 200
    assert 'immutable' in response.headers['Cache-Control']
    body = response.get_json()
    assert body['name'] == 'BURNFORGE 0005'
    assert body['image'] == 'https://gateway.pinata.cloud/ipfs/bafkimg'
    assert body['properties']['on_chain'] is False


def test_metadata_unknown_token_is_404(client):
    response = client.get('/api/metadata/999')

    assert response.status_code == 404
    assert response.get_json()['error'] == 'NFT not found'


def test_gallery_lists_recent_redemptions(client, ledger, png_bytes):
    ledger.add_burn()
    ledger.add_transfer()
    client.post('/api/generate', data=redeem_form(png_bytes), content_type='multipart/form-data')

    body = client.get('/api/gallery?limit=500').get_json()

    assert body['total'] == 1
    assert body['limit'] == 50
    assert body['items'][0]['txHash'] == BURN_TX
    assert body['items'][0]['burner'] == ALICE


def test_gallery_rejects_bad_paging(client):
    assert client.get('/api/gallery?offset=abc').status_code == 400


def test_leaderboard_endpoint(client, ledger):
    ledger.events.append(nft_transfer(ZERO, ALICE, 1, block=3, contract=NFT))

    body = client.get('/api/leaderboard').get_json()

    assert body['entries'][0]['address'] == ALICE
    assert body['entries'][0]['totalCount'] == 1
    assert body['entries'][0]['tokens'][0]['tokenId'] == '1'


def test_leaderboard_failure_is_reported_in_body(client, ledger):
    ledger.fail_logs = True

    response = client.get('/api/leaderboard')

    assert response.status_code == 200
    assert response.get_json()['entries'] == []
    assert response.get_json()['error']


def test_stats(client, ledger):
    ledger.calls[(TOKEN, 'totalSupply()')] = (1_000_000 * UNIT).to_bytes(32, 'big')
    ledger.calls[(TOKEN, 'balanceOf(address)')] = (1500 * UNIT).to_bytes(32, 'big')

    body = client.get('/api/stats').get_json()

    assert body['totalSupply'] == '1000000'
    assert body['tokensBurned'] == '1500'
    assert body['circulatingSupply'] == '998500'
    assert body['totalBurns'] == 0
    assert body['totalTokensBurned'] == 0


def test_stats_tolerates_chain_failure(client):
    body = client.get('/api/stats').get_json()

    assert body['totalSupply'] is None
    assert body['totalBurns'] == 0


def test_finalize_requires_record(client):
    response = client.post('/api/mint/finalize', json={'burnTxHash': BURN_TX})

    assert response.status_code == 404


def test_storage_estimate(client):
    response = client.post('/api/storage/estimate', json={'size': 2048})

    assert response.get_json()['feeWei'] == str(10 ** 15)
    assert client.post('/api/storage/estimate', json={'size': 'big'}).status_code == 400


def test_chat_requires_burn(client, ledger, png_bytes):
    denied = client.post('/api/chat/messages', json={'address': ALICE, 'text': 'gm'})
    assert denied.status_code == 403

    ledger.add_burn()
    ledger.add_transfer()
    client.post('/api/generate', data=redeem_form(png_bytes), content_type='multipart/form-data')

    posted = client.post('/api/chat/messages', json={'address': ALICE, 'text': 'gm'})
    assert posted.status_code == 200
    assert posted.get_json()['ok'] is True

    listed = client.get('/api/chat/messages').get_json()
    assert [m['text'] for m in listed['messages']] == ['gm']
    assert client.post('/api/chat/auth', json={'address': ALICE}).get_json()['clientId'] == ALICE


def test_chat_name_routes(client):
    assert client.post('/api/chat/name', json={'address': ALICE, 'name': 'Laser Eyes'}).get_json() == {'name': 'Laser Eyes'}
    assert client.get(f'/api/chat/name?address={ALICE}').get_json()['name'] == 'Laser Eyes'
    assert client.post('/api/chat/name', json={'address': DEAD, 'name': 'laser eyes'}).status_code == 409


def test_missing_json_body(client):
    response = client.post('/api/chat/auth', data='nope', content_type='text/plain')

    assert response.status_code == 400


def test_chat_stream_relays_channel_messages(client, services, messaging, ledger, png_bytes):
    assert client.get(f'/api/chat/stream?address={ALICE}').status_code == 403

    ledger.add_burn()
    ledger.add_transfer()
    client.post('/api/generate', data=redeem_form(png_bytes), content_type='multipart/form-data')
    messaging.incoming = [{'text': 'gm'}]
    messaging.stream_error = UpstreamServiceFailed('messaging', 'Subscribe failed: ConnectionError')

    response = client.get(f'/api/chat/stream?address={ALICE}')

    assert response.status_code == 200
    assert response.mimetype == 'text/event-stream'
    body = response.get_data(as_text=True)
    assert body.startswith('data: {"text": "gm"}\n\n')
    assert 'event: error' in body
