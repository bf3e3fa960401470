import io
import json
import logging
import os

from flask import Blueprint, Flask, Response, current_app, jsonify, request
from PIL import Image, UnidentifiedImageError
from werkzeug.exceptions import RequestEntityTooLarge

from config import Config
from errors import BurnforgeError, InvalidInput, NotFound
from ledger import data_to_int
from metadata_store import render_metadata
from models import db
from orchestrator import BurnAttempt
from services import build_services
from verification import require_address, require_tx_hash

ALLOWED_CONTENT_TYPES = ('image/jpeg', 'image/png', 'image/webp')
ALLOWED_FORMATS = ('JPEG', 'PNG', 'WEBP')
GALLERY_MAX_LIMIT = 50

bp = Blueprint('burnforge', __name__)


def get_services():
    return current_app.extensions['burnforge']


def _flag(value):
    return str(value or '').strip().lower() in ('1', 'true', 'yes', 'on')


def _json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidInput('Missing JSON data')
    return data


def _int_arg(name, default, minimum=0, maximum=None):
    raw = request.args.get(name)
    if raw is None or raw == '':
        return default
    try:
        value = int(raw)
    except ValueError:
        raise InvalidInput(f'Invalid {name}', details={'field': name})
    value = max(minimum, value)
    return min(value, maximum) if maximum is not None else value


def validate_image(file, max_bytes):
    """Read an uploaded image, checking declared type, size and that Pillow can decode it."""
    if file is None or file.filename == '':
        raise InvalidInput('Missing image file', details={'field': 'image'})

    content_type = (file.content_type or '').split(';')[0].strip().lower()
    if content_type not in ALLOWED_CONTENT_TYPES:
        current_app.logger.error(f'Invalid content type: {content_type}')
        raise InvalidInput('Image must be JPEG, PNG, or WebP', details={'field': 'image'})

    image_bytes = file.read()
    if len(image_bytes) > max_bytes:
        raise InvalidInput(f'Image must be under {max_bytes // (1024 * 1024)}MB', details={'field': 'image'})

    try:
        image = Image.open(io.BytesIO(image_bytes))
        image.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        current_app.logger.error(f'Image processing error: {e}')
        raise InvalidInput('Invalid image data', details={'field': 'image'})

    if image.format not in ALLOWED_FORMATS:
        current_app.logger.error(f'Unsupported image format: {image.format}')
        raise InvalidInput(f'Unsupported image format: {image.format}', details={'field': 'image'})

    current_app.logger.info(f'Received image: format={image.format}, size={image.size}, {len(image_bytes)} bytes')
    return image_bytes, content_type


def validate_redeem_request(form, files, max_bytes):
    burn_tx = require_tx_hash(form.get('burnTxHash'), 'burnTxHash')
    transfer_tx = require_tx_hash(form.get('transferTxHash') or form.get('devTxHash'), 'transferTxHash')
    claimant = require_address(form.get('burnerAddress'), 'burnerAddress')
    image_bytes, content_type = validate_image(files.get('image'), max_bytes)
    return BurnAttempt(
        burn_tx_id=burn_tx,
        transfer_tx_id=transfer_tx,
        claimant_address=claimant,
        image_bytes=image_bytes,
        content_type=content_type,
        wants_permanent_storage=_flag(form.get('permanentStorage')),
    )


@bp.app_errorhandler(BurnforgeError)
def handle_pipeline_error(e):
    if e.http_status >= 500:
        current_app.logger.error(f'{e.code}: {e.message}')
    else:
        current_app.logger.info(f'{e.code}: {e.message}')
    return jsonify(e.to_dict()), e.http_status


@bp.app_errorhandler(RequestEntityTooLarge)
def handle_too_large(e):
    return jsonify({'error': 'Upload too large', 'code': 'invalid_input', 'retryable': False}), 413


@bp.route('/health')
def health():
    return jsonify({'status': 'ok'})


@bp.route('/api/generate', methods=['POST'])
def generate():
    attempt = validate_redeem_request(request.form, request.files, current_app.config['MAX_IMAGE_BYTES'])
    current_app.logger.info(f'Redeem request for burn {attempt.burn_tx_id} from {attempt.claimant_address}')
    result = get_services().orchestrator.redeem(attempt)
    return jsonify(result.to_dict())


@bp.route('/api/mint/finalize', methods=['POST'])
def finalize_mint():
    data = _json_body()
    burn_tx = require_tx_hash(data.get('burnTxHash'), 'burnTxHash')
    payment_tx = data.get('paymentTxHash')
    if payment_tx:
        payment_tx = require_tx_hash(payment_tx, 'paymentTxHash')
    current_app.logger.info(f'Finalize request for burn {burn_tx}, payment {payment_tx}')
    result = get_services().orchestrator.finalize(burn_tx, payment_tx)
    return jsonify(result.to_dict())


@bp.route('/api/storage/estimate', methods=['POST'])
def estimate_storage():
    data = _json_body()
    size = data.get('size')
    if not isinstance(size, int) or isinstance(size, bool) or size <= 0:
        raise InvalidInput('Invalid size', details={'field': 'size'})
    quote = get_services().bridge.estimate_fee(size)
    return jsonify(quote.to_dict())


@bp.route('/api/metadata/<int:token_id>')
def token_metadata(token_id):
    record = get_services().metadata_store.get(token_id)
    if record is None:
        raise NotFound('NFT not found', details={'tokenId': str(token_id)})
    document = render_metadata(record, current_app.config['COLLECTION_NAME'], current_app.config['PUBLIC_BASE_URL'])
    response = jsonify(document)
    response.headers['Cache-Control'] = 'public, max-age=31536000, immutable'
    return response


@bp.route('/api/gallery')
def gallery():
    limit = _int_arg('limit', 20, minimum=1, maximum=GALLERY_MAX_LIMIT)
    offset = _int_arg('offset', 0)
    guard = get_services().replay_guard
    try:
        items = [record.to_dict() for record in guard.recent(limit=limit, offset=offset)]
        total = guard.count()
    except BurnforgeError as e:
        current_app.logger.warning(f'Gallery unavailable: {e}')
        items, total = [], 0
    return jsonify({'items': items, 'total': total, 'limit': limit, 'offset': offset})


@bp.route('/api/leaderboard')
def leaderboard():
    result = get_services().leaderboard.build()
    return jsonify(result.to_dict())


@bp.route('/api/stats')
def stats():
    svc = get_services()
    policy = svc.policy
    unit = 10 ** policy.decimals
    body = {
        'totalSupply': None,
        'tokensBurned': None,
        'circulatingSupply': None,
        'totalBurns': None,
        'totalTokensBurned': None,
    }
    try:
        supply = data_to_int(svc.ledger.call(policy.token_contract, 'totalSupply()'))
        burned = data_to_int(svc.ledger.call(policy.token_contract, 'balanceOf(address)', (policy.dead_address.lower(),)))
        body['totalSupply'] = str(supply // unit)
        body['tokensBurned'] = str(burned // unit)
        body['circulatingSupply'] = str((supply - burned) // unit)
    except BurnforgeError as e:
        current_app.logger.warning(f'Stats chain read failed: {e}')
    try:
        body['totalBurns'] = svc.replay_guard.count()
        body['totalTokensBurned'] = svc.replay_guard.total_burned(policy.burned_quantity)
    except BurnforgeError as e:
        current_app.logger.warning(f'Stats store read failed: {e}')
    return jsonify(body)


@bp.route('/api/chat/auth', methods=['POST'])
def chat_auth():
    address = require_address(_json_body().get('address'))
    return jsonify(get_services().chat.authorize(address))


@bp.route('/api/chat/messages', methods=['GET'])
def chat_messages():
    limit = _int_arg('limit', 50, minimum=1, maximum=100)
    before = _int_arg('before', None)
    try:
        messages = get_services().chat.recent_messages(limit=limit, before=before)
    except BurnforgeError as e:
        current_app.logger.warning(f'Chat history unavailable: {e}')
        messages = []
    return jsonify({'messages': messages})


@bp.route('/api/chat/messages', methods=['POST'])
def chat_post():
    data = _json_body()
    address = require_address(data.get('address'))
    message = get_services().chat.post_message(address, data.get('text'))
    return jsonify({'ok': True, 'message': message})


@bp.route('/api/chat/stream', methods=['GET'])
def chat_stream():
    address = require_address(request.args.get('address'))
    messages = get_services().chat.stream(address)
    logger = current_app.logger

    def events():
        try:
            for message in messages:
                yield f'data: {json.dumps(message)}\n\n'
        except BurnforgeError as e:
            logger.warning(f'Chat stream for {address} ended: {e}')
            yield f'event: error\ndata: {json.dumps(e.to_dict())}\n\n'

    return Response(events(), mimetype='text/event-stream', headers={'Cache-Control': 'no-cache'})


@bp.route('/api/chat/name', methods=['GET'])
def chat_get_name():
    address = require_address(request.args.get('address'))
    return jsonify(get_services().chat.get_name(address))


@bp.route('/api/chat/name', methods=['POST'])
def chat_set_name():
    data = _json_body()
    address = require_address(data.get('address'))
    return jsonify(get_services().chat.set_name(address, data.get('name'), is_anon=bool(data.get('isAnon'))))


def create_app(test_config=None, collaborators=None):
    """Build the app. collaborators replaces external clients by name (see build_services)."""
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    logging.basicConfig(
        level=app.config['LOG_LEVEL'],
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    app.logger.setLevel(app.config['LOG_LEVEL'])

    if app.config['SQLALCHEMY_DATABASE_URI'].startswith('sqlite:///'):
        db_path = app.config['SQLALCHEMY_DATABASE_URI'][len('sqlite:///'):]
        if db_path and db_path != ':memory:':
            os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)

    db.init_app(app)
    with app.app_context():
        db.create_all()

    app.extensions['burnforge'] = build_services(app.config, **(collaborators or {}))
    app.register_blueprint(bp)
    return app


if __name__ == '__main__':
    app = create_app()
    debug_mode = os.environ.get('FLASK_DEBUG', 'False').lower() == 'true'
    port = int(os.environ.get('PORT', 5000))
    app.run(host='0.0.0.0', port=port, debug=debug_mode)
