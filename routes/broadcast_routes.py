"""
Broadcast Routes Blueprint
Create, list, start and end broadcasts; issue room tokens; serve relay assets
"""
import os
from datetime import datetime, timedelta
from flask import Blueprint, request, jsonify, send_from_directory, current_app
from flask_login import current_user

from models import db, Broadcast, BroadcastStatus
from utils.broadcast_lifecycle import (
    create_broadcast, end_broadcast, get_broadcast, issue_broadcaster_token,
    issue_listener_access, start_broadcast
)
from utils.errors import NotFoundError, UnauthorizedError, ValidationError
from utils.hls import content_type_for, verify_hls_signature
from utils.permissions import (
    assert_masjid_access, assert_subscribed, login_required, require_masjid_authority
)
from utils.rate_limits import configured, limiter, user_or_ip
from utils.schedule_utils import parse_date, parse_prayer_name

broadcast_bp = Blueprint('broadcasts', __name__)


def _json_body():
    return request.get_json(silent=True) or {}


@broadcast_bp.route('', methods=['POST'])
@login_required
def create():
    """Create a pending or scheduled broadcast for a masjid"""
    data = _json_body()
    masjid_id = data.get('masjidId')
    if not masjid_id:
        raise ValidationError('Missing masjidId')

    require_masjid_authority(current_user, masjid_id)
    broadcast = create_broadcast(masjid_id, current_user.id, data)
    return jsonify({'message': 'Broadcast created', 'data': broadcast.to_dict()}), 201


@broadcast_bp.route('', methods=['GET'])
@login_required
def list_broadcasts():
    """List a masjid's broadcasts, filtered by UTC date, status or prayer"""
    masjid_id = request.args.get('masjidId')
    if not masjid_id:
        raise ValidationError('Missing masjidId')
    assert_masjid_access(current_user, masjid_id)

    query = Broadcast.query.filter(Broadcast.masjid_id == masjid_id)

    status = request.args.get('status')
    if status:
        try:
            query = query.filter(Broadcast.status == BroadcastStatus(status))
        except ValueError:
            raise ValidationError('Invalid status', details={'value': status})

    prayer = request.args.get('prayerName')
    if prayer:
        query = query.filter(Broadcast.prayer_name == parse_prayer_name(prayer))

    day = request.args.get('date')
    if day:
        start = datetime.combine(parse_date(day), datetime.min.time())
        query = query.filter(Broadcast.scheduled_at >= start, Broadcast.scheduled_at < start + timedelta(days=1))

    items = query.order_by(Broadcast.scheduled_at).all()
    return jsonify({'message': 'Broadcasts fetched', 'data': [b.to_dict() for b in items]})


@broadcast_bp.route('/<broadcast_id>/start', methods=['POST'])
@login_required
@limiter.limit(configured('BROADCAST_CONTROL_RATE_LIMIT'), key_func=user_or_ip)
def start(broadcast_id):
    broadcast = get_broadcast(broadcast_id)
    require_masjid_authority(current_user, broadcast.masjid_id)

    broadcast = start_broadcast(broadcast_id, _json_body())
    return jsonify({'message': 'Broadcast started', 'data': broadcast.to_dict()})


@broadcast_bp.route('/<broadcast_id>/end', methods=['POST'])
@login_required
@limiter.limit(configured('BROADCAST_CONTROL_RATE_LIMIT'), key_func=user_or_ip)
def end(broadcast_id):
    broadcast = get_broadcast(broadcast_id)
    require_masjid_authority(current_user, broadcast.masjid_id)

    data = _json_body()
    broadcast = end_broadcast(broadcast_id, data.get('recordingUrl'), data.get('endedReason'))
    return jsonify({'message': 'Broadcast ended', 'data': broadcast.to_dict()})


@broadcast_bp.route('/<broadcast_id>/token', methods=['POST'])
@login_required
@limiter.limit(configured('BROADCAST_TOKEN_RATE_LIMIT'), key_func=user_or_ip)
def broadcaster_token(broadcast_id):
    """Publish-capable token for the masjid's broadcaster"""
    broadcast = get_broadcast(broadcast_id)
    require_masjid_authority(current_user, broadcast.masjid_id)

    return jsonify({'message': 'Broadcast token issued', 'data': issue_broadcaster_token(broadcast_id, current_user.id)})


@broadcast_bp.route('/<broadcast_id>/listener-token', methods=['POST'])
@login_required
@limiter.limit(configured('LISTENER_TOKEN_RATE_LIMIT'), key_func=user_or_ip)
def listener_token(broadcast_id):
    """Relay URL or subscribe-only token for a subscriber"""
    return jsonify({'message': 'Listener token issued', 'data': issue_listener_access(broadcast_id, current_user.id)})


@broadcast_bp.route('/<broadcast_id>/hls/<path:filename>', methods=['GET'])
@limiter.exempt
def hls_asset(broadcast_id, filename):
    """
    Serve playlist and segments of a relayed broadcast

    A valid exp/sig pair authorizes the request; otherwise the caller must be
    an authenticated subscriber of the broadcast's masjid.
    """
    if broadcast_id in ('.', '..') or os.path.basename(broadcast_id) != broadcast_id:
        raise NotFoundError('Broadcast not found')

    if not verify_hls_signature(broadcast_id, request.args.get('exp'), request.args.get('sig')):
        if not current_user.is_authenticated:
            raise UnauthorizedError('Missing or invalid access token')
        broadcast = db.session.get(Broadcast, broadcast_id)
        if broadcast is None:
            raise NotFoundError('Broadcast not found')
        assert_subscribed(current_user.id, broadcast.masjid_id)

    name = os.path.basename(filename)
    directory = os.path.join(current_app.config['HLS_OUTPUT_DIR'], 'broadcasts', broadcast_id)
    if not name or not os.path.isfile(os.path.join(directory, name)):
        raise NotFoundError('Asset not found', details={'file': name})

    response = send_from_directory(directory, name, mimetype=content_type_for(name), max_age=0)
    response.headers['Cache-Control'] = 'no-cache'
    return response
