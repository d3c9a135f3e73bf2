"""
API Routes Blueprint
Listener-facing endpoints: device registration, masjid subscriptions and health checks
"""
from flask import Blueprint, request, jsonify, current_app
from flask_login import current_user

from models import db, Masjid, Platform, PrayerName, Subscription, UserDevice, utcnow
from utils.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from utils.health_monitor import HealthMonitor
from utils.permissions import login_required
from utils.schedule_utils import parse_utc_datetime

api_bp = Blueprint('api', __name__)

PRAYER_NAMES = {p.value for p in PrayerName}


def _json_body():
    data = request.get_json(silent=True)
    if data is None:
        raise ValidationError('Missing request body')
    return data


# ============================================================================
# HEALTH
# ============================================================================

@api_bp.route('/health', methods=['GET'])
def health():
    return jsonify({'status': 'ok', 'time': utcnow().isoformat() + 'Z'})


@api_bp.route('/ready', methods=['GET'])
def ready():
    """Readiness: database, job queue backlog, relays and provider configuration"""
    results = HealthMonitor.check_all_health()
    return jsonify(results), 200 if results['ok'] else 503


# ============================================================================
# DEVICES
# ============================================================================

def _parse_platform(value):
    try:
        return Platform(value)
    except ValueError:
        raise ValidationError('platform must be one of android, ios, web', details={'value': value})


def _claim_token(column, token, device_id, label):
    """
    A push token belongs to exactly one device. Another user's device holding
    it is a conflict; another device of the same user gives it up.
    """
    if not token:
        return
    holder = UserDevice.query.filter(column == token).first()
    if holder is None or (holder.device_id == device_id and holder.user_id == current_user.id):
        return
    if holder.user_id != current_user.id:
        raise ConflictError(f'{label} already registered to another user')
    setattr(holder, column.key, None)
    db.session.flush()


def _validate_tokens(platform, fcm_token, voip_token):
    if platform in (Platform.ANDROID, Platform.WEB) and not fcm_token:
        raise ValidationError('fcmToken is required for android/web')
    if platform == Platform.IOS and not voip_token:
        raise ValidationError('voipToken is required for ios')


@api_bp.route('/devices', methods=['POST'])
@login_required
def register_device():
    """Register or refresh a device and its push tokens"""
    data = _json_body()
    device_id = data.get('deviceId')
    if not isinstance(device_id, str) or not 3 <= len(device_id) <= 128:
        raise ValidationError('deviceId must be 3 to 128 characters')

    platform = _parse_platform(data.get('platform'))
    fcm_token = data.get('fcmToken')
    voip_token = data.get('voipToken')
    _validate_tokens(platform, fcm_token, voip_token)

    _claim_token(UserDevice.fcm_token, fcm_token, device_id, 'Token')
    _claim_token(UserDevice.voip_token, voip_token, device_id, 'VoIP token')

    device = UserDevice.query.filter_by(user_id=current_user.id, device_id=device_id).first()
    if device is None:
        device = UserDevice(user_id=current_user.id, device_id=device_id)
        db.session.add(device)

    device.platform = platform
    device.fcm_token = fcm_token
    device.voip_token = voip_token
    device.app_version = data.get('appVersion')
    device.is_wake_on_silent_enabled = data.get('isWakeOnSilentEnabled', True)
    device.is_active = data.get('isActive', True)
    device.last_active_at = utcnow()
    db.session.commit()

    current_app.logger.info(f'Device {device_id} ({platform.value}) registered for user {current_user.id}')
    return jsonify({'message': 'Device registered', 'data': device.to_dict()})


@api_bp.route('/devices/<device_id>', methods=['PATCH'])
@login_required
def update_device(device_id):
    data = _json_body()
    device = UserDevice.query.filter_by(user_id=current_user.id, device_id=device_id).first()
    if device is None:
        raise NotFoundError('Device not found')

    if data.get('platform'):
        device.platform = _parse_platform(data['platform'])
    if data.get('fcmToken'):
        _claim_token(UserDevice.fcm_token, data['fcmToken'], device_id, 'Token')
        device.fcm_token = data['fcmToken']
    if data.get('voipToken'):
        _claim_token(UserDevice.voip_token, data['voipToken'], device_id, 'VoIP token')
        device.voip_token = data['voipToken']
    if data.get('isWakeOnSilentEnabled') is not None:
        device.is_wake_on_silent_enabled = bool(data['isWakeOnSilentEnabled'])
    if data.get('isActive') is not None:
        device.is_active = bool(data['isActive'])
    if data.get('appVersion'):
        device.app_version = data['appVersion']

    _validate_tokens(device.platform, device.fcm_token, device.voip_token)
    device.last_active_at = utcnow()
    db.session.commit()
    return jsonify({'message': 'Device updated', 'data': device.to_dict()})


@api_bp.route('/devices/<device_id>', methods=['DELETE'])
@login_required
def remove_device(device_id):
    device = UserDevice.query.filter_by(user_id=current_user.id, device_id=device_id).first()
    if device is None:
        raise NotFoundError('Device not found')

    db.session.delete(device)
    db.session.commit()
    return jsonify({'message': 'Device removed', 'data': {'deviceId': device_id}})


# ============================================================================
# SUBSCRIPTIONS
# ============================================================================

def _parse_preferences(raw, current=None):
    preferences = dict(current or {})
    if raw is None:
        return preferences
    if not isinstance(raw, dict):
        raise ValidationError('preferences must be an object')

    if 'mutedPrayers' in raw:
        muted = raw['mutedPrayers'] or []
        if not isinstance(muted, list) or any(p not in PRAYER_NAMES for p in muted):
            raise ValidationError('mutedPrayers must list valid prayer names', details={'value': muted})
        preferences['mutedPrayers'] = list(dict.fromkeys(muted))
    if 'wakeOnSilent' in raw:
        preferences['wakeOnSilent'] = bool(raw['wakeOnSilent'])
    return preferences


def _apply_mute(subscription, data):
    if 'isMuted' in data:
        subscription.is_muted = bool(data['isMuted'])
    if 'muteUntil' in data:
        subscription.mute_until = parse_utc_datetime(data['muteUntil']) if data['muteUntil'] else None


@api_bp.route('/subscriptions/<masjid_id>', methods=['POST'])
@login_required
def subscribe(masjid_id):
    data = request.get_json(silent=True) or {}

    masjid = db.session.get(Masjid, masjid_id)
    if masjid is None:
        raise NotFoundError('Masjid not found')
    if not masjid.is_available:
        raise ForbiddenError('Masjid is not approved or inactive')

    if Subscription.query.filter_by(user_id=current_user.id, masjid_id=masjid_id).first():
        raise ConflictError('Already subscribed')

    subscription = Subscription(
        user_id=current_user.id,
        masjid_id=masjid_id,
        preferences=_parse_preferences(data.get('preferences'))
    )
    _apply_mute(subscription, data)
    db.session.add(subscription)
    db.session.commit()
    return jsonify({'message': 'Subscribed', 'data': subscription.to_dict()}), 201


@api_bp.route('/subscriptions/<masjid_id>', methods=['PATCH'])
@login_required
def update_subscription(masjid_id):
    """Update preferences and mute state"""
    data = _json_body()
    subscription = Subscription.query.filter_by(user_id=current_user.id, masjid_id=masjid_id).first()
    if subscription is None:
        raise NotFoundError('Subscription not found')

    subscription.preferences = _parse_preferences(data.get('preferences'), subscription.preferences)
    _apply_mute(subscription, data)
    db.session.commit()
    return jsonify({'message': 'Subscription updated', 'data': subscription.to_dict()})


@api_bp.route('/subscriptions/<masjid_id>', methods=['DELETE'])
@login_required
def unsubscribe(masjid_id):
    subscription = Subscription.query.filter_by(user_id=current_user.id, masjid_id=masjid_id).first()
    if subscription is None:
        raise NotFoundError('Subscription not found')

    db.session.delete(subscription)
    db.session.commit()
    return jsonify({'message': 'Unsubscribed', 'data': {'masjidId': masjid_id}})


@api_bp.route('/subscriptions', methods=['GET'])
@login_required
def list_subscriptions():
    page = request.args.get('page', 1, type=int)
    limit = request.args.get('limit', 25, type=int)
    if page < 1 or not 1 <= limit <= 100:
        raise ValidationError('page must be >= 1 and limit between 1 and 100')

    pagination = Subscription.query.filter_by(user_id=current_user.id).order_by(
        Subscription.created_at.desc()
    ).paginate(page=page, per_page=limit, error_out=False)

    items = []
    for subscription in pagination.items:
        item = subscription.to_dict()
        item['masjid'] = subscription.masjid.to_dict()
        items.append(item)

    return jsonify({
        'message': 'Subscriptions fetched',
        'data': items,
        'pagination': {'page': page, 'limit': limit, 'total': pagination.total}
    })
