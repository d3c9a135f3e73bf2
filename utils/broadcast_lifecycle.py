"""
Broadcast Lifecycle Manager
State transitions pending -> scheduled -> live -> completed/failed, time-bounded
by BROADCAST_MAX_MINUTES and reconciled by the auto-end job and the expiry sweep
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional
from flask import current_app
from models import db, Broadcast, BroadcastStatus, Masjid, utcnow
from utils.broadcast_planner import find_broadcast_for_day
from utils.errors import (
    ConfigurationError, ConflictError, ForbiddenError, NotFoundError, ServiceUnavailableError
)
from utils.hls import get_relay_manager, sign_hls_url
from utils.job_queue import job_queue
from utils.livekit import get_room_service
from utils.permissions import assert_subscribed
from utils.schedule_utils import parse_prayer_name, parse_utc_datetime

logger = logging.getLogger(__name__)

NOTIFICATIONS_QUEUE = 'notifications'
BROADCASTS_QUEUE = 'broadcasts'

MAX_DURATION_REASON = 'max_duration_reached'
AUTO_END_TOLERANCE = timedelta(seconds=1)
DEFAULT_MAX_MINUTES = 15


def max_duration() -> timedelta:
    minutes = current_app.config.get('BROADCAST_MAX_MINUTES') or DEFAULT_MAX_MINUTES
    if minutes <= 0:
        minutes = DEFAULT_MAX_MINUTES
    return timedelta(minutes=minutes)


def is_expired(broadcast: Broadcast, now: Optional[datetime] = None) -> bool:
    """A live broadcast that has run for at least the maximum duration"""
    if broadcast.status != BroadcastStatus.LIVE or broadcast.started_at is None:
        return False
    return (now or utcnow()) - broadcast.started_at >= max_duration()


def relay_enabled() -> bool:
    return bool(current_app.config.get('HLS_ENABLED'))


def room_name_for(broadcast: Broadcast) -> str:
    return f"broadcast-{broadcast.id}"


def get_broadcast(broadcast_id: str) -> Broadcast:
    broadcast = db.session.get(Broadcast, broadcast_id)
    if broadcast is None:
        raise NotFoundError('Broadcast not found', details={'broadcastId': broadcast_id})
    return broadcast


def _enqueue_notification(broadcast: Broadcast, job_name: str, now: datetime):
    job_queue.enqueue(NOTIFICATIONS_QUEUE, job_name, {
        'broadcastId': broadcast.id,
        'masjidId': broadcast.masjid_id,
        'prayerName': broadcast.prayer_name.value if broadcast.prayer_name else None,
    }, now=now)


def _ensure_room(broadcast: Broadcast) -> Optional[str]:
    """Create the audio room on first need; returns the room name or None"""
    if broadcast.stream_room_id:
        return broadcast.stream_room_id
    if broadcast.stream_provider != 'livekit':
        return None

    rooms = get_room_service()
    if not rooms.is_configured:
        return None

    name = room_name_for(broadcast)
    rooms.create_room(name)
    broadcast.stream_room_id = name
    broadcast.audio_url = broadcast.audio_url or rooms.url
    return name


def _complete(broadcast: Broadcast, now: datetime, reason: Optional[str], recording_url: Optional[str] = None):
    broadcast.status = BroadcastStatus.COMPLETED
    broadcast.ended_at = now
    if reason:
        broadcast.ended_reason = reason
    if recording_url:
        broadcast.recording_url = recording_url
    db.session.commit()
    _enqueue_notification(broadcast, 'broadcast-end', now)


def _release_resources(broadcast: Broadcast, now: datetime):
    """Stop the relay held by this process and release the room"""
    get_relay_manager().stop_relay(broadcast.id)
    if relay_enabled():
        job_queue.enqueue(BROADCASTS_QUEUE, 'hls-stop', {'broadcastId': broadcast.id}, now=now)
    get_room_service().delete_room(broadcast.stream_room_id)


def mark_expired(broadcast: Broadcast, now: Optional[datetime] = None):
    """Complete a live broadcast that outlived the maximum duration"""
    now = now or utcnow()
    _complete(broadcast, now, MAX_DURATION_REASON)
    _release_resources(broadcast, now)
    logger.info(f"Broadcast {broadcast.id} expired after {max_duration()}")


def _require_live(broadcast: Broadcast, now: datetime):
    if broadcast.status != BroadcastStatus.LIVE:
        raise ConflictError('Broadcast is not live', details={'status': broadcast.status.value})
    if is_expired(broadcast, now):
        mark_expired(broadcast, now)
        raise ConflictError('Broadcast expired', details={'endedReason': MAX_DURATION_REASON})


def create_broadcast(masjid_id: str, actor_id: Optional[str], data: Dict) -> Broadcast:
    """
    Create a pending or scheduled broadcast

    Args:
        masjid_id: Owning masjid
        actor_id: Creating user
        data: title, prayerName, scheduledAt, streamProvider, streamRoomId, audioUrl
    """
    masjid = db.session.get(Masjid, masjid_id)
    if masjid is None:
        raise NotFoundError('Masjid not found', details={'masjidId': masjid_id})
    if not masjid.is_available:
        raise ForbiddenError('Masjid is not approved or inactive')

    prayer = parse_prayer_name(data['prayerName']) if data.get('prayerName') else None
    scheduled_at = parse_utc_datetime(data['scheduledAt']) if data.get('scheduledAt') else None

    if prayer and scheduled_at and find_broadcast_for_day(masjid_id, prayer, scheduled_at):
        raise ConflictError('Broadcast already exists for this prayer and date')

    broadcast = Broadcast(
        masjid_id=masjid_id,
        created_by=actor_id,
        title=data.get('title'),
        prayer_name=prayer,
        status=BroadcastStatus.SCHEDULED if scheduled_at else BroadcastStatus.PENDING,
        scheduled_at=scheduled_at,
        stream_provider=data.get('streamProvider') or 'livekit',
        stream_room_id=data.get('streamRoomId'),
        audio_url=data.get('audioUrl')
    )
    db.session.add(broadcast)
    db.session.flush()

    _ensure_room(broadcast)
    db.session.commit()

    current_app.logger.info(f"Broadcast {broadcast.id} created for masjid {masjid.slug} ({broadcast.status.value})")
    return broadcast


def start_broadcast(broadcast_id: str, data: Optional[Dict] = None, now: Optional[datetime] = None) -> Broadcast:
    """
    Go live, notify subscribers and arm the auto-end job

    Raises:
        ConflictError: Already live, expired, or already ended
    """
    now = now or utcnow()
    data = data or {}
    broadcast = get_broadcast(broadcast_id)

    if broadcast.status == BroadcastStatus.LIVE:
        if is_expired(broadcast, now):
            mark_expired(broadcast, now)
            raise ConflictError('Broadcast expired', details={'endedReason': MAX_DURATION_REASON})
        raise ConflictError('Broadcast already live')
    if broadcast.is_terminal:
        raise ConflictError('Broadcast already ended', details={'status': broadcast.status.value})

    if data.get('streamProvider'):
        broadcast.stream_provider = data['streamProvider']
    if data.get('streamRoomId'):
        broadcast.stream_room_id = data['streamRoomId']
    if data.get('audioUrl'):
        broadcast.audio_url = data['audioUrl']
    room = _ensure_room(broadcast)

    broadcast.status = BroadcastStatus.LIVE
    broadcast.started_at = now
    db.session.commit()

    _enqueue_notification(broadcast, 'broadcast-start', now)
    if relay_enabled() and room:
        job_queue.enqueue(BROADCASTS_QUEUE, 'hls-start', {'broadcastId': broadcast.id, 'roomName': room}, now=now)
    job_queue.enqueue(
        BROADCASTS_QUEUE,
        'broadcast-auto-end',
        {'broadcastId': broadcast.id, 'endedReason': MAX_DURATION_REASON},
        delay_seconds=max_duration().total_seconds(),
        dedupe_key=f"broadcast-auto-end-{broadcast.id}",
        now=now
    )

    current_app.logger.info(f"Broadcast {broadcast.id} is live (room={room})")
    return broadcast


def end_broadcast(broadcast_id: str, recording_url: Optional[str] = None,
                  ended_reason: Optional[str] = None, now: Optional[datetime] = None) -> Broadcast:
    """Manually end a pending, scheduled or live broadcast"""
    now = now or utcnow()
    broadcast = get_broadcast(broadcast_id)
    if broadcast.is_terminal:
        raise ConflictError('Broadcast already ended', details={'status': broadcast.status.value})

    _complete(broadcast, now, ended_reason, recording_url)
    if relay_enabled():
        job_queue.enqueue(BROADCASTS_QUEUE, 'hls-stop', {'broadcastId': broadcast.id}, now=now)

    current_app.logger.info(f"Broadcast {broadcast.id} ended ({ended_reason or 'manual'})")
    return broadcast


def handle_auto_end(broadcast_id: str, ended_reason: Optional[str] = None, now: Optional[datetime] = None) -> bool:
    """
    Delayed auto-end job body

    Reschedules itself when the job fired early, otherwise completes the
    broadcast. A broadcast that is no longer live is left alone.

    Returns:
        True if the broadcast was completed
    """
    now = now or utcnow()
    broadcast = db.session.get(Broadcast, broadcast_id)
    if broadcast is None or broadcast.status != BroadcastStatus.LIVE:
        return False

    target = max_duration()
    elapsed = now - broadcast.started_at if broadcast.started_at else target
    if elapsed < target - AUTO_END_TOLERANCE:
        remaining = max(1.0, (target - elapsed).total_seconds())
        job_queue.enqueue(
            BROADCASTS_QUEUE,
            'broadcast-auto-end',
            {'broadcastId': broadcast.id, 'endedReason': ended_reason or MAX_DURATION_REASON},
            delay_seconds=remaining,
            dedupe_key=f"broadcast-auto-end-{broadcast.id}-{int(now.timestamp() * 1000)}",
            now=now
        )
        logger.info(f"Auto-end for {broadcast.id} fired early, rescheduled in {remaining:.0f}s")
        return False

    _complete(broadcast, now, ended_reason or MAX_DURATION_REASON)
    _release_resources(broadcast, now)
    logger.info(f"Broadcast {broadcast.id} auto-ended after {elapsed}")
    return True


def sweep_expired(now: Optional[datetime] = None) -> int:
    """
    Force-complete live broadcasts older than the maximum duration

    Returns:
        Number of broadcasts completed
    """
    now = now or utcnow()
    cutoff = now - max_duration()
    stale = Broadcast.query.filter(
        Broadcast.status == BroadcastStatus.LIVE,
        Broadcast.started_at <= cutoff
    ).all()

    completed = 0
    for broadcast in stale:
        try:
            _complete(broadcast, now, MAX_DURATION_REASON)
        except Exception as e:
            db.session.rollback()
            logger.error(f"Failed to expire broadcast {broadcast.id}: {e}")
            continue
        completed += 1

        try:
            _release_resources(broadcast, now)
        except Exception as e:
            logger.error(f"Broadcast {broadcast.id} expired but releasing its resources failed: {e}")

    if completed:
        logger.info(f"Expiry sweep completed {completed} broadcasts")
    return completed


def issue_broadcaster_token(broadcast_id: str, user_id: str, now: Optional[datetime] = None) -> Dict:
    """Publish-capable room token for the masjid's broadcaster"""
    now = now or utcnow()
    broadcast = get_broadcast(broadcast_id)
    _require_live(broadcast, now)
    return _room_token(broadcast, user_id, can_publish=True)


def issue_listener_access(broadcast_id: str, user_id: str, now: Optional[datetime] = None) -> Dict:
    """
    Listener access: a signed relay URL in relay mode, otherwise a
    subscribe-only room token
    """
    now = now or utcnow()
    broadcast = get_broadcast(broadcast_id)
    _require_live(broadcast, now)
    assert_subscribed(user_id, broadcast.masjid_id)

    if relay_enabled():
        url = sign_hls_url(broadcast.id) or broadcast.hls_url
        if not url:
            raise ServiceUnavailableError('Relay stream is not available yet')
        return {'mode': 'hls', 'hlsUrl': url}

    return _room_token(broadcast, user_id, can_publish=False)


def _room_token(broadcast: Broadcast, user_id: str, can_publish: bool) -> Dict:
    rooms = get_room_service()
    if not rooms.is_configured:
        raise ConfigurationError('LiveKit credentials missing', details=rooms.config_status())

    room = _ensure_room(broadcast)
    db.session.commit()
    if not room:
        raise ConfigurationError('LiveKit room not configured')

    return {
        'mode': 'livekit',
        'token': rooms.mint_access_token(user_id, room, can_publish=can_publish),
        'roomName': room,
        'livekitUrl': broadcast.audio_url or rooms.url,
    }


def start_relay_for(broadcast_id: str, room_name: Optional[str] = None) -> Optional[Dict]:
    """hls-start job body: run the relay and persist its URLs"""
    broadcast = db.session.get(Broadcast, broadcast_id)
    if broadcast is None or broadcast.status != BroadcastStatus.LIVE:
        return None

    room = room_name or broadcast.stream_room_id
    if not room:
        logger.warning(f"Broadcast {broadcast_id} has no room, relay not started")
        return None

    info = get_relay_manager().start_relay(broadcast.id, room)
    broadcast.hls_url = info.get('hls_url') or broadcast.hls_url
    broadcast.hls_egress_id = info.get('egress_id')
    broadcast.hls_rtmp_url = info.get('rtmp_url')
    db.session.commit()
    return info


def stop_relay_for(broadcast_id: str) -> bool:
    """hls-stop job body"""
    stopped = get_relay_manager().stop_relay(broadcast_id)
    broadcast = db.session.get(Broadcast, broadcast_id)
    if broadcast is not None and broadcast.hls_egress_id:
        broadcast.hls_egress_id = None
        db.session.commit()
    return stopped
