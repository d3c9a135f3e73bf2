"""
Notification Service
Fans broadcast start/end events out to subscribed devices over push channels
"""
import logging
from datetime import datetime
from typing import Dict, Optional
from flask import current_app
from models import (
    db, Broadcast, NotificationLog, NotificationStatus, Platform, Subscription, UserDevice, utcnow
)
from utils.hls import public_playlist_url
from utils.livekit import get_room_service
from utils.push import PushResult, get_push_gateway

logger = logging.getLogger(__name__)

EVENT_ACTIONS = {
    'start': 'GO_LIVE',
    'end': 'END',
}


class NotificationService:
    """Service for delivering broadcast wake-up pushes"""

    @staticmethod
    def build_payload(broadcast: Broadcast, event_type: str, prayer_name: Optional[str],
                      token: Optional[str] = None) -> Dict[str, str]:
        """
        Wire payload shared by every recipient; all values are strings
        """
        relay_url = broadcast.hls_url
        if not relay_url and current_app.config.get('HLS_ENABLED'):
            relay_url = public_playlist_url(current_app.config, broadcast.id)
        audio_url = broadcast.audio_url or get_room_service().url

        payload = {
            'action': EVENT_ACTIONS[event_type],
            'broadcastId': broadcast.id,
            'masjidId': broadcast.masjid_id,
            'prayerName': prayer_name or (broadcast.prayer_name.value if broadcast.prayer_name else ''),
            'roomName': broadcast.stream_room_id,
            'audioUrl': audio_url,
            'livekitUrl': audio_url,
            'relayUrl': relay_url,
            'token': token,
            'streamUrl': relay_url or audio_url,
        }
        return {key: '' if value is None else str(value) for key, value in payload.items()}

    @staticmethod
    def should_deliver(subscription: Subscription, event_type: str, prayer_name: Optional[str],
                       now: datetime) -> bool:
        """Mute filters: whole-subscription mutes always, per-prayer mutes only for start"""
        if subscription.is_muted_at(now):
            return False
        if event_type == 'start' and prayer_name and prayer_name in subscription.muted_prayers:
            return False
        return True

    @staticmethod
    def fan_out(broadcast_id: str, masjid_id: str, prayer_name: Optional[str], event_type: str,
                now: Optional[datetime] = None) -> int:
        """
        Deliver one event to every eligible device of the masjid's subscribers

        Args:
            broadcast_id: Broadcast that changed state
            masjid_id: Masjid whose subscribers are notified
            prayer_name: Prayer used for per-prayer mutes
            event_type: 'start' or 'end'
            now: Reference instant for mute_until

        Returns:
            Number of NotificationLog rows written
        """
        if event_type not in EVENT_ACTIONS:
            raise ValueError(f"Unknown notification event: {event_type}")

        now = now or utcnow()
        broadcast = db.session.get(Broadcast, broadcast_id)
        if broadcast is None:
            logger.warning(f"Broadcast {broadcast_id} not found, skipping {event_type} notification")
            return 0

        recipients = db.session.query(Subscription, UserDevice).join(
            UserDevice, UserDevice.user_id == Subscription.user_id
        ).filter(
            Subscription.masjid_id == masjid_id,
            UserDevice.is_active.is_(True)
        ).all()

        rooms = get_room_service()
        base_payload = NotificationService.build_payload(broadcast, event_type, prayer_name)
        wants_token = (
            event_type == 'start'
            and bool(broadcast.stream_room_id)
            and not base_payload['relayUrl']
            and rooms.is_configured
        )

        push = get_push_gateway()
        logs = []
        for subscription, device in recipients:
            if not NotificationService.should_deliver(subscription, event_type, prayer_name, now):
                continue

            try:
                payload = dict(base_payload)
                if wants_token:
                    payload['token'] = rooms.mint_access_token(
                        subscription.user_id, broadcast.stream_room_id, can_publish=False
                    )

                if device.platform == Platform.IOS:
                    result = push.send_voip_push(device.voip_token, payload)
                else:
                    result = push.send_data_message(device.fcm_token, payload)
            except Exception as e:
                logger.error(f"Push to device {device.id} failed: {e}")
                result = PushResult('failed', 'apns' if device.platform == Platform.IOS else 'fcm', str(e))

            logs.append(NotificationLog(
                user_id=subscription.user_id,
                device_id=device.id,
                masjid_id=masjid_id,
                broadcast_id=broadcast_id,
                status=NotificationStatus(result.status),
                provider=result.provider,
                error=result.error
            ))

        if logs:
            db.session.add_all(logs)
            db.session.commit()

        sent = sum(1 for log in logs if log.status == NotificationStatus.SENT)
        logger.info(f"{EVENT_ACTIONS[event_type]} for broadcast {broadcast_id}: {sent}/{len(logs)} delivered")
        return len(logs)
