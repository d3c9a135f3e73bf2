"""
Job Handlers
Workers for the notifications and broadcasts queues
"""
import logging
from utils.broadcast_lifecycle import (
    BROADCASTS_QUEUE, NOTIFICATIONS_QUEUE, handle_auto_end, start_relay_for, stop_relay_for
)
from utils.notifications import NotificationService

logger = logging.getLogger(__name__)

NOTIFICATION_EVENTS = {
    'broadcast-start': 'start',
    'broadcast-end': 'end',
}


def handle_notification_job(job_name, payload):
    event_type = NOTIFICATION_EVENTS.get(job_name)
    if event_type is None:
        logger.warning(f"Unknown notification job {job_name}, ignoring")
        return
    NotificationService.fan_out(
        payload['broadcastId'],
        payload['masjidId'],
        payload.get('prayerName'),
        event_type
    )


def handle_broadcast_job(job_name, payload):
    broadcast_id = payload['broadcastId']
    if job_name == 'broadcast-auto-end':
        handle_auto_end(broadcast_id, payload.get('endedReason'))
    elif job_name == 'hls-start':
        start_relay_for(broadcast_id, payload.get('roomName'))
    elif job_name == 'hls-stop':
        stop_relay_for(broadcast_id)
    else:
        logger.warning(f"Unknown broadcast job {job_name}, ignoring")


def register_job_handlers(queue):
    """Attach the workers for every queue this service consumes"""
    queue.register_worker(NOTIFICATIONS_QUEUE, handle_notification_job)
    queue.register_worker(BROADCASTS_QUEUE, handle_broadcast_job)
