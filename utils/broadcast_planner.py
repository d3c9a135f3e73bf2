"""
Broadcast Planner
Turns imminent prayer occurrences into scheduled broadcasts, one per masjid/prayer/day
"""
import logging
from datetime import datetime, timedelta
from typing import Optional
from flask import current_app
from models import db, Broadcast, BroadcastStatus, Masjid, PrayerName, Schedule, utcnow
from utils.schedule_utils import utc_day_range

logger = logging.getLogger(__name__)


def find_broadcast_for_day(masjid_id: str, prayer: PrayerName, instant: datetime) -> Optional[Broadcast]:
    """
    Non-failed broadcast of a prayer whose scheduled or start time falls on
    the UTC calendar day containing instant
    """
    day_start, day_end = utc_day_range(instant)
    return Broadcast.query.filter(
        Broadcast.masjid_id == masjid_id,
        Broadcast.prayer_name == prayer,
        Broadcast.status != BroadcastStatus.FAILED,
        db.or_(
            db.and_(Broadcast.scheduled_at >= day_start, Broadcast.scheduled_at < day_end),
            db.and_(Broadcast.started_at >= day_start, Broadcast.started_at < day_end)
        )
    ).first()


def plan_upcoming(now: Optional[datetime] = None, prep_minutes: Optional[int] = None) -> int:
    """
    Create scheduled broadcasts for occurrences starting within the prep window

    Args:
        now: Reference instant (naive UTC); defaults to the current time
        prep_minutes: Look-ahead window; defaults to BROADCAST_PREP_MINUTES

    Returns:
        Number of broadcasts created
    """
    now = now or utcnow()
    if prep_minutes is None:
        prep_minutes = current_app.config.get('BROADCAST_PREP_MINUTES', 2)
    window_end = now + timedelta(minutes=max(1, prep_minutes))

    upcoming = Schedule.query.join(Masjid, Masjid.id == Schedule.masjid_id).filter(
        Masjid.is_approved.is_(True),
        Masjid.is_active.is_(True),
        Schedule.adhan_at_utc >= now,
        Schedule.adhan_at_utc < window_end
    ).order_by(Schedule.adhan_at_utc).all()

    created = 0
    for occurrence in upcoming:
        if find_broadcast_for_day(occurrence.masjid_id, occurrence.prayer_name, occurrence.adhan_at_utc):
            continue

        broadcast = Broadcast(
            masjid_id=occurrence.masjid_id,
            prayer_name=occurrence.prayer_name,
            title=f"{occurrence.prayer_name.value} Adhan",
            status=BroadcastStatus.SCHEDULED,
            scheduled_at=occurrence.adhan_at_utc,
            stream_provider='livekit'
        )
        db.session.add(broadcast)
        db.session.commit()
        created += 1
        logger.info(
            f"Scheduled {broadcast.title} for masjid {occurrence.masjid_id} at {occurrence.adhan_at_utc.isoformat()}Z"
        )

    return created
