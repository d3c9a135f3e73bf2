"""
Schedule Utilities
Timezone conversion, prayer-time validation and daily occurrence expansion from templates
"""
import logging
from datetime import datetime, date, timedelta, timezone
from typing import Dict, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from flask import current_app
from sqlalchemy.exc import IntegrityError
from models import db, Masjid, PrayerName, Schedule, ScheduleTemplate, utcnow
from utils.errors import ValidationError

logger = logging.getLogger(__name__)

DAYS_AHEAD = (0, 1)


def normalize_time_string(value: Optional[str]) -> Optional[str]:
    """
    Normalize a local time of day to HH:MM:SS

    Accepts HH:MM or HH:MM:SS. Returns None for empty input.

    Raises:
        ValidationError: If the value is not a valid 24h time
    """
    if not value:
        return None
    candidate = f"{value}:00" if len(value) == 5 else value
    try:
        parsed = datetime.strptime(candidate, '%H:%M:%S')
    except (TypeError, ValueError):
        raise ValidationError('Invalid time format (HH:mm or HH:mm:ss)', details={'value': value})
    if len(candidate) != 8:
        raise ValidationError('Invalid time format (HH:mm or HH:mm:ss)', details={'value': value})
    return parsed.strftime('%H:%M:%S')


def parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationError('Invalid date', details={'value': value})


def parse_prayer_name(value) -> PrayerName:
    try:
        return PrayerName(value)
    except ValueError:
        raise ValidationError('Invalid prayer name', details={'value': value})


def parse_utc_datetime(value: str) -> datetime:
    """Parse an ISO-8601 instant into naive UTC; naive input is taken as UTC"""
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except (AttributeError, ValueError):
        raise ValidationError('Invalid ISO timestamp', details={'value': value})
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def get_zone(tz_name: Optional[str]) -> ZoneInfo:
    """
    Resolve an IANA zone name, falling back to DEFAULT_TIMEZONE when unset

    Raises:
        ValidationError: If the zone is unknown
    """
    name = tz_name or current_app.config.get('DEFAULT_TIMEZONE', 'Asia/Kolkata')
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError('Invalid timezone', details={'timezone': name})


def local_to_utc(local_date: date, time_str: str, zone: ZoneInfo) -> datetime:
    """
    Convert a local wall-clock time on a date to a naive UTC instant

    An ambiguous time (clocks falling back) resolves to its first occurrence.
    A time inside a spring-forward gap is shifted forward by the gap length.
    """
    hh, mm, ss = (int(part) for part in time_str.split(':'))
    local = datetime(local_date.year, local_date.month, local_date.day, hh, mm, ss, tzinfo=zone, fold=0)
    return local.astimezone(timezone.utc).replace(tzinfo=None)


def utc_to_local_time(instant: datetime, zone: ZoneInfo) -> str:
    """Local HH:MM:SS for a naive UTC instant"""
    return instant.replace(tzinfo=timezone.utc).astimezone(zone).strftime('%H:%M:%S')


def local_today(now: datetime, zone: ZoneInfo) -> date:
    return now.replace(tzinfo=timezone.utc).astimezone(zone).date()


def utc_day_range(instant: datetime) -> Tuple[datetime, datetime]:
    """Half-open [start, end) of the UTC calendar day containing a naive UTC instant"""
    start = datetime(instant.year, instant.month, instant.day)
    return start, start + timedelta(days=1)


def assert_juma_date(date_str: str, prayer: PrayerName):
    """Juma occurrences must fall on a Friday"""
    if prayer != PrayerName.JUMA:
        return
    if parse_date(date_str).weekday() != 4:
        raise ValidationError('Juma must be on Friday', details={'date': date_str})


def ensure_daily_occurrences(now: Optional[datetime] = None) -> int:
    """
    Expand every schedule template into Schedule rows for the masjid's local
    today and tomorrow

    Existing (masjid, date, prayer) rows are left untouched, so repeated runs
    within the same local day create nothing new. A template with an unknown
    timezone or an unparsable adhan time is skipped with a warning.

    Returns:
        Number of Schedule rows created
    """
    now = now or utcnow()
    created = 0

    rows = db.session.query(ScheduleTemplate, Masjid.timezone).join(
        Masjid, Masjid.id == ScheduleTemplate.masjid_id
    ).all()

    for template, tz_name in rows:
        try:
            zone = get_zone(tz_name)
            adhan_local = normalize_time_string(template.adhan_time_local)
            if adhan_local is None:
                raise ValidationError('Missing adhan time')
        except ValidationError as e:
            logger.warning(
                f"Skipping template {template.masjid_id}/{template.prayer_name.value}: {e.message}"
            )
            continue

        today = local_today(now, zone)
        for offset in DAYS_AHEAD:
            target = today + timedelta(days=offset)
            if _create_occurrence(template, target, adhan_local, zone):
                created += 1

    if created:
        logger.info(f"Created {created} schedule occurrences from templates")
    return created


def _create_occurrence(template: ScheduleTemplate, target: date, adhan_local: str, zone: ZoneInfo) -> bool:
    date_str = target.isoformat()
    exists = Schedule.query.filter_by(
        masjid_id=template.masjid_id,
        date=date_str,
        prayer_name=template.prayer_name
    ).first()
    if exists:
        return False

    try:
        iqamah_local = normalize_time_string(template.iqamah_time_local)
        khutbah_local = normalize_time_string(template.khutbah_time_local)
    except ValidationError as e:
        logger.warning(f"Ignoring optional time on template {template.id}: {e.message}")
        iqamah_local = khutbah_local = None

    is_juma = template.is_juma
    if is_juma is None:
        is_juma = template.prayer_name == PrayerName.JUMA

    occurrence = Schedule(
        masjid_id=template.masjid_id,
        date=date_str,
        prayer_name=template.prayer_name,
        time=adhan_local,
        adhan_at_utc=local_to_utc(target, adhan_local, zone),
        iqamah_at_utc=local_to_utc(target, iqamah_local, zone) if iqamah_local else None,
        khutbah_at_utc=local_to_utc(target, khutbah_local, zone) if khutbah_local else None,
        is_juma=is_juma
    )
    db.session.add(occurrence)
    try:
        db.session.commit()
    except IntegrityError:
        # another expander inserted the same (masjid, date, prayer)
        db.session.rollback()
        return False
    return True


def upsert_template(masjid: Masjid, data: Dict) -> ScheduleTemplate:
    """
    Create or replace the recurring template for one prayer of a masjid

    Args:
        masjid: Owning masjid
        data: prayerName, adhanTimeLocal, optional iqamahTimeLocal,
            khutbahTimeLocal, isJuma and timezone (validated only)
    """
    prayer = parse_prayer_name(data.get('prayerName'))
    adhan = normalize_time_string(data.get('adhanTimeLocal'))
    if adhan is None:
        raise ValidationError('adhanTimeLocal is required')
    iqamah = normalize_time_string(data.get('iqamahTimeLocal'))
    khutbah = normalize_time_string(data.get('khutbahTimeLocal'))
    get_zone(data.get('timezone') or masjid.timezone)

    is_juma = data.get('isJuma')
    if is_juma is None:
        is_juma = prayer == PrayerName.JUMA

    template = ScheduleTemplate.query.filter_by(masjid_id=masjid.id, prayer_name=prayer).first()
    if template is None:
        template = ScheduleTemplate(masjid_id=masjid.id, prayer_name=prayer)
        db.session.add(template)

    template.adhan_time_local = adhan
    template.iqamah_time_local = iqamah
    template.khutbah_time_local = khutbah
    template.is_juma = is_juma
    db.session.commit()

    current_app.logger.info(f"Saved schedule template {masjid.slug}/{prayer.value} at {adhan}")
    return template


def _resolve_instant(data: Dict, utc_key: str, local_key: str, target: date, zone: ZoneInfo):
    if data.get(utc_key):
        return parse_utc_datetime(data[utc_key])
    local = normalize_time_string(data.get(local_key))
    if local:
        return local_to_utc(target, local, zone)
    return None


def upsert_schedule(masjid: Masjid, data: Dict) -> Tuple[Schedule, bool]:
    """
    Create or update one prayer occurrence from UTC instants or local times

    Returns:
        (schedule, created)
    """
    date_str = data.get('date')
    target = parse_date(date_str)
    prayer = parse_prayer_name(data.get('prayerName'))
    assert_juma_date(date_str, prayer)

    if not data.get('adhanAtUtc') and not data.get('adhanTimeLocal'):
        raise ValidationError('Provide adhanAtUtc or adhanTimeLocal')

    zone = get_zone(data.get('timezone') or masjid.timezone)
    adhan_at = _resolve_instant(data, 'adhanAtUtc', 'adhanTimeLocal', target, zone)
    local_time = normalize_time_string(data.get('adhanTimeLocal')) or utc_to_local_time(adhan_at, zone)

    schedule = Schedule.query.filter_by(masjid_id=masjid.id, date=date_str, prayer_name=prayer).first()
    created = schedule is None
    if created:
        schedule = Schedule(masjid_id=masjid.id, date=date_str, prayer_name=prayer)
        db.session.add(schedule)

    schedule.time = local_time
    schedule.adhan_at_utc = adhan_at
    schedule.iqamah_at_utc = _resolve_instant(data, 'iqamahAtUtc', 'iqamahTimeLocal', target, zone)
    schedule.khutbah_at_utc = _resolve_instant(data, 'khutbahAtUtc', 'khutbahTimeLocal', target, zone)
    is_juma = data.get('isJuma')
    schedule.is_juma = is_juma if is_juma is not None else prayer == PrayerName.JUMA
    db.session.commit()
    return schedule, created


def update_schedule(masjid: Masjid, schedule: Schedule, data: Dict) -> Schedule:
    """
    Partially update an occurrence; explicit nulls clear iqamah/khutbah
    """
    fields = ('adhanAtUtc', 'adhanTimeLocal', 'iqamahAtUtc', 'iqamahTimeLocal',
              'khutbahAtUtc', 'khutbahTimeLocal', 'isJuma')
    if not any(key in data for key in fields):
        raise ValidationError('Provide at least one field to update')

    assert_juma_date(schedule.date, schedule.prayer_name)
    target = parse_date(schedule.date)
    zone = get_zone(data.get('timezone') or masjid.timezone)

    adhan_at = _resolve_instant(data, 'adhanAtUtc', 'adhanTimeLocal', target, zone)
    if adhan_at is not None:
        schedule.adhan_at_utc = adhan_at
        schedule.time = utc_to_local_time(adhan_at, zone)

    for utc_key, local_key, attr in (('iqamahAtUtc', 'iqamahTimeLocal', 'iqamah_at_utc'),
                                     ('khutbahAtUtc', 'khutbahTimeLocal', 'khutbah_at_utc')):
        resolved = _resolve_instant(data, utc_key, local_key, target, zone)
        if resolved is not None:
            setattr(schedule, attr, resolved)
        elif (utc_key in data and data[utc_key] is None) or (local_key in data and data[local_key] is None):
            setattr(schedule, attr, None)

    is_juma = data.get('isJuma')
    schedule.is_juma = is_juma if is_juma is not None else schedule.prayer_name == PrayerName.JUMA
    db.session.commit()
    return schedule
