"""
Adhan Relay Database Models
SQLAlchemy ORM models for masjids, prayer schedules, broadcasts, subscriptions and devices
"""
from datetime import datetime, timezone
from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
import uuid
import enum

db = SQLAlchemy()


def utcnow():
    """Current UTC time as a naive datetime (the storage convention for all columns)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id():
    return str(uuid.uuid4())


class UserRole(enum.Enum):
    """User role enumeration"""
    LISTENER = 'listener'
    MASJID_ADMIN = 'masjid_admin'
    SUPER_ADMIN = 'super_admin'


class PrayerName(enum.Enum):
    """Daily prayers plus the Friday congregation"""
    FAJR = 'Fajr'
    DHUHR = 'Dhuhr'
    ASR = 'Asr'
    MAGHRIB = 'Maghrib'
    ISHA = 'Isha'
    JUMA = 'Juma'


class BroadcastStatus(enum.Enum):
    """Broadcast lifecycle states"""
    PENDING = 'pending'
    SCHEDULED = 'scheduled'
    LIVE = 'live'
    COMPLETED = 'completed'
    FAILED = 'failed'


class Platform(enum.Enum):
    ANDROID = 'android'
    IOS = 'ios'
    WEB = 'web'


class MasjidAdminRole(enum.Enum):
    MANAGER = 'manager'
    IMAM = 'imam'
    MUAZZIN = 'muazzin'


class NotificationStatus(enum.Enum):
    QUEUED = 'queued'
    SENT = 'sent'
    FAILED = 'failed'


class JobStatus(enum.Enum):
    PENDING = 'pending'
    RUNNING = 'running'
    FAILED = 'failed'


TERMINAL_STATUSES = (BroadcastStatus.COMPLETED, BroadcastStatus.FAILED)


class User(UserMixin, db.Model):
    """Application user; authenticated by a signed access token"""
    __tablename__ = 'users'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    name = db.Column(db.String(255), nullable=True)
    role = db.Column(db.Enum(UserRole), default=UserRole.LISTENER, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)  # type: ignore
    created_at = db.Column(db.DateTime, default=utcnow)

    # Relationships
    subscriptions = db.relationship('Subscription', backref='user', lazy='dynamic', cascade='all, delete-orphan')
    devices = db.relationship('UserDevice', backref='user', lazy='dynamic', cascade='all, delete-orphan')

    @property
    def is_super_admin(self):
        return self.role == UserRole.SUPER_ADMIN

    def __repr__(self):
        return f'<User {self.email} ({self.role.value})>'


class Masjid(db.Model):
    """Organization that owns prayer schedules and broadcasts"""
    __tablename__ = 'masjids'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    name = db.Column(db.String(255), nullable=False)
    slug = db.Column(db.String(255), unique=True, nullable=False)
    timezone = db.Column(db.String(64), nullable=True)  # IANA zone, falls back to DEFAULT_TIMEZONE
    is_approved = db.Column(db.Boolean, default=False, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    admins = db.relationship('MasjidAdmin', backref='masjid', lazy='dynamic', cascade='all, delete-orphan')
    templates = db.relationship('ScheduleTemplate', backref='masjid', lazy='dynamic', cascade='all, delete-orphan')
    broadcasts = db.relationship('Broadcast', backref='masjid', lazy='dynamic', cascade='all, delete-orphan')

    @property
    def is_available(self):
        """Approved and active masjids are the only ones that broadcast"""
        return bool(self.is_approved and self.is_active)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'slug': self.slug,
            'timezone': self.timezone,
            'isApproved': self.is_approved,
            'isActive': self.is_active,
        }

    def __repr__(self):
        return f'<Masjid {self.slug}>'


class MasjidAdmin(db.Model):
    """Grants a user authority over a masjid's schedules and broadcasts"""
    __tablename__ = 'masjid_admins'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    masjid_id = db.Column(db.String(36), db.ForeignKey('masjids.id', ondelete='CASCADE'), nullable=False)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    role = db.Column(db.Enum(MasjidAdminRole), default=MasjidAdminRole.MANAGER, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    __table_args__ = (
        db.UniqueConstraint('masjid_id', 'user_id', name='uq_masjid_admin'),
    )

    def __repr__(self):
        return f'<MasjidAdmin masjid={self.masjid_id} user={self.user_id} ({self.role.value})>'


class ScheduleTemplate(db.Model):
    """Recurring per-prayer local times; expanded into daily Schedule rows"""
    __tablename__ = 'schedule_templates'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    masjid_id = db.Column(db.String(36), db.ForeignKey('masjids.id', ondelete='CASCADE'), nullable=False)
    prayer_name = db.Column(db.Enum(PrayerName), nullable=False)
    adhan_time_local = db.Column(db.String(8), nullable=False)  # HH:MM:SS
    iqamah_time_local = db.Column(db.String(8), nullable=True)
    khutbah_time_local = db.Column(db.String(8), nullable=True)
    is_juma = db.Column(db.Boolean, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        db.UniqueConstraint('masjid_id', 'prayer_name', name='uq_template_masjid_prayer'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'masjidId': self.masjid_id,
            'prayerName': self.prayer_name.value,
            'adhanTimeLocal': self.adhan_time_local,
            'iqamahTimeLocal': self.iqamah_time_local,
            'khutbahTimeLocal': self.khutbah_time_local,
            'isJuma': self.is_juma,
        }

    def __repr__(self):
        return f'<ScheduleTemplate {self.masjid_id} {self.prayer_name.value} {self.adhan_time_local}>'


class Schedule(db.Model):
    """A concrete prayer occurrence on one local date"""
    __tablename__ = 'schedules'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    masjid_id = db.Column(db.String(36), db.ForeignKey('masjids.id', ondelete='CASCADE'), nullable=False)
    date = db.Column(db.String(10), nullable=False)  # local ISO date
    prayer_name = db.Column(db.Enum(PrayerName), nullable=False)
    time = db.Column(db.String(8), nullable=False)  # local adhan time
    adhan_at_utc = db.Column(db.DateTime, nullable=False, index=True)
    iqamah_at_utc = db.Column(db.DateTime, nullable=True)
    khutbah_at_utc = db.Column(db.DateTime, nullable=True)
    is_juma = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    masjid = db.relationship('Masjid')

    __table_args__ = (
        db.UniqueConstraint('masjid_id', 'date', 'prayer_name', name='uq_schedule_masjid_date_prayer'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'masjidId': self.masjid_id,
            'date': self.date,
            'prayerName': self.prayer_name.value,
            'time': self.time,
            'adhanAtUtc': _iso(self.adhan_at_utc),
            'iqamahAtUtc': _iso(self.iqamah_at_utc),
            'khutbahAtUtc': _iso(self.khutbah_at_utc),
            'isJuma': self.is_juma,
        }

    def __repr__(self):
        return f'<Schedule {self.masjid_id} {self.date} {self.prayer_name.value}>'


class Broadcast(db.Model):
    """A live audio session for one prayer occurrence"""
    __tablename__ = 'broadcasts'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    masjid_id = db.Column(db.String(36), db.ForeignKey('masjids.id', ondelete='CASCADE'), nullable=False, index=True)
    created_by = db.Column(db.String(36), db.ForeignKey('users.id', ondelete='SET NULL'), nullable=True)
    title = db.Column(db.String(255), nullable=True)
    prayer_name = db.Column(db.Enum(PrayerName), nullable=True)
    status = db.Column(db.Enum(BroadcastStatus), default=BroadcastStatus.PENDING, nullable=False, index=True)
    scheduled_at = db.Column(db.DateTime, nullable=True)
    started_at = db.Column(db.DateTime, nullable=True)
    ended_at = db.Column(db.DateTime, nullable=True)
    ended_reason = db.Column(db.String(64), nullable=True)

    # Streaming
    stream_provider = db.Column(db.String(32), default='livekit', nullable=False)
    stream_room_id = db.Column(db.String(255), nullable=True)
    audio_url = db.Column(db.String(512), nullable=True)
    hls_url = db.Column(db.String(512), nullable=True)
    hls_egress_id = db.Column(db.String(255), nullable=True)
    hls_rtmp_url = db.Column(db.String(512), nullable=True)
    recording_url = db.Column(db.String(512), nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    def to_dict(self):
        return {
            'id': self.id,
            'masjidId': self.masjid_id,
            'createdBy': self.created_by,
            'title': self.title,
            'prayerName': self.prayer_name.value if self.prayer_name else None,
            'status': self.status.value,
            'scheduledAt': _iso(self.scheduled_at),
            'startedAt': _iso(self.started_at),
            'endedAt': _iso(self.ended_at),
            'endedReason': self.ended_reason,
            'streamProvider': self.stream_provider,
            'streamRoomId': self.stream_room_id,
            'audioUrl': self.audio_url,
            'hlsUrl': self.hls_url,
            'recordingUrl': self.recording_url,
        }

    def __repr__(self):
        return f'<Broadcast {self.id} ({self.status.value})>'


class Subscription(db.Model):
    """A user's follow of a masjid with delivery preferences"""
    __tablename__ = 'subscriptions'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    masjid_id = db.Column(db.String(36), db.ForeignKey('masjids.id', ondelete='CASCADE'), nullable=False, index=True)
    preferences = db.Column(db.JSON, default=dict, nullable=False)  # {'mutedPrayers': [...], 'wakeOnSilent': bool}
    is_muted = db.Column(db.Boolean, default=False, nullable=False)
    mute_until = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    masjid = db.relationship('Masjid')

    __table_args__ = (
        db.UniqueConstraint('user_id', 'masjid_id', name='uq_subscription_user_masjid'),
    )

    @property
    def muted_prayers(self):
        return list((self.preferences or {}).get('mutedPrayers') or [])

    def is_muted_at(self, now):
        """Whole-subscription mute, either permanent or until a point in time"""
        if self.is_muted:
            return True
        return self.mute_until is not None and self.mute_until > now

    def to_dict(self):
        return {
            'id': self.id,
            'userId': self.user_id,
            'masjidId': self.masjid_id,
            'preferences': self.preferences or {},
            'isMuted': self.is_muted,
            'muteUntil': _iso(self.mute_until),
        }

    def __repr__(self):
        return f'<Subscription user={self.user_id} masjid={self.masjid_id}>'


class UserDevice(db.Model):
    """A push-capable device registered by a user"""
    __tablename__ = 'user_devices'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    device_id = db.Column(db.String(255), nullable=False)
    platform = db.Column(db.Enum(Platform), nullable=False)
    fcm_token = db.Column(db.String(512), unique=True, nullable=True)
    voip_token = db.Column(db.String(512), unique=True, nullable=True)
    app_version = db.Column(db.String(64), nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    is_wake_on_silent_enabled = db.Column(db.Boolean, default=False, nullable=False)
    last_active_at = db.Column(db.DateTime, default=utcnow)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        db.UniqueConstraint('user_id', 'device_id', name='uq_user_device'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'userId': self.user_id,
            'deviceId': self.device_id,
            'platform': self.platform.value,
            'fcmToken': self.fcm_token,
            'voipToken': self.voip_token,
            'appVersion': self.app_version,
            'isActive': self.is_active,
            'isWakeOnSilentEnabled': self.is_wake_on_silent_enabled,
            'lastActiveAt': _iso(self.last_active_at),
        }

    def __repr__(self):
        return f'<UserDevice {self.device_id} ({self.platform.value})>'


class NotificationLog(db.Model):
    """Append-only record of every push delivery attempt"""
    __tablename__ = 'notification_logs'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    user_id = db.Column(db.String(36), db.ForeignKey('users.id', ondelete='SET NULL'), nullable=True)
    device_id = db.Column(db.String(36), db.ForeignKey('user_devices.id', ondelete='SET NULL'), nullable=True)
    masjid_id = db.Column(db.String(36), db.ForeignKey('masjids.id', ondelete='SET NULL'), nullable=True)
    broadcast_id = db.Column(db.String(36), db.ForeignKey('broadcasts.id', ondelete='SET NULL'), nullable=True, index=True)
    status = db.Column(db.Enum(NotificationStatus), default=NotificationStatus.QUEUED, nullable=False)
    provider = db.Column(db.String(32), nullable=True)
    error = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    def __repr__(self):
        return f'<NotificationLog broadcast={self.broadcast_id} {self.status.value}>'


class QueuedJob(db.Model):
    """Delayed job; the row is deleted once its handler succeeds"""
    __tablename__ = 'queued_jobs'

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    queue_name = db.Column(db.String(64), nullable=False, index=True)
    job_name = db.Column(db.String(64), nullable=False)
    payload = db.Column(db.JSON, default=dict, nullable=False)
    dedupe_key = db.Column(db.String(255), unique=True, nullable=True)  # cleared when the job fails for good
    status = db.Column(db.Enum(JobStatus), default=JobStatus.PENDING, nullable=False, index=True)
    attempts = db.Column(db.Integer, default=0, nullable=False)
    max_attempts = db.Column(db.Integer, default=3, nullable=False)
    run_at = db.Column(db.DateTime, nullable=False, index=True)
    locked_until = db.Column(db.DateTime, nullable=True)
    last_error = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    def __repr__(self):
        return f'<QueuedJob {self.queue_name}/{self.job_name} ({self.status.value})>'


def _iso(value):
    """Serialize a naive-UTC datetime with an explicit Z suffix"""
    if value is None:
        return None
    return value.isoformat() + 'Z'
