import pytest
from datetime import datetime
from flask import g

from app import create_app
from models import (
    db, Broadcast, BroadcastStatus, Masjid, MasjidAdmin, Platform, PrayerName,
    Subscription, User, UserDevice, UserRole
)
from utils.permissions import issue_access_token
from utils.push import PushResult


class FakeRoomService:
    """Records room calls instead of talking to LiveKit"""

    def __init__(self, configured=True):
        self.url = 'wss://rooms.example.test' if configured else ''
        self.is_configured = configured
        self.created = []
        self.deleted = []
        self.tokens = []
        self.egress_started = []
        self.egress_stopped = []

    def missing_settings(self):
        return [] if self.is_configured else ['LIVEKIT_URL', 'LIVEKIT_API_KEY', 'LIVEKIT_API_SECRET']

    def config_status(self):
        missing = self.missing_settings()
        return {'ok': not missing, 'missing': missing}

    def create_room(self, name):
        self.created.append(name)

    def delete_room(self, name):
        if name:
            self.deleted.append(name)

    def mint_access_token(self, identity, room, can_publish=False):
        self.tokens.append((identity, room, can_publish))
        return f"token:{identity}:{room}:{'pub' if can_publish else 'sub'}"

    def start_audio_egress(self, room, target_url, bitrate_kbps):
        self.egress_started.append((room, target_url, bitrate_kbps))
        return f'egress-{room}'

    def stop_egress(self, egress_id):
        if egress_id:
            self.egress_stopped.append(egress_id)


class FakePushGateway:
    """Collects pushes; tokens starting with 'bad' fail"""

    fcm_service_account = '{}'
    apns_configured = True

    def __init__(self):
        self.data_messages = []
        self.voip_pushes = []

    def send_data_message(self, token, payload):
        self.data_messages.append((token, payload))
        if not token:
            return PushResult('failed', 'fcm', 'missing_token')
        if token.startswith('bad'):
            return PushResult('failed', 'fcm', 'unregistered')
        return PushResult('sent', 'fcm')

    def send_voip_push(self, token, payload):
        self.voip_pushes.append((token, payload))
        if not token:
            return PushResult('failed', 'apns', 'missing_token')
        return PushResult('sent', 'apns')

    def close(self):
        pass


@pytest.fixture
def app(tmp_path):
    """Testing app with in-memory database and recording providers"""
    app = create_app('testing')
    app.config['HLS_OUTPUT_DIR'] = str(tmp_path / 'hls')
    app.extensions['room_service'] = FakeRoomService()
    app.extensions['push_gateway'] = FakePushGateway()

    @app.teardown_request
    def reset_request_globals(exc):
        # the test app context outlives each request
        for key in list(g):
            g.pop(key)

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def rooms(app):
    return app.extensions['room_service']


@pytest.fixture
def push(app):
    return app.extensions['push_gateway']


def make_user(email, role=UserRole.LISTENER):
    user = User(email=email, name=email.split('@')[0], role=role)
    db.session.add(user)
    db.session.commit()
    return user


def make_masjid(slug='masjid-al-noor', timezone='Asia/Kolkata', approved=True, active=True):
    masjid = Masjid(name=slug.replace('-', ' ').title(), slug=slug, timezone=timezone,
                    is_approved=approved, is_active=active)
    db.session.add(masjid)
    db.session.commit()
    return masjid


def make_admin(masjid, email='imam@example.test'):
    user = make_user(email, role=UserRole.MASJID_ADMIN)
    db.session.add(MasjidAdmin(masjid_id=masjid.id, user_id=user.id))
    db.session.commit()
    return user


def subscribe(user, masjid, **kwargs):
    subscription = Subscription(user_id=user.id, masjid_id=masjid.id,
                                preferences=kwargs.pop('preferences', {}), **kwargs)
    db.session.add(subscription)
    db.session.commit()
    return subscription


def add_device(user, device_id, platform=Platform.ANDROID, fcm_token=None, voip_token=None, active=True):
    device = UserDevice(user_id=user.id, device_id=device_id, platform=platform,
                        fcm_token=fcm_token, voip_token=voip_token, is_active=active)
    db.session.add(device)
    db.session.commit()
    return device


def make_broadcast(masjid, status=BroadcastStatus.SCHEDULED, prayer=PrayerName.FAJR,
                   scheduled_at=None, started_at=None, room='broadcast-room'):
    broadcast = Broadcast(
        masjid_id=masjid.id,
        prayer_name=prayer,
        title=f'{prayer.value} Adhan' if prayer else None,
        status=status,
        scheduled_at=scheduled_at or datetime(2024, 5, 31, 23, 40),
        started_at=started_at,
        stream_room_id=room
    )
    db.session.add(broadcast)
    db.session.commit()
    return broadcast


def auth_headers(user):
    return {'Authorization': f'Bearer {issue_access_token(user.id)}'}
