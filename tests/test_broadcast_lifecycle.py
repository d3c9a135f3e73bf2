"""
Broadcast state machine, auto-end and expiry reconciliation
"""
import pytest
from datetime import datetime, timedelta

from models import db, Broadcast, BroadcastStatus, PrayerName, Schedule
from utils.broadcast_lifecycle import (
    BROADCASTS_QUEUE, MAX_DURATION_REASON, NOTIFICATIONS_QUEUE, create_broadcast, end_broadcast,
    handle_auto_end, issue_broadcaster_token, issue_listener_access, start_broadcast, sweep_expired
)
from utils.broadcast_planner import plan_upcoming
from utils.errors import (
    ConfigurationError, ConflictError, ForbiddenError, NotFoundError, ServiceUnavailableError
)
from utils.job_queue import job_queue
from conftest import FakeRoomService, make_admin, make_broadcast, make_masjid, make_user, subscribe

T0 = datetime(2024, 5, 31, 23, 40)


def _live(masjid, started_at=T0, room='broadcast-room'):
    return make_broadcast(masjid, status=BroadcastStatus.LIVE, started_at=started_at, room=room)


def test_create_scheduled_broadcast_creates_room(app, rooms):
    masjid = make_masjid()
    admin = make_admin(masjid)

    broadcast = create_broadcast(masjid.id, admin.id, {
        'prayerName': 'Fajr', 'scheduledAt': '2024-05-31T23:40:00Z', 'title': 'Fajr'
    })

    assert broadcast.status == BroadcastStatus.SCHEDULED
    assert broadcast.scheduled_at == T0
    assert broadcast.stream_room_id == f'broadcast-{broadcast.id}'
    assert broadcast.audio_url == rooms.url
    assert rooms.created == [broadcast.stream_room_id]


def test_create_without_schedule_is_pending(app):
    masjid = make_masjid()
    broadcast = create_broadcast(masjid.id, None, {'title': 'Dars'})
    assert broadcast.status == BroadcastStatus.PENDING


def test_create_rejects_duplicate_prayer_on_same_day(app):
    masjid = make_masjid()
    make_broadcast(masjid, scheduled_at=datetime(2024, 5, 31, 1, 0))

    with pytest.raises(ConflictError):
        create_broadcast(masjid.id, None, {'prayerName': 'Fajr', 'scheduledAt': '2024-05-31T23:40:00Z'})


def test_create_requires_available_masjid(app):
    with pytest.raises(NotFoundError):
        create_broadcast('missing', None, {})

    masjid = make_masjid(approved=False)
    with pytest.raises(ForbiddenError):
        create_broadcast(masjid.id, None, {})


def test_start_goes_live_and_arms_jobs(app):
    masjid = make_masjid()
    broadcast = make_broadcast(masjid)

    start_broadcast(broadcast.id, now=T0)

    assert broadcast.status == BroadcastStatus.LIVE
    assert broadcast.started_at == T0

    notifications = job_queue.pending_jobs(NOTIFICATIONS_QUEUE)
    assert [j.job_name for j in notifications] == ['broadcast-start']
    assert notifications[0].payload == {'broadcastId': broadcast.id, 'masjidId': masjid.id, 'prayerName': 'Fajr'}

    auto_end = job_queue.pending_jobs(BROADCASTS_QUEUE, 'broadcast-auto-end')
    assert len(auto_end) == 1
    assert auto_end[0].run_at == T0 + timedelta(minutes=15)
    assert auto_end[0].dedupe_key == f'broadcast-auto-end-{broadcast.id}'

    # relay disabled: no hls-start
    assert job_queue.pending_jobs(BROADCASTS_QUEUE, 'hls-start') == []


def test_start_applies_stream_overrides(app):
    masjid = make_masjid()
    broadcast = make_broadcast(masjid, room=None)

    start_broadcast(broadcast.id, {'streamRoomId': 'custom-room', 'audioUrl': 'wss://other.example.test'}, now=T0)

    assert broadcast.stream_room_id == 'custom-room'
    assert broadcast.audio_url == 'wss://other.example.test'


def test_start_queues_relay_when_enabled(app):
    app.config['HLS_ENABLED'] = True
    masjid = make_masjid()
    broadcast = make_broadcast(masjid)

    start_broadcast(broadcast.id, now=T0)

    jobs = job_queue.pending_jobs(BROADCASTS_QUEUE, 'hls-start')
    assert len(jobs) == 1
    assert jobs[0].payload == {'broadcastId': broadcast.id, 'roomName': 'broadcast-room'}


def test_start_twice_is_rejected(app):
    masjid = make_masjid()
    broadcast = make_broadcast(masjid)
    start_broadcast(broadcast.id, now=T0)

    with pytest.raises(ConflictError) as excinfo:
        start_broadcast(broadcast.id, now=T0 + timedelta(minutes=1))
    assert 'already live' in excinfo.value.message


def test_start_on_expired_live_broadcast_completes_it(app, rooms):
    masjid = make_masjid()
    broadcast = _live(masjid)

    with pytest.raises(ConflictError) as excinfo:
        start_broadcast(broadcast.id, now=T0 + timedelta(minutes=20))

    assert excinfo.value.details == {'endedReason': MAX_DURATION_REASON}
    assert broadcast.status == BroadcastStatus.COMPLETED
    assert broadcast.ended_reason == MAX_DURATION_REASON
    assert rooms.deleted == ['broadcast-room']
    assert [j.job_name for j in job_queue.pending_jobs(NOTIFICATIONS_QUEUE)] == ['broadcast-end']


@pytest.mark.parametrize('status', [BroadcastStatus.COMPLETED, BroadcastStatus.FAILED])
def test_terminal_broadcasts_reject_start_and_end(app, status):
    masjid = make_masjid()
    broadcast = make_broadcast(masjid, status=status)

    with pytest.raises(ConflictError):
        start_broadcast(broadcast.id, now=T0)
    with pytest.raises(ConflictError):
        end_broadcast(broadcast.id, now=T0)
    assert broadcast.status == status


def test_end_records_outcome(app):
    masjid = make_masjid()
    broadcast = _live(masjid)

    end_broadcast(broadcast.id, 'https://cdn.example.test/rec.m4a', 'imam_finished', now=T0 + timedelta(minutes=5))

    assert broadcast.status == BroadcastStatus.COMPLETED
    assert broadcast.ended_at == T0 + timedelta(minutes=5)
    assert broadcast.recording_url == 'https://cdn.example.test/rec.m4a'
    assert broadcast.ended_reason == 'imam_finished'
    assert [j.job_name for j in job_queue.pending_jobs(NOTIFICATIONS_QUEUE)] == ['broadcast-end']


def test_end_from_scheduled_is_allowed(app):
    masjid = make_masjid()
    broadcast = make_broadcast(masjid)
    end_broadcast(broadcast.id, now=T0)
    assert broadcast.status == BroadcastStatus.COMPLETED


def test_end_queues_relay_stop_when_enabled(app):
    app.config['HLS_ENABLED'] = True
    masjid = make_masjid()
    broadcast = _live(masjid)

    end_broadcast(broadcast.id, now=T0 + timedelta(minutes=5))

    assert len(job_queue.pending_jobs(BROADCASTS_QUEUE, 'hls-stop')) == 1


def test_auto_end_fired_early_reschedules(app):
    masjid = make_masjid()
    broadcast = _live(masjid)
    now = T0 + timedelta(minutes=10)

    assert handle_auto_end(broadcast.id, now=now) is False

    assert broadcast.status == BroadcastStatus.LIVE
    jobs = job_queue.pending_jobs(BROADCASTS_QUEUE, 'broadcast-auto-end')
    assert len(jobs) == 1
    assert jobs[0].run_at == T0 + timedelta(minutes=15)


def test_auto_end_at_exact_max_duration_completes(app, rooms):
    masjid = make_masjid()
    broadcast = _live(masjid)

    assert handle_auto_end(broadcast.id, now=T0 + timedelta(minutes=15)) is True

    assert broadcast.status == BroadcastStatus.COMPLETED
    assert broadcast.ended_reason == MAX_DURATION_REASON
    assert broadcast.ended_at == T0 + timedelta(minutes=15)
    assert rooms.deleted == ['broadcast-room']
    assert [j.job_name for j in job_queue.pending_jobs(NOTIFICATIONS_QUEUE)] == ['broadcast-end']


def test_auto_end_within_tolerance_completes(app):
    masjid = make_masjid()
    broadcast = _live(masjid)

    assert handle_auto_end(broadcast.id, now=T0 + timedelta(minutes=15) - timedelta(milliseconds=500)) is True
    assert broadcast.status == BroadcastStatus.COMPLETED


def test_auto_end_ignores_broadcasts_no_longer_live(app):
    masjid = make_masjid()
    broadcast = make_broadcast(masjid, status=BroadcastStatus.COMPLETED)

    assert handle_auto_end(broadcast.id, now=T0 + timedelta(hours=1)) is False
    assert handle_auto_end('missing', now=T0) is False
    assert job_queue.pending_jobs() == []


def test_sweep_completes_only_expired_broadcasts(app):
    masjid = make_masjid()
    stale = _live(masjid, started_at=T0 - timedelta(minutes=30), room='stale-room')
    fresh = make_broadcast(masjid, status=BroadcastStatus.LIVE, prayer=PrayerName.DHUHR,
                           started_at=T0 - timedelta(minutes=5), room='fresh-room')

    assert sweep_expired(T0) == 1

    assert stale.status == BroadcastStatus.COMPLETED
    assert stale.ended_reason == MAX_DURATION_REASON
    assert fresh.status == BroadcastStatus.LIVE


def test_sweep_counts_broadcast_when_room_release_fails(app, rooms, monkeypatch):
    masjid = make_masjid()
    stale = _live(masjid, started_at=T0 - timedelta(minutes=30))

    def unreachable(name):
        raise RuntimeError('room server unreachable')

    monkeypatch.setattr(rooms, 'delete_room', unreachable)

    assert sweep_expired(T0) == 1

    db.session.refresh(stale)
    assert stale.status == BroadcastStatus.COMPLETED
    assert len(job_queue.pending_jobs(NOTIFICATIONS_QUEUE, 'broadcast-end')) == 1


def test_broadcaster_token_requires_live(app):
    masjid = make_masjid()
    admin = make_admin(masjid)
    broadcast = make_broadcast(masjid)

    with pytest.raises(ConflictError):
        issue_broadcaster_token(broadcast.id, admin.id, now=T0)


def test_broadcaster_token_can_publish(app):
    masjid = make_masjid()
    admin = make_admin(masjid)
    broadcast = _live(masjid)

    data = issue_broadcaster_token(broadcast.id, admin.id, now=T0 + timedelta(minutes=1))

    assert data == {
        'mode': 'livekit',
        'token': f'token:{admin.id}:broadcast-room:pub',
        'roomName': 'broadcast-room',
        'livekitUrl': 'wss://rooms.example.test',
    }


def test_broadcaster_token_without_credentials(app):
    app.extensions['room_service'] = FakeRoomService(configured=False)
    masjid = make_masjid()
    broadcast = _live(masjid)

    with pytest.raises(ConfigurationError) as excinfo:
        issue_broadcaster_token(broadcast.id, 'someone', now=T0 + timedelta(minutes=1))
    assert 'LIVEKIT_API_KEY' in excinfo.value.details['missing']


def test_listener_access_requires_subscription(app):
    masjid = make_masjid()
    listener = make_user('listener@example.test')
    broadcast = _live(masjid)

    with pytest.raises(ForbiddenError):
        issue_listener_access(broadcast.id, listener.id, now=T0 + timedelta(minutes=1))


def test_listener_access_room_token(app):
    masjid = make_masjid()
    listener = make_user('listener@example.test')
    subscribe(listener, masjid)
    broadcast = _live(masjid)

    data = issue_listener_access(broadcast.id, listener.id, now=T0 + timedelta(minutes=1))

    assert data['mode'] == 'livekit'
    assert data['token'] == f'token:{listener.id}:broadcast-room:sub'


def test_listener_access_relay_url(app):
    app.config['HLS_ENABLED'] = True
    masjid = make_masjid()
    listener = make_user('listener@example.test')
    subscribe(listener, masjid)
    broadcast = _live(masjid)

    data = issue_listener_access(broadcast.id, listener.id, now=T0 + timedelta(minutes=1))

    assert data['mode'] == 'hls'
    assert data['hlsUrl'].startswith(f'/api/v1/broadcasts/{broadcast.id}/hls/index.m3u8?exp=')


def test_listener_access_relay_unavailable(app):
    app.config['HLS_ENABLED'] = True
    app.config['HLS_SIGNING_SECRET'] = ''
    masjid = make_masjid()
    listener = make_user('listener@example.test')
    subscribe(listener, masjid)
    broadcast = _live(masjid)

    with pytest.raises(ServiceUnavailableError):
        issue_listener_access(broadcast.id, listener.id, now=T0 + timedelta(minutes=1))


def test_fajr_in_kolkata_end_to_end(app):
    masjid = make_masjid(timezone='Asia/Kolkata')
    db.session.add(Schedule(masjid_id=masjid.id, date='2024-06-01', prayer_name=PrayerName.FAJR,
                            time='05:10:00', adhan_at_utc=T0))
    db.session.commit()

    assert plan_upcoming(datetime(2024, 5, 31, 23, 39)) == 1
    broadcast = Broadcast.query.one()

    start_broadcast(broadcast.id, now=T0)
    processed = job_queue.run_due(now=T0 + timedelta(minutes=15))

    assert processed == 2
    db.session.refresh(broadcast)
    assert broadcast.status == BroadcastStatus.COMPLETED
    assert broadcast.ended_reason == MAX_DURATION_REASON
