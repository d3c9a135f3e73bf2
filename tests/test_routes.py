"""
HTTP surface: auth, devices, subscriptions, schedules, broadcasts and relay assets
"""
import os
import pytest

from models import Broadcast, BroadcastStatus, UserDevice
from utils.hls import sign_hls_url
from conftest import auth_headers, make_admin, make_broadcast, make_masjid, make_user, subscribe


@pytest.fixture
def masjid(app):
    return make_masjid()


@pytest.fixture
def admin(masjid):
    return make_admin(masjid)


@pytest.fixture
def listener(app):
    return make_user('listener@example.test')


# ============================================================================
# HEALTH & ERRORS
# ============================================================================

def test_health(client):
    response = client.get('/api/v1/health')
    assert response.status_code == 200
    assert response.get_json()['status'] == 'ok'


def test_ready_reports_components(client):
    response = client.get('/api/v1/ready')
    data = response.get_json()

    assert response.status_code == 200
    assert data['ok'] is True
    assert data['jobs']['pending'] == 0
    assert data['relays']['active_in_process'] == 0
    assert data['providers']['livekit']['ok'] is True


def test_unknown_route_is_json(client):
    response = client.get('/api/v1/nope')
    assert response.status_code == 404
    assert response.get_json()['code'] == 'not_found'


def test_missing_token_is_unauthorized(client):
    response = client.post('/api/v1/devices', json={})
    assert response.status_code == 401
    assert response.get_json() == {
        'statusCode': 401,
        'message': 'Missing or invalid access token',
        'code': 'unauthorized',
        'details': None,
    }


def test_tampered_token_is_unauthorized(client, listener):
    headers = {'Authorization': auth_headers(listener)['Authorization'] + 'x'}
    assert client.get('/api/v1/subscriptions', headers=headers).status_code == 401


def test_cookie_token_is_accepted(client, listener):
    from utils.permissions import issue_access_token
    client.set_cookie('accessToken', issue_access_token(listener.id))
    assert client.get('/api/v1/subscriptions').status_code == 200


# ============================================================================
# DEVICES
# ============================================================================

def test_register_android_device(client, listener):
    response = client.post('/api/v1/devices', headers=auth_headers(listener), json={
        'deviceId': 'pixel-8', 'platform': 'android', 'fcmToken': 'fcm-1', 'appVersion': '2.1.0'
    })

    assert response.status_code == 200
    data = response.get_json()['data']
    assert data['fcmToken'] == 'fcm-1'
    assert data['isWakeOnSilentEnabled'] is True
    assert data['isActive'] is True


@pytest.mark.parametrize('body', [
    {'deviceId': 'iphone', 'platform': 'ios', 'fcmToken': 'fcm-only'},
    {'deviceId': 'pixel', 'platform': 'android'},
    {'deviceId': 'x', 'platform': 'android', 'fcmToken': 'short-id'},
    {'deviceId': 12345, 'platform': 'android', 'fcmToken': 'numeric-id'},
    {'deviceId': 'fridge', 'platform': 'tizen', 'fcmToken': 'fcm-2'},
])
def test_register_device_validation(client, listener, body):
    response = client.post('/api/v1/devices', headers=auth_headers(listener), json=body)
    assert response.status_code == 400
    assert response.get_json()['code'] == 'validation_error'


def test_token_owned_by_another_user_conflicts(client, listener):
    other = make_user('other@example.test')
    client.post('/api/v1/devices', headers=auth_headers(other),
                json={'deviceId': 'other-phone', 'platform': 'android', 'fcmToken': 'shared'})

    response = client.post('/api/v1/devices', headers=auth_headers(listener),
                           json={'deviceId': 'my-phone', 'platform': 'android', 'fcmToken': 'shared'})
    assert response.status_code == 409


def test_token_moves_between_devices_of_same_user(client, listener):
    headers = auth_headers(listener)
    client.post('/api/v1/devices', headers=headers,
                json={'deviceId': 'old-phone', 'platform': 'android', 'fcmToken': 'fcm-moving'})
    response = client.post('/api/v1/devices', headers=headers,
                           json={'deviceId': 'new-phone', 'platform': 'android', 'fcmToken': 'fcm-moving'})

    assert response.status_code == 200
    old = UserDevice.query.filter_by(device_id='old-phone').one()
    new = UserDevice.query.filter_by(device_id='new-phone').one()
    assert old.fcm_token is None
    assert new.fcm_token == 'fcm-moving'


def test_update_and_remove_device(client, listener):
    headers = auth_headers(listener)
    client.post('/api/v1/devices', headers=headers,
                json={'deviceId': 'iphone-15', 'platform': 'ios', 'voipToken': 'voip-1'})

    response = client.patch('/api/v1/devices/iphone-15', headers=headers,
                            json={'isWakeOnSilentEnabled': False, 'voipToken': 'voip-2'})
    assert response.status_code == 200
    assert response.get_json()['data']['voipToken'] == 'voip-2'
    assert response.get_json()['data']['isWakeOnSilentEnabled'] is False

    assert client.delete('/api/v1/devices/iphone-15', headers=headers).status_code == 200
    assert client.delete('/api/v1/devices/iphone-15', headers=headers).status_code == 404


# ============================================================================
# SUBSCRIPTIONS
# ============================================================================

def test_subscription_lifecycle(client, listener, masjid):
    headers = auth_headers(listener)
    url = f'/api/v1/subscriptions/{masjid.id}'

    response = client.post(url, headers=headers, json={'preferences': {'mutedPrayers': ['Fajr', 'Fajr']}})
    assert response.status_code == 201
    assert response.get_json()['data']['preferences'] == {'mutedPrayers': ['Fajr']}

    assert client.post(url, headers=headers).status_code == 409

    response = client.patch(url, headers=headers, json={'muteUntil': '2024-06-01T05:00:00+05:30', 'isMuted': True})
    assert response.status_code == 200
    data = response.get_json()['data']
    assert data['muteUntil'] == '2024-05-31T23:30:00Z'
    assert data['isMuted'] is True
    assert data['preferences'] == {'mutedPrayers': ['Fajr']}

    response = client.get('/api/v1/subscriptions?page=1&limit=10', headers=headers)
    body = response.get_json()
    assert body['pagination'] == {'page': 1, 'limit': 10, 'total': 1}
    assert body['data'][0]['masjid']['slug'] == masjid.slug

    assert client.delete(url, headers=headers).status_code == 200
    assert client.delete(url, headers=headers).status_code == 404


def test_subscription_rejects_bad_preferences(client, listener, masjid):
    response = client.post(f'/api/v1/subscriptions/{masjid.id}', headers=auth_headers(listener),
                           json={'preferences': {'mutedPrayers': ['Tahajjud']}})
    assert response.status_code == 400


def test_subscription_requires_available_masjid(client, listener):
    closed = make_masjid('closed-masjid', approved=False)
    headers = auth_headers(listener)
    assert client.post(f'/api/v1/subscriptions/{closed.id}', headers=headers).status_code == 403
    assert client.post('/api/v1/subscriptions/missing', headers=headers).status_code == 404


# ============================================================================
# SCHEDULES
# ============================================================================

def test_template_requires_masjid_authority(client, listener, admin, masjid):
    url = f'/api/v1/schedules/{masjid.id}/template'
    body = {'prayerName': 'Fajr', 'adhanTimeLocal': '05:10', 'iqamahTimeLocal': '05:30'}

    assert client.put(url, headers=auth_headers(listener), json=body).status_code == 403

    response = client.put(url, headers=auth_headers(admin), json=body)
    assert response.status_code == 200
    data = response.get_json()['data']
    assert data['adhanTimeLocal'] == '05:10:00'
    assert data['timezone'] == 'Asia/Kolkata'


def test_schedule_create_update_and_list(client, admin, masjid):
    headers = auth_headers(admin)
    url = f'/api/v1/schedules/{masjid.id}'

    response = client.post(url, headers=headers,
                           json={'date': '2024-06-01', 'prayerName': 'Fajr', 'adhanTimeLocal': '05:10'})
    assert response.status_code == 201
    schedule = response.get_json()['data']
    assert schedule['adhanAtUtc'] == '2024-05-31T23:40:00Z'

    response = client.post(url, headers=headers,
                           json={'date': '2024-06-01', 'prayerName': 'Fajr', 'adhanTimeLocal': '05:12'})
    assert response.status_code == 200

    response = client.patch(f"{url}/{schedule['id']}", headers=headers, json={'iqamahTimeLocal': '05:30'})
    assert response.status_code == 200
    assert response.get_json()['data']['iqamahAtUtc'] == '2024-06-01T00:00:00Z'

    response = client.get(f'{url}?date=2024-06-01')
    assert response.status_code == 200
    assert [s['time'] for s in response.get_json()['data']] == ['05:12:00']


def test_juma_schedule_must_be_friday(client, admin, masjid):
    response = client.post(f'/api/v1/schedules/{masjid.id}', headers=auth_headers(admin),
                           json={'date': '2024-06-01', 'prayerName': 'Juma', 'adhanTimeLocal': '13:00'})
    assert response.status_code == 400


def test_bulk_schedule_limits(client, admin, masjid):
    headers = auth_headers(admin)
    url = f'/api/v1/schedules/{masjid.id}/bulk'
    items = [{'date': '2024-06-01', 'prayerName': p, 'adhanTimeLocal': t}
             for p, t in (('Fajr', '05:10'), ('Dhuhr', '13:15'))]

    response = client.post(url, headers=headers, json={'schedules': items})
    assert response.status_code == 200
    assert len(response.get_json()['data']) == 2

    assert client.post(url, headers=headers, json={'schedules': items * 11}).status_code == 400
    assert client.post(url, headers=headers, json={'schedules': []}).status_code == 400


# ============================================================================
# BROADCASTS
# ============================================================================

def test_broadcast_flow(client, admin, listener, masjid):
    subscribe(listener, masjid)
    admin_headers = auth_headers(admin)

    response = client.post('/api/v1/broadcasts', headers=admin_headers, json={
        'masjidId': masjid.id, 'prayerName': 'Fajr', 'scheduledAt': '2024-05-31T23:40:00Z'
    })
    assert response.status_code == 201
    broadcast = response.get_json()['data']
    assert broadcast['status'] == 'scheduled'
    assert broadcast['scheduledAt'] == '2024-05-31T23:40:00Z'

    url = f"/api/v1/broadcasts/{broadcast['id']}"
    response = client.post(f'{url}/start', headers=admin_headers)
    assert response.status_code == 200
    assert response.get_json()['data']['status'] == 'live'

    token = client.post(f'{url}/token', headers=admin_headers).get_json()['data']
    assert token['roomName'] == f"broadcast-{broadcast['id']}"
    assert token['token'].endswith(':pub')

    access = client.post(f'{url}/listener-token', headers=auth_headers(listener)).get_json()['data']
    assert access['mode'] == 'livekit'
    assert access['token'].endswith(':sub')

    response = client.post(f'{url}/end', headers=admin_headers, json={'recordingUrl': 'https://cdn.example.test/r.m4a'})
    assert response.status_code == 200
    assert response.get_json()['data']['status'] == 'completed'
    assert response.get_json()['data']['recordingUrl'] == 'https://cdn.example.test/r.m4a'

    response = client.post(f'{url}/end', headers=admin_headers)
    assert response.status_code == 409
    assert response.get_json()['code'] == 'conflict'


def test_broadcast_control_requires_authority(client, listener, masjid):
    broadcast = make_broadcast(masjid)
    headers = auth_headers(listener)

    assert client.post('/api/v1/broadcasts', headers=headers, json={'masjidId': masjid.id}).status_code == 403
    assert client.post(f'/api/v1/broadcasts/{broadcast.id}/start', headers=headers).status_code == 403
    assert client.post('/api/v1/broadcasts/missing/start', headers=headers).status_code == 404


def test_list_broadcasts(client, admin, listener, masjid):
    make_broadcast(masjid)
    make_broadcast(masjid, status=BroadcastStatus.COMPLETED, prayer=None)

    response = client.get(f'/api/v1/broadcasts?masjidId={masjid.id}&status=scheduled&date=2024-05-31',
                          headers=auth_headers(admin))
    assert response.status_code == 200
    assert [b['status'] for b in response.get_json()['data']] == ['scheduled']

    assert client.get(f'/api/v1/broadcasts?masjidId={masjid.id}', headers=auth_headers(listener)).status_code == 403
    subscribe(listener, masjid)
    response = client.get(f'/api/v1/broadcasts?masjidId={masjid.id}', headers=auth_headers(listener))
    assert len(response.get_json()['data']) == 2

    assert client.get(f'/api/v1/broadcasts?masjidId={masjid.id}&status=paused',
                      headers=auth_headers(admin)).status_code == 400


# ============================================================================
# RELAY ASSETS
# ============================================================================

def _write_playlist(app, broadcast_id):
    directory = os.path.join(app.config['HLS_OUTPUT_DIR'], 'broadcasts', broadcast_id)
    os.makedirs(directory, exist_ok=True)
    with open(os.path.join(directory, 'index.m3u8'), 'w') as f:
        f.write('#EXTM3U\n')


def test_signed_playlist_is_served(app, client, masjid):
    broadcast = make_broadcast(masjid, status=BroadcastStatus.LIVE)
    _write_playlist(app, broadcast.id)

    response = client.get(sign_hls_url(broadcast.id))

    assert response.status_code == 200
    assert response.mimetype == 'application/vnd.apple.mpegurl'
    assert response.headers['Cache-Control'] == 'no-cache'
    assert response.data.startswith(b'#EXTM3U')


def test_playlist_without_signature_needs_subscriber(app, client, listener, masjid):
    broadcast = make_broadcast(masjid, status=BroadcastStatus.LIVE)
    _write_playlist(app, broadcast.id)
    url = f'/api/v1/broadcasts/{broadcast.id}/hls/index.m3u8'

    assert client.get(url).status_code == 401
    assert client.get(url, headers=auth_headers(listener)).status_code == 403

    subscribe(listener, masjid)
    assert client.get(url, headers=auth_headers(listener)).status_code == 200


def test_missing_asset_is_not_found(app, client, masjid):
    broadcast = make_broadcast(masjid, status=BroadcastStatus.LIVE)
    signed = sign_hls_url(broadcast.id).replace('index.m3u8', 'segment_00009.m4s')

    assert client.get(signed).status_code == 404
    assert Broadcast.query.count() == 1
