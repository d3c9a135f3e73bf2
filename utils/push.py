"""
Push Channels
Firebase data messages for Android/web and APNs VoIP pushes for iOS
"""
import json
import logging
import threading
import time
from typing import Dict, NamedTuple, Optional
import httpx
import jwt
import firebase_admin
from firebase_admin import credentials, exceptions, messaging
from flask import current_app

logger = logging.getLogger(__name__)

APNS_PRODUCTION_HOST = 'https://api.push.apple.com'
APNS_DEVELOPMENT_HOST = 'https://api.sandbox.push.apple.com'
APNS_TOKEN_REFRESH_SECONDS = 50 * 60


class PushResult(NamedTuple):
    status: str  # 'sent' | 'failed'
    provider: str
    error: Optional[str] = None


def _stringify(data: Optional[Dict]) -> Dict[str, str]:
    return {str(k): '' if v is None else str(v) for k, v in (data or {}).items()}


class PushGateway:
    """Delivers wake-up payloads; never raises for a single recipient"""

    def __init__(self, config):
        self.fcm_service_account = config.get('FCM_SERVICE_ACCOUNT_JSON', '')
        self.apns_key = config.get('APNS_KEY', '')
        self.apns_key_id = config.get('APNS_KEY_ID', '')
        self.apns_team_id = config.get('APNS_TEAM_ID', '')
        self.apns_topic = config.get('APNS_VOIP_BUNDLE_ID', '')
        self.apns_host = APNS_PRODUCTION_HOST if config.get('APNS_PRODUCTION') else APNS_DEVELOPMENT_HOST

        self._lock = threading.Lock()
        self._fcm_app = None
        self._apns_client = None
        self._apns_token = None
        self._apns_token_issued_at = 0.0

    # ------------------------------------------------------------------
    # FCM
    # ------------------------------------------------------------------

    def _init_fcm(self):
        if self._fcm_app is not None or not self.fcm_service_account:
            return self._fcm_app
        with self._lock:
            if self._fcm_app is None:
                try:
                    cert = credentials.Certificate(json.loads(self.fcm_service_account))
                    self._fcm_app = firebase_admin.initialize_app(cert, name=f'fcm-{id(self)}')
                except (ValueError, TypeError) as e:
                    logger.error(f"FCM initialization failed: {e}")
        return self._fcm_app

    def send_data_message(self, token: Optional[str], payload: Optional[Dict]) -> PushResult:
        """High-priority, zero-TTL data message"""
        if not token:
            return PushResult('failed', 'fcm', 'missing_token')

        app = self._init_fcm()
        if app is None:
            return PushResult('failed', 'fcm', 'fcm_not_configured')

        message = messaging.Message(
            token=token,
            data=_stringify(payload),
            android=messaging.AndroidConfig(priority='high', ttl=0)
        )
        try:
            messaging.send(message, app=app)
            return PushResult('sent', 'fcm')
        except (exceptions.FirebaseError, ValueError) as e:
            return PushResult('failed', 'fcm', str(e) or 'fcm_failed')

    # ------------------------------------------------------------------
    # APNs
    # ------------------------------------------------------------------

    @property
    def apns_configured(self) -> bool:
        return bool(self.apns_key and self.apns_key_id and self.apns_team_id and self.apns_topic)

    def _provider_token(self) -> str:
        """ES256 provider token, reused until it nears Apple's one-hour limit"""
        now = time.time()
        with self._lock:
            if self._apns_token is None or now - self._apns_token_issued_at > APNS_TOKEN_REFRESH_SECONDS:
                self._apns_token = jwt.encode(
                    {'iss': self.apns_team_id, 'iat': int(now)},
                    self.apns_key,
                    algorithm='ES256',
                    headers={'kid': self.apns_key_id}
                )
                self._apns_token_issued_at = now
            return self._apns_token

    def _client(self) -> httpx.Client:
        if self._apns_client is None:
            self._apns_client = httpx.Client(http2=True, timeout=10.0)
        return self._apns_client

    def send_voip_push(self, token: Optional[str], payload: Optional[Dict]) -> PushResult:
        """VoIP push with content-available so the app wakes in the background"""
        if not token:
            return PushResult('failed', 'apns', 'missing_token')
        if not self.apns_configured:
            return PushResult('failed', 'apns', 'apns_not_configured')

        body = {'aps': {'content-available': 1}}
        body.update(_stringify(payload))

        try:
            headers = {
                'authorization': f'bearer {self._provider_token()}',
                'apns-topic': self.apns_topic,
                'apns-push-type': 'voip',
                'apns-priority': '10',
                'apns-expiration': '0',
            }
            response = self._client().post(f'{self.apns_host}/3/device/{token}', json=body, headers=headers)
        except (httpx.HTTPError, jwt.PyJWTError, ValueError) as e:
            return PushResult('failed', 'apns', str(e) or 'apns_failed')

        if response.status_code == 200:
            return PushResult('sent', 'apns')

        try:
            reason = response.json().get('reason')
        except ValueError:
            reason = None
        return PushResult('failed', 'apns', reason or f'apns_http_{response.status_code}')

    def close(self):
        if self._apns_client is not None:
            self._apns_client.close()
            self._apns_client = None


def get_push_gateway() -> PushGateway:
    """Push gateway bound to the current app's configuration"""
    gateway = current_app.extensions.get('push_gateway')
    if gateway is None:
        gateway = PushGateway(current_app.config)
        current_app.extensions['push_gateway'] = gateway
    return gateway
