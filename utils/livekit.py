"""
Audio Room Provider
LiveKit rooms, access tokens and RTMP egress for the broadcast relay
"""
import asyncio
import logging
from datetime import timedelta
from typing import Dict, List, Optional
import aiohttp
from flask import current_app
from livekit import api
from utils.errors import ConfigurationError, ProviderError

logger = logging.getLogger(__name__)

# Raised by the server API client for rejected or unreachable requests
PROVIDER_ERRORS = (api.TwirpError, aiohttp.ClientError, OSError, asyncio.TimeoutError)


def _error_text(error) -> str:
    return getattr(error, 'message', None) or str(error) or error.__class__.__name__


def _api_url(url: str) -> str:
    """Server API calls go over HTTP(S) even when clients connect with ws(s)"""
    if url.startswith('wss://'):
        return 'https://' + url[len('wss://'):]
    if url.startswith('ws://'):
        return 'http://' + url[len('ws://'):]
    return url


class RoomService:
    """Thin synchronous wrapper around the LiveKit server API"""

    def __init__(self, url: str, api_key: str, api_secret: str, token_ttl_seconds: int = 3600):
        self.url = url
        self.api_key = api_key
        self.api_secret = api_secret
        self.token_ttl_seconds = token_ttl_seconds

    @classmethod
    def from_config(cls, config) -> 'RoomService':
        return cls(
            config.get('LIVEKIT_URL', ''),
            config.get('LIVEKIT_API_KEY', ''),
            config.get('LIVEKIT_API_SECRET', ''),
            config.get('LIVEKIT_TOKEN_TTL_SECONDS', 3600)
        )

    def missing_settings(self) -> List[str]:
        missing = []
        if not self.url:
            missing.append('LIVEKIT_URL')
        if not self.api_key:
            missing.append('LIVEKIT_API_KEY')
        if not self.api_secret:
            missing.append('LIVEKIT_API_SECRET')
        return missing

    @property
    def is_configured(self) -> bool:
        return not self.missing_settings()

    def config_status(self) -> Dict:
        missing = self.missing_settings()
        return {'ok': not missing, 'missing': missing}

    def _require_config(self):
        missing = self.missing_settings()
        if missing:
            raise ConfigurationError('LiveKit is not configured', details={'missing': missing})

    def _call(self, coro_factory):
        """Run one request against a short-lived API client"""
        async def runner():
            lk = api.LiveKitAPI(_api_url(self.url), self.api_key, self.api_secret)
            try:
                return await coro_factory(lk)
            finally:
                await lk.aclose()
        return asyncio.run(runner())

    def create_room(self, name: str):
        """
        Ensure a room exists; an existing room is not an error

        Raises:
            ConfigurationError: If credentials are missing
            ProviderError: If the provider rejects the request
        """
        self._require_config()

        async def create(lk):
            try:
                return await lk.room.create_room(api.CreateRoomRequest(name=name))
            except api.TwirpError as e:
                if e.code == 'already_exists' or 'already exists' in (e.message or '').lower():
                    return None
                raise

        try:
            self._call(create)
        except PROVIDER_ERRORS as e:
            logger.error(f"LiveKit room creation failed for {name}: {_error_text(e)}")
            raise ProviderError('Failed to create audio room', details={'room': name, 'error': _error_text(e)})
        logger.info(f"Audio room ready: {name}")

    def delete_room(self, name: Optional[str]):
        """Release a room; failures are only logged"""
        if not name or not self.is_configured:
            return
        try:
            self._call(lambda lk: lk.room.delete_room(api.DeleteRoomRequest(room=name)))
            logger.info(f"Audio room deleted: {name}")
        except Exception as e:
            logger.warning(f"LiveKit room delete failed for {name}: {e}")

    def mint_access_token(self, identity: str, room: str, can_publish: bool = False) -> str:
        """Signed room-join token for a broadcaster or a listener"""
        self._require_config()
        grants = api.VideoGrants(
            room_join=True,
            room=room,
            can_publish=can_publish,
            can_subscribe=True
        )
        return (
            api.AccessToken(self.api_key, self.api_secret)
            .with_identity(identity)
            .with_ttl(timedelta(seconds=self.token_ttl_seconds))
            .with_grants(grants)
            .to_jwt()
        )

    def start_audio_egress(self, room: str, target_url: str, bitrate_kbps: int) -> str:
        """
        Push the room's mixed audio to an RTMP endpoint

        Returns:
            Egress id
        """
        self._require_config()
        request = api.RoomCompositeEgressRequest(
            room_name=room,
            audio_only=True,
            stream_outputs=[api.StreamOutput(protocol=api.StreamProtocol.RTMP, urls=[target_url])],
            advanced=api.EncodingOptions(audio_codec=api.AudioCodec.AAC, audio_bitrate=bitrate_kbps)
        )
        try:
            info = self._call(lambda lk: lk.egress.start_room_composite_egress(request))
        except PROVIDER_ERRORS as e:
            logger.error(f"LiveKit egress failed for {room}: {_error_text(e)}")
            raise ProviderError('Failed to start audio egress', details={'room': room, 'error': _error_text(e)})
        return info.egress_id

    def stop_egress(self, egress_id: Optional[str]):
        if not egress_id or not self.is_configured:
            return
        self._call(lambda lk: lk.egress.stop_egress(api.StopEgressRequest(egress_id=egress_id)))


def get_room_service() -> RoomService:
    """Room service bound to the current app's configuration"""
    service = current_app.extensions.get('room_service')
    if service is None:
        service = RoomService.from_config(current_app.config)
        current_app.extensions['room_service'] = service
    return service
