"""
HLS Relay Module
Keeps at most one ffmpeg relay per live broadcast and signs playlist URLs for listeners
"""
import hashlib
import hmac
import logging
import os
import subprocess
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from flask import current_app
from utils.errors import ConfigurationError, ConflictError, ProviderError
from utils.livekit import get_room_service

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    '.m3u8': 'application/vnd.apple.mpegurl',
    '.m4s': 'video/iso.segment',
    '.mp4': 'video/mp4',
}


@dataclass
class ActiveRelay:
    broadcast_id: str
    room_name: str
    rtmp_url: str
    egress_id: Optional[str]
    process: subprocess.Popen
    hls_url: Optional[str]
    started_at: float = field(default_factory=time.time)

    def info(self) -> Dict:
        return {'hls_url': self.hls_url, 'egress_id': self.egress_id, 'rtmp_url': self.rtmp_url}


def apply_template(template: str, broadcast_id: str, room_name: str) -> str:
    """Substitute {broadcastId} and {roomName} placeholders"""
    return template.replace('{broadcastId}', broadcast_id or '').replace('{roomName}', room_name or '')


def public_playlist_url(config, broadcast_id: str) -> Optional[str]:
    base = config.get('HLS_PUBLIC_BASE_URL')
    if not base:
        return None
    return f"{base.rstrip('/')}/broadcasts/{broadcast_id}/index.m3u8"


def _signature(secret: str, broadcast_id: str, exp: int) -> str:
    message = f"{broadcast_id}.{exp}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def sign_hls_url(broadcast_id: str, base_path: str = '/api/v1', now: Optional[float] = None) -> Optional[str]:
    """
    Time-limited playlist URL served by the asset endpoint

    Returns:
        Path with exp and sig query parameters, or None without a signing secret
    """
    secret = current_app.config.get('HLS_SIGNING_SECRET')
    if not secret:
        return None
    ttl = current_app.config.get('HLS_URL_TTL_SECONDS') or 900
    exp = int(now if now is not None else time.time()) + ttl
    sig = _signature(secret, broadcast_id, exp)
    return f"{base_path.rstrip('/')}/broadcasts/{broadcast_id}/hls/index.m3u8?exp={exp}&sig={sig}"


def verify_hls_signature(broadcast_id: str, exp, sig, now: Optional[float] = None) -> bool:
    secret = current_app.config.get('HLS_SIGNING_SECRET')
    if not secret or not exp or not sig:
        return False
    try:
        exp_value = int(exp)
    except (TypeError, ValueError):
        return False
    if exp_value < int(now if now is not None else time.time()):
        return False
    expected = _signature(secret, broadcast_id, exp_value)
    if len(expected) != len(sig):
        return False
    return hmac.compare_digest(expected, sig)


def content_type_for(filename: str) -> str:
    return CONTENT_TYPES.get(os.path.splitext(filename)[1].lower(), 'application/octet-stream')


def build_ffmpeg_args(input_url: str, output_dir: str, bitrate_kbps: int, segment_seconds: int) -> List[str]:
    """ffmpeg arguments for an audio-only fMP4 HLS event playlist"""
    return [
        '-hide_banner',
        '-loglevel', 'error',
        '-i', input_url,
        '-vn',
        '-c:a', 'libopus',
        '-b:a', f'{bitrate_kbps}k',
        '-application', 'audio',
        '-f', 'hls',
        '-hls_time', str(max(1, segment_seconds)),
        '-hls_playlist_type', 'event',
        '-hls_flags', 'delete_segments+append_list+program_date_time+independent_segments',
        '-hls_segment_type', 'fmp4',
        '-hls_list_size', '6',
        '-hls_fmp4_init_filename', 'init.mp4',
        '-hls_segment_filename', f'{output_dir}/segment_%05d.m4s',
        f'{output_dir}/index.m3u8',
    ]


class RelayManager:
    """
    Process-local table of running relays

    The table is only mutated by start_relay, stop_relay and the exit watcher
    of each relay process, all under one lock.
    """

    def __init__(self, config, room_service):
        self.config = config
        self.room_service = room_service
        self._lock = threading.Lock()
        self._relays: Dict[str, ActiveRelay] = {}
        self._starting = set()

    @property
    def enabled(self) -> bool:
        return bool(self.config.get('HLS_ENABLED'))

    def active_count(self) -> int:
        with self._lock:
            return len(self._relays)

    def get(self, broadcast_id: str) -> Optional[ActiveRelay]:
        with self._lock:
            return self._relays.get(broadcast_id)

    def _command(self, broadcast_id: str, play_url: str, output_dir: str) -> List[str]:
        bitrate = self.config.get('HLS_AUDIO_BITRATE_KBPS', 64)
        segment = self.config.get('HLS_SEGMENT_SECONDS', 2)

        if self.config.get('HLS_FFMPEG_MODE') == 'docker':
            host_dir = self.config.get('HLS_HOST_OUTPUT_DIR') or os.path.abspath(self.config['HLS_OUTPUT_DIR'])
            container_dir = f'/hls/broadcasts/{broadcast_id}'
            cmd = ['docker', 'run', '--rm', '--name', f"{self.config.get('HLS_FFMPEG_CONTAINER_PREFIX', 'hls-relay-')}{broadcast_id}"]
            if self.config.get('HLS_FFMPEG_DOCKER_NETWORK'):
                cmd += ['--network', self.config['HLS_FFMPEG_DOCKER_NETWORK']]
            cmd += ['-v', f'{host_dir}:/hls', self.config['HLS_FFMPEG_DOCKER_IMAGE'], 'ffmpeg']
            return cmd + build_ffmpeg_args(play_url, container_dir, bitrate, segment)

        return [self.config.get('HLS_FFMPEG_PATH', 'ffmpeg')] + build_ffmpeg_args(play_url, output_dir, bitrate, segment)

    def start_relay(self, broadcast_id: str, room_name: str) -> Dict:
        """
        Start the egress + ffmpeg pipeline for a broadcast

        Returns the existing relay's info when one is already running.

        Raises:
            ConfigurationError: Relay disabled or URL templates missing
            ConflictError: Relay table full or a start already in progress
            ProviderError: Egress or process start failed
        """
        if not self.enabled:
            raise ConfigurationError('HLS relay is disabled')

        publish_template = self.config.get('HLS_RTMP_PUBLISH_URL_TEMPLATE')
        if not publish_template:
            raise ConfigurationError('HLS relay is not configured', details={'missing': ['HLS_RTMP_PUBLISH_URL_TEMPLATE']})

        with self._lock:
            existing = self._relays.get(broadcast_id)
            if existing is not None:
                return existing.info()
            if broadcast_id in self._starting:
                raise ConflictError('Relay start already in progress', details={'broadcastId': broadcast_id})
            if len(self._relays) + len(self._starting) >= self.config.get('HLS_MAX_RELAYS', 50):
                raise ConflictError('Relay capacity reached', details={'max': self.config.get('HLS_MAX_RELAYS', 50)})
            self._starting.add(broadcast_id)

        try:
            return self._spawn(broadcast_id, room_name, publish_template)
        finally:
            with self._lock:
                self._starting.discard(broadcast_id)

    def _spawn(self, broadcast_id: str, room_name: str, publish_template: str) -> Dict:
        publish_url = apply_template(publish_template, broadcast_id, room_name)
        play_template = self.config.get('HLS_RTMP_PLAY_URL_TEMPLATE') or publish_template
        play_url = apply_template(play_template, broadcast_id, room_name)

        output_dir = os.path.join(self.config['HLS_OUTPUT_DIR'], 'broadcasts', broadcast_id)
        os.makedirs(output_dir, exist_ok=True)

        egress_id = self.room_service.start_audio_egress(
            room_name, publish_url, self.config.get('HLS_AUDIO_BITRATE_KBPS', 64)
        )

        cmd = self._command(broadcast_id, play_url, output_dir)
        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                encoding='utf-8',
                errors='replace'
            )
        except OSError as e:
            self._stop_egress(broadcast_id, egress_id)
            raise ProviderError('Failed to start relay process', details={'error': str(e), 'command': cmd[0]})

        relay = ActiveRelay(
            broadcast_id=broadcast_id,
            room_name=room_name,
            rtmp_url=publish_url,
            egress_id=egress_id,
            process=process,
            hls_url=public_playlist_url(self.config, broadcast_id)
        )
        with self._lock:
            self._relays[broadcast_id] = relay

        threading.Thread(
            target=self._watch,
            args=(broadcast_id, process),
            name=f'relay-{broadcast_id}',
            daemon=True
        ).start()

        logger.info(f"Relay started for broadcast {broadcast_id} (pid={process.pid}, egress={egress_id})")
        return relay.info()

    def _watch(self, broadcast_id: str, process: subprocess.Popen):
        """Drain stderr, then drop the table entry once the process exits"""
        try:
            if process.stderr is not None:
                for line in process.stderr:
                    line = line.rstrip()
                    if line:
                        logger.warning(f"[relay {broadcast_id}] {line}")
        except (OSError, ValueError) as e:
            logger.warning(f"Stopped reading relay output for broadcast {broadcast_id}: {e}")
        finally:
            code = process.wait()
            with self._lock:
                relay = self._relays.get(broadcast_id)
                if relay is not None and relay.process is process:
                    del self._relays[broadcast_id]
        logger.info(f"Relay process for broadcast {broadcast_id} exited with code {code}")

    def stop_relay(self, broadcast_id: str) -> bool:
        """
        Stop a relay; unknown ids are a no-op

        Returns:
            True if a relay was stopped
        """
        with self._lock:
            relay = self._relays.pop(broadcast_id, None)
        if relay is None:
            return False

        self._terminate(relay.process)
        self._stop_egress(broadcast_id, relay.egress_id)
        logger.info(f"Relay stopped for broadcast {broadcast_id}")
        return True

    def _terminate(self, process: subprocess.Popen):
        if process.poll() is not None:
            return
        process.terminate()
        try:
            process.wait(timeout=self.config.get('HLS_STOP_TIMEOUT_SECONDS', 5))
        except subprocess.TimeoutExpired:
            logger.warning(f"Relay process {process.pid} ignored SIGTERM, killing")
            process.kill()

    def _stop_egress(self, broadcast_id: str, egress_id: Optional[str]):
        try:
            self.room_service.stop_egress(egress_id)
        except Exception as e:
            logger.warning(f"Failed to stop egress {egress_id} for broadcast {broadcast_id}: {e}")

    def stop_all(self):
        with self._lock:
            ids = list(self._relays)
        for broadcast_id in ids:
            self.stop_relay(broadcast_id)


def get_relay_manager() -> RelayManager:
    """Relay manager bound to the current app"""
    manager = current_app.extensions.get('relay_manager')
    if manager is None:
        manager = RelayManager(current_app.config, get_room_service())
        current_app.extensions['relay_manager'] = manager
    return manager
