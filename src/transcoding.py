"""
Transcode Profile System

Standard encoder profiles, per-channel profile selection and the
deterministic FFmpeg command builder used by the transcode supervisor.
"""

import base64
import re
import logging
from typing import Dict, List, Optional, Tuple
from urllib.parse import unquote, urlparse, urlunparse

from hwaccel import HardwareAccelDetector
from models import AudioSettings, OutputFormat, StreamOutput, TranscodeProfile, UpstreamSource, VideoSettings

logger = logging.getLogger(__name__)

HLS_WINDOW_SIZE = 10
DASH_WINDOW_SIZE = 5

STANDARD_PROFILES: Dict[str, TranscodeProfile] = {
    "hd_h264": TranscodeProfile(
        name="hd_h264",
        video=VideoSettings(codec="libx264", bitrate="3000k", resolution="1280x720", fps=25),
        audio=AudioSettings(codec="aac", bitrate="128k", sample_rate=48000),
        output_format=OutputFormat.HLS,
        preset="medium",
        options=("-g", "50", "-keyint_min", "25", "-sc_threshold", "0"),
    ),
    "sd_h264": TranscodeProfile(
        name="sd_h264",
        video=VideoSettings(codec="libx264", bitrate="1500k", resolution="854x480", fps=25),
        audio=AudioSettings(codec="aac", bitrate="96k", sample_rate=44100),
        output_format=OutputFormat.HLS,
        preset="medium",
        options=("-g", "50", "-keyint_min", "25"),
    ),
    "low_latency": TranscodeProfile(
        name="low_latency",
        video=VideoSettings(codec="libx264", bitrate="2000k", fps=30),
        audio=AudioSettings(codec="aac", bitrate="128k", sample_rate=48000),
        output_format=OutputFormat.HLS,
        preset="ultrafast",
        options=("-tune", "zerolatency", "-g", "30"),
        segment_duration=2,
    ),
}

# Basic security check on operator-supplied extra options
DANGEROUS_PATTERNS = [
    r';', r'&&', r'\|\|', r'`', r'\$\(',
    r'^file:', r'\bconcat:', r'\bpipe:',
]


def split_credentials(source: UpstreamSource) -> Tuple[str, Optional[str], Optional[str]]:
    """Input URL without userinfo, plus the credentials to send.

    Credentials set on the source win over ones embedded in the URL.
    """
    parsed = urlparse(source.url)
    username, password = source.username, source.password
    url = source.url
    if parsed.username:
        if not username:
            username = unquote(parsed.username)
            password = unquote(parsed.password) if parsed.password else None
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        url = urlunparse(parsed._replace(netloc=netloc))
    return url, username, password


def basic_auth_header(username: str, password: Optional[str]) -> str:
    token = base64.b64encode(f"{username}:{password or ''}".encode("utf-8")).decode("ascii")
    return f"Authorization: Basic {token}\r\n"


def build_command(
    source: UpstreamSource,
    output: StreamOutput,
    profile: TranscodeProfile,
    stream_id: str,
    ffmpeg_path: str = "ffmpeg",
    service_name: str = "IPTV Stream Gateway",
    hwaccel: Optional[HardwareAccelDetector] = None,
) -> List[str]:
    """
    Assemble the transcoder argv for one stream.

    Identical inputs always produce an identical list. The output target
    (playlist, manifest or RTMP URL) comes last so that every option
    before it applies to that output.

    Raises:
        ValueError: if the output is missing its path or URL
    """
    if output.format in (OutputFormat.HLS, OutputFormat.DASH) and not output.path:
        raise ValueError(f"{output.format.value} output requires a path")
    if output.format == OutputFormat.RTMP and not output.url:
        raise ValueError("rtmp output requires a destination url")

    cmd = [ffmpeg_path]
    if hwaccel is not None:
        cmd.extend(hwaccel.get_basic_args())

    input_url, username, password = split_credentials(source)
    cmd.append('-re')
    if username:
        cmd.extend(['-headers', basic_auth_header(username, password)])
    cmd.extend(['-i', input_url])

    video = profile.video
    encoder = hwaccel.video_encoder(video.codec) if hwaccel is not None else video.codec
    cmd.extend(['-c:v', encoder, '-b:v', video.bitrate])
    if video.resolution:
        cmd.extend(['-s', video.resolution])
    if video.fps:
        cmd.extend(['-r', str(video.fps)])

    audio = profile.audio
    cmd.extend(['-c:a', audio.codec, '-b:a', audio.bitrate])
    if audio.sample_rate:
        cmd.extend(['-ar', str(audio.sample_rate)])

    cmd.extend(['-preset', profile.preset])

    if output.format == OutputFormat.HLS:
        cmd.extend([
            '-f', 'hls',
            '-hls_time', str(profile.segment_duration),
            '-hls_list_size', str(profile.window_size or HLS_WINDOW_SIZE),
            '-hls_flags', 'delete_segments+append_list',
            '-hls_segment_filename', f"{output.path}/segment_%03d.ts",
        ])
        target = f"{output.path}/playlist.m3u8"
    elif output.format == OutputFormat.DASH:
        cmd.extend([
            '-f', 'dash',
            '-seg_duration', str(profile.segment_duration),
            '-window_size', str(profile.window_size or DASH_WINDOW_SIZE),
            '-remove_at_exit', '1',
        ])
        target = f"{output.path}/manifest.mpd"
    else:
        cmd.extend(['-f', 'flv'])
        target = output.url

    cmd.extend(profile.options)
    cmd.extend(['-metadata', f"title={service_name} - Stream {stream_id}"])
    cmd.extend(['-y', target])
    return cmd


def redact_command(cmd: List[str]) -> str:
    """Command line for logs with the auth header masked."""
    shown = []
    for i, arg in enumerate(cmd):
        if i > 0 and cmd[i - 1] == '-headers':
            shown.append('"Authorization: Basic ***"')
        else:
            shown.append(arg)
    return " ".join(shown)


class TranscodeProfileManager:
    """Manages transcode profiles and resolves a channel's requested quality."""

    def __init__(self):
        self.profiles: Dict[str, TranscodeProfile] = dict(STANDARD_PROFILES)

    def get_profile(self, name: str) -> Optional[TranscodeProfile]:
        return self.profiles.get(name)

    def list_profiles(self) -> Dict[str, str]:
        return {name: profile.output_format.value for name, profile in self.profiles.items()}

    def add_profile(self, profile: TranscodeProfile) -> bool:
        if not self.validate_options(profile.options):
            return False
        self.profiles[profile.name] = profile
        logger.info(f"Registered transcode profile {profile.name}")
        return True

    def validate_options(self, options) -> bool:
        for option in options:
            for pattern in DANGEROUS_PATTERNS:
                if re.search(pattern, option, re.IGNORECASE):
                    logger.warning(f"Profile option contains potentially dangerous pattern: {pattern}")
                    return False
        return True

    def select(self, channel_profiles: Optional[Dict[str, str]], quality: Optional[str]) -> Optional[TranscodeProfile]:
        """Profile for a requested quality, or None for relay delivery.

        The channel's quality map is consulted first; a quality that names a
        registered profile directly also selects it.
        """
        if not quality:
            return None
        name = (channel_profiles or {}).get(quality, quality)
        profile = self.profiles.get(name)
        if profile is None and name != quality:
            logger.warning(f"Channel maps quality {quality} to unknown profile {name}")
        return profile


# Global profile manager instance
profile_manager = TranscodeProfileManager()


def get_profile_manager() -> TranscodeProfileManager:
    """Get the global profile manager instance."""
    return profile_manager
