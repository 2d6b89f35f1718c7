"""
Hardware Acceleration Detection Utilities

Reads the hardware acceleration capabilities prepared by the container init
script (or the environment) and maps software encoders in transcode
profiles onto their hardware equivalents.
"""

import os
import logging
from typing import Dict, Optional, List
from dataclasses import dataclass, field

from config import settings

logger = logging.getLogger(__name__)

HWACCEL_ENV_FILE = "/tmp/hwaccel.env"
RENDER_DEVICE = "/dev/dri/renderD128"

# software encoder -> hardware encoder, per acceleration type
ENCODER_MAP: Dict[str, Dict[str, str]] = {
    "nvidia": {"libx264": "h264_nvenc", "libx265": "hevc_nvenc"},
    "vaapi": {"libx264": "h264_vaapi", "libx265": "hevc_vaapi"},
    "intel": {"libx264": "h264_qsv", "libx265": "hevc_qsv"},
}


@dataclass
class HardwareAccelConfig:
    """Configuration for hardware acceleration."""
    available: bool
    type: str  # 'nvidia', 'intel', 'vaapi', 'cpu'
    device: str  # 'cuda', 'vaapi', ''
    ffmpeg_args: List[str] = field(default_factory=list)


def _read_env_file(path: str) -> Dict[str, str]:
    env_vars: Dict[str, str] = {}
    if not os.path.exists(path):
        return env_vars
    try:
        with open(path, 'r') as f:
            for line in f:
                if '=' in line and not line.strip().startswith('#'):
                    key, value = line.strip().split('=', 1)
                    env_vars[key] = value
        logger.info(f"Loaded hardware acceleration config from {path}")
    except OSError as e:
        logger.warning(f"Failed to load hardware config from file: {e}")
    return env_vars


class HardwareAccelDetector:
    """Detects and configures hardware acceleration for FFmpeg."""

    def __init__(self, env_file: str = HWACCEL_ENV_FILE):
        self.config = self._load_config(env_file)

    def _load_config(self, env_file: str) -> HardwareAccelConfig:
        env_vars = _read_env_file(env_file)

        # Precedence: settings, init-script file, process environment
        if settings.HW_ACCEL_AVAILABLE is not None:
            available = settings.HW_ACCEL_AVAILABLE
        else:
            available = env_vars.get('HW_ACCEL_AVAILABLE', os.getenv(
                'HW_ACCEL_AVAILABLE', 'false')).lower() == 'true'
        accel_type = settings.HW_ACCEL_TYPE or env_vars.get(
            'HW_ACCEL_TYPE', os.getenv('HW_ACCEL_TYPE', 'cpu'))
        device = settings.HW_ACCEL_DEVICE or env_vars.get(
            'HW_ACCEL_DEVICE', os.getenv('HW_ACCEL_DEVICE', ''))

        config = HardwareAccelConfig(
            available=available,
            type=accel_type,
            device=device,
            ffmpeg_args=self._generate_ffmpeg_args(available, accel_type, device),
        )
        logger.info(f"Hardware acceleration config: {config}")
        return config

    def _generate_ffmpeg_args(self, available: bool, accel_type: str, device: str) -> List[str]:
        """Input-side decode acceleration arguments."""
        if not available or accel_type == 'cpu':
            return []

        args = []
        if accel_type == 'nvidia' and device == 'cuda':
            args.extend(['-hwaccel', 'cuda', '-hwaccel_output_format', 'cuda'])
        elif device == 'vaapi':
            args.extend(['-hwaccel', 'vaapi', '-hwaccel_output_format', 'vaapi'])
            if os.path.exists(RENDER_DEVICE):
                args.extend(['-vaapi_device', RENDER_DEVICE])
        return args

    def video_encoder(self, codec: str) -> str:
        """Hardware encoder for a software codec, or the codec unchanged."""
        if not self.config.available:
            return codec
        key = 'vaapi' if self.config.device == 'vaapi' and self.config.type != 'nvidia' else self.config.type
        return ENCODER_MAP.get(key, {}).get(codec, codec)

    def get_basic_args(self) -> List[str]:
        return self.config.ffmpeg_args.copy()

    def is_available(self) -> bool:
        return self.config.available

    def log_capabilities(self):
        """Log the detected hardware acceleration capabilities."""
        if self.config.available:
            logger.info(
                f"🚀 Hardware acceleration ENABLED: {self.config.type} ({self.config.device})")
        else:
            logger.info("💻 Using CPU-only transcoding (no hardware acceleration)")


# Global instance for easy access
hw_accel = HardwareAccelDetector()
