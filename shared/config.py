"""
Gateway configuration.

Values come from the process environment, optionally seeded from a .env file
in the working directory.
"""

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from shared.constants import (
    DEFAULT_AUDIO_BITRATE,
    DEFAULT_JOB_TIMEOUT,
    DEFAULT_LOCAL_STORAGE_PATH,
    DEFAULT_MAX_CONCURRENT_JOBS,
    DEFAULT_PORT,
    DEFAULT_SIGNED_URL_TTL,
)
from shared.errors import ConfigError


class StorageBackend(Enum):
    """Supported durable stores."""
    CLOUDFLARE_R2 = "r2"
    GENERIC_S3 = "s3"
    LOCAL = "local"


REQUIRED_S3_KEYS = [
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_ENDPOINT",
    "R2_BUCKET_NAME",
]


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}")


@dataclass
class GatewayConfig:
    """
    Runtime configuration for the gateway.

    Credentials are only required for the S3-compatible backends.
    """
    backend: StorageBackend = StorageBackend.CLOUDFLARE_R2
    port: int = DEFAULT_PORT
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    endpoint: Optional[str] = None
    bucket: Optional[str] = None
    local_storage_path: str = DEFAULT_LOCAL_STORAGE_PATH
    yt_dlp_binary: Optional[str] = None  # None runs yt-dlp via the current interpreter
    ffmpeg_binary: str = "ffmpeg"
    cookies_file: Optional[str] = None
    audio_bitrate: int = DEFAULT_AUDIO_BITRATE
    signed_url_ttl: int = DEFAULT_SIGNED_URL_TTL
    max_concurrent_jobs: int = DEFAULT_MAX_CONCURRENT_JOBS
    job_timeout: int = DEFAULT_JOB_TIMEOUT
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None,
                 dotenv_path: Optional[Path] = None) -> 'GatewayConfig':
        """
        Build a config from environment variables.

        Args:
            env: Mapping to read instead of os.environ (tests)
            dotenv_path: Explicit .env file; defaults to ./.env when present

        Raises:
            ConfigError: If a required variable is missing or malformed
        """
        if env is None:
            env_path = dotenv_path or Path.cwd() / ".env"
            if env_path.exists():
                load_dotenv(env_path)
            else:
                load_dotenv()
            env = os.environ

        raw_backend = (env.get("STORAGE_BACKEND") or StorageBackend.CLOUDFLARE_R2.value).strip().lower()
        try:
            backend = StorageBackend(raw_backend)
        except ValueError:
            raise ConfigError(f"Unknown STORAGE_BACKEND {raw_backend!r}")

        if backend is not StorageBackend.LOCAL:
            missing = [key for key in REQUIRED_S3_KEYS if not env.get(key)]
            if missing:
                raise ConfigError(f"Missing required environment variables: {', '.join(missing)}")

        return cls(
            backend=backend,
            port=_int(env, "PORT", DEFAULT_PORT),
            access_key_id=env.get("R2_ACCESS_KEY_ID"),
            secret_access_key=env.get("R2_SECRET_ACCESS_KEY"),
            endpoint=env.get("R2_ENDPOINT"),
            bucket=env.get("R2_BUCKET_NAME"),
            local_storage_path=env.get("LOCAL_STORAGE_PATH") or DEFAULT_LOCAL_STORAGE_PATH,
            yt_dlp_binary=env.get("YT_DLP_BINARY") or None,
            ffmpeg_binary=env.get("FFMPEG_BINARY") or "ffmpeg",
            cookies_file=env.get("YOUTUBE_COOKIES_FILE") or None,
            audio_bitrate=_int(env, "AUDIO_BITRATE_KBPS", DEFAULT_AUDIO_BITRATE),
            signed_url_ttl=_int(env, "SIGNED_URL_TTL", DEFAULT_SIGNED_URL_TTL),
            max_concurrent_jobs=max(1, _int(env, "MAX_CONCURRENT_JOBS", DEFAULT_MAX_CONCURRENT_JOBS)),
            job_timeout=max(0, _int(env, "JOB_TIMEOUT_SECONDS", DEFAULT_JOB_TIMEOUT)),
            log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
        )
