from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta

from dotenv import load_dotenv

from errors import ConfigError

LOGGER = logging.getLogger(__name__)

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
ENV_PREFIX = "ROBOTRON_"

MEASURE_UNITS = ("metric", "imperial")
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")

# Per-handling deadline, also the long-poll timeout.
HANDLING_TIMEOUT_S = 60.0
POLL_TIMEOUT_S = 60
# Deltas batched into one send/edit.
STREAMING_CHUNK_SIZE = 10
TYPING_INTERVAL_S = 3.0
MAX_TELEGRAM_MEDIA_GROUP = 10
MAX_TELEGRAM_CHUNK = 4096

DEFAULT_THREAD_TTL = timedelta(hours=3)
DEFAULT_OPENAI_MODEL = "gpt-3.5-turbo"
DEFAULT_TRANSCRIPTION_MODEL = "whisper-1"
DEFAULT_IMAGE_MODEL = "dall-e-2"
DEFAULT_IMAGE_SIZE = "1024x1024"
DEFAULT_IMAGE_COUNT = 2

TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Config:
    telegram_token: str
    openai_api_key: str
    allowed_users: frozenset[int]
    measure_units: str = "metric"
    log_level: str = "INFO"
    openai_model: str = DEFAULT_OPENAI_MODEL
    transcription_model: str = DEFAULT_TRANSCRIPTION_MODEL
    image_model: str = DEFAULT_IMAGE_MODEL
    image_size: str = DEFAULT_IMAGE_SIZE
    image_count: int = DEFAULT_IMAGE_COUNT
    thread_ttl: timedelta = DEFAULT_THREAD_TTL
    ffmpeg_cmd: str = "ffmpeg"
    fail_fast: bool = False

    def is_allowed(self, user_id: int | None) -> bool:
        return user_id is not None and user_id in self.allowed_users


def _get(env: Mapping[str, str], key: str) -> str:
    return (env.get(ENV_PREFIX + key) or "").strip()


def _require(env: Mapping[str, str], key: str) -> str:
    value = _get(env, key)
    if not value:
        raise ConfigError(f"missing required setting {ENV_PREFIX}{key}")
    return value


def parse_allowed_users(raw: str) -> frozenset[int]:
    users: set[int] = set()
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        try:
            users.add(int(item))
        except ValueError as exc:
            raise ConfigError(f"invalid user id in {ENV_PREFIX}ALLOWED_USERS: {item!r}") from exc
    if not users:
        raise ConfigError(f"{ENV_PREFIX}ALLOWED_USERS must list at least one user id")
    return frozenset(users)


def parse_log_level(raw: str) -> str:
    level = raw.strip().upper() or "INFO"
    if level == "WARN":
        level = "WARNING"
    if level not in LOG_LEVELS:
        LOGGER.warning("unknown %sLOG_LEVEL %r; using INFO", ENV_PREFIX, raw)
        return "INFO"
    return level


def _parse_int(env: Mapping[str, str], key: str, default: int, *, low: int, high: int | None = None) -> int:
    raw = _get(env, key)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{ENV_PREFIX}{key} must be an integer, got {raw!r}") from exc
    if value < low or (high is not None and value > high):
        bounds = f">= {low}" if high is None else f"between {low} and {high}"
        raise ConfigError(f"{ENV_PREFIX}{key} must be {bounds}, got {value}")
    return value


def load_config(env: Mapping[str, str] | None = None) -> Config:
    if env is None:
        load_dotenv(os.path.join(BASE_DIR, ".env"))
        env = os.environ

    measure_units = _get(env, "MEASURE_UNITS").lower() or "metric"
    if measure_units not in MEASURE_UNITS:
        raise ConfigError(
            f"{ENV_PREFIX}MEASURE_UNITS must be one of {', '.join(MEASURE_UNITS)}, got {measure_units!r}"
        )

    ttl_minutes = _parse_int(
        env,
        "THREAD_TTL_MINUTES",
        int(DEFAULT_THREAD_TTL.total_seconds() // 60),
        low=1,
    )

    return Config(
        telegram_token=_require(env, "TELEGRAM_TOKEN"),
        openai_api_key=_require(env, "OPENAI_API_KEY"),
        allowed_users=parse_allowed_users(_require(env, "ALLOWED_USERS")),
        measure_units=measure_units,
        log_level=parse_log_level(_get(env, "LOG_LEVEL")),
        openai_model=_get(env, "OPENAI_MODEL") or DEFAULT_OPENAI_MODEL,
        transcription_model=_get(env, "TRANSCRIPTION_MODEL") or DEFAULT_TRANSCRIPTION_MODEL,
        image_model=_get(env, "IMAGE_MODEL") or DEFAULT_IMAGE_MODEL,
        image_size=_get(env, "IMAGE_SIZE") or DEFAULT_IMAGE_SIZE,
        image_count=_parse_int(
            env, "IMAGE_COUNT", DEFAULT_IMAGE_COUNT, low=1, high=MAX_TELEGRAM_MEDIA_GROUP
        ),
        thread_ttl=timedelta(minutes=ttl_minutes),
        ffmpeg_cmd=_get(env, "FFMPEG_CMD") or "ffmpeg",
        fail_fast=_get(env, "FAIL_FAST").lower() in TRUTHY,
    )
