"""
Key/value policy source.

Operators override stream and ad-policy behaviour through named string keys.
Values come from an optional JSON file and fall back to the caller's default;
each resolved key is cached for ``CACHE_TTL`` seconds. Typed accessors parse the
strings leniently: a value that does not parse is replaced by the configured
default rather than failing the request.
"""

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional

import aiofiles
import aiofiles.os

from adflow_proxy.ads.placement import AdPolicy
from adflow_proxy.configs import settings

logger = logging.getLogger(__name__)

CACHE_TTL = 60

CORS_PROXY_URL = "cors_proxy_url"
CORS_PROXY_ENABLED = "cors_proxy_enabled"
SEGMENTS_TO_SKIP = "segments_to_skip"
PROXY_SEGMENT_MODE = "proxy_segment_mode"

AD_POLICY_KEYS = {
    "always_preroll": "ad_always_preroll",
    "preroll_enabled": "ad_preroll_enabled",
    "postroll_enabled": "ad_postroll_enabled",
    "midroll_enabled": "ad_midroll_enabled",
    "midroll_interval": "ad_midroll_interval",
    "max_ads_per_video": "ad_max_ads_per_video",
    "min_duration_for_midroll": "ad_min_duration_for_midroll",
}

PROXY_SEGMENT_MODES = ("cors", "full", "passthrough")


@dataclass(frozen=True)
class StreamSettings:
    cors_proxy_enabled: bool
    cors_proxy_url: str
    segments_to_skip: int
    proxy_segment_mode: str


def parse_bool(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in ("true", "1", "yes", "on"):
        return True
    if normalized in ("false", "0", "no", "off"):
        return False
    return default


def parse_non_negative_int(value: Optional[str], default: int) -> int:
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return default
    return parsed if parsed >= 0 else default


class SiteSettingsStore:
    def __init__(self, path: Optional[Path] = None, ttl: float = CACHE_TTL, clock: Callable[[], float] = time.time):
        self.path = Path(path) if path else None
        self.ttl = ttl
        self._clock = clock
        self._cache: dict[str, tuple[str, float]] = {}
        # Used instead of the file when no file is configured.
        self._memory: dict[str, str] = {}

    @classmethod
    def from_settings(cls) -> "SiteSettingsStore":
        return cls(settings.site_settings_file)

    async def _read_all(self) -> dict[str, str]:
        if self.path is None:
            return dict(self._memory)
        try:
            async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                data = json.loads(await f.read())
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.error(f"Error reading site settings {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.error(f"Site settings {self.path} must hold a JSON object")
            return {}
        return {str(key): str(value) for key, value in data.items() if value is not None}

    async def get(self, key: str, default: str = "") -> str:
        # The stored value is cached, never the caller's default.
        cached = self._cache.get(key)
        if cached and self._clock() - cached[1] < self.ttl:
            return cached[0] or default

        value = (await self._read_all()).get(key, "")
        self._cache[key] = (value, self._clock())
        return value or default

    async def get_many(self, keys: Iterable[str], defaults: Optional[dict[str, str]] = None) -> dict[str, str]:
        defaults = defaults or {}
        return {key: await self.get(key, defaults.get(key, "")) for key in keys}

    async def set(self, key: str, value: str) -> None:
        if self.path is None:
            self._memory[key] = value
        else:
            data = await self._read_all()
            data[key] = value
            await aiofiles.os.makedirs(self.path.parent, exist_ok=True)
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(json.dumps(data, indent=2))
            await aiofiles.os.replace(tmp_path, self.path)
        self._cache[key] = (value, self._clock())
        logger.info(f"Updated site setting {key}")

    def clear_cache(self) -> None:
        self._cache.clear()

    async def get_stream_settings(self) -> StreamSettings:
        values = await self.get_many(
            [CORS_PROXY_ENABLED, CORS_PROXY_URL, SEGMENTS_TO_SKIP, PROXY_SEGMENT_MODE],
            {
                CORS_PROXY_ENABLED: str(settings.cors_proxy_enabled).lower(),
                CORS_PROXY_URL: settings.cors_proxy_url,
                SEGMENTS_TO_SKIP: str(settings.segments_to_skip),
                PROXY_SEGMENT_MODE: settings.proxy_segment_mode,
            },
        )
        mode = values[PROXY_SEGMENT_MODE].strip().lower()
        return StreamSettings(
            cors_proxy_enabled=parse_bool(values[CORS_PROXY_ENABLED], settings.cors_proxy_enabled),
            cors_proxy_url=values[CORS_PROXY_URL].strip() or settings.cors_proxy_url,
            segments_to_skip=parse_non_negative_int(values[SEGMENTS_TO_SKIP], settings.segments_to_skip),
            proxy_segment_mode=mode if mode in PROXY_SEGMENT_MODES else settings.proxy_segment_mode,
        )

    async def get_ad_policy(self) -> AdPolicy:
        defaults = settings.ad_policy.model_dump()
        values = await self.get_many(
            AD_POLICY_KEYS.values(),
            {key: str(defaults[field]).lower() for field, key in AD_POLICY_KEYS.items()},
        )
        parsed = {}
        for field, key in AD_POLICY_KEYS.items():
            if isinstance(defaults[field], bool):
                parsed[field] = parse_bool(values[key], defaults[field])
            else:
                parsed[field] = parse_non_negative_int(values[key], defaults[field])
        return AdPolicy(**parsed)
