import asyncio
import logging
import math
import random
import re
import time
import uuid
from dataclasses import dataclass
from typing import Optional
from urllib import parse

from adflow_proxy.ads.catalog import AdCreative, BaseAdCatalog
from adflow_proxy.ads.placement import AdPlacement, AdPolicy, PlacementRole, assign_creatives, compute_placements
from adflow_proxy.configs import settings
from adflow_proxy.const import HLS_HEADER_TAGS
from adflow_proxy.transcoder.ad_transcoder import TranscodeCoordinator, segment_number
from adflow_proxy.transcoder.formats import DEFAULT_FORMAT, VideoFormat
from adflow_proxy.transcoder.prober import BaseProber
from adflow_proxy.utils.site_settings import SiteSettingsStore

logger = logging.getLogger(__name__)

DISCONTINUITY_TAG = "#EXT-X-DISCONTINUITY"
ENDLIST_TAG = "#EXT-X-ENDLIST"
UNENCRYPTED_KEY_TAG = "#EXT-X-KEY:METHOD=NONE"
# Lines after the first discontinuity searched for the content key of a foreign pre-roll.
KEY_LOOKAHEAD = 4

_EXTINF_RE = re.compile(r"^#EXTINF:\s*([0-9.]+)")
_URI_RE = re.compile(r'URI="([^"]+)"')


@dataclass
class ProcessedPlaylist:
    content: str
    duration: float
    segment_count: int
    ads_injected: int
    detected_format: Optional[VideoFormat] = None
    used_transcoded_variant: bool = False
    foreign_ads_stripped: int = 0


def _is_encrypted_key(line: str) -> bool:
    return line.startswith("#EXT-X-KEY:") and "METHOD=AES-128" in line


def _extinf_duration(line: str) -> float:
    match = _EXTINF_RE.match(line.strip())
    if not match:
        return 0.0
    try:
        return float(match.group(1))
    except ValueError:
        return 0.0


def calculate_m3u8_duration(content: str) -> float:
    """Sum of all ``#EXTINF`` durations; 0 when the playlist has none."""
    return sum(_extinf_duration(line) for line in content.splitlines() if line.startswith("#EXTINF:"))


def strip_foreign_preroll(content: str, max_segments: int = None) -> tuple[str, int]:
    """
    Remove an ad block a CDN prepended to an encrypted stream.

    The pattern is a run of unencrypted segments, a discontinuity, then the
    ``AES-128`` key of the real content. Runs longer than ``max_segments`` are
    assumed to be content and left alone.

    Returns:
        tuple[str, int]: The playlist and the number of segments removed.
    """
    max_segments = settings.foreign_ad_max_segments if max_segments is None else max_segments
    lines = content.splitlines()

    discontinuity_index = next((i for i, line in enumerate(lines) if line.strip() == DISCONTINUITY_TAG), None)
    if discontinuity_index is None:
        return content, 0

    before = lines[:discontinuity_index]
    if any(_is_encrypted_key(line) for line in before):
        return content, 0

    following = lines[discontinuity_index + 1 : discontinuity_index + 1 + KEY_LOOKAHEAD]
    if not any(_is_encrypted_key(line) for line in following):
        return content, 0

    segment_count = sum(1 for line in before if line.startswith("#EXTINF:"))
    if segment_count == 0 or segment_count > max_segments:
        if segment_count:
            logger.info(f"Leaving {segment_count} segments before first discontinuity, too many for an ad")
        return content, 0

    header = [line for line in before if line.startswith(HLS_HEADER_TAGS)]
    logger.info(f"Stripped {segment_count} foreign pre-roll segments")
    return "\n".join(header + lines[discontinuity_index + 1 :]), segment_count


def trim_playlist_start(content: str, seconds: float) -> str:
    """Drop leading segments until at least ``seconds`` of content has been removed."""
    if seconds <= 0:
        return content

    result = []
    trimmed = 0.0
    pending_extinf = None
    for line in content.splitlines():
        if line.startswith("#EXTINF:"):
            pending_extinf = line
        elif line.strip() and not line.startswith("#"):
            if trimmed < seconds:
                trimmed += _extinf_duration(pending_extinf or "")
            else:
                if pending_extinf:
                    result.append(pending_extinf)
                result.append(line)
            pending_extinf = None
        else:
            result.append(line)
    logger.debug(f"Trimmed {trimmed:.1f}s from playlist start")
    return "\n".join(result)


def first_segment_url(content: str, base_url: str) -> Optional[str]:
    for line in content.splitlines():
        stripped = line.strip()
        if stripped and not stripped.startswith("#"):
            return parse.urljoin(base_url, stripped)
    return None


def _round_percentage(value: float) -> int:
    # Half rounds up, 12.5 -> 13.
    return math.floor(value + 0.5)


class M3U8Processor:
    def __init__(
        self,
        ad_catalog: Optional[BaseAdCatalog] = None,
        prober: Optional[BaseProber] = None,
        coordinator: Optional[TranscodeCoordinator] = None,
        site_settings: Optional[SiteSettingsStore] = None,
        public_base_url: str = None,
        segment_proxy_mode: str = None,
        cors_proxy_url: str = None,
        segment_proxy_url: str = None,
        segment_proxy_params: Optional[dict] = None,
        ads_enabled: bool = True,
        segments_to_skip: int = None,
        skip_format_detection: bool = False,
        video_id: str = None,
        foreign_ad_max_segments: int = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Initializes the M3U8Processor with its collaborators and per-request options.

        Args:
            ad_catalog (BaseAdCatalog, optional): Source of ad creatives. No ads are injected without one.
            prober (BaseProber, optional): Detects the stream's format. Defaults to None (no detection).
            coordinator (TranscodeCoordinator, optional): Prepares format-matched ad variants.
            site_settings (SiteSettingsStore, optional): Policy overrides. Defaults to the configured settings.
            public_base_url (str, optional): This service's origin, used for ad and segment proxy URLs.
            segment_proxy_mode (str, optional): "cors", "full" or "passthrough"; overrides the site setting.
            cors_proxy_url (str, optional): Overrides the CORS proxy prefix.
            segment_proxy_url (str, optional): Target of "full" mode. Defaults to ``{public_base_url}/proxy/segment``.
            segment_proxy_params (dict, optional): Extra query parameters for "full" mode URLs.
            ads_enabled (bool, optional): Whether to inject ads. Defaults to True.
            segments_to_skip (int, optional): Overrides the number of content segments dropped after a pre-roll.
            skip_format_detection (bool, optional): Always use the creatives' original segments.
            video_id (str, optional): Identifier appended to ad URLs for tracking.
            foreign_ad_max_segments (int, optional): Largest block treated as a foreign pre-roll.
            rng (random.Random, optional): Random source for creative and ad segment selection.
        """
        self.ad_catalog = ad_catalog
        self.prober = prober
        self.coordinator = coordinator
        self.site_settings = site_settings or SiteSettingsStore()
        self.public_base_url = (public_base_url or settings.public_base_url).rstrip("/")
        self.segment_proxy_mode = segment_proxy_mode
        self.cors_proxy_url = cors_proxy_url
        self.segment_proxy_url = segment_proxy_url or f"{self.public_base_url}/proxy/segment"
        self.segment_proxy_params = segment_proxy_params or {}
        self.ads_enabled = ads_enabled
        self.segments_to_skip = segments_to_skip
        self.skip_format_detection = skip_format_detection
        self.video_id = video_id or f"ext-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"
        self.foreign_ad_max_segments = foreign_ad_max_segments
        self.rng = rng or random.Random()

    def is_own_url(self, url: str) -> bool:
        return url.startswith(self.public_base_url + "/") or url == self.public_base_url

    def proxy_segment_url(self, url: str, mode: str, cors_proxy_url: str) -> str:
        """
        Apply a segment proxy mode to an absolute URL. URLs on this service are returned unchanged.
        """
        if self.is_own_url(url):
            return url
        if mode == "cors":
            return f"{cors_proxy_url}{url}"
        if mode == "full":
            query = parse.urlencode({"url": url, **self.segment_proxy_params})
            return f"{self.segment_proxy_url}?{query}"
        return url

    async def _plan_ads(self, duration: float) -> list[AdPlacement]:
        try:
            policy = await self.site_settings.get_ad_policy()
        except Exception as e:
            logger.warning(f"Error reading ad policy, using defaults: {e}")
            policy = AdPolicy.from_config(settings.ad_policy)

        placements = compute_placements(duration, policy)
        if not placements:
            return []
        try:
            return await assign_creatives(placements, self.ad_catalog, self.rng)
        except Exception as e:
            logger.warning(f"Error loading ad catalog, serving without ads: {e}")
            return []

    async def _prepare_variants(
        self, content: str, base_url: str, assigned: list[AdPlacement], mode: str, cors_proxy_url: str
    ) -> tuple[VideoFormat, dict[str, list[str]]]:
        detected = None
        segment_url = first_segment_url(content, base_url)
        if segment_url:
            # Probe exactly what the client will fetch.
            detected = await self.prober.probe(self.proxy_segment_url(segment_url, mode, cors_proxy_url))
        video_format = detected or DEFAULT_FORMAT
        if video_format == DEFAULT_FORMAT or self.coordinator is None:
            return video_format, {}

        creative_ids = list(dict.fromkeys(placement.assigned_creative_id for placement in assigned))
        results = await asyncio.gather(
            *(self.coordinator.ensure_variant(creative_id, video_format) for creative_id in creative_ids)
        )
        variants = {result.creative_id: result.segments for result in results if result.success and result.segments}
        for creative_id in creative_ids:
            if creative_id not in variants:
                logger.warning(f"Using original segments of ad {creative_id}, no {video_format} variant available")
        return video_format, variants

    def _ad_segment_url(
        self, creative: AdCreative, video_format: Optional[VideoFormat], variants: dict[str, list[str]]
    ) -> tuple[str, bool]:
        segments = variants.get(creative.id)
        if segments and video_format:
            index = segment_number(self.rng.choice(segments))
            query = parse.urlencode({"format": video_format.format_key, "v": self.video_id})
            return f"{self.public_base_url}/ads/serve/{creative.id}/{index}/variant?{query}", True

        quality = self.rng.choice(creative.segments).quality if creative.segments else 0
        query = parse.urlencode({"v": self.video_id})
        return f"{self.public_base_url}/ads/serve/{creative.id}/{quality}.ts?{query}", False

    async def process_m3u8(self, content: str, base_url: str) -> ProcessedPlaylist:
        """
        Strips foreign ads, injects our own and rewrites every URL of a media playlist.

        Args:
            content (str): The m3u8 content to process.
            base_url (str): The playlist URL, used to resolve relative URLs.

        Returns:
            ProcessedPlaylist: The rewritten playlist and what was done to it.
        """
        stream_settings = await self.site_settings.get_stream_settings()
        mode = self.segment_proxy_mode or stream_settings.proxy_segment_mode
        if mode == "cors" and not stream_settings.cors_proxy_enabled and not self.segment_proxy_mode:
            mode = "passthrough"
        cors_proxy_url = self.cors_proxy_url or stream_settings.cors_proxy_url
        segments_to_skip = self.segments_to_skip if self.segments_to_skip is not None else stream_settings.segments_to_skip

        content, foreign_ads_stripped = strip_foreign_preroll(content, self.foreign_ad_max_segments)
        duration = calculate_m3u8_duration(content)

        placements: list[AdPlacement] = []
        if self.ads_enabled and self.ad_catalog is not None:
            placements = await self._plan_ads(duration)
        assigned = [placement for placement in placements if placement.creative]

        detected_format: Optional[VideoFormat] = None
        variants: dict[str, list[str]] = {}
        if assigned and not self.skip_format_detection and self.prober is not None:
            detected_format, variants = await self._prepare_variants(content, base_url, assigned, mode, cors_proxy_url)

        lines = content.splitlines()
        total_segments = max(sum(1 for line in lines if line.startswith("#EXTINF:")), 1)
        has_preroll = any(placement.role == PlacementRole.PRE_ROLL for placement in assigned)

        output: list[str] = []
        pending_extinf: Optional[str] = None
        deferred_key: Optional[str] = None
        active_key: Optional[str] = None
        progress_count = 0
        segment_count = 0
        skipped_segments = 0
        ads_injected = 0
        used_variant = False
        content_emitted = False
        has_endlist = False

        def preroll_pending() -> bool:
            return any(p.role == PlacementRole.PRE_ROLL and not p.injected for p in assigned)

        def inject(placement: AdPlacement) -> None:
            nonlocal deferred_key, active_key, ads_injected, used_variant
            ad_url, from_variant = self._ad_segment_url(placement.creative, detected_format, variants)
            if content_emitted:
                output.append(DISCONTINUITY_TAG)
            output.append(UNENCRYPTED_KEY_TAG)
            output.append(f"#EXTINF:{settings.ad_segment_duration:.1f},")
            output.append(ad_url)
            output.append(DISCONTINUITY_TAG)
            content_key = deferred_key or active_key
            if content_key:
                output.append(content_key)
                active_key = content_key
                deferred_key = None
            placement.mark_injected()
            ads_injected += 1
            used_variant = used_variant or from_variant

        for line in lines:
            stripped = line.strip()
            if not stripped:
                continue

            if stripped.startswith(HLS_HEADER_TAGS):
                output.append(stripped)
            elif stripped.startswith("#EXTINF:"):
                pending_extinf = stripped
            elif stripped == ENDLIST_TAG:
                has_endlist = True
            elif stripped.startswith("#EXT-X-KEY:"):
                key_line = self._rewrite_uri_line(stripped, base_url, mode, cors_proxy_url)
                if "METHOD=NONE" in stripped:
                    deferred_key = active_key = None
                    output.append(key_line)
                elif preroll_pending():
                    deferred_key = key_line
                else:
                    active_key = key_line
                    output.append(key_line)
            elif stripped.startswith("#"):
                # Init segments, media renditions and other tags carrying a URI.
                output.append(self._rewrite_uri_line(stripped, base_url, mode, cors_proxy_url))
            else:
                progress = _round_percentage(progress_count / total_segments * 100)
                for placement in assigned:
                    if (
                        not placement.injected
                        and placement.role != PlacementRole.POST_ROLL
                        and placement.percentage <= progress
                    ):
                        inject(placement)

                progress_count += 1
                if has_preroll and skipped_segments < segments_to_skip:
                    skipped_segments += 1
                    pending_extinf = None
                    continue

                if pending_extinf:
                    output.append(pending_extinf)
                    pending_extinf = None
                output.append(self.proxy_segment_url(parse.urljoin(base_url, stripped), mode, cors_proxy_url))
                segment_count += 1
                content_emitted = True

        for placement in assigned:
            if not placement.injected and placement.role != PlacementRole.MID_ROLL:
                inject(placement)

        if ads_injected:
            self._raise_target_duration(output)
        if has_endlist:
            output.append(ENDLIST_TAG)

        logger.info(
            f"Processed playlist {self.video_id}: {segment_count} segments, {ads_injected} ads, "
            f"{foreign_ads_stripped} foreign ad segments stripped, format {detected_format or 'not detected'}"
        )
        return ProcessedPlaylist(
            content="\n".join(output),
            duration=duration,
            segment_count=segment_count,
            ads_injected=ads_injected,
            detected_format=detected_format,
            used_transcoded_variant=used_variant,
            foreign_ads_stripped=foreign_ads_stripped,
        )

    def _rewrite_uri_line(self, line: str, base_url: str, mode: str, cors_proxy_url: str) -> str:
        uri_match = _URI_RE.search(line)
        if not uri_match:
            return line
        original_uri = uri_match.group(1)
        new_uri = self.proxy_segment_url(parse.urljoin(base_url, original_uri), mode, cors_proxy_url)
        return line.replace(f'URI="{original_uri}"', f'URI="{new_uri}"')

    @staticmethod
    def _raise_target_duration(output: list[str]) -> None:
        minimum = math.ceil(settings.ad_segment_duration)
        for i, line in enumerate(output):
            if line.startswith("#EXT-X-TARGETDURATION:"):
                try:
                    current = int(line.split(":", 1)[1])
                except ValueError:
                    current = 0
                if current < minimum:
                    output[i] = f"#EXT-X-TARGETDURATION:{minimum}"
                return
