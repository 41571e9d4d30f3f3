import random
from urllib.parse import parse_qs, urlparse

import pytest

from adflow_proxy.ads.catalog import StaticAdCatalog
from adflow_proxy.configs import settings
from adflow_proxy.transcoder.ad_transcoder import AdVariantStore, TranscodeCoordinator, VariantResult
from adflow_proxy.transcoder.formats import DEFAULT_FORMAT, VideoFormat
from adflow_proxy.utils.m3u8_processor import (
    M3U8Processor,
    calculate_m3u8_duration,
    strip_foreign_preroll,
    trim_playlist_start,
)
from adflow_proxy.utils.site_settings import SiteSettingsStore

BASE_URL = "https://cdn.example.com/video/index.m3u8"
OWN_ORIGIN = settings.public_base_url.rstrip("/")
KEY_LINE = '#EXT-X-KEY:METHOD=AES-128,URI="https://cdn.example.com/video/key.key",IV=0x1234'


def _playlist(durations, key_line: str = None, endlist: bool = True) -> str:
    lines = ["#EXTM3U", "#EXT-X-VERSION:3", "#EXT-X-TARGETDURATION:3", "#EXT-X-MEDIA-SEQUENCE:0"]
    if key_line:
        lines.append(key_line)
    for index, duration in enumerate(durations):
        lines.append(f"#EXTINF:{duration},")
        lines.append(f"segment{index}.ts")
    if endlist:
        lines.append("#EXT-X-ENDLIST")
    return "\n".join(lines)


def _with_foreign_ad(ad_segments: int, content_segments: int = 4) -> str:
    lines = ["#EXTM3U", "#EXT-X-VERSION:3", "#EXT-X-TARGETDURATION:4", "#EXT-X-KEY:METHOD=NONE"]
    for index in range(ad_segments):
        lines += ["#EXTINF:3.0,", f"https://ads.example.net/ad{index}.ts"]
    lines += ["#EXT-X-DISCONTINUITY", KEY_LINE]
    for index in range(content_segments):
        lines += ["#EXTINF:3.0,", f"https://cdn.example.com/video/segment{index}.ts"]
    lines.append("#EXT-X-ENDLIST")
    return "\n".join(lines)


def _ad_lines(content: str) -> list[str]:
    return [line for line in content.splitlines() if "/ads/serve/" in line]


def _content_lines(content: str) -> list[str]:
    return [line for line in content.splitlines() if line and not line.startswith("#") and "/ads/serve/" not in line]


async def _settings_store(**values) -> SiteSettingsStore:
    store = SiteSettingsStore()
    for key, value in values.items():
        await store.set(key, value)
    return store


class FakeCoordinator:
    def __init__(self, success: bool = True):
        self.success = success
        self.calls = []

    async def ensure_variant(self, creative_id, target):
        self.calls.append((creative_id, target))
        if not self.success:
            return VariantResult(False, creative_id, target.format_key)
        return VariantResult(True, creative_id, target.format_key, ["segment000.ts", "segment001.ts"])


def test_foreign_preroll_within_bound_is_stripped():
    content, stripped = strip_foreign_preroll(_with_foreign_ad(5), max_segments=20)

    assert stripped == 5
    assert content.count("#EXTINF") == 4
    assert "ads.example.net" not in content
    assert "METHOD=NONE" not in content
    assert "#EXT-X-DISCONTINUITY" not in content
    assert content.startswith("#EXTM3U\n#EXT-X-VERSION:3\n#EXT-X-TARGETDURATION:4")
    assert KEY_LINE in content


def test_foreign_preroll_over_bound_is_left_untouched():
    original = _with_foreign_ad(25)
    content, stripped = strip_foreign_preroll(original, max_segments=20)

    assert stripped == 0
    assert content == original


def test_strip_bound_is_configurable():
    _, stripped = strip_foreign_preroll(_with_foreign_ad(25), max_segments=30)
    assert stripped == 25


def test_discontinuity_without_following_key_is_not_an_ad():
    original = _with_foreign_ad(5).replace(KEY_LINE, "#EXT-X-PROGRAM-DATE-TIME:2024-01-01T00:00:00Z")
    assert strip_foreign_preroll(original, max_segments=20) == (original, 0)


def test_playlist_without_discontinuity_is_unchanged():
    original = _playlist([3, 3], key_line=KEY_LINE)
    assert strip_foreign_preroll(original, max_segments=20) == (original, 0)


def test_encrypted_segments_before_discontinuity_are_content():
    original = _with_foreign_ad(5).replace("#EXT-X-KEY:METHOD=NONE", KEY_LINE)
    assert strip_foreign_preroll(original, max_segments=20)[1] == 0


def test_duration_sums_extinf_values():
    assert calculate_m3u8_duration(_playlist([3, 3.5, 4.25])) == pytest.approx(10.75)
    assert calculate_m3u8_duration("#EXTM3U\n#EXT-X-ENDLIST") == 0


def test_trim_playlist_start_drops_leading_segments():
    trimmed = trim_playlist_start(_playlist([4, 4, 4, 4]), 6)

    assert _content_lines(trimmed) == ["segment2.ts", "segment3.ts"]
    assert trimmed.count("#EXTINF") == 2
    assert trimmed.endswith("#EXT-X-ENDLIST")


@pytest.mark.asyncio
async def test_preroll_replaces_first_segments(single_creative_catalog):
    processor = M3U8Processor(
        ad_catalog=single_creative_catalog,
        site_settings=await _settings_store(),
        segment_proxy_mode="passthrough",
        segments_to_skip=3,
        video_id="vid1",
    )

    result = await processor.process_m3u8(_playlist([3] * 10), BASE_URL)

    lines = result.content.splitlines()
    ads = _ad_lines(result.content)
    content = _content_lines(result.content)
    assert result.ads_injected == 1
    assert result.segment_count == 7
    assert len(ads) == 1
    assert ads[0] == f"{OWN_ORIGIN}/ads/serve/ad1/0.ts?v=vid1"
    assert content == [f"https://cdn.example.com/video/segment{index}.ts" for index in range(3, 10)]
    assert lines.index(ads[0]) < lines.index(content[0])
    assert result.duration == 30
    assert result.detected_format is None
    assert lines[-1] == "#EXT-X-ENDLIST"
    assert result.content.count("#EXT-X-ENDLIST") == 1


@pytest.mark.asyncio
async def test_content_key_is_deferred_until_after_preroll(single_creative_catalog):
    processor = M3U8Processor(
        ad_catalog=single_creative_catalog,
        site_settings=await _settings_store(),
        segment_proxy_mode="passthrough",
        segments_to_skip=0,
    )

    result = await processor.process_m3u8(_playlist([3, 3, 3], key_line=KEY_LINE), BASE_URL)

    lines = result.content.splitlines()
    ad_index = next(i for i, line in enumerate(lines) if "/ads/serve/" in line)
    assert lines[ad_index - 2] == "#EXT-X-KEY:METHOD=NONE"
    assert lines[ad_index - 1].startswith("#EXTINF:3.0")
    assert lines[ad_index + 1] == "#EXT-X-DISCONTINUITY"
    assert lines[ad_index + 2] == KEY_LINE
    assert not any("METHOD=AES-128" in line for line in lines[:ad_index])
    assert result.content.count("METHOD=AES-128") == 1


@pytest.mark.asyncio
async def test_foreign_ad_is_replaced_by_our_ad(single_creative_catalog):
    processor = M3U8Processor(
        ad_catalog=single_creative_catalog,
        site_settings=await _settings_store(),
        segment_proxy_mode="passthrough",
        segments_to_skip=1,
    )

    result = await processor.process_m3u8(_with_foreign_ad(5), BASE_URL)

    assert result.foreign_ads_stripped == 5
    assert result.ads_injected == 1
    assert "ads.example.net" not in result.content
    assert result.segment_count == 3


@pytest.mark.asyncio
async def test_no_ads_without_creatives(prober_factory):
    prober = prober_factory(VideoFormat(25, 1920, 1080))
    processor = M3U8Processor(
        ad_catalog=StaticAdCatalog([]),
        prober=prober,
        site_settings=await _settings_store(),
        segment_proxy_mode="passthrough",
    )

    result = await processor.process_m3u8(_playlist([3] * 4), BASE_URL)

    assert result.ads_injected == 0
    assert result.segment_count == 4
    assert prober.urls == []


@pytest.mark.asyncio
async def test_ads_disabled_leaves_content_intact(single_creative_catalog):
    processor = M3U8Processor(
        ad_catalog=single_creative_catalog,
        site_settings=await _settings_store(),
        segment_proxy_mode="passthrough",
        ads_enabled=False,
    )

    result = await processor.process_m3u8(_playlist([3] * 4, key_line=KEY_LINE), BASE_URL)

    assert result.ads_injected == 0
    assert result.segment_count == 4
    assert KEY_LINE in result.content


@pytest.mark.asyncio
async def test_detected_format_uses_transcoded_variant(single_creative_catalog, prober_factory):
    prober = prober_factory(VideoFormat(25, 1920, 1080))
    coordinator = FakeCoordinator()
    processor = M3U8Processor(
        ad_catalog=single_creative_catalog,
        prober=prober,
        coordinator=coordinator,
        site_settings=await _settings_store(),
        segment_proxy_mode="cors",
        cors_proxy_url="https://cors.example.org/",
        video_id="vid2",
        rng=random.Random(0),
    )

    result = await processor.process_m3u8(_playlist([3] * 4), BASE_URL)

    assert prober.urls == ["https://cors.example.org/https://cdn.example.com/video/segment0.ts"]
    assert coordinator.calls == [("ad1", VideoFormat(25, 1920, 1080))]
    assert result.detected_format == VideoFormat(25, 1920, 1080)
    assert result.used_transcoded_variant is True
    ad_url = urlparse(_ad_lines(result.content)[0])
    assert ad_url.path in ("/ads/serve/ad1/0/variant", "/ads/serve/ad1/1/variant")
    assert parse_qs(ad_url.query) == {"format": ["25fps_1920x1080"], "v": ["vid2"]}


@pytest.mark.asyncio
async def test_failed_transcode_falls_back_to_original_segments(single_creative_catalog, prober_factory):
    processor = M3U8Processor(
        ad_catalog=single_creative_catalog,
        prober=prober_factory(VideoFormat(60, 1920, 1080)),
        coordinator=FakeCoordinator(success=False),
        site_settings=await _settings_store(),
        segment_proxy_mode="passthrough",
    )

    result = await processor.process_m3u8(_playlist([3] * 4), BASE_URL)

    assert result.ads_injected == 1
    assert result.used_transcoded_variant is False
    assert "/ads/serve/ad1/0.ts" in _ad_lines(result.content)[0]


@pytest.mark.asyncio
async def test_creative_id_unusable_as_path_gets_original_segments(
    tmp_path, creative_factory, fake_encoder, prober_factory
):
    catalog = StaticAdCatalog([creative_factory("promo.v2")])
    store = AdVariantStore(
        ads_root=tmp_path / "ads", temp_dir=tmp_path / "temp", catalog=catalog, media_root=tmp_path / "public"
    )
    source_dir = tmp_path / "public" / "uploads" / "ads" / "promo.v2"
    source_dir.mkdir(parents=True)
    (source_dir / "segment000.ts").write_bytes(b"source")
    processor = M3U8Processor(
        ad_catalog=catalog,
        prober=prober_factory(VideoFormat(25, 1920, 1080)),
        coordinator=TranscodeCoordinator(store, fake_encoder),
        site_settings=await _settings_store(),
        segment_proxy_mode="passthrough",
    )

    result = await processor.process_m3u8(_playlist([3] * 4), BASE_URL)

    assert result.ads_injected == 1
    assert result.used_transcoded_variant is False
    assert fake_encoder.calls == 0
    assert "/ads/serve/promo.v2/0.ts" in _ad_lines(result.content)[0]


@pytest.mark.asyncio
async def test_probe_failure_falls_back_to_default_format(single_creative_catalog, prober_factory):
    coordinator = FakeCoordinator()
    processor = M3U8Processor(
        ad_catalog=single_creative_catalog,
        prober=prober_factory(None),
        coordinator=coordinator,
        site_settings=await _settings_store(),
        segment_proxy_mode="passthrough",
    )

    result = await processor.process_m3u8(_playlist([3] * 4), BASE_URL)

    assert result.detected_format == DEFAULT_FORMAT
    assert coordinator.calls == []
    assert result.ads_injected == 1


@pytest.mark.asyncio
async def test_postroll_is_flushed_before_endlist(single_creative_catalog):
    store = await _settings_store(ad_postroll_enabled="true")
    processor = M3U8Processor(
        ad_catalog=single_creative_catalog,
        site_settings=store,
        segment_proxy_mode="passthrough",
        segments_to_skip=0,
    )

    result = await processor.process_m3u8(_playlist([3] * 4, key_line=KEY_LINE), BASE_URL)

    lines = result.content.splitlines()
    assert result.ads_injected == 2
    assert lines[-1] == "#EXT-X-ENDLIST"
    postroll_index = max(i for i, line in enumerate(lines) if "/ads/serve/" in line)
    assert lines[postroll_index - 3 : postroll_index] == [
        "#EXT-X-DISCONTINUITY",
        "#EXT-X-KEY:METHOD=NONE",
        "#EXTINF:3.0,",
    ]
    assert lines[postroll_index + 1] == "#EXT-X-DISCONTINUITY"
    assert lines[postroll_index + 2] == KEY_LINE


@pytest.mark.asyncio
async def test_midroll_is_injected_at_its_percentage(single_creative_catalog):
    store = await _settings_store(
        ad_midroll_enabled="true", ad_midroll_interval="30", ad_min_duration_for_midroll="60"
    )
    processor = M3U8Processor(
        ad_catalog=single_creative_catalog,
        site_settings=store,
        segment_proxy_mode="passthrough",
        segments_to_skip=0,
    )

    # 20 x 3s = 60s, mid-roll at 30s = 50%
    result = await processor.process_m3u8(_playlist([3] * 20), BASE_URL)

    lines = [line for line in result.content.splitlines() if not line.startswith("#")]
    assert result.ads_injected == 2
    midroll_position = [i for i, line in enumerate(lines) if "/ads/serve/" in line][1]
    assert lines[midroll_position - 1].endswith("segment9.ts")
    assert lines[midroll_position + 1].endswith("segment10.ts")


@pytest.mark.asyncio
async def test_target_duration_is_raised_for_ads(single_creative_catalog):
    processor = M3U8Processor(
        ad_catalog=single_creative_catalog,
        site_settings=await _settings_store(),
        segment_proxy_mode="passthrough",
    )
    playlist = _playlist([2] * 5).replace("#EXT-X-TARGETDURATION:3", "#EXT-X-TARGETDURATION:2")

    result = await processor.process_m3u8(playlist, BASE_URL)

    assert "#EXT-X-TARGETDURATION:3" in result.content


@pytest.mark.asyncio
async def test_catalog_errors_mean_no_ads():
    class BrokenCatalog(StaticAdCatalog):
        async def list_active_creatives(self):
            raise RuntimeError("database unavailable")

    processor = M3U8Processor(
        ad_catalog=BrokenCatalog([]),
        site_settings=await _settings_store(),
        segment_proxy_mode="passthrough",
    )

    result = await processor.process_m3u8(_playlist([3] * 4), BASE_URL)

    assert result.ads_injected == 0
    assert result.segment_count == 4


@pytest.mark.asyncio
async def test_segment_proxy_modes():
    store = await _settings_store()
    url = "https://cdn.example.com/video/segment0.ts"

    cors = M3U8Processor(site_settings=store, cors_proxy_url="https://cors.example.org/")
    full = M3U8Processor(site_settings=store, segment_proxy_params={"api_password": "secret"})
    passthrough = M3U8Processor(site_settings=store)

    assert cors.proxy_segment_url(url, "cors", "https://cors.example.org/") == f"https://cors.example.org/{url}"
    assert (
        full.proxy_segment_url(url, "full", "")
        == f"{OWN_ORIGIN}/proxy/segment?url=https%3A%2F%2Fcdn.example.com%2Fvideo%2Fsegment0.ts&api_password=secret"
    )
    assert passthrough.proxy_segment_url(url, "passthrough", "") == url
    own = f"{OWN_ORIGIN}/ads/serve/ad1/0.ts"
    assert cors.proxy_segment_url(own, "cors", "https://cors.example.org/") == own
    assert full.proxy_segment_url(own, "full", "") == own


@pytest.mark.asyncio
async def test_relative_urls_and_key_uris_are_rewritten():
    playlist = _playlist([3, 3], key_line='#EXT-X-KEY:METHOD=AES-128,URI="keys/k1.key"')
    processor = M3U8Processor(site_settings=await _settings_store(), segment_proxy_mode="full")

    result = await processor.process_m3u8(playlist, BASE_URL)

    assert f'URI="{OWN_ORIGIN}/proxy/segment?url=https%3A%2F%2Fcdn.example.com%2Fvideo%2Fkeys%2Fk1.key"' in result.content
    assert _content_lines(result.content)[0] == (
        f"{OWN_ORIGIN}/proxy/segment?url=https%3A%2F%2Fcdn.example.com%2Fvideo%2Fsegment0.ts"
    )


@pytest.mark.asyncio
async def test_init_segment_uri_is_rewritten():
    playlist = _playlist([3, 3]).replace(
        "#EXT-X-MEDIA-SEQUENCE:0", '#EXT-X-MEDIA-SEQUENCE:0\n#EXT-X-MAP:URI="init.mp4",BYTERANGE="720@0"'
    )
    processor = M3U8Processor(site_settings=await _settings_store(), segment_proxy_mode="full")

    result = await processor.process_m3u8(playlist, BASE_URL)

    map_lines = [line for line in result.content.splitlines() if line.startswith("#EXT-X-MAP:")]
    assert map_lines == [
        f'#EXT-X-MAP:URI="{OWN_ORIGIN}/proxy/segment?url=https%3A%2F%2Fcdn.example.com%2Fvideo%2Finit.mp4"'
        ',BYTERANGE="720@0"'
    ]


@pytest.mark.asyncio
async def test_init_segment_uri_is_absolutized_in_passthrough_mode():
    playlist = _playlist([3]).replace("#EXT-X-MEDIA-SEQUENCE:0", '#EXT-X-MEDIA-SEQUENCE:0\n#EXT-X-MAP:URI="init.mp4"')
    processor = M3U8Processor(site_settings=await _settings_store(), segment_proxy_mode="passthrough")

    result = await processor.process_m3u8(playlist, BASE_URL)

    assert '#EXT-X-MAP:URI="https://cdn.example.com/video/init.mp4"' in result.content.splitlines()


@pytest.mark.asyncio
async def test_default_mode_comes_from_site_settings():
    store = await _settings_store(proxy_segment_mode="passthrough")
    processor = M3U8Processor(site_settings=store)

    result = await processor.process_m3u8(_playlist([3]), BASE_URL)

    assert _content_lines(result.content) == ["https://cdn.example.com/video/segment0.ts"]


@pytest.mark.asyncio
async def test_empty_playlist_is_tolerated(single_creative_catalog):
    processor = M3U8Processor(
        ad_catalog=single_creative_catalog, site_settings=await _settings_store(), segment_proxy_mode="passthrough"
    )

    result = await processor.process_m3u8("#EXTM3U\n#EXT-X-ENDLIST", BASE_URL)

    assert result.duration == 0
    assert result.segment_count == 0
    assert result.content.splitlines()[-1] == "#EXT-X-ENDLIST"
