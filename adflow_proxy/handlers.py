import logging
import re

import httpx
import tenacity
from fastapi import HTTPException, Request, Response
from starlette.background import BackgroundTask
from starlette.responses import JSONResponse, StreamingResponse

from .configs import settings
from .const import CORS_HEADERS, HLS_CONTENT_TYPE, SUPPORTED_RESPONSE_HEADERS, TS_CONTENT_TYPE
from .schemas import AdVariantParams, SegmentParams, StreamParams
from .services import Services
from .transcoder.formats import parse_format_key
from .utils.cache_utils import PlaylistCache
from .utils.hls_utils import find_stream_by_resolution, is_master_playlist, parse_hls_playlist
from .utils.http_utils import DownloadError, ProxyRequestHeaders, Streamer, is_url_safe
from .utils.m3u8_processor import M3U8Processor, ProcessedPlaylist, trim_playlist_start
from .utils.proxy_manager import ProxyManager

logger = logging.getLogger(__name__)

_LEADING_DIGITS_RE = re.compile(r"^\d+")


def handle_exceptions(exception: Exception) -> Response:
    """
    Handle exceptions and return appropriate HTTP responses.

    Args:
        exception (Exception): The exception that was raised.

    Returns:
        Response: An HTTP response corresponding to the exception type.
    """
    if isinstance(exception, httpx.HTTPStatusError):
        logger.error(f"Upstream service error while handling request: {exception}")
        return Response(status_code=exception.response.status_code, content=f"Upstream service error: {exception}")
    elif isinstance(exception, DownloadError):
        logger.error(f"Error downloading content: {exception}")
        return Response(status_code=exception.status_code, content=str(exception))
    elif isinstance(exception, tenacity.RetryError):
        return Response(status_code=502, content="Max retries exceeded while downloading content")
    else:
        logger.exception(f"Internal server error while handling request: {exception}")
        return Response(status_code=502, content=f"Internal server error: {exception}")


def prepare_response_headers(original_headers, proxy_response_headers) -> dict:
    """
    Prepare response headers for the proxy response.

    Args:
        original_headers (httpx.Headers): The original headers from the upstream response.
        proxy_response_headers (dict): Additional headers to be included in the proxy response.

    Returns:
        dict: The prepared headers for the proxy response.
    """
    response_headers = {k: v for k, v in original_headers.multi_items() if k in SUPPORTED_RESPONSE_HEADERS}
    response_headers.update(CORS_HEADERS)
    response_headers.update(proxy_response_headers)
    return response_headers


def parse_segment_index(segment: str) -> int:
    """Leading integer of a segment path component such as ``"2.ts"``; 0 when there is none."""
    if segment.endswith(".ts"):
        segment = segment[:-3]
    match = _LEADING_DIGITS_RE.match(segment)
    return int(match.group()) if match else 0


async def fetch_media_playlist(
    proxy_manager: ProxyManager, url: str, headers: dict, resolution: str = None
) -> tuple[str, str]:
    """
    Fetch a playlist, resolving a master playlist to one of its media playlists.

    Args:
        proxy_manager (ProxyManager): Egress pool used for the fetch.
        url (str): The playlist URL.
        headers (dict): Request headers forwarded upstream.
        resolution (str, optional): Preferred variant, e.g. '720p'. Defaults to the first variant.

    Returns:
        tuple[str, str]: The media playlist URL (after redirects) and its content.

    Raises:
        DownloadError: If the upstream fails or does not serve an HLS playlist.
    """
    response = await proxy_manager.fetch(url, context="playlist", headers=headers, retries=2)
    playlist_url, content = str(response.url), response.text

    if is_master_playlist(content):
        streams = parse_hls_playlist(content, playlist_url)
        stream = find_stream_by_resolution(streams, resolution) if resolution else (streams[0] if streams else None)
        if stream is None:
            raise DownloadError(502, f"Master playlist {url} has no variants")
        if not is_url_safe(stream["url"]):
            raise DownloadError(400, "Variant URL is not allowed")
        logger.info(f"Resolved master playlist to variant {stream['url']}")
        response = await proxy_manager.fetch(stream["url"], context="playlist", headers=headers, retries=2)
        playlist_url, content = str(response.url), response.text

    if "#EXTM3U" not in content:
        raise DownloadError(502, f"Upstream did not return an HLS playlist for {url}")
    return playlist_url, content


def build_processor(request: Request, params: StreamParams, services: Services, ads_enabled: bool) -> M3U8Processor:
    segment_proxy_params = {}
    api_password = request.query_params.get("api_password")
    if settings.api_password and api_password:
        segment_proxy_params["api_password"] = api_password
    return M3U8Processor(
        ad_catalog=services.ad_catalog,
        prober=services.prober,
        coordinator=services.coordinator,
        site_settings=services.site_settings,
        segment_proxy_mode=params.mode,
        segment_proxy_params=segment_proxy_params,
        ads_enabled=ads_enabled and settings.ads_enabled,
        video_id=params.video_id,
    )


def playlist_response(content: str, raw: bool, headers: dict = None) -> Response:
    response_headers = {"content-disposition": "inline", "cache-control": "no-cache", **CORS_HEADERS}
    response_headers.update(headers or {})
    media_type = "text/plain" if raw else HLS_CONTENT_TYPE
    return Response(content=content, media_type=media_type, headers=response_headers)


async def handle_stream_proxy(
    request: Request, params: StreamParams, proxy_headers: ProxyRequestHeaders, services: Services
) -> Response:
    """
    Fetch an HLS playlist and return it with foreign ads stripped, our ads injected and URLs rewritten.

    If ad processing fails the playlist is processed again with ads disabled, so a
    broken ad setup never breaks playback.

    Args:
        request (Request): The incoming FastAPI request object.
        params (StreamParams): Parameters of the stream request.
        proxy_headers (ProxyRequestHeaders): Headers to be used in the upstream request.
        services (Services): Shared collaborators.

    Returns:
        Response: The processed playlist.
    """
    if not is_url_safe(params.destination):
        raise HTTPException(status_code=400, detail="Invalid or disallowed URL")

    cache_key = PlaylistCache.make_key(
        params.destination, params.mode, params.ads, params.trim_start, params.resolution, params.video_id
    )
    cached = services.playlist_cache.get(cache_key)
    if cached is not None:
        return playlist_response(cached, params.raw, {"x-cache": "HIT"})

    services.proxy_manager.reload_if_changed()
    upstream_headers = {k: v for k, v in proxy_headers.request.items() if k != "range"}
    try:
        playlist_url, content = await fetch_media_playlist(
            services.proxy_manager, params.destination, upstream_headers, params.resolution
        )
    except Exception as e:
        return handle_exceptions(e)

    if params.trim_start:
        content = trim_playlist_start(content, params.trim_start)

    try:
        result: ProcessedPlaylist = await build_processor(request, params, services, params.ads).process_m3u8(
            content, playlist_url
        )
    except Exception as e:
        if not params.ads:
            return handle_exceptions(e)
        logger.exception(f"Ad processing failed for {params.destination}, retrying without ads: {e}")
        try:
            result = await build_processor(request, params, services, False).process_m3u8(content, playlist_url)
        except Exception as e:
            return handle_exceptions(e)

    services.playlist_cache.set(cache_key, result.content)
    return playlist_response(
        result.content,
        params.raw,
        {
            "x-cache": "MISS",
            "x-ads-injected": str(result.ads_injected),
            "x-segment-count": str(result.segment_count),
            "x-video-duration": f"{result.duration:.1f}",
        },
    )


async def handle_segment_proxy(params: SegmentParams, proxy_headers: ProxyRequestHeaders, services: Services):
    """
    Stream one media segment through a proxy route.

    Args:
        params (SegmentParams): The segment to fetch.
        proxy_headers (ProxyRequestHeaders): Headers to be used in the upstream request.
        services (Services): Shared collaborators.

    Returns:
        StreamingResponse: The upstream segment bytes.
    """
    if not is_url_safe(params.url):
        raise HTTPException(status_code=400, detail="Invalid or disallowed URL")

    proxy_manager = services.proxy_manager
    route = proxy_manager.select_route("segment")
    streamer = Streamer(proxy_manager.create_client(route))
    try:
        await streamer.create_streaming_response(params.url, proxy_headers.request)
    except Exception as e:
        await streamer.close()
        if route is not None and _is_route_failure(e):
            proxy_manager.report_failure(route.route_id)
        return handle_exceptions(e)

    if route is not None:
        proxy_manager.report_success(route.route_id)
    response_headers = prepare_response_headers(streamer.response.headers, proxy_headers.response)
    response_headers.setdefault("content-type", TS_CONTENT_TYPE)
    return StreamingResponse(
        streamer.stream_content(),
        status_code=streamer.response.status_code,
        headers=response_headers,
        background=BackgroundTask(streamer.close),
    )


def _is_route_failure(exception: Exception) -> bool:
    if isinstance(exception, tenacity.RetryError):
        exception = exception.last_attempt.exception()
    return isinstance(exception, DownloadError) and exception.status_code in (409, 502)


def _segment_response(content: bytes, max_age: int) -> Response:
    return Response(
        content=content,
        media_type=TS_CONTENT_TYPE,
        headers={
            "content-disposition": "inline",
            "cache-control": f"public, max-age={max_age}",
            "accept-ranges": "bytes",
            **CORS_HEADERS,
        },
    )


async def handle_ad_segment(creative_id: str, segment: str, services: Services) -> Response:
    """Serve one of a creative's original segments, falling back to its first segment."""
    creative = await services.ad_catalog.get_creative(creative_id)
    if creative is None or not creative.segments:
        return JSONResponse({"error": "Ad not found"}, status_code=404)

    ad_segment = creative.find_segment(parse_segment_index(segment))
    content = await services.variant_store.read_original_segment(ad_segment.filepath)
    if content is None:
        return JSONResponse({"error": "Ad file not found"}, status_code=404)
    return _segment_response(content, max_age=3600)


async def handle_ad_variant_segment(
    creative_id: str, segment: str, params: AdVariantParams, services: Services
) -> Response:
    """Serve a segment of a transcoded ad variant."""
    if not params.format:
        return JSONResponse({"error": "Format parameter is required"}, status_code=400)
    if parse_format_key(params.format) is None:
        return JSONResponse({"error": "Invalid format parameter"}, status_code=400)

    content = await services.variant_store.read_segment(creative_id, params.format, parse_segment_index(segment))
    if content is None:
        return JSONResponse({"error": "Variant segment not found"}, status_code=404)
    # Variants never change once written.
    return _segment_response(content, max_age=86400)


def get_stats(services: Services) -> dict:
    return {
        "proxies": services.proxy_manager.get_health(),
        "transcoder": services.coordinator.stats(),
        "cached_playlists": len(services.playlist_cache),
    }
