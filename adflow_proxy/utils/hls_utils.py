import logging
import re
from typing import List, Dict, Any, Optional
from urllib.parse import urljoin

logger = logging.getLogger(__name__)

_ATTRIBUTE_RE = re.compile(r'([A-Z0-9-]+)=("([^"]*)"|([^,]+))')


def is_master_playlist(playlist_content: str) -> bool:
    """A master playlist lists variant streams instead of media segments."""
    return "#EXT-X-STREAM-INF" in playlist_content


def parse_hls_playlist(playlist_content: str, base_url: Optional[str] = None) -> List[Dict[str, Any]]:
    """
    Parses an HLS master playlist to extract stream information.

    Args:
        playlist_content (str): The content of the M3U8 master playlist.
        base_url (str, optional): The base URL of the playlist for resolving relative stream URLs. Defaults to None.

    Returns:
        List[Dict[str, Any]]: A list of dictionaries, each representing a stream variant.
    """
    streams = []
    lines = [line.strip() for line in playlist_content.strip().splitlines()]

    for i, line in enumerate(lines):
        if not line.startswith("#EXT-X-STREAM-INF:"):
            continue

        stream_info = {"raw_stream_inf": line, "resolution": (0, 0), "bandwidth": 0}
        for key, _, quoted_val, unquoted_val in _ATTRIBUTE_RE.findall(line.split(":", 1)[1]):
            value = quoted_val if quoted_val else unquoted_val
            if key == "RESOLUTION":
                try:
                    width, height = map(int, value.lower().split("x"))
                    stream_info["resolution"] = (width, height)
                except ValueError:
                    stream_info["resolution"] = (0, 0)
            elif key == "BANDWIDTH":
                stream_info["bandwidth"] = int(value) if value.isdigit() else 0
            else:
                stream_info[key.lower().replace("-", "_")] = value

        # The URI is the next non-comment, non-empty line
        for next_line in lines[i + 1 :]:
            if not next_line:
                continue
            if next_line.startswith("#"):
                if next_line.startswith("#EXT-X-STREAM-INF"):
                    break
                continue
            stream_info["url"] = urljoin(base_url, next_line) if base_url else next_line
            streams.append(stream_info)
            break
        else:
            logger.warning(f"Variant without URI in master playlist: {line}")

    return streams


def extract_first_variant_url(playlist_content: str, base_url: Optional[str] = None) -> Optional[str]:
    streams = parse_hls_playlist(playlist_content, base_url)
    return streams[0]["url"] if streams else None


def extract_all_variants(playlist_content: str, base_url: Optional[str] = None) -> List[Dict[str, Any]]:
    """All variants, highest bandwidth first."""
    return sorted(parse_hls_playlist(playlist_content, base_url), key=lambda s: s["bandwidth"], reverse=True)


def find_stream_by_resolution(streams: List[Dict[str, Any]], target_resolution: str) -> Optional[Dict[str, Any]]:
    """
    Find stream matching target resolution (e.g., '1080p', '720p').
    Falls back to closest lower resolution if exact match not found.

    Args:
        streams: List of stream dictionaries with 'resolution' key as (width, height) tuple.
        target_resolution: Target resolution string (e.g., '1080p', '720p').

    Returns:
        The matching stream dictionary, or None if no streams available.
    """
    try:
        target_height = int(target_resolution.lower().rstrip("p"))
    except ValueError:
        logger.warning(f"Invalid target resolution {target_resolution}, using first stream")
        return streams[0] if streams else None

    valid_streams = [s for s in streams if s.get("resolution", (0, 0))[1] > 0]
    if not valid_streams:
        logger.warning("No streams with valid resolution found")
        return streams[0] if streams else None

    sorted_streams = sorted(valid_streams, key=lambda s: s["resolution"][1], reverse=True)

    for stream in sorted_streams:
        if stream["resolution"][1] <= target_height:
            logger.info(f"Selected stream with resolution {stream['resolution']} for target {target_resolution}")
            return stream

    # All streams are higher than the target
    lowest_stream = sorted_streams[-1]
    logger.info(f"All streams higher than target {target_resolution}, using lowest: {lowest_stream['resolution']}")
    return lowest_stream
