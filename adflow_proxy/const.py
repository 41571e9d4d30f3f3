SUPPORTED_RESPONSE_HEADERS = [
    "accept-ranges",
    "content-type",
    "content-length",
    "content-range",
    "last-modified",
    "etag",
    "cache-control",
    "expires",
]

SUPPORTED_REQUEST_HEADERS = [
    "accept",
    "accept-encoding",
    "accept-language",
    "range",
    "if-range",
    "user-agent",
    "referer",
    "origin",
]

HLS_CONTENT_TYPE = "application/vnd.apple.mpegurl"
TS_CONTENT_TYPE = "video/mp2t"

# Tags copied verbatim from the head of a media playlist.
HLS_HEADER_TAGS = (
    "#EXTM3U",
    "#EXT-X-VERSION",
    "#EXT-X-TARGETDURATION",
    "#EXT-X-MEDIA-SEQUENCE",
    "#EXT-X-PLAYLIST-TYPE",
    "#EXT-X-ALLOW-CACHE",
)

CORS_HEADERS = {
    "access-control-allow-origin": "*",
    "access-control-allow-methods": "GET, OPTIONS",
    "access-control-allow-headers": "Range",
}
