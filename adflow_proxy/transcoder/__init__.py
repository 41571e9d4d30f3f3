"""
Ad creative transcoding.

Detects the encoding profile of a live stream and produces HLS renditions of
ad creatives that splice cleanly into it.
"""

from .ad_transcoder import AdVariant, AdVariantStore, TranscodeCoordinator, VariantResult
from .encoder import BaseEncoder, FFmpegEncoder
from .formats import DEFAULT_FORMAT, VideoFormat, parse_format_key
from .prober import BaseProber, PyAVFormatProber

__all__ = [
    "AdVariant",
    "AdVariantStore",
    "BaseEncoder",
    "BaseProber",
    "DEFAULT_FORMAT",
    "FFmpegEncoder",
    "PyAVFormatProber",
    "TranscodeCoordinator",
    "VariantResult",
    "VideoFormat",
    "parse_format_key",
]
