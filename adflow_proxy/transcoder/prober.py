"""
Video format detection for live HLS sources.

Only the head of one media segment is fetched (through the proxy pool) and
handed to PyAV, which demuxes just far enough to read the video stream's
declared frame rate and dimensions. Probing is best effort: every failure
mode returns None and callers fall back to ``DEFAULT_FORMAT``.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import aiofiles
import aiofiles.os
import av

from adflow_proxy.configs import settings
from adflow_proxy.transcoder.formats import DEFAULT_FORMAT, VideoFormat, round_frame_rate
from adflow_proxy.utils.proxy_manager import ProxyManager

logger = logging.getLogger(__name__)


class BaseProber(ABC):
    """Detects the encoding profile of a media segment."""

    @abstractmethod
    async def probe(self, segment_url: str) -> Optional[VideoFormat]:
        """Return the segment's format, or None when it cannot be determined."""


def read_video_format(path: Path) -> Optional[VideoFormat]:
    """
    Read the first video stream's format from a media file.

    Blocking; run it in an executor. Missing dimensions fall back to the default
    format's, a missing frame rate to the default rate.
    """
    with av.open(str(path)) as container:
        if not container.streams.video:
            logger.info("No video stream found in probe sample")
            return None
        stream = container.streams.video[0]
        rate = stream.base_rate or stream.average_rate or stream.guessed_rate
        codec_context = stream.codec_context
        return VideoFormat(
            fps=round_frame_rate(rate) or DEFAULT_FORMAT.fps,
            width=codec_context.width or DEFAULT_FORMAT.width,
            height=codec_context.height or DEFAULT_FORMAT.height,
        )


class PyAVFormatProber(BaseProber):
    def __init__(
        self,
        proxy_manager: ProxyManager,
        temp_dir: Path = None,
        probe_bytes: int = None,
        timeout: float = None,
    ):
        self.proxy_manager = proxy_manager
        self.temp_dir = Path(temp_dir or settings.temp_dir)
        self.probe_bytes = probe_bytes or settings.probe_bytes
        self.timeout = timeout or settings.probe_timeout

    async def probe(self, segment_url: str) -> Optional[VideoFormat]:
        scratch_path = self.temp_dir / f"probe_{uuid.uuid4().hex}.ts"
        try:
            return await asyncio.wait_for(self._probe(segment_url, scratch_path), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Format probe timed out after {self.timeout}s for {segment_url}")
            return None
        except Exception as e:
            logger.warning(f"Format probe failed for {segment_url}: {e}")
            return None
        finally:
            try:
                await aiofiles.os.remove(scratch_path)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.error(f"Error removing probe scratch file {scratch_path}: {e}")

    async def _probe(self, segment_url: str, scratch_path: Path) -> Optional[VideoFormat]:
        response = await self.proxy_manager.fetch(
            segment_url,
            context="format-probe",
            headers={"range": f"bytes=0-{self.probe_bytes - 1}"},
            timeout=self.timeout,
        )

        await aiofiles.os.makedirs(self.temp_dir, exist_ok=True)
        async with aiofiles.open(scratch_path, "wb") as f:
            await f.write(response.content[: self.probe_bytes])

        loop = asyncio.get_running_loop()
        video_format = await loop.run_in_executor(None, read_video_format, scratch_path)
        if video_format:
            logger.info(f"Detected format {video_format.format_key} for {segment_url}")
        return video_format
