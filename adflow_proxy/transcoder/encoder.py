import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from adflow_proxy.configs import settings
from adflow_proxy.transcoder.formats import VideoFormat

logger = logging.getLogger(__name__)

# Ad renditions are cut into segments of this length; every segment starts on a keyframe.
SEGMENT_DURATION = 3
SEGMENT_PATTERN = "segment%03d.ts"

VIDEO_BITRATE = "800k"
AUDIO_BITRATE = "128k"


class TranscodeError(Exception):
    """Raised when an ad creative could not be transcoded."""


@dataclass
class TranscodeJob:
    """One encode of a creative's source media into HLS segments."""

    source_path: Path
    output_dir: Path
    target: VideoFormat
    is_concat_list: bool = False
    segment_duration: int = SEGMENT_DURATION


class BaseEncoder(ABC):
    @abstractmethod
    async def encode(self, job: TranscodeJob) -> None:
        """
        Write ``segment%03d.ts`` files for ``job`` into ``job.output_dir``.

        Raises:
            TranscodeError: If the encode failed or timed out.
        """


def build_ffmpeg_command(job: TranscodeJob, ffmpeg_path: str = "ffmpeg") -> list[str]:
    """
    Build the ffmpeg argument list for an HLS-compatible ad rendition.

    H.264 high profile + AAC at a constant ~800k/128k, scaled and padded to the
    target frame size, with a fixed GOP of ``fps * segment_duration`` frames and
    scene-cut keyframes disabled so every segment boundary is a keyframe.
    """
    target = job.target
    gop_size = target.fps * job.segment_duration
    video_filter = (
        f"scale={target.width}:{target.height}:force_original_aspect_ratio=decrease,"
        f"pad={target.width}:{target.height}:(ow-iw)/2:(oh-ih)/2,setsar=1"
    )

    command = [ffmpeg_path, "-y", "-hide_banner", "-loglevel", "error"]
    if job.is_concat_list:
        command += ["-f", "concat", "-safe", "0"]
    command += ["-i", str(job.source_path)]
    command += [
        "-vf", video_filter,
        "-r", str(target.fps),
        "-c:v", "libx264",
        "-profile:v", "high",
        "-level", "3.1",
        "-preset", "veryfast",
        "-b:v", VIDEO_BITRATE,
        "-maxrate", VIDEO_BITRATE,
        "-bufsize", "1600k",
        "-g", str(gop_size),
        "-keyint_min", str(gop_size),
        "-sc_threshold", "0",
        "-pix_fmt", "yuv420p",
        "-c:a", "aac",
        "-b:a", AUDIO_BITRATE,
        "-ar", "44100",
        "-ac", "2",
        "-f", "segment",
        "-segment_time", str(job.segment_duration),
        "-segment_format", "mpegts",
        str(job.output_dir / SEGMENT_PATTERN),
    ]  # fmt: skip
    return command


class FFmpegEncoder(BaseEncoder):
    """Runs ffmpeg in a subprocess, so native crashes cannot take down the server."""

    def __init__(self, ffmpeg_path: str = None, timeout: float = None):
        self.ffmpeg_path = ffmpeg_path or settings.ffmpeg_path
        self.timeout = timeout or settings.transcode_timeout

    async def encode(self, job: TranscodeJob) -> None:
        command = build_ffmpeg_command(job, self.ffmpeg_path)
        logger.debug(f"Running {' '.join(command)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise TranscodeError(f"Could not start {self.ffmpeg_path}: {e}") from e

        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise TranscodeError(f"ffmpeg timed out after {self.timeout}s")

        if process.returncode != 0:
            tail = stderr.decode("utf-8", errors="replace")[-500:] if stderr else ""
            raise TranscodeError(f"ffmpeg exited with code {process.returncode}: {tail}")
