"""
On-demand ad variants.

A variant is a creative re-encoded for one ``VideoFormat`` and stored on disk as
``<ads_root>/<creative_id>/variants/<format_key>/segment%03d.ts``. The filesystem
is the source of truth; :class:`TranscodeCoordinator` keeps an in-memory index
of known variants and guarantees that at most one transcode per
``(creative, format)`` runs at a time, with every concurrent requester awaiting
the same in-flight task.
"""

import asyncio
import logging
import re
import shutil
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

import aiofiles
import aiofiles.os

from adflow_proxy.ads.catalog import BaseAdCatalog
from adflow_proxy.configs import settings
from adflow_proxy.transcoder.encoder import BaseEncoder, TranscodeError, TranscodeJob
from adflow_proxy.transcoder.formats import VideoFormat, parse_format_key

logger = logging.getLogger(__name__)

ORIGINAL_SOURCE_NAME = "original.mp4"
_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_SEGMENT_NUMBER_RE = re.compile(r"\d+")
_AD_FOLDER_RE = re.compile(r"/ads/([^/]+)/")


class AdSourceNotFound(Exception):
    """The creative has no recognisable source media on disk."""


@dataclass(frozen=True)
class AdVariant:
    creative_id: str
    format_key: str
    segments: tuple[str, ...]


@dataclass
class VariantResult:
    success: bool
    creative_id: str
    format_key: str
    segments: list[str] = field(default_factory=list)


@dataclass
class AdSource:
    path: Path
    is_concat_list: bool = False


def segment_number(filename: str) -> int:
    match = _SEGMENT_NUMBER_RE.search(filename)
    return int(match.group()) if match else 0


def is_safe_id(value: str) -> bool:
    return bool(value) and bool(_SAFE_ID_RE.match(value))


class AdVariantStore:
    """Filesystem layout of ad creatives and their transcoded variants."""

    def __init__(
        self,
        ads_root: Path = None,
        temp_dir: Path = None,
        catalog: Optional[BaseAdCatalog] = None,
        media_root: Path = None,
    ):
        self.ads_root = Path(ads_root or settings.ads_root)
        self.temp_dir = Path(temp_dir or settings.temp_dir)
        self.media_root = Path(media_root or settings.media_root)
        self.catalog = catalog

    @property
    def source_roots(self) -> list[Path]:
        """Folders searched for creative sources, private uploads first."""
        return [self.ads_root, self.media_root / "uploads" / "ads"]

    def variant_dir(self, creative_id: str, format_key: str) -> Path:
        return self.ads_root / creative_id / "variants" / format_key

    async def list_variant_segments(self, creative_id: str, format_key: str) -> list[str]:
        """Segment filenames of a variant in playback order, or [] when it does not exist."""
        if not is_safe_id(creative_id) or parse_format_key(format_key) is None:
            return []
        try:
            files = await aiofiles.os.listdir(self.variant_dir(creative_id, format_key))
        except (FileNotFoundError, NotADirectoryError):
            return []
        return sorted((f for f in files if f.endswith(".ts")), key=segment_number)

    async def read_segment(self, creative_id: str, format_key: str, index: int) -> Optional[bytes]:
        if not is_safe_id(creative_id) or parse_format_key(format_key) is None or index < 0:
            return None
        segment_path = self.variant_dir(creative_id, format_key) / f"segment{index:03d}.ts"
        try:
            async with aiofiles.open(segment_path, "rb") as f:
                return await f.read()
        except FileNotFoundError:
            return None

    async def read_original_segment(self, filepath: str) -> Optional[bytes]:
        """Read one of a creative's original segments, given its path relative to the media root."""
        relative = Path(filepath.lstrip("/"))
        if ".." in relative.parts:
            return None
        try:
            async with aiofiles.open(self.media_root / relative, "rb") as f:
                return await f.read()
        except (FileNotFoundError, IsADirectoryError):
            logger.warning(f"Ad file not found: {self.media_root / relative}")
            return None

    async def _has_source_files(self, directory: Path) -> bool:
        try:
            files = await aiofiles.os.listdir(directory)
        except (FileNotFoundError, NotADirectoryError):
            return False
        return any(f == ORIGINAL_SOURCE_NAME or (f.startswith("segment") and f.endswith(".ts")) for f in files)

    def _candidate_folders(self, location: Optional[str]) -> list[str]:
        if not location:
            return []
        match = _AD_FOLDER_RE.search(location)
        if match:
            return [match.group(1)]
        parts = Path(location.lstrip("/")).parts
        return [parts[0]] if len(parts) > 1 else list(parts)

    async def find_source_dir(self, creative_id: str) -> Optional[Path]:
        """
        Locate the folder holding a creative's source media.

        The creative id is tried as the folder name first; otherwise the folder is
        derived from the catalog record's media location or segment paths.
        """
        if is_safe_id(creative_id):
            for root in self.source_roots:
                if await self._has_source_files(root / creative_id):
                    return root / creative_id

        if self.catalog is None:
            return None

        try:
            creative = await self.catalog.get_creative(creative_id)
        except Exception as e:
            logger.warning(f"Error looking up ad {creative_id} in catalog: {e}")
            return None
        if creative is None:
            return None

        locations = [creative.original_media_location] + [segment.filepath for segment in creative.segments[:1]]
        for location in locations:
            for folder in self._candidate_folders(location):
                if not is_safe_id(folder):
                    continue
                for root in self.source_roots:
                    if await self._has_source_files(root / folder):
                        return root / folder
        return None

    async def prepare_source(self, creative_id: str) -> AdSource:
        """
        Resolve the media to transcode: ``original.mp4`` if present, otherwise a concat
        list over the creative's ordered ``segment*.ts`` files.

        Raises:
            AdSourceNotFound: If no source media exists for the creative.
        """
        source_dir = await self.find_source_dir(creative_id)
        if source_dir is None:
            raise AdSourceNotFound(f"No source directory found for ad {creative_id}")

        original = source_dir / ORIGINAL_SOURCE_NAME
        if await aiofiles.os.path.isfile(original):
            return AdSource(original)

        files = await aiofiles.os.listdir(source_dir)
        segments = sorted((f for f in files if f.startswith("segment") and f.endswith(".ts")), key=segment_number)
        if not segments:
            raise AdSourceNotFound(f"No source files found in {source_dir}")

        await aiofiles.os.makedirs(self.temp_dir, exist_ok=True)
        concat_path = self.temp_dir / f"concat_{creative_id}_{uuid.uuid4().hex}.txt"
        lines = []
        for segment in segments:
            escaped = str((source_dir / segment).resolve()).replace("'", "'\\''")
            lines.append(f"file '{escaped}'")
        async with aiofiles.open(concat_path, "w", encoding="utf-8") as f:
            await f.write("\n".join(lines) + "\n")
        logger.info(f"Concatenating {len(segments)} source segments for ad {creative_id}")
        return AdSource(concat_path, is_concat_list=True)


class TranscodeCoordinator:
    """
    Process-wide owner of the variant index and the per-variant transcode tasks.

    Construct one at startup and share it; it is safe under any number of
    concurrent playlist requests on the same event loop.
    """

    def __init__(
        self,
        store: AdVariantStore,
        encoder: BaseEncoder,
        retry_cooldown: float = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.encoder = encoder
        self.retry_cooldown = settings.transcode_retry_cooldown if retry_cooldown is None else retry_cooldown
        self._clock = clock
        self._index: dict[str, dict[str, AdVariant]] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self._failed_at: dict[str, float] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _key(creative_id: str, format_key: str) -> str:
        return f"{creative_id}:{format_key}"

    def _cached(self, creative_id: str, format_key: str) -> Optional[AdVariant]:
        return self._index.get(creative_id, {}).get(format_key)

    def _remember(self, creative_id: str, format_key: str, segments: list[str]) -> AdVariant:
        variant = AdVariant(creative_id, format_key, tuple(segments))
        self._index.setdefault(creative_id, {})[format_key] = variant
        return variant

    async def _lookup(self, creative_id: str, format_key: str) -> Optional[AdVariant]:
        variant = self._cached(creative_id, format_key)
        if variant:
            return variant
        segments = await self.store.list_variant_segments(creative_id, format_key)
        if segments:
            return self._remember(creative_id, format_key, segments)
        return None

    async def ensure_variant(self, creative_id: str, target: VideoFormat) -> VariantResult:
        """
        Return the segments of the ``target`` rendition of a creative, transcoding it if needed.

        Never raises for missing sources or encoder failures; those produce an
        unsuccessful result. Cancelling the caller does not cancel the transcode.
        """
        format_key = target.format_key
        if not is_safe_id(creative_id):
            # The variant route could never serve it.
            logger.warning(f"Not transcoding ad {creative_id!r}, id is not usable as a variant path")
            return VariantResult(False, creative_id, format_key)

        variant = await self._lookup(creative_id, format_key)
        if variant:
            return VariantResult(True, creative_id, format_key, list(variant.segments))

        key =self._key(creative_id, format_key)
        async with self._lock:
            task = self._inflight.get(key)
            if task is None:
                # Another request may have finished the variant while we waited.
                variant = await self._lookup(creative_id, format_key)
                if variant:
                    return VariantResult(True, creative_id, format_key, list(variant.segments))

                failed_at = self._failed_at.get(key)
                if failed_at is not None:
                    if self._clock() - failed_at < self.retry_cooldown:
                        logger.debug(f"Skipping transcode of {key}, last attempt failed recently")
                        return VariantResult(False, creative_id, format_key)
                    del self._failed_at[key]

                task = asyncio.get_running_loop().create_task(self._transcode(creative_id, target))
                self._inflight[key] = task
                task.add_done_callback(lambda finished: self._release(key, finished))
            else:
                logger.info(f"Waiting for existing transcode: {key}")

        return await asyncio.shield(task)

    def _release(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _transcode(self, creative_id: str, target: VideoFormat) -> VariantResult:
        format_key = target.format_key
        key = self._key(creative_id, format_key)
        start_time = time.monotonic()
        logger.info(f"Starting transcode for ad {creative_id} to {format_key}")

        final_dir = self.store.variant_dir(creative_id, format_key)
        work_dir = final_dir.with_name(f".{format_key}.{uuid.uuid4().hex}.partial")
        source: Optional[AdSource] = None
        try:
            source = await self.store.prepare_source(creative_id)
            await aiofiles.os.makedirs(work_dir, exist_ok=True)
            await self.encoder.encode(TranscodeJob(source.path, work_dir, target, source.is_concat_list))

            segments = sorted(
                (f for f in await aiofiles.os.listdir(work_dir) if f.endswith(".ts")), key=segment_number
            )
            if not segments:
                raise TranscodeError("Encoder produced no segments")
            # Publish atomically so readers never see a half-written variant.
            await aiofiles.os.rename(work_dir, final_dir)
        except (AdSourceNotFound, TranscodeError) as e:
            logger.warning(f"Transcode failed for ad {creative_id} to {format_key}: {e}")
            self._failed_at[key] = self._clock()
            return VariantResult(False, creative_id, format_key)
        except Exception as e:
            logger.exception(f"Unexpected error transcoding ad {creative_id} to {format_key}: {e}")
            self._failed_at[key] = self._clock()
            return VariantResult(False, creative_id, format_key)
        finally:
            if source is not None and source.is_concat_list:
                try:
                    await aiofiles.os.remove(source.path)
                except FileNotFoundError:
                    pass
            if await aiofiles.os.path.isdir(work_dir):
                await asyncio.get_running_loop().run_in_executor(None, shutil.rmtree, work_dir, True)

        self._remember(creative_id, format_key, segments)
        elapsed_ms = int((time.monotonic() - start_time) * 1000)
        logger.info(f"Transcode complete for ad {creative_id} to {format_key} ({elapsed_ms}ms)")
        return VariantResult(True, creative_id, format_key, segments)

    def stats(self) -> dict:
        return {
            "cached_variants": sum(len(formats) for formats in self._index.values()),
            "in_flight": sorted(self._inflight),
            "recently_failed": sorted(self._failed_at),
        }
