import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Literal, Optional

import aiofiles
import aiofiles.os
from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)


class AdSegment(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    quality: int = Field(0, description="Index of the segment within the creative.")
    filepath: str = Field(..., description="Segment file path, relative to the ads root.")


class AdCreative(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    weight: int = Field(1, gt=0)
    force_display: bool = Field(False, alias="forceDisplay")
    status: Literal["active", "inactive"] = "active"
    original_media_location: Optional[str] = Field(None, alias="originalMediaLocation")
    segments: tuple[AdSegment, ...] = ()

    def find_segment(self, quality: int) -> Optional[AdSegment]:
        """Segment with the given index, falling back to the first one."""
        for segment in self.segments:
            if segment.quality == quality:
                return segment
        return self.segments[0] if self.segments else None


class BaseAdCatalog(ABC):
    """Read-only source of ad creatives."""

    @abstractmethod
    async def list_active_creatives(self) -> list[AdCreative]:
        pass

    async def get_creative(self, creative_id: str) -> Optional[AdCreative]:
        for creative in await self.list_active_creatives():
            if creative.id == creative_id:
                return creative
        return None


class StaticAdCatalog(BaseAdCatalog):
    def __init__(self, creatives: list[AdCreative]):
        self.creatives = list(creatives)

    async def list_active_creatives(self) -> list[AdCreative]:
        return [creative for creative in self.creatives if creative.status == "active"]


class JsonAdCatalog(BaseAdCatalog):
    """
    Catalog backed by a JSON file, re-read whenever the file changes.

    The file holds either a list of creatives or ``{"ads": [...]}``. A missing or
    invalid file is an empty catalog.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._creatives: list[AdCreative] = []
        self._mtime: Optional[float] = None

    async def _load(self) -> list[AdCreative]:
        try:
            stat = await aiofiles.os.stat(self.path)
        except FileNotFoundError:
            logger.debug(f"Ad catalog {self.path} not found")
            self._creatives, self._mtime = [], None
            return self._creatives

        if stat.st_mtime == self._mtime:
            return self._creatives

        try:
            async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                data = json.loads(await f.read())
            records = data.get("ads", []) if isinstance(data, dict) else data
            self._creatives = [AdCreative.model_validate(record) for record in records]
            logger.info(f"Loaded {len(self._creatives)} ad creatives from {self.path}")
        except (OSError, ValueError, ValidationError) as e:
            logger.error(f"Error reading ad catalog {self.path}: {e}")
            self._creatives = []
        self._mtime = stat.st_mtime
        return self._creatives

    async def list_active_creatives(self) -> list[AdCreative]:
        return [creative for creative in await self._load() if creative.status == "active"]

    async def get_creative(self, creative_id: str) -> Optional[AdCreative]:
        # Inactive creatives are still resolvable, so in-flight playlists keep working.
        for creative in await self._load():
            if creative.id == creative_id:
                return creative
        return None
