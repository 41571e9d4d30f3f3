from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class GenericParams(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class StreamParams(GenericParams):
    destination: str = Field(..., description="The URL of the HLS playlist.", alias="d")
    mode: Optional[Literal["cors", "full", "passthrough"]] = Field(
        None, description="How segment URLs are rewritten. Defaults to the configured proxy segment mode."
    )
    ads: bool = Field(True, description="Whether to inject ads into the playlist.")
    trim_start: float = Field(0, ge=0, description="Seconds of content to drop from the start of the playlist.")
    resolution: Optional[str] = Field(
        None, description="Preferred variant of a master playlist, e.g. '720p'. Defaults to the first variant."
    )
    raw: bool = Field(False, description="Return the playlist as text/plain, for debugging.")
    video_id: Optional[str] = Field(None, description="Identifier attached to ad URLs for tracking.", alias="v")


class SegmentParams(GenericParams):
    url: str = Field(..., description="The URL of the media segment to proxy.")


class AdVariantParams(GenericParams):
    format: Optional[str] = Field(None, description="Format key of the variant, e.g. '25fps_1920x1080'.")
    video_id: Optional[str] = Field(None, description="Identifier of the video the ad played in.", alias="v")
