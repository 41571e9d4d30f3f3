import logging
import random
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Sequence

from adflow_proxy.ads.catalog import AdCreative, BaseAdCatalog
from adflow_proxy.configs import AdPolicyConfig

logger = logging.getLogger(__name__)


class PlacementRole(str, Enum):
    PRE_ROLL = "pre-roll"
    MID_ROLL = "mid-roll"
    POST_ROLL = "post-roll"


@dataclass(frozen=True)
class AdPolicy:
    always_preroll: bool = True
    preroll_enabled: bool = True
    postroll_enabled: bool = False
    midroll_enabled: bool = False
    midroll_interval: int = 300
    max_ads_per_video: int = 3
    min_duration_for_midroll: int = 600

    @classmethod
    def from_config(cls, config: AdPolicyConfig) -> "AdPolicy":
        return cls(**config.model_dump())


@dataclass
class AdPlacement:
    """One ad slot in a single playlist rewrite."""

    ordinal_index: int
    time_offset: float
    percentage: float
    role: PlacementRole
    creative: Optional[AdCreative] = None
    injected: bool = False

    @property
    def assigned_creative_id(self) -> Optional[str]:
        return self.creative.id if self.creative else None

    def mark_injected(self) -> None:
        if self.injected:
            raise RuntimeError(f"Placement {self.ordinal_index} was already injected")
        self.injected = True


def compute_placements(duration: float, policy: AdPolicy) -> list[AdPlacement]:
    """
    Compute the ad slots for a video of ``duration`` seconds.

    Pre-roll first, then mid-rolls every ``midroll_interval`` seconds while the total
    stays below ``max_ads_per_video``, then a post-roll at the very end. The result is
    ordered by percentage.
    """
    placements: list[AdPlacement] = []

    if policy.always_preroll and policy.preroll_enabled:
        placements.append(AdPlacement(0, 0.0, 0.0, PlacementRole.PRE_ROLL))

    if policy.midroll_enabled and policy.midroll_interval > 0 and duration >= policy.min_duration_for_midroll:
        offset = policy.midroll_interval
        while offset < duration and len(placements) < policy.max_ads_per_video:
            placements.append(
                AdPlacement(len(placements), float(offset), offset / duration * 100, PlacementRole.MID_ROLL)
            )
            offset += policy.midroll_interval

    if policy.postroll_enabled and duration > 0:
        placements.append(AdPlacement(len(placements), float(duration), 100.0, PlacementRole.POST_ROLL))

    return placements


def select_creative_by_weight(
    creatives: Sequence[AdCreative], rng: Optional[random.Random] = None
) -> Optional[AdCreative]:
    """Cumulative-weight draw, uniform over ``[0, total_weight)``."""
    total_weight = sum(creative.weight for creative in creatives)
    if total_weight <= 0:
        return None

    draw = (rng or random).random() * total_weight
    cumulative = 0
    for creative in creatives:
        cumulative += creative.weight
        if draw < cumulative:
            return creative
    return creatives[-1]


async def assign_creatives(
    placements: Sequence[AdPlacement],
    catalog: BaseAdCatalog,
    rng: Optional[random.Random] = None,
) -> list[AdPlacement]:
    """
    Assign a creative to every placement.

    A creative with ``force_display`` fills every slot. Otherwise each slot draws
    independently by weight. An empty catalog leaves every slot unassigned.
    """
    creatives = await catalog.list_active_creatives()
    if not creatives:
        return [replace(placement, creative=None) for placement in placements]

    forced = next((creative for creative in creatives if creative.force_display), None)
    if forced:
        logger.debug(f"Forced ad {forced.id} fills all {len(placements)} placements")
        return [replace(placement, creative=forced) for placement in placements]

    return [replace(placement, creative=select_creative_by_weight(creatives, rng)) for placement in placements]
