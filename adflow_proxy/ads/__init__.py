from .catalog import AdCreative, AdSegment, BaseAdCatalog, JsonAdCatalog, StaticAdCatalog
from .placement import AdPlacement, AdPolicy, PlacementRole, assign_creatives, compute_placements

__all__ = [
    "AdCreative",
    "AdPlacement",
    "AdPolicy",
    "AdSegment",
    "BaseAdCatalog",
    "JsonAdCatalog",
    "PlacementRole",
    "StaticAdCatalog",
    "assign_creatives",
    "compute_placements",
]
