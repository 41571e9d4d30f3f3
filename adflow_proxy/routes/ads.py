from typing import Annotated

from fastapi import APIRouter, Depends, Query

from adflow_proxy.handlers import handle_ad_segment, handle_ad_variant_segment
from adflow_proxy.schemas import AdVariantParams
from adflow_proxy.services import Services, get_services

ads_router = APIRouter()


@ads_router.get("/serve/{creative_id}/{segment}")
async def serve_ad_segment(
    creative_id: str,
    segment: str,
    services: Annotated[Services, Depends(get_services)],
):
    """
    Serve an original ad segment. ``segment`` is the segment index, optionally with a ``.ts`` suffix.
    """
    return await handle_ad_segment(creative_id, segment, services)


@ads_router.get("/serve/{creative_id}/{segment}/variant")
async def serve_ad_variant_segment(
    creative_id: str,
    segment: str,
    variant_params: Annotated[AdVariantParams, Query()],
    services: Annotated[Services, Depends(get_services)],
):
    """
    Serve a segment of an ad transcoded to match a stream's format.
    """
    return await handle_ad_variant_segment(creative_id, segment, variant_params, services)
