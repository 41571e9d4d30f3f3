from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request

from adflow_proxy.handlers import get_stats, handle_segment_proxy, handle_stream_proxy
from adflow_proxy.schemas import SegmentParams, StreamParams
from adflow_proxy.services import Services, get_services
from adflow_proxy.utils.http_utils import ProxyRequestHeaders, get_proxy_headers

proxy_router = APIRouter()


@proxy_router.get("/stream")
async def stream_proxy(
    request: Request,
    stream_params: Annotated[StreamParams, Query()],
    proxy_headers: Annotated[ProxyRequestHeaders, Depends(get_proxy_headers)],
    services: Annotated[Services, Depends(get_services)],
):
    """
    Proxify an HLS playlist, injecting ads and rewriting its segment URLs.

    Args:
        request (Request): The incoming HTTP request.
        stream_params (StreamParams): The parameters for the stream request.
        proxy_headers (ProxyRequestHeaders): The headers to include in the upstream request.
        services (Services): Shared collaborators.

    Returns:
        Response: The processed m3u8 playlist.
    """
    return await handle_stream_proxy(request, stream_params, proxy_headers, services)


@proxy_router.get("/segment")
async def segment_proxy(
    segment_params: Annotated[SegmentParams, Query()],
    proxy_headers: Annotated[ProxyRequestHeaders, Depends(get_proxy_headers)],
    services: Annotated[Services, Depends(get_services)],
):
    """
    Proxy a media segment through the egress pool. Target of the "full" segment proxy mode.
    """
    return await handle_segment_proxy(segment_params, proxy_headers, services)


@proxy_router.get("/stats")
async def proxy_stats(services: Annotated[Services, Depends(get_services)]):
    return get_stats(services)
