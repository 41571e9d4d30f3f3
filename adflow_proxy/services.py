import logging
from dataclasses import dataclass

from starlette.requests import Request

from adflow_proxy.ads.catalog import BaseAdCatalog, JsonAdCatalog
from adflow_proxy.configs import settings
from adflow_proxy.transcoder import AdVariantStore, FFmpegEncoder, PyAVFormatProber, TranscodeCoordinator
from adflow_proxy.transcoder.prober import BaseProber
from adflow_proxy.utils.cache_utils import PlaylistCache
from adflow_proxy.utils.proxy_manager import ProxyManager
from adflow_proxy.utils.site_settings import SiteSettingsStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Process-wide collaborators shared by every request."""

    proxy_manager: ProxyManager
    ad_catalog: BaseAdCatalog
    variant_store: AdVariantStore
    coordinator: TranscodeCoordinator
    prober: BaseProber
    site_settings: SiteSettingsStore
    playlist_cache: PlaylistCache


def build_services() -> Services:
    proxy_manager = ProxyManager.from_settings()
    ad_catalog = JsonAdCatalog(settings.ad_catalog_file)
    variant_store = AdVariantStore(catalog=ad_catalog)
    logger.info(f"Serving ads from {variant_store.ads_root}, catalog {settings.ad_catalog_file}")
    return Services(
        proxy_manager=proxy_manager,
        ad_catalog=ad_catalog,
        variant_store=variant_store,
        coordinator=TranscodeCoordinator(variant_store, FFmpegEncoder()),
        prober=PyAVFormatProber(proxy_manager),
        site_settings=SiteSettingsStore.from_settings(),
        playlist_cache=PlaylistCache(ttl=settings.playlist_cache_ttl, maxsize=settings.playlist_cache_size),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
