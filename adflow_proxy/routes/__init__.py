from .ads import ads_router
from .proxy import proxy_router

__all__ = ["proxy_router", "ads_router"]
