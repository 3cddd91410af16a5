from cursor_proxy.routers.admin_api import router as admin_router
from cursor_proxy.routers.keys_api import router as keys_router

__all__ = ["admin_router", "keys_router"]
