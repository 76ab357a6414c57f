from .routes_health import router as health_router
from .routes_orders import router as orders_router
from .routes_watch import router as watch_router

__all__ = ["health_router", "orders_router", "watch_router"]
