from .routes_policies import router as policies_router
from .routes_proposals import router as proposals_router
from .routes_scan import router as scan_router
from .routes_scheduler import router as scheduler_router
from .routes_trading import router as trading_router

__all__ = [
    "policies_router",
    "proposals_router",
    "scan_router",
    "scheduler_router",
    "trading_router",
]
