"""Authentication feature: token ledger, user store and auth routes.

Usage:
    from device_service.features.auth import router
    app.include_router(router, prefix="/api/v1")
"""

from device_service.features.auth.router import router

__all__ = ["router"]
