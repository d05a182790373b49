"""API route aggregation.

All routers registered here get mounted in main.py under /api.

Learn: Auth is applied at the include_router level using FastAPI's
dependencies parameter. This protects all routes in each router
without modifying individual handlers. The auth and webhook routers are
open: auth handles login itself, and each webhook sender is checked by
its own signature or token. Health lives outside /api.
"""

from fastapi import APIRouter, Depends

from artifyme.api.admin import router as admin_router
from artifyme.api.auth import router as auth_router
from artifyme.api.payments import router as payments_router
from artifyme.api.transform import router as transform_router
from artifyme.api.users import router as users_router
from artifyme.api.webhooks import router as webhooks_router
from artifyme.auth.dependencies import get_current_user, require_admin

# All protected routers require a valid Keycloak token
_auth = [Depends(get_current_user)]
_admin = [Depends(require_admin)]

api_router = APIRouter(prefix="/api")

# Open routes
api_router.include_router(auth_router, tags=["auth"])
api_router.include_router(webhooks_router, tags=["webhooks"])

# Protected routes
api_router.include_router(transform_router, tags=["transform"], dependencies=_auth)
api_router.include_router(payments_router, tags=["payments"], dependencies=_auth)
api_router.include_router(users_router, tags=["users"], dependencies=_auth)
api_router.include_router(admin_router, tags=["admin"], dependencies=_admin)
