"""API v1 router aggregator.

All v1 endpoint routers are included here under the /api/v1 prefix.
"""

from fastapi import APIRouter

from app.api.v1 import agency, timeclock

router = APIRouter()

# =============================================================================
# Worker timeclock
# =============================================================================

router.include_router(timeclock.router, prefix="/timeclock", tags=["timeclock"])

# =============================================================================
# Agency read API (bearer key)
# =============================================================================

router.include_router(agency.router, prefix="/agency", tags=["agency"])
