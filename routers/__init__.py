# TrustWork Routers Module
# Exports all API routers

from routers.applications import router as applications_router
from routers.assignments import router as assignments_router
from routers.bank_accounts import router as bank_accounts_router
from routers.disputes import router as disputes_router
from routers.escrow import router as escrow_router
from routers.gigs import router as gigs_router
from routers.notifications import router as notifications_router
from routers.realtime import router as realtime_router

__all__ = [
    'applications_router',
    'assignments_router',
    'bank_accounts_router',
    'disputes_router',
    'escrow_router',
    'gigs_router',
    'notifications_router',
    'realtime_router',
]
