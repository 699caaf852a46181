# FastAPI Server for the TrustWork marketplace core

import logging
import sys

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config.app_config import (
    DISPUTE_SWEEP_INTERVAL_SECONDS,
    LOG_LEVEL,
    OUTBOX_DISPATCH_INTERVAL_SECONDS,
    PAYOUT_WORKER_INTERVAL_SECONDS,
    RUN_BACKGROUND_JOBS,
)
from core.errors import TrustWorkError, ValidationFailed
from database.config import SessionLocal, init_db
from routers import (
    applications_router,
    assignments_router,
    bank_accounts_router,
    disputes_router,
    escrow_router,
    gigs_router,
    notifications_router,
    realtime_router,
)
from schemas.base import field_errors
from services.dispute_service import sweep_overdue_disputes
from services.event_bus import get_event_bus
from services.payout_worker import run_payouts
from services.realtime import hub

load_dotenv()

logging.basicConfig(
    level=LOG_LEVEL,
    format='%(asctime)s - %(levelname)s - %(name)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"

app = FastAPI(
    title="TrustWork API",
    description="Freelance marketplace with milestone escrow",
    version="1.0.0"
)

# Row changes committed through the app's sessions feed the realtime hub
hub.attach(SessionLocal)

scheduler = None


def dispatch_outbox():
    get_event_bus().dispatch_pending()


def sweep_disputes():
    sweep_overdue_disputes(SessionLocal, get_event_bus())


@app.on_event("startup")
def startup_event():
    global scheduler
    init_db()
    logger.info("Database tables initialized")

    if not RUN_BACKGROUND_JOBS:
        return

    from apscheduler.schedulers.background import BackgroundScheduler

    scheduler = BackgroundScheduler()
    scheduler.add_job(run_payouts, 'interval', seconds=PAYOUT_WORKER_INTERVAL_SECONDS,
                      id="payouts", max_instances=1, coalesce=True)
    scheduler.add_job(dispatch_outbox, 'interval', seconds=OUTBOX_DISPATCH_INTERVAL_SECONDS,
                      id="outbox", max_instances=1, coalesce=True)
    scheduler.add_job(sweep_disputes, 'interval', seconds=DISPUTE_SWEEP_INTERVAL_SECONDS,
                      id="disputes", max_instances=1, coalesce=True)
    scheduler.start()
    logger.info("Scheduler started: payouts, outbox dispatch and dispute sweep")


@app.on_event("shutdown")
def shutdown_event():
    if scheduler is not None:
        scheduler.shutdown(wait=False)


# CORS Setup - Allow all origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,  # Required when using "*"
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# ERROR HANDLERS
# ============================================================================

@app.exception_handler(TrustWorkError)
async def trustwork_error_handler(request: Request, exc: TrustWorkError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.tag}: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    error = ValidationFailed(field_errors(exc))
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


# ============================================================================
# ROUTERS
# ============================================================================

app.include_router(assignments_router, prefix=API_PREFIX)
app.include_router(applications_router, prefix=API_PREFIX)
app.include_router(gigs_router, prefix=API_PREFIX)
app.include_router(escrow_router, prefix=API_PREFIX)
app.include_router(bank_accounts_router, prefix=API_PREFIX)
app.include_router(notifications_router, prefix=API_PREFIX)
app.include_router(disputes_router, prefix=API_PREFIX)
app.include_router(realtime_router, prefix=API_PREFIX)


@app.get("/")
def root():
    return {"name": "TrustWork API", "version": app.version}


@app.get("/health")
def health_check():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("server:app", host="0.0.0.0", port=8000)
