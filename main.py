import logging
from datetime import timedelta
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.config import settings
from core.database import create_db_and_tables
from core.exceptions import (
    CommunityNotFoundError,
    DuplicateSubscriptionError,
    PaymentMethodNotFoundError,
    ProviderError,
    SubscriptionNotFoundError,
)
from core.scheduler import TaskScheduler
from routes.analytics import router as analytics_router
from routes.subscriptions import router as subscriptions_router
from routes.webhooks import router as webhooks_router
from scripts.prune_processed_events import prune
from services.stripe_client import CARD_DECLINED

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# =========================================
# 🏁 Lifespan (DB initialization + scheduler)
# =========================================
@asynccontextmanager
async def lifespan(app: FastAPI):
    create_db_and_tables()
    logger.info("✅ Database tables created on startup.")

    scheduler = TaskScheduler()
    if settings.SCHEDULER_ENABLED:
        scheduler.add_job(
            "prune_processed_events",
            timedelta(hours=settings.PRUNE_INTERVAL_HOURS),
            prune,
            run_immediately=True,
        )
        scheduler.start()
    app.state.scheduler = scheduler

    yield

    await scheduler.stop()
    logger.info("✅ Application shutting down.")


# =========================================
#  ✅ FastAPI App
# =========================================
app = FastAPI(lifespan=lifespan, title="Community Billing Backend")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =========================================
# ⚠️ Error mapping
# =========================================
@app.exception_handler(ProviderError)
async def provider_error_handler(request: Request, exc: ProviderError):
    if exc.is_retryable:
        status_code = 503
    elif exc.code == CARD_DECLINED:
        status_code = 402
    else:
        status_code = 400
    return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})


@app.exception_handler(SubscriptionNotFoundError)
@app.exception_handler(CommunityNotFoundError)
@app.exception_handler(PaymentMethodNotFoundError)
async def not_found_handler(request: Request, exc):
    return JSONResponse(status_code=404, content={"detail": exc.message})


@app.exception_handler(DuplicateSubscriptionError)
async def duplicate_subscription_handler(request: Request, exc: DuplicateSubscriptionError):
    return JSONResponse(status_code=409, content={"detail": exc.message, **exc.details})


# =========================================
# 📦 Routers
# =========================================
app.include_router(webhooks_router)
app.include_router(subscriptions_router)
app.include_router(analytics_router)


# =========================================
# 🩺 Health Check
# =========================================
@app.get("/health")
def health_check():
    return {"status": "ok", "message": "Backend is running"}
