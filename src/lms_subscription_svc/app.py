import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from lms_subscription_svc.config import get_settings
from lms_subscription_svc.models.base import init_db
from lms_subscription_svc.routers import subscription_router

logging.basicConfig(level=get_settings().log_level.upper())


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(title="LMS Subscription Service", lifespan=lifespan)

# Parent signup, checkout verification, cancellation and the Stripe webhook
app.include_router(subscription_router.router, prefix="/subscriptions")
