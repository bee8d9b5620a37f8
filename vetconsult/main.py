import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from . import models
from .database import engine
from .routers import booking_router, payment_router
from .outbox_poller import run_outbox_poller
from .booking_scheduler import run_booking_scheduler

import redis.asyncio as redis
from fastapi_limiter import FastAPILimiter
from .config import settings

# Setup logger
logger = logging.getLogger("booking_service")

# Create database tables on startup
# bookings, transactions, reminder_tasks and outbox_events
models.Base.metadata.create_all(bind=engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manages application startup and shutdown events.
    """
    logger.info("Starting background tasks...")

    redis_client = None
    try:
        redis_client = redis.from_url(settings.REDIS_URL, encoding="utf-8")
        await FastAPILimiter.init(redis_client)
        logger.info("FastAPILimiter initialized with Redis.")
    except Exception as e:
        logger.error(f"Failed to initialize FastAPILimiter: {e}")

    # Delivers queued notifications to Kafka
    poller_task = asyncio.create_task(run_outbox_poller())

    # Sends due reminders and retries missing meetings
    scheduler_task = asyncio.create_task(run_booking_scheduler())

    yield  # The application is now running

    logger.info("Shutting down background tasks...")

    if redis_client is not None:
        await redis_client.close()

    poller_task.cancel()
    scheduler_task.cancel()

    # Await their cancellation to allow for graceful shutdown
    try:
        await poller_task
    except asyncio.CancelledError:
        logger.info("Outbox poller task successfully cancelled.")
    except Exception as e:
        logger.error(f"Error during outbox poller shutdown: {e}")

    try:
        await scheduler_task
    except asyncio.CancelledError:
        logger.info("Booking scheduler task successfully cancelled.")
    except Exception as e:
        logger.error(f"Error during booking scheduler shutdown: {e}")


app = FastAPI(
    title="Vet Consultation Booking API",
    description="Books veterinary consultations and confirms them from payment webhooks.",
    version="1.0.0",
    lifespan=lifespan
)

app.include_router(booking_router.router)
app.include_router(payment_router.router)


@app.get("/")
def read_root():
    return {"message": "Welcome to the Vet Consultation Booking Service"}
