from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from sqlalchemy.exc import SQLAlchemyError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
import logging
import time

from orderdesk.routers import orders, inventory, stats
from orderdesk.config import settings
from orderdesk.errors import OrderDeskError
from orderdesk.scheduler import start_periodic_tasks

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("orderdesk")

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Deferred schema creation, the database may come up after the API
    max_retries = 5
    for i in range(max_retries):
        try:
            from orderdesk.database import engine, Base
            Base.metadata.create_all(bind=engine)
            logger.info("✅ Database tables created")
            break
        except SQLAlchemyError as e:
            logger.warning(f"⚠️ DB connection attempt {i+1}/{max_retries} failed: {e}")
            if i < max_retries - 1:
                time.sleep(2)
            else:
                logger.error("❌ Could not connect to database, continuing anyway...")

    scheduler = None
    if settings.SCHEDULER_ENABLED:
        scheduler = AsyncIOScheduler()
        start_periodic_tasks(scheduler)
        scheduler.start()
        logger.info("⏰ Scheduler started")

    yield

    if scheduler is not None:
        scheduler.shutdown(wait=False)
    logger.info("👋 Shutting down...")

app = FastAPI(
    title=settings.APP_NAME,
    description="Order fulfillment desk: tickets, card inventory and daily stats",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.exception_handler(OrderDeskError)
async def orderdesk_error_handler(request: Request, exc: OrderDeskError):
    logger.warning(f"{request.method} {request.url.path} -> {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

app.include_router(orders.router)
app.include_router(inventory.router)
app.include_router(stats.router)

@app.get("/health")
def health_check():
    return {"status": "healthy", "service": settings.APP_NAME}

@app.get("/")
def root():
    return {
        "service": settings.APP_NAME,
        "version": "1.0.0",
        "docs": "/docs",
        "endpoints": {
            "poll_tickets": "POST /api/orders/tickets/poll",
            "claim_order": "POST /api/orders/{order_number}/claim",
            "resolve_order": "POST /api/orders/{order_number}/resolve",
            "close_ticket": "POST /api/orders/{order_number}/close",
            "inventory_stats": "GET /api/inventory/stats",
            "strict_batch": "POST /api/inventory/batch/strict",
            "check_inventory": "POST /api/inventory/check",
            "get_stats": "GET /api/stats/",
            "daily_summary": "GET /api/stats/daily"
        }
    }
