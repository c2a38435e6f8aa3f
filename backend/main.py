from dotenv import load_dotenv
load_dotenv()

import asyncio
import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from database import get_db, ping_db, close_db

# ENV
from config.env import (
    ENV,
    CORS_ALLOWED_ORIGINS,
    SWEEP_WORKER_ENABLED,
    validate_production_env,
)

# ROUTES
from routes.orders import router as orders_router
from routes.mpesa import router as mpesa_router
from routes.admin import router as admin_router

# WORKERS
from utils.indexes import ensure_indexes
from workers.disbursement_sweeper import disbursement_sweep_worker
from workers.order_expiry_worker import order_expiry_worker

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

validate_production_env()
logger.info("ENV: %s", ENV)

app = FastAPI(
    title="Marketplace Payments API",
    version="1.0.0",
    docs_url=None if ENV == "production" else "/docs",
    redoc_url=None if ENV == "production" else "/redoc",
    openapi_url=None if ENV == "production" else "/openapi.json",
)

# -----------------------------
# CORS
# -----------------------------

allowed_origins = [origin.strip() for origin in CORS_ALLOWED_ORIGINS if origin.strip()]
if not allowed_origins:
    allowed_origins = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# -----------------------------
# ROUTES
# -----------------------------

app.include_router(orders_router)
app.include_router(mpesa_router)
app.include_router(admin_router)

# -----------------------------
# HEALTH CHECKS
# -----------------------------

@app.get("/api/health")
async def health():
    return {"status": "ok"}


@app.get("/api/health/db")
async def health_db():
    await ping_db()
    return {"status": "mongodb connected"}

# -----------------------------
# STARTUP WORKERS (ONE PLACE ONLY)
# -----------------------------

background_tasks: list[asyncio.Task] = []


@app.on_event("startup")
async def start_background_workers():
    await ensure_indexes(get_db())

    background_tasks.append(asyncio.create_task(order_expiry_worker()))
    if SWEEP_WORKER_ENABLED:
        background_tasks.append(asyncio.create_task(disbursement_sweep_worker()))


@app.on_event("shutdown")
async def stop_background_workers():
    for task in background_tasks:
        task.cancel()
    close_db()
