from dotenv import load_dotenv
load_dotenv()

import asyncio
import logging
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from database import get_db

# ENV
from config.env import ENV, CORS_ALLOWED_ORIGINS, validate_production_env

# ROUTES
from routes.admin import router as admin_router
from routes.collections import router as collections_router
from routes.risk import router as risk_router
from routes.webhooks import router as webhook_router

# ERRORS
from utils.errors import CodReconError
from utils.indexes import ensure_indexes

# WORKERS
from workers.carrier_poll_worker import carrier_poll_worker
from workers.discrepancy_timeout_worker import discrepancy_timeout_worker
from workers.health_digest_worker import health_digest_worker
from workers.missing_shipment_worker import missing_shipment_worker
from workers.payout_status_worker import payout_status_worker
from workers.remittance_batch_worker import remittance_batch_worker

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)
logger.info("ENV: %s", ENV)

validate_production_env()

app = FastAPI(
    title="COD Reconciliation API",
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
        "http://127.0.0.1:5173",
    ]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# -----------------------------
# ERRORS
# -----------------------------

@app.exception_handler(CodReconError)
async def cod_recon_error_handler(request: Request, exc: CodReconError):
    if exc.status >= 500:
        logger.error("REQUEST_FAILED path=%s code=%s detail=%s", request.url.path, exc.code, exc.detail)
    return JSONResponse(
        status_code=exc.status,
        content={"ok": False, "error": exc.to_dict()},
    )

# -----------------------------
# ROUTES
# -----------------------------

app.include_router(webhook_router)
app.include_router(collections_router)
app.include_router(risk_router)
app.include_router(admin_router)

# -----------------------------
# HEALTH CHECKS
# -----------------------------

@app.get("/api/health")
async def health():

    return {"status": "ok"}

@app.get("/api/health/db")
async def health_db():
    db = get_db()
    await db.command("ping")
    return {"status": "mongodb connected"}

# -----------------------------
# STARTUP WORKERS (ONE PLACE ONLY)
# -----------------------------

@app.on_event("startup")
async def start_background_workers():
    await ensure_indexes(get_db())

    asyncio.create_task(discrepancy_timeout_worker())
    asyncio.create_task(missing_shipment_worker())
    asyncio.create_task(carrier_poll_worker())
    asyncio.create_task(remittance_batch_worker())
    asyncio.create_task(payout_status_worker())
    asyncio.create_task(health_digest_worker())
