"""
MarketPay entry point: FastAPI app, service wiring, router registration and lifespan.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    force=True,
)

logger = logging.getLogger(__name__)

SHUTDOWN_DRAIN_SECONDS = 10


# ── Lifespan ──────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise the database on startup; let background jobs finish on shutdown."""
    from marketpay.database import init_db

    init_db()
    logger.info("Database initialised")

    yield

    runner = app.state.services.task_runner
    if runner.pending_count():
        logger.info("Waiting for %d background job(s)", runner.pending_count())
        try:
            await asyncio.wait_for(runner.drain(), timeout=SHUTDOWN_DRAIN_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("Background jobs still running after %ds, cancelling", SHUTDOWN_DRAIN_SECONDS)
    await runner.shutdown()


app = FastAPI(title="MarketPay", description="Marketplace payments and order reconciliation", lifespan=lifespan)

# ── Services ──────────────────────────────────────────────

from marketpay.services.container import build_services

app.state.services = build_services()

# ── CORS (development) ────────────────────────────────────

if os.environ.get("CORS_ENABLED", "0") == "1":
    from fastapi.middleware.cors import CORSMiddleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("CORS_ORIGINS", "http://localhost:5173").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# ── Routers ───────────────────────────────────────────────

from marketpay.routes.checkout import router as checkout_router
from marketpay.routes.orders import router as orders_router
from marketpay.routes.webhook import router as webhook_router

app.include_router(checkout_router)
app.include_router(webhook_router)
app.include_router(orders_router)


# ── Health check ──────────────────────────────────────────

@app.get("/health")
async def health_check():
    return {"status": "ok"}
