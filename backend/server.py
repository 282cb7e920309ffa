"""
Credit Ledger Engine - API server

Mounts the ledger routes under /api and prepares collections and indexes
on startup.
"""
from fastapi import FastAPI, APIRouter
from starlette.middleware.cors import CORSMiddleware
import os
import logging
from datetime import datetime, timezone

from database import db, check_db_connection, close_db_connection
from credit_ledger import __version__
from credit_ledger.db_init import ensure_indexes
from credit_ledger.notifier import drain_deliveries
from credit_ledger.routes import ledger_router
from utils.environment import ENVIRONMENT, validate_production_settings

app = FastAPI(title="Credit Ledger Engine - Metered AI Credits")

api_router = APIRouter(prefix="/api")


@api_router.get("/")
async def root():
    return {"message": "Credit Ledger Engine API", "version": __version__}


@api_router.get("/health")
async def health():
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


api_router.include_router(ledger_router)

app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=[origin.strip() for origin in os.environ.get(
        'CORS_ORIGINS', 'http://localhost:3000').split(',')],
    allow_methods=["*"],
    allow_headers=["*"],
)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@app.on_event("startup")
async def startup():
    # Refuse to boot a production server without its secrets
    validate_production_settings()

    # Fail fast when MongoDB is unreachable
    db_ok, db_error = await check_db_connection()
    if not db_ok:
        logger.critical(f"Database connection failed on startup: {db_error}")
        raise RuntimeError(
            f"Cannot start application - database connection failed: {db_error}")

    for line in await ensure_indexes(db):
        logger.debug(line)
    logger.info(f"Credit ledger ready (environment={ENVIRONMENT})")


@app.on_event("shutdown")
async def shutdown_db_client():
    # Let queued parent notifications finish
    await drain_deliveries()

    close_db_connection()
