import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.config import (
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_HEADERS,
    CORS_ALLOW_METHODS,
    CORS_ALLOW_ORIGINS,
    DB_PATH,
    LOG_LEVEL,
    RECONCILE_ENABLED,
)
from backend.routers import admin, attendance, auth, core
from backend.services.reconciliation import ReconciliationScheduler
from database.db import create_tables

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    create_tables()
    reconciler = ReconciliationScheduler()
    app.state.reconciler = reconciler
    if RECONCILE_ENABLED:
        reconciler.start()
    else:
        logger.info("Periodic reconciliation disabled; ticks run only on demand")
    logger.info("Shift ledger ready (db=%s)", DB_PATH)
    try:
        yield
    finally:
        reconciler.stop(wait=False)


app = FastAPI(title="Shift Ledger API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=CORS_ALLOW_METHODS,
    allow_headers=CORS_ALLOW_HEADERS,
)

app.include_router(core.router)
app.include_router(auth.router)
app.include_router(attendance.router)
app.include_router(admin.router)
