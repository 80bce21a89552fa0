"""FastAPI application entry point for the fraud risk engine."""

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api.middleware.error_handler import global_exception_handler
from src.api.middleware.logging import StructuredLoggingMiddleware
from src.api.routes.fraud import admin_router as fraud_admin_router
from src.api.routes.fraud import router as fraud_router
from src.api.routes.health import router as health_router
from src.config import settings
from src.domains.fraud import FraudConfig, FraudScorer
from src.domains.fraud.errors import FraudEngineError
from src.domains.fraud.ip_intelligence import IpIntelligenceService, IpReputationProvider
from src.shared.kafka_utils import close_producer, create_producer
from src.shared.logging import setup_logging

logger = structlog.get_logger()

# Track app start time for uptime calculation
APP_START_TIME: float = 0.0


def build_scorer(producer=None, ip_provider: IpReputationProvider | None = None) -> FraudScorer:
    """Scorer configured from FRAUD_* env vars."""
    config = FraudConfig.from_env()
    return FraudScorer(
        config=config,
        ip_intelligence=IpIntelligenceService(provider=ip_provider, config=config),
        kafka_producer=producer,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown logic."""
    global APP_START_TIME
    APP_START_TIME = time.time()
    setup_logging(settings.log_level, json_output=settings.log_json)

    logger.info(
        "fraud_engine_starting",
        app_name=settings.app_name,
        version=settings.app_version,
        debug=settings.debug,
    )

    from src.db.database import init_db

    await init_db()

    producer = None
    if settings.kafka_bootstrap_servers:
        try:
            producer = await create_producer(settings.kafka_bootstrap_servers)
        except Exception:
            logger.warning("kafka_producer_failed_to_start", exc_info=True)

    app.state.kafka_producer = producer
    app.state.fraud_scorer = build_scorer(producer)

    yield

    await close_producer(producer)
    logger.info("fraud_engine_shutting_down")


app = FastAPI(
    title="Fraud Risk Engine",
    description="Rule-driven fraud scoring, alert review and user risk profiles",
    version=settings.app_version,
    lifespan=lifespan,
)

# CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.debug else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(StructuredLoggingMiddleware)

# Domain and builtin errors are handled before reaching the server error middleware
for exc_class in (FraudEngineError, ValueError, LookupError, PermissionError, Exception):
    app.add_exception_handler(exc_class, global_exception_handler)

app.include_router(health_router)
app.include_router(fraud_router)
app.include_router(fraud_admin_router)


def get_uptime() -> int:
    """Get application uptime in seconds."""
    if APP_START_TIME == 0.0:
        return 0
    return int(time.time() - APP_START_TIME)
