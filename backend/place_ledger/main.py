"""
Place Ledger Backend - Main FastAPI Application.

Serves the place quota ledger: capacity summaries, quota-gated place
registration, and the Stripe webhook that feeds credit packs and
subscription state into the ledger.

Run with:
    uvicorn place_ledger.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from supabase import acreate_client
from supabase._async.client import AsyncClient as AsyncSupabaseClient

from place_ledger.api.v1.billing import router as billing_router
from place_ledger.api.v1.places import router as places_router
from place_ledger.config import Settings, get_settings
from place_ledger.constants import API_TITLE, API_VERSION
from place_ledger.logging_config import setup_logging
from place_ledger.middleware import RequestContextMiddleware
from place_ledger.services.availability import AvailabilityCalculator
from place_ledger.services.credit_consumer import CreditConsumer
from place_ledger.services.ledger_store import (
    InMemoryLedgerRepository,
    LedgerRepository,
    SupabaseLedgerRepository,
)
from place_ledger.services.place_writer import (
    InMemoryPlaceWriter,
    PlaceWriter,
    SupabasePlaceWriter,
)
from place_ledger.services.purchase_ingester import PurchaseIngester
from place_ledger.services.registration_gate import RegistrationGate
from place_ledger.services.stripe_service import StripeService
from place_ledger.services.subscription_sync import SubscriptionSynchronizer
from place_ledger.services.webhook_router import WebhookRouter

settings = get_settings()

setup_logging(settings.debug)

logger = structlog.get_logger(__name__)


def wire_services(state, app_settings: Settings, supabase_client) -> None:
    """Attach ledger services to app state.

    Without a Supabase client the ledger is only wired in debug mode, backed by
    process memory. Otherwise the ledger services stay unset and their
    endpoints return 503, so Stripe keeps redelivering webhooks until storage
    is back.
    """
    state.supabase = supabase_client

    stripe_service: StripeService | None = None
    if app_settings.stripe.secret_key:
        stripe_service = StripeService(app_settings.stripe)
        logger.info("stripe_configured")
    else:
        logger.warning("stripe_not_configured", detail="Webhook endpoint will return 503")
    state.stripe_service = stripe_service

    repository: LedgerRepository | None = None
    place_writer: PlaceWriter | None = None
    if supabase_client is not None:
        repository = SupabaseLedgerRepository(supabase_client, app_settings.tables)
        place_writer = SupabasePlaceWriter(supabase_client, app_settings.tables.places)
    elif app_settings.debug:
        logger.warning("ledger_in_memory", detail="Debug mode; ledger state is lost on restart")
        repository = InMemoryLedgerRepository()
        place_writer = InMemoryPlaceWriter()

    state.ledger_repository = repository
    state.place_writer = place_writer
    if repository is None:
        logger.warning("ledger_unavailable", detail="Ledger endpoints will return 503")
        state.availability_calculator = None
        state.registration_gate = None
        state.webhook_router = None
        return

    ledger_config = app_settings.ledger
    consumer = CreditConsumer(repository, ledger_config)
    state.availability_calculator = AvailabilityCalculator(repository, ledger_config)
    state.registration_gate = RegistrationGate(consumer, ledger_config)
    state.webhook_router = WebhookRouter(
        subscriptions=SubscriptionSynchronizer(repository),
        purchases=PurchaseIngester(repository, ledger_config),
    )

    logger.info("services_initialized", base_allowance=ledger_config.base_allowance)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan event handler for startup and shutdown."""
    logger.info("api_startup", cors_origins=settings.cors_origins)

    supabase_client: AsyncSupabaseClient | None = None
    if settings.supabase_url and settings.supabase_secret_key:
        try:
            supabase_client = await acreate_client(
                settings.supabase_url,
                settings.supabase_secret_key,
            )
            logger.info("supabase_configured")
        except Exception as e:
            logger.warning("supabase_init_failed", error=str(e))
    else:
        logger.warning("supabase_not_configured", detail="Auth and ledger endpoints will return 503")

    wire_services(_app.state, settings, supabase_client)

    yield

    logger.info("api_shutdown")


app = FastAPI(
    title=API_TITLE,
    description=(
        "Place registration quota ledger: free allowance, purchased credit "
        "packs and premium subscriptions."
    ),
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Request context middleware must come before CORS so every response gets
# the X-Request-ID header (including preflight OPTIONS responses).
app.add_middleware(RequestContextMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(places_router, prefix="/api/v1")
app.include_router(billing_router, prefix="/api/v1")


@app.get("/")
async def root() -> dict:
    """Root endpoint with API info."""
    return {
        "name": API_TITLE,
        "version": API_VERSION,
        "docs": "/docs",
    }


@app.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    return {"status": "healthy"}
