"""bookvault Backend API - FastAPI application.

Authoritative record store for bookmark sync. Plaintext and encrypted
records live side by side; the vault routes move an owner between them.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .config import get_settings
from .logging_config import configure_logging, get_logger
from .rate_limit import limiter
from .routes import plaintext_router, settings_router, sync_router, vault_router

logger = get_logger("bookvault.api")

API_VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info(
        f"Starting bookvault backend (debug={settings.debug}, "
        f"batch={settings.max_batch_size}, pull={settings.max_pull_limit}, "
        f"rate_limit={'on' if limiter.enabled else 'off'})"
    )
    yield
    logger.info("Shutting down bookvault backend")


app = FastAPI(
    title="bookvault Backend API",
    description="Authoritative store for bookmark sync (plaintext and end-to-end encrypted)",
    version=API_VERSION,
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Browser clients only ever send bearer tokens and JSON bodies
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT"],
    allow_headers=["Authorization", "Content-Type"],
)

for router in (settings_router, plaintext_router, sync_router, vault_router):
    app.include_router(router)


@app.get("/")
async def root():
    return {"service": "bookvault-backend", "version": API_VERSION, "status": "ok"}


@app.get("/health")
async def health():
    """Liveness plus a round trip to the records table."""
    from .database import RECORDS_TABLE, get_supabase_client

    try:
        get_supabase_client().table(RECORDS_TABLE).select("record_id").limit(1).execute()
        database = "connected"
    except Exception as e:
        logger.warning(f"Health check query failed: {e}")
        database = f"error: {str(e)[:50]}"

    return {
        "status": "healthy" if database == "connected" else "degraded",
        "database": database,
        "version": API_VERSION,
    }
