"""
FastAPI application factory and entry point.

This module creates and configures the FastAPI application:
  1. Logging: stdlib logging configured from LOG_LEVEL
  2. Lifespan manager: handles startup/shutdown (DB table creation, cleanup)
  3. CORS middleware: allows frontend origins to make cross-origin requests
  4. Exception handlers: maps domain errors to HTTP responses
  5. Router registration: mounts all API endpoint groups

Running locally:
    uvicorn payauth.main:app --reload

The --reload flag watches for file changes and restarts automatically,
which is ideal for development but should not be used in production. Run a
single worker: authorization attempts live in process memory.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from payauth.attempts import registry
from payauth.config import settings
from payauth.database import engine, Base
from payauth.exceptions import register_exception_handlers
from payauth.routers import accounts, auth, authorizations, credentials, transactions


def configure_logging() -> None:
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup:
      Creates all database tables if they don't exist. This is a convenience
      for development; production schemas should be managed with migrations.

    Shutdown:
      Drops in-flight authorization attempts and disposes of the database
      engine, closing all connections cleanly.
    """
    # --- Startup ---
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("%s %s started", settings.APP_NAME, settings.APP_VERSION)
    yield
    # --- Shutdown ---
    registry.clear()
    await engine.dispose()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Wallet API with multi-factor payment authorization",
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------

register_exception_handlers(app)

# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------

app.include_router(auth.router, prefix="/auth", tags=["Auth"])
app.include_router(accounts.router, prefix="/accounts", tags=["Accounts"])
app.include_router(credentials.router, prefix="/credentials", tags=["Credentials"])
app.include_router(authorizations.router, prefix="/authorizations", tags=["Authorizations"])
app.include_router(transactions.router, prefix="/transactions", tags=["Transactions"])


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint for load balancers and uptime monitors.

    Returns a simple JSON response indicating the service is running.
    """
    return {"status": "ok", "version": settings.APP_VERSION}
