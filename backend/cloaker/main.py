"""
Cloaker - FastAPI Application

Main entry point for the traffic cloaking decision engine.

Architecture:
- Click → PolicyStore → LinkPolicy (immutable, cached)
- LinkPolicy + Request → ThreatFlags → Admission Filters (steps 1-11)
- SignalBundle → Scorers → Composite Score → Overrides → Score Filter
- Admission Outcome → Decision Engine → ClickCounter → Response
- Visitor record (background task) + Webhook (dispatcher queue)
"""
import logging
import os
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .routers import click_router, links_router, domains_router, scheduler_router
from .database import init_db
from .services.webhooks import get_webhook_dispatcher

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database and start the webhook workers on startup."""
    init_db()
    dispatcher = get_webhook_dispatcher()
    await dispatcher.start()
    yield
    await dispatcher.stop()

# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="Cloaker",
    description="""
    Cloaker - Traffic Cloaking Decision Engine

    Decides, per click on a cloaked link, whether the visitor is sent to the
    target page, the safe page, or blocked.

    ## Pipeline
    1. **Policy Store**: slug / custom domain → LinkPolicy
    2. **Admission Filters**: ordered rules, first failure wins
    3. **Scoring**: nine signal scorers → weighted composite → overrides
    4. **Decision Engine**: allow / safe / block + weighted target selection
    5. **Counters**: atomic daily / total quotas, per-IP rate limits

    ## Key Principles
    - The decision path is pure; state is read before and written after
    - Counters are single conditional UPDATEs, never read-modify-write
    - Visitors never see a server error; failures end in a block
    """,
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": __version__}


# Include routers. The click router owns the catch-all /{slug}, so it goes last.
app.include_router(links_router)
app.include_router(domains_router)
app.include_router(scheduler_router)
app.include_router(click_router)


# For running with: python -m cloaker.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
