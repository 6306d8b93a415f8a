"""FastAPI application entry point for the datasync engine."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from datasync.core import models  # noqa: F401  (registers tables on Base.metadata)
from datasync.core.db import Base, engine
from datasync.settings import settings
from datasync.util.logging import setup_logging


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler -- configures logging and creates tables."""
    setup_logging(settings.LOG_LEVEL)
    Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(
    title="datasync",
    description=(
        "Connects to external data providers and keeps local tables in sync through resumable, time-boxed jobs."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# -- CORS ---------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# -- Routers ------------------------------------------------------------------

from datasync.api.routes import adapters_router, connectors_router, jobs_router  # noqa: E402

app.include_router(adapters_router)
app.include_router(connectors_router)
app.include_router(jobs_router)


# -- Health check -------------------------------------------------------------

@app.get("/health", tags=["health"])
def health_check() -> dict:
    """Liveness check."""
    return {"status": "healthy"}


def run() -> None:
    """Entry point for the ``datasync`` console script."""
    import uvicorn

    uvicorn.run("datasync.main:app", host="0.0.0.0", port=8000)
