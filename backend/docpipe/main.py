"""FastAPI application."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from backend.docpipe.api.routes.batches import router as batches_router
from backend.docpipe.api.routes.health import router as health_router
from backend.docpipe.api.routes.metrics import router as metrics_router
from backend.docpipe.db.engine import dispose_engine


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    await dispose_engine()


app = FastAPI(title="Chat Doc Pipeline API", version="0.1.0", lifespan=lifespan)

# Register routes
app.include_router(health_router, tags=["health"])
app.include_router(metrics_router, tags=["metrics"])
app.include_router(batches_router, tags=["batches"])


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {"message": "Chat Doc Pipeline API", "version": "0.1.0"}
