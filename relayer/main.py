from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import health, worker
from .config import settings
from .logging_config import setup_logging
from .workers.factory import close_relayer_components

setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await close_relayer_components()


# Create FastAPI app
app = FastAPI(
    title="Relayer Transaction Engine",
    description="Nonce allocation, gas escalation and retry worker for relayed transactions",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(worker.router, tags=["Worker"])


@app.get("/")
async def root():
    """Root endpoint with basic info"""
    return {
        "name": "Relayer Transaction Engine",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/api/health/relayer",
        "worker": "/api/worker",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "relayer.main:app",
        host=settings.host,
        port=settings.port,
        reload=True,
        log_level=settings.log_level.lower()
    )
