"""Workshop sync backend - FastAPI application."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .database import Database
from .logging_config import get_logger
from .routes import sync_router, units_router

logger = get_logger("workshop.backend")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    settings = get_settings()
    logger.info(f"Starting workshop sync backend (debug={settings.debug})")
    yield
    # Shutdown
    logger.info("Shutting down workshop sync backend")


app = FastAPI(
    title="Workshop Sync API",
    description="Reference backend for workshop offline-first sync",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Error envelope shared with successful responses."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail},
        headers=exc.headers,
    )


# CORS middleware
settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(sync_router)
app.include_router(units_router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "service": "workshop-backend",
        "version": "0.1.0",
        "status": "ok",
    }


@app.get("/health")
async def health(db: Database):
    """Health check with actual database verification."""
    db_status = "disconnected"
    try:
        db.execute("SELECT 1").fetchone()
        db_status = "connected"
    except Exception as e:
        db_status = f"error: {str(e)[:50]}"

    overall_status = "healthy" if db_status == "connected" else "degraded"

    return {
        "status": overall_status,
        "database": db_status,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="127.0.0.1", port=8000)
