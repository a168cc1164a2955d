"""
Talking Dog Video API - FastAPI Backend
Main application entry point: lifespan, error mapping and API routing.
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import health, generation, billing, admin
from routers.deps import get_access_ledger, shutdown_dependencies
from services.admission import REASON_RATE_LIMITED
from services.errors import AdmissionDenied
from services.scheduler import LedgerCleanupTicker


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Talking Dog Video API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")

    ticker = LedgerCleanupTicker(
        get_access_ledger(),
        interval_seconds=max(int(settings.LEDGER_CLEANUP_INTERVAL_MINUTES), 0) * 60,
    )
    if ticker.start():
        print(
            "📅 Access ledger cleanup loop enabled "
            f"(every {int(settings.LEDGER_CLEANUP_INTERVAL_MINUTES)} min)."
        )
    app.state.ledger_cleanup = ticker
    yield
    # Shutdown
    await ticker.stop()
    await shutdown_dependencies()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Talking Dog Video API",
    description="Turn a dog photo and a line of text into a short talking video",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AdmissionDenied)
async def admission_denied_handler(request: Request, exc: AdmissionDenied):
    decision = exc.decision
    if decision.reason == REASON_RATE_LIMITED:
        minutes = int(decision.retry_after_minutes or 1)
        return JSONResponse(
            status_code=429,
            content={
                "detail": str(exc),
                "reason": decision.reason,
                "retry_after_minutes": minutes,
            },
            headers={"Retry-After": str(minutes * 60)},
        )
    return JSONResponse(
        status_code=402,
        content={"detail": str(exc), "reason": decision.reason},
    )


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(generation.router, prefix="/api", tags=["Generation"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Talking Dog Video API",
        "version": "0.1.0",
        "status": "running"
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=settings.API_HOST, port=settings.API_PORT)
