"""
Bulk Copy Studio - FastAPI Backend
Main application entry point with health check, job and billing routing.
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    jobs,
    billing,
)
from services.job_worker import BulkJobWorker


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Bulk Copy Studio API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")

    worker = None
    if settings.JOB_WORKER_ENABLED:
        worker = BulkJobWorker()
        try:
            recovered = await worker.recover_stalled_jobs()
            if recovered:
                print(f"♻️ Recovered {recovered} stalled bulk jobs after startup.")
        except Exception as exc:
            print(f"⚠️ Stalled bulk job recovery skipped: {exc}")
        worker.start()
        print(
            "📅 Bulk job worker enabled "
            f"(every {settings.JOB_WORKER_INTERVAL_SECONDS:g}s)."
        )
    app.state.job_worker = worker
    yield
    # Shutdown
    if worker is not None:
        await worker.stop()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Bulk Copy Studio API",
    description="Queue AI-generated product, collection and image alt-text copy for a shop catalog",
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

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(jobs.router, prefix="/jobs", tags=["Jobs"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Bulk Copy Studio API",
        "version": "0.1.0",
        "status": "running"
    }
