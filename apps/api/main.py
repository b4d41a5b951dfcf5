"""
RoomAI API - FastAPI Backend
Main application entry point with health check and API routing.
"""

from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import auth, billing, designs, health
from services.designs import recover_stalled_designs
from services.image_providers import provider_config_status


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting RoomAI API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    if settings.BLOB_BACKEND == "local":
        Path(settings.BLOB_LOCAL_DIR).mkdir(parents=True, exist_ok=True)
    configured = [name for name, ok in provider_config_status().items() if ok]
    if configured:
        print(f"🎨 Image providers: {', '.join(configured)}")
    else:
        print("⚠️ No image provider configured; designs will use placeholder previews.")
    try:
        recovered = await recover_stalled_designs()
        if recovered:
            print(f"♻️ Recovered {recovered} stalled designs after startup (credits refunded).")
    except Exception as exc:
        print(f"⚠️ Stalled design recovery skipped: {exc}")
    yield
    # Shutdown
    print("👋 Shutting down API...")


app = FastAPI(
    title="RoomAI API",
    description="Redesign room photos with AI and manage generation credits",
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
app.include_router(auth.router, prefix="/auth", tags=["Authentication"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(designs.router, prefix="/designs", tags=["Designs"])

if settings.BLOB_BACKEND == "local":
    app.mount("/blobs", StaticFiles(directory=settings.BLOB_LOCAL_DIR, check_dir=False), name="blobs")


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "RoomAI API",
        "version": "0.1.0",
        "status": "running"
    }
