"""
Mogogo Economy API - FastAPI Backend
Plumes ledger, promo codes, resolution quota and the recommendation funnel.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, validate_security_settings
from database import async_session_maker, engine, Base
import models  # noqa: F401
from routers import (
    health,
    auth,
    plumes,
    promo,
    quota,
    funnel,
    webhooks,
)
from services.errors import EconomyError
from services.promo import seed_promo_codes


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Mogogo Economy API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    if settings.PROMO_CODES:
        try:
            async with async_session_maker() as db:
                seeded = await seed_promo_codes(db, settings.PROMO_CODES)
            print(f"🎟️ Seeded {seeded} promo codes.")
        except Exception as exc:
            print(f"⚠️ Promo code seeding skipped: {exc}")
    print(
        f"🪶 Plumes: default={settings.PLUMES_DEFAULT} cost={settings.PLUMES_SESSION_COST} "
        f"daily={settings.PLUMES_DAILY_REWARD} quota={settings.RESOLUTION_MONTHLY_LIMIT}/month"
    )
    yield
    # Shutdown
    print("👋 Shutting down API...")


app = FastAPI(
    title="Mogogo Economy API",
    description="Plumes credits, promo codes, monthly quota and the decision funnel",
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


@app.exception_handler(EconomyError)
async def economy_error_handler(_request: Request, exc: EconomyError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(auth.router, prefix="/auth", tags=["Authentication"])
app.include_router(plumes.router, prefix="/plumes", tags=["Plumes"])
app.include_router(promo.router, prefix="/promo", tags=["Promo"])
app.include_router(quota.router, prefix="/quota", tags=["Quota"])
app.include_router(funnel.router, prefix="/funnel", tags=["Funnel"])
app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Mogogo Economy API",
        "version": "0.1.0",
        "status": "running"
    }
