"""GuestPass – FastAPI application."""
# Load .env before any app code that might read config
from dotenv import load_dotenv
from pathlib import Path
load_dotenv(Path(__file__).resolve().parent.parent / ".env")

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from app.config import get_settings
from app.database import Base, engine
# Import models so Base.metadata has all tables before create_all (schema source of truth)
from app.models import (  # noqa: F401
    Account, FunnelSession, EphemeralIdentity, Subscription,
    MagicLinkCredential, SignInRequest, AuditLog,
)
from app.routers import auth, billing, quiz

settings = get_settings()
log = logging.getLogger("uvicorn.error")
app = FastAPI(title=settings.app_name, debug=settings.debug)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.site_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(quiz.router)
app.include_router(billing.router)
app.include_router(auth.router)


@app.on_event("startup")
def startup():
    if not settings.stripe_secret_key or not settings.stripe_webhook_secret:
        log.warning("[Stripe] STRIPE_SECRET_KEY / STRIPE_WEBHOOK_SECRET not set - checkout and webhooks will fail")
    if not (settings.mailgun_api_key and settings.mailgun_domain) and not settings.sendgrid_api_key:
        log.warning("[Email] Not configured - fallback sign-in links will not be delivered")
    try:
        Base.metadata.create_all(bind=engine)
    except SQLAlchemyError as e:
        log.warning("Database startup failed (tables skipped). Check DATABASE_URL and network. Error: %s", e)

    if settings.cleanup_cron_enabled:
        from apscheduler.schedulers.background import BackgroundScheduler
        from app.services.cleanup import run_cleanup_job

        scheduler = BackgroundScheduler()
        scheduler.add_job(run_cleanup_job, "interval", hours=1)
        scheduler.start()


@app.get("/")
def root():
    return {"app": settings.app_name, "status": "ok"}


@app.get("/health")
def health():
    return {"status": "healthy"}
