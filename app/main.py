"""
Lingua Facile Backend API
Entitlement and daily usage quota service for the mobile app.
"""
from dotenv import load_dotenv
load_dotenv()

import logging
import os
import sys
from pathlib import Path

from alembic import command
from alembic.config import Config

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)],
    force=True  # Override any existing configuration (uvicorn installs its own)
)

logger = logging.getLogger(__name__)


def run_migrations() -> None:
    """Run Alembic migrations on startup. Uses alembic.ini and DATABASE_URL.
    Fails startup if migrations fail, so the DB is never left out of sync."""
    project_root = Path(__file__).resolve().parent.parent
    alembic_ini = project_root / "alembic.ini"
    if not alembic_ini.exists():
        logger.warning("alembic.ini not found, skipping Alembic migrations")
        return
    try:
        alembic_cfg = Config(str(alembic_ini))
        alembic_cfg.set_main_option("script_location", str(project_root / "alembic"))
        alembic_cfg.set_main_option("sqlalchemy.url", SQLALCHEMY_DATABASE_URL)
        command.upgrade(alembic_cfg, "head")
        logger.info("Alembic migrations completed successfully")
    except Exception as e:
        logger.exception("Alembic migration failed: %s", e)
        raise  # Fail startup so DB is not left out of sync


from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from app.api.routes import usage, users, webhooks
from app.db.session import engine, SessionLocal, SQLALCHEMY_DATABASE_URL
from app.db.base import Base
from app.core.plan_limits import seed_usage_limits
# Import all models to ensure they're registered with Base
from app.models import UserProfile, UsageLog, UsageLimit, SubscriptionEvent  # noqa: F401

RUN_MIGRATIONS_ON_STARTUP = os.getenv("RUN_MIGRATIONS_ON_STARTUP", "true").lower() == "true"

app = FastAPI(title="Lingua Facile Backend")


@app.on_event("startup")
def startup_event():
    """PostgreSQL: run Alembic migrations. SQLite (local dev): create tables and seed limits."""
    if not RUN_MIGRATIONS_ON_STARTUP:
        logger.info("RUN_MIGRATIONS_ON_STARTUP is off, skipping schema setup")
        return

    if engine.dialect.name == "sqlite":
        Base.metadata.create_all(bind=engine)
        db = SessionLocal()
        try:
            added = seed_usage_limits(db)
        finally:
            db.close()
        logger.info("SQLite schema ready (%d usage limits seeded)", added)
        return

    run_migrations()


CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:8081,http://localhost:19006").split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(users.router, prefix="/users", tags=["Users"])
app.include_router(usage.router, prefix="/api/usage", tags=["Usage"])
app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])


@app.get("/health")
def health():
    return {"status": "ok"}
