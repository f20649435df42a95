import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from fintrack.core import config
from fintrack.core.config import FRONTEND_URL, LOG_LEVEL, RUN_MIGRATIONS
from fintrack.core.logging_config import sanitize_log_data, setup_logging

# ✅ Import All API Routes
from fintrack.api.routes import auth, subscriptions, billing_webhook, cron, health

logger = logging.getLogger(__name__)


# ============================================
# ✅ STARTUP: LOGGING + SCHEMA
# ============================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(LOG_LEVEL)
    settings = sanitize_log_data({
        "database_url": config.DATABASE_URL,
        "stripe_webhook_secret": config.STRIPE_WEBHOOK_SECRET,
        "cron_secret": config.CRON_SECRET,
        "run_migrations": RUN_MIGRATIONS,
        "frontend_url": FRONTEND_URL,
    })
    logger.info(f"Starting with settings: {settings}")

    if RUN_MIGRATIONS:
        from fintrack.db.migrate import run_migrations
        run_migrations()
    else:
        from fintrack.db.init_db import init_db
        init_db()

    logger.info("fintrack API started")
    yield


# ============================================
# ✅ FASTAPI APP INIT
# ============================================

app = FastAPI(title="fintrack", lifespan=lifespan)

# ✅ CORS: only the web frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        FRONTEND_URL,
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Authorization", "Content-Type"],
)


# ============================================
# ✅ REGISTER ALL ROUTERS
# ============================================

app.include_router(auth.router)
app.include_router(subscriptions.router)
app.include_router(billing_webhook.router)
app.include_router(cron.router)
app.include_router(health.router)


@app.get("/")
def root():
    return {"status": "fintrack API running"}
