import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from entitlement_api.api.routes import health, payway, plan, subscriptions, usage
from entitlement_api.core import config
from entitlement_api.core.logging_config import setup_logging

logger = logging.getLogger(__name__)


# ============================================
# ✅ FASTAPI APP INIT
# ============================================

app = FastAPI(title="Entitlements & Billing")

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Authorization", "Content-Type"],
)


# ============================================
# ✅ REGISTER ALL ROUTERS
# ============================================

app.include_router(usage.router)
app.include_router(plan.router)
app.include_router(payway.router)
app.include_router(subscriptions.router)
app.include_router(health.router)


# ============================================
# ✅ STARTUP
# ============================================

@app.on_event("startup")
def on_startup():
    setup_logging(config.LOG_LEVEL)

    if config.RUN_MIGRATIONS:
        from entitlement_api.db.migrate import run_migrations
        run_migrations()
    else:
        from entitlement_api.db.init_db import init_db
        init_db()

    logger.info("Entitlement service started")


@app.get("/")
def root():
    return {"status": "Entitlements API running"}
