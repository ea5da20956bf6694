"""
Subscription Webhook Bridge - keeps per-user subscription records in sync with Stripe
"""

import logging
import traceback

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from routers.billing_router import billing_router
from database import init_db
from config.settings import settings, UNMATCHED_IGNORE, UNMATCHED_RETRY

# ============================================================================
# LOGGING
# ============================================================================

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

# ============================================================================
# FASTAPI APP SETUP
# ============================================================================

app = FastAPI(title="Subscription Webhook Bridge")


# Uncaught exception middleware - logs all unhandled exceptions and returns 500
class UncaughtExceptionMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(f"Uncaught exception: {e}\n{traceback.format_exc()}")
            return JSONResponse(
                status_code=500,
                content={"ok": False, "error": "Internal Server Error"}
            )


app.add_middleware(UncaughtExceptionMiddleware)

# CORS MUST be near the bottom
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ============================================================================
# STARTUP CHECKS
# ============================================================================

@app.on_event("startup")
async def check_env_keys_on_startup():
    """Check billing configuration on startup (non-fatal warning)"""
    key_checks = {
        "STRIPE_SECRET_KEY": settings.stripe_secret_key,
        "STRIPE_WEBHOOK_SECRET": settings.stripe_webhook_secret,
    }
    missing = [env_key for env_key, value in key_checks.items() if not value]
    if missing:
        logger.warning(f"Startup check: Missing environment variables: {', '.join(missing)}")
    else:
        logger.info("Startup check: All billing environment variables are set")

    if not settings.plan_catalog:
        logger.warning("PLAN_CATALOG is empty; every plan will be recorded as 'Unknown Plan' (see .env.example)")

    if settings.unmatched_event_policy not in (UNMATCHED_IGNORE, UNMATCHED_RETRY):
        raise RuntimeError(
            f"UNMATCHED_EVENT_POLICY must be '{UNMATCHED_IGNORE}' or '{UNMATCHED_RETRY}', "
            f"got '{settings.unmatched_event_policy}'"
        )


# Initialize database on startup
@app.on_event("startup")
async def initialize_database():
    """Create the users table if it does not exist yet."""
    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

# ============================================================================
# INCLUDE ROUTERS
# ============================================================================
app.include_router(billing_router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
