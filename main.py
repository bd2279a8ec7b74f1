from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

import core.celery_app  # noqa: F401  binds shared tasks to the app
from core.config import settings
from core.exceptions import AppException
from core.handlers import app_exception_handler
from core.init_db import init_db
from core.logging_config import configure_logging
from core.rate_limit import limiter
from onramp.router import router as onramp_router
from reconciliation.router import router as reconciliation_router
from reconciliation.scheduler import shutdown_scheduler, start_scheduler
from rewards.router import router as rewards_router
from webhooks.router import router as webhooks_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    init_db()
    if settings.ENABLE_SCHEDULER:
        start_scheduler()
    yield
    shutdown_scheduler()


app = FastAPI(title="Co-op Ledger Settlement API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(AppException, app_exception_handler)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

app.include_router(onramp_router)
app.include_router(rewards_router)
app.include_router(reconciliation_router)
app.include_router(webhooks_router)


@app.get("/")
def health_check():
    return {"status": "healthy", "version": "1.0.0"}
