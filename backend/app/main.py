import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

from app.config import settings
from app.routers import auth, connections, interests, notifications, obligations, profiles, requests, reviews, roles, system
from app.services.marketplace import marketplace, sweep_runner

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    sweep_runner.start()
    yield
    sweep_runner.stop()
    marketplace.engine.drain(timeout=5.0)


app = FastAPI(title="Service Marketplace API", version="0.1.0", lifespan=lifespan)

allow_any_origin = len(settings.cors_origins) == 1 and settings.cors_origins[0] == "*"

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    # Browsers reject wildcard CORS with credentials enabled.
    allow_credentials=not allow_any_origin,
    allow_methods=["*"],
    allow_headers=["*"],
)

if not (len(settings.trusted_hosts) == 1 and settings.trusted_hosts[0] == "*"):
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.trusted_hosts)

app.include_router(auth.router)
app.include_router(requests.router)
app.include_router(interests.router)
app.include_router(connections.router)
app.include_router(obligations.router)
app.include_router(reviews.router)
app.include_router(roles.router)
app.include_router(profiles.router)
app.include_router(notifications.router)
app.include_router(system.router)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/ready")
def ready():
    marketplace.db.read(lambda conn: conn.execute("SELECT 1").fetchone())
    return {
        "status": "ready",
        "push_configured": marketplace.notifications.push_enabled,
        "sweep_interval_seconds": settings.sweep_interval_seconds,
    }
