from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .infrastructure import models
from .infrastructure.database import engine

models.Base.metadata.create_all(bind=engine)

from .api import reports, users, leaderboards, realtime
from .core.config import settings

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

DEFAULT_JWT_SECRET = "civicmap-jwt-secret-change-in-production-min-32-chars"


def validate_config():
    """Validate critical configuration settings on startup."""
    # Check JWT secret in production
    if settings.is_production:
        if settings.JWT_SECRET_KEY == DEFAULT_JWT_SECRET:
            raise RuntimeError(
                "SECURITY ERROR: JWT_SECRET_KEY must be changed from default in production! "
                "Set a secure random string via environment variable."
            )

    if len(settings.JWT_SECRET_KEY) < 32:
        raise RuntimeError(
            f"SECURITY ERROR: JWT_SECRET_KEY must be at least 32 characters "
            f"(current: {len(settings.JWT_SECRET_KEY)} chars)"
        )

    # Warn about CORS in production
    if settings.is_production:
        localhost_origins = [o for o in settings.BACKEND_CORS_ORIGINS if "localhost" in o]
        if localhost_origins:
            logger.warning(
                f"WARNING: CORS origins contain localhost URLs in production: {localhost_origins}. "
                "Consider removing localhost from BACKEND_CORS_ORIGINS env var."
            )

    if not settings.AGENT_UIDS:
        logger.warning("No AGENT_UIDS configured: nobody can change report status")

    logger.info(f"Config validation passed. Production mode: {settings.is_production}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan events for startup and shutdown."""
    logger.info("Starting CivicMap API...")
    validate_config()

    yield

    logger.info("Shutting down CivicMap API...")


app = FastAPI(title=settings.PROJECT_NAME, lifespan=lifespan)

# Set all CORS enabled origins
if settings.BACKEND_CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.BACKEND_CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.include_router(reports.router, prefix=f"{settings.API_V1_STR}/reports", tags=["reports"])
app.include_router(users.router, prefix=f"{settings.API_V1_STR}/users", tags=["users"])
app.include_router(leaderboards.router, prefix=f"{settings.API_V1_STR}/leaderboards", tags=["leaderboards"])
app.include_router(realtime.router, prefix="/ws", tags=["realtime"])


@app.get("/health")
def health_check():
    return {"status": "healthy"}
