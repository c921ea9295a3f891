import logging

import redis
from fastapi import Depends, FastAPI, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.api.v1.routes import router as api_v1_router
from app.core.cache import get_client
from app.core.config import settings
from app.core.errors import register_exception_handlers
from app.core.logging import configure_logging
from app.db.base import init_db
from app.db.session import get_db

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.PROJECT_NAME,
    description="Subscription lifecycle and billing API",
    version="1.0.0",
)

register_exception_handlers(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)

app.include_router(api_v1_router, prefix=settings.API_V1_STR)


@app.on_event("startup")
def create_tables():
    logger.info("Creating billing tables")
    init_db()


@app.get("/health")
def health_check(db: Session = Depends(get_db)):
    """The database is required; the plan cache is optional and only reported."""
    checks = {"database": "ok", "cache": "disabled"}

    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"Health check: database unreachable: {e}")
        checks["database"] = "unreachable"

    client = get_client()
    if client is not None:
        try:
            client.ping()
            checks["cache"] = "ok"
        except redis.RedisError as e:
            logger.warning(f"Health check: cache unreachable: {e}")
            checks["cache"] = "unreachable"

    healthy = checks["database"] == "ok"
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "healthy" if healthy else "unhealthy", **checks},
    )
