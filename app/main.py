"""Bitácora workflow service: app wiring, logging and table creation."""
import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.database import engine, Base
from app.api.routes import router
# Registers every table on Base.metadata before create_all
from app.models import audit, domain  # noqa: F401

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def _cors_origins():
    return [origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()]


Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Bitácora Digital - Log Entry Workflow",
    description="Review, approval and signature workflow for daily construction log entries.",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api", tags=["Log entries"])
logger.info("Bitácora workflow ready on %s", engine.url.render_as_string(hide_password=True))


@app.get("/health")
def health_check():
    return {"status": "healthy", "service": "Bitácora workflow"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")))
