"""FastAPI application entry point."""

import logging

from fastapi import FastAPI

from app import __version__
from app.api import health, reassignment
from app.config import settings

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(
    title="Campus Transport Reassignment",
    description="Driver, student and route reassignment with audit and rollback",
    version=__version__,
)

app.include_router(health.router, tags=["health"])
app.include_router(reassignment.router, prefix="/reassignment", tags=["reassignment"])
