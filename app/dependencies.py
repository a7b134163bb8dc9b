"""Shared dependencies for API routers."""

import logging
from functools import lru_cache

from fastapi import Depends

from app.config import settings
from app.database import create_engine
from src.reassignment_engine import (
    DocumentStore,
    EngineConfig,
    MemoryDocumentStore,
    ReassignmentEngine,
    SqlDocumentStore,
)

logger = logging.getLogger(__name__)


@lru_cache
def get_store() -> DocumentStore:
    """Process-wide document store for the configured backend."""
    if settings.store_backend == "memory":
        logger.warning("Using in-memory document store | app_env=%s", settings.app_env)
        return MemoryDocumentStore()
    return SqlDocumentStore(create_engine(settings))


def get_engine(store: DocumentStore = Depends(get_store)) -> ReassignmentEngine:
    """Reassignment engine bound to the request's store."""
    return ReassignmentEngine(
        store,
        EngineConfig(
            audit_retention_per_type=settings.audit_retention_per_type,
            suggest_load_threshold=settings.suggest_load_threshold,
            overload_ratio=settings.overload_ratio,
        ),
    )
