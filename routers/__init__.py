"""
API Routers for the row enrichment service
"""

from .enrichment import router as enrichment_router
from .batch import router as batch_router
from .lookups import router as lookups_router

__all__ = ["enrichment_router", "batch_router", "lookups_router"]
