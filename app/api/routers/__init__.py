"""
app/api/routers package marker.
"""

from app.api.routers.statement_ingestion import router as statement_ingestion_router

__all__ = [
    "statement_ingestion_router",
]
