"""
FastAPI Dependencies

Provides dependency injection for database sessions and caller identity.

Authentication is terminated upstream (gateway); requests reach this API with
the authenticated technician in the X-Technician-Id header.
"""

from typing import Annotated, Optional
from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trackpro.database import async_session_maker, get_db
from trackpro.exceptions import UnauthorizedError
from trackpro.services.location_ingest_service import LocationIngestService


async def get_technician_id(
    x_technician_id: Annotated[Optional[str], Header()] = None,
) -> str:
    """Identify the calling technician."""
    if not x_technician_id or not x_technician_id.strip():
        raise UnauthorizedError()
    return x_technician_id.strip()


def get_session_factory() -> async_sessionmaker:
    """Session factory for long-lived connections that open a session per message."""
    return async_session_maker


async def get_ingest_service(
    db: Annotated[AsyncSession, Depends(get_db)],
) -> LocationIngestService:
    return LocationIngestService(db)


# Type aliases for cleaner endpoint signatures
SessionFactory = Annotated[async_sessionmaker, Depends(get_session_factory)]
TechnicianId = Annotated[str, Depends(get_technician_id)]
IngestService = Annotated[LocationIngestService, Depends(get_ingest_service)]
