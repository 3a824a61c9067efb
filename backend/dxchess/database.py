"""
=============================================================================
DX - Conexión a Base de Datos
=============================================================================
Engine async y fábrica de sesiones. La tecnología concreta (SQLite con
aiosqlite, PostgreSQL con asyncpg) se elige con DX_DATABASE_URL.
=============================================================================
"""

import logging
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import settings
from .models import Base

logger = logging.getLogger(__name__)

engine: Optional[AsyncEngine] = None
SessionLocal: Optional[async_sessionmaker] = None


def configure_engine(url: Optional[str] = None, **engine_kwargs) -> async_sessionmaker:
    """Crea el engine global y su fábrica de sesiones."""
    global engine, SessionLocal
    engine = create_async_engine(url or settings.database_url, echo=settings.database_echo, **engine_kwargs)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)
    return SessionLocal


async def init_models(target: Optional[AsyncEngine] = None) -> None:
    """Crea las tablas que falten."""
    target = target or engine
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("[DB] Esquema verificado en %s", target.url.render_as_string(hide_password=True))


async def dispose_engine() -> None:
    if engine is not None:
        await engine.dispose()


async def get_db_session() -> AsyncIterator[AsyncSession]:
    """
    Dependencia FastAPI: una sesión por petición.
    Los endpoints hacen commit explícito; cualquier excepción revierte todo.
    """
    if SessionLocal is None:
        configure_engine()
    async with SessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
