"""
=============================================================================
DX - Punto de Entrada Principal (FastAPI + Socket.IO)
=============================================================================
Backend de partidas de ajedrez con stake entre pares, verificadas en Lichess.

Integra:
- FastAPI para la API REST (/api)
- Socket.IO para notificaciones en tiempo real
- Middleware de seguridad y CORS
- Traducción de errores de dominio a respuestas JSON

Ejecutar: uvicorn dxchess.main:combined_app
=============================================================================
"""

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from . import __version__, database
from .admin import router as admin_router
from .config import settings
from .errors import ConcurrencyError, DXError, StateError
from .lichess import LichessClient
from .logging_config import setup_logging
from .realtime import create_socket_app
from .routes import auth_router, challenge_router, match_router, user_router, wallet_router

logger = logging.getLogger(__name__)


# =============================================================================
# LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Gestiona el ciclo de vida de la aplicación."""
    setup_logging()
    logger.info("[DX] Iniciando servidor v%s...", __version__)

    if database.engine is None:
        database.configure_engine()
    await database.init_models()
    app.state.lichess = LichessClient()
    logger.info("[DX] Verificador Lichess listo (%s)", settings.lichess_api_base)
    yield

    logger.info("[DX] Cerrando servidor...")
    await app.state.lichess.aclose()
    await database.dispose_engine()


# =============================================================================
# APLICACIÓN FASTAPI
# =============================================================================

app = FastAPI(
    title="DX Chess API",
    description="""
    ## Partidas de ajedrez con stake entre pares

    ### Flujo:
    1. Depósito en la billetera (kobo)
    2. Desafío con stake -> aceptación (ambos stakes bloqueados)
    3. Partida en Lichess -> envío del ID -> verificación
    4. Plazo de apelación -> liquidación automática (comisión 1.5%)

    ### Estados de Partida (FSM):
    IN_PROGRESS → AWAITING_APPEAL / DRAW → (APPEALED → DISPUTED) → DISBURSED
    """,
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


# =============================================================================
# MIDDLEWARE
# =============================================================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    """Agrega headers de seguridad a las respuestas."""
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["X-XSS-Protection"] = "1; mode=block"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    return response


# =============================================================================
# MANEJO DE ERRORES
# =============================================================================

@app.exception_handler(DXError)
async def dx_error_handler(request: Request, exc: DXError):
    if exc.status_code >= 500:
        logger.error("[DX] %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{field}: {first.get('msg')}" if field else str(first.get("msg", "Invalid request"))
    return JSONResponse(status_code=400, content={"error": message, "code": "VALIDATION_ERROR"})


@app.exception_handler(StaleDataError)
async def stale_data_handler(request: Request, exc: StaleDataError):
    logger.warning("[DX] Actualización concurrente en %s", request.url.path)
    err = ConcurrencyError("Account was modified by another request; please retry")
    return JSONResponse(status_code=err.status_code, content=err.to_dict())


@app.exception_handler(IntegrityError)
async def integrity_handler(request: Request, exc: IntegrityError):
    logger.warning("[DX] Conflicto de integridad en %s: %s", request.url.path, exc.orig)
    err = StateError("Request conflicts with existing data")
    return JSONResponse(status_code=err.status_code, content=err.to_dict())


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("[DX] Error no controlado en %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# =============================================================================
# ENDPOINTS - HEALTH & STATUS
# =============================================================================

@app.get("/health")
@app.get("/api/health")
async def health_check():
    """Endpoint de health check para Docker y load balancers."""
    return {
        "status": "healthy",
        "service": "dx-backend",
        "version": __version__,
        "timestamp": time.time(),
    }


# =============================================================================
# ROUTERS
# =============================================================================

for _router in (auth_router, user_router, wallet_router, challenge_router, match_router, admin_router):
    app.include_router(_router, prefix="/api")


# Socket.IO envuelve a FastAPI para que los upgrades WebSocket funcionen
combined_app = create_socket_app(app)
