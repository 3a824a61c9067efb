"""
=============================================================================
DX - Taxonomía de Errores
=============================================================================
Errores de dominio lanzados por Ledger, Challenge Registry, Match State
Machine y Result Verifier. main.py los traduce a respuestas JSON con el
código HTTP de cada clase. Ninguno se reintenta automáticamente.
=============================================================================
"""


class DXError(Exception):
    """Base de todos los errores de dominio."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code}


class ValidationError(DXError):
    """Entrada con forma o rango inválido (p. ej. stake bajo el mínimo)."""
    status_code = 400
    code = "VALIDATION_ERROR"


class InsufficientFundsError(DXError):
    status_code = 400
    code = "INSUFFICIENT_FUNDS"


class AuthError(DXError):
    """Token ausente, inválido o expirado."""
    status_code = 401
    code = "AUTH_ERROR"


class PermissionDeniedError(AuthError):
    """Autenticado pero sin privilegio para la operación."""
    status_code = 403
    code = "PERMISSION_DENIED"


class NotFoundError(DXError):
    status_code = 404
    code = "NOT_FOUND"


class StateError(DXError):
    """Operación inválida para el estado actual del ciclo de vida."""
    status_code = 409
    code = "INVALID_STATE"


class ConcurrencyError(StateError):
    """Otra petición modificó la misma cuenta; el cliente debe reintentar."""
    code = "CONCURRENT_UPDATE"


class BalanceIntegrityError(StateError):
    """El sello SHA-256 del balance no coincide (posible edición directa en BD)."""
    code = "BALANCE_INTEGRITY"


class ExternalVerificationError(DXError):
    """Lichess no respondió o el resultado no puede asignarse a los participantes."""
    status_code = 502
    code = "UNVERIFIABLE_RESULT"
