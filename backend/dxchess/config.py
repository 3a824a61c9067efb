"""
=============================================================================
DX - Configuración de la Plataforma
=============================================================================
Parámetros de negocio y de infraestructura leídos desde variables de
entorno (prefijo DX_) o desde un archivo .env.

Todos los montos están en kobo (1 NGN = 100 kobo).
=============================================================================
"""

from decimal import Decimal
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="DX_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Base de datos (PostgreSQL en producción: postgresql+asyncpg://...)
    database_url: str = "sqlite+aiosqlite:///./dx.db"
    database_echo: bool = False

    # JWT
    jwt_secret: str = "dx-chess-dev-secret-change-me"
    jwt_algorithm: str = "HS256"
    jwt_expire_days: int = 7

    # === Reglas de negocio (kobo) ===
    min_stake: int = 50_000            # ₦500
    min_deposit: int = 10_000          # ₦100
    min_withdrawal: int = 50_000       # ₦500
    platform_fee_percentage: Decimal = Decimal("1.5")

    challenge_expiry_minutes: int = 15
    appeal_period_minutes: int = 5
    draw_appeal_window: bool = False   # True = los empates también esperan el plazo de apelación

    # === Lichess ===
    lichess_api_base: str = "https://lichess.org/api"
    lichess_site_url: str = "https://lichess.org"
    lichess_api_token: str = ""
    lichess_timeout_seconds: float = 10.0

    # Usuarios que se registran como administradores (separados por coma)
    admin_usernames: str = ""

    cors_origins: str = "*"

    # === Logging ===
    log_level: str = "INFO"
    structured_logging: bool = False
    log_dir: str = ""

    @property
    def admin_username_list(self) -> List[str]:
        return [u.strip().lower() for u in self.admin_usernames.split(",") if u.strip()]

    @property
    def cors_origin_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


settings = Settings()
