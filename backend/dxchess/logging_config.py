"""Configuración de logging del servidor.

Consola legible siempre; archivo con rotación diaria cuando DX_LOG_DIR está
definido (formato JSON si DX_STRUCTURED_LOGGING=true).
"""

import json
import logging
import logging.handlers
from pathlib import Path
from typing import Optional

from .config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """Formatter JSON de una línea por registro."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def setup_logging(
    level: Optional[str] = None,
    log_dir: Optional[str] = None,
    structured: Optional[bool] = None,
) -> None:
    """Configura el root logger. Es idempotente: limpia handlers previos."""
    numeric_level = getattr(logging, (level or settings.log_level).upper(), logging.INFO)
    log_dir = log_dir if log_dir is not None else settings.log_dir
    structured = settings.structured_logging if structured is None else structured

    root = logging.getLogger()
    root.setLevel(numeric_level)
    root.handlers.clear()

    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(console)

    if log_dir:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.TimedRotatingFileHandler(
            path / "dx.log",
            when="midnight",
            backupCount=30,
            encoding="utf-8",
        )
        file_handler.setFormatter(JSONFormatter() if structured else logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)

    # Librerías ruidosas
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("engineio").setLevel(logging.WARNING)
    logging.getLogger("socketio").setLevel(logging.WARNING)
