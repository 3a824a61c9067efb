"""DX - Backend de partidas de ajedrez con stake verificadas en Lichess."""

__version__ = "0.1.0"
