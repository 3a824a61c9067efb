"""
=============================================================================
DX - Calculadora de Comisiones
=============================================================================
Función pura: pot = 2 * stake, fee = pot * tasa / 100, payout = pot - fee.

Aritmética entera en kobo: la comisión se redondea a un kobo entero
(ROUND_HALF_UP) y el payout se obtiene por resta, por lo que
fee + payout == pot siempre, sin deriva de punto flotante.
=============================================================================
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

from .config import settings


@dataclass(frozen=True)
class FeeBreakdown:
    stake: int
    total_pot: int
    platform_fee: int
    winner_payout: int
    rate: Decimal

    def to_dict(self) -> dict:
        return {
            "stake_per_player": self.stake,
            "total_pot": self.total_pot,
            "platform_fee": self.platform_fee,
            "winner_payout": self.winner_payout,
            "fee_percentage": str(self.rate),
        }


class FeeCalculator:
    """
    Calculadora de la comisión de plataforma por partida.

    Ejemplo stake 1000 kobo, tasa 1.5%:
        - total_pot: 2000
        - platform_fee: 30
        - winner_payout: 1970
    """

    NUM_PLAYERS = 2

    @classmethod
    def calculate(
        cls,
        stake: int,
        rate: Optional[Union[Decimal, str, int]] = None,
    ) -> FeeBreakdown:
        if isinstance(stake, bool) or not isinstance(stake, int):
            raise TypeError("stake debe ser un entero en kobo")
        if stake < 0:
            raise ValueError("stake no puede ser negativo")

        rate = Decimal(str(settings.platform_fee_percentage if rate is None else rate))
        if rate < 0 or rate > 100:
            raise ValueError(f"Tasa de comisión fuera de rango: {rate}")

        total_pot = stake * cls.NUM_PLAYERS
        fee = int((Decimal(total_pot) * rate / Decimal(100)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

        return FeeBreakdown(
            stake=stake,
            total_pot=total_pot,
            platform_fee=fee,
            winner_payout=total_pot - fee,
            rate=rate,
        )

    @classmethod
    def breakdown_text(cls, stake: int, rate: Optional[Decimal] = None) -> str:
        """Resumen legible para logs."""
        result = cls.calculate(stake, rate)
        return (
            f"Stake {format_naira(stake)} x{cls.NUM_PLAYERS} | Tasa {result.rate}%\n"
            f"  - Pot total: {format_naira(result.total_pot)}\n"
            f"  - Comisión DX: {format_naira(result.platform_fee)}\n"
            f"  - Premio ganador: {format_naira(result.winner_payout)}"
        )


def format_naira(kobo: int) -> str:
    """1234567 -> '₦12,345.67'"""
    sign = "-" if kobo < 0 else ""
    naira, rest = divmod(abs(kobo), 100)
    return f"{sign}₦{naira:,}.{rest:02d}"
