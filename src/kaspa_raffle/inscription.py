from __future__ import annotations

import json
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from typing import Dict

from .errors import ValidationError
from .project_constants import KRC20_DECIMALS, KRC20_PROTOCOL, SOMPI_PER_KAS


def to_base_units(amount: Decimal, decimals: int) -> int:
    """Whole base units (sompi, token atoms); anything finer is truncated."""
    scaled = (amount * (Decimal(10) ** decimals)).quantize(Decimal(1), rounding=ROUND_DOWN)
    return int(scaled)


def kas_to_sompi(amount: Decimal) -> int:
    return int((amount * SOMPI_PER_KAS).quantize(Decimal(1), rounding=ROUND_DOWN))


@dataclass(frozen=True)
class TransferInscription:
    """
    KRC-20 transfer payload embedded in the commit script.

    Field order and compact separators matter: the indexer parses the exact
    bytes, so the payload is always rendered the same way.
    """

    tick: str
    amt: int
    to: str
    p: str = KRC20_PROTOCOL
    op: str = "transfer"

    @staticmethod
    def build(ticker: str, amount: Decimal, destination: str, decimals: int = KRC20_DECIMALS) -> "TransferInscription":
        tick = ticker.strip().upper()
        if not tick:
            raise ValidationError("KRC-20 transfer requires a ticker")
        if not destination:
            raise ValidationError("KRC-20 transfer requires a destination")
        atoms = to_base_units(amount, decimals)
        if atoms <= 0:
            raise ValidationError(f"KRC-20 transfer amount too small: {amount} {tick}")
        return TransferInscription(tick=tick, amt=atoms, to=destination)

    def to_dict(self) -> Dict[str, str]:
        return {"p": self.p, "op": self.op, "tick": self.tick, "amt": str(self.amt), "to": self.to}

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict(), separators=(",", ":")).encode("utf-8")
