"""Ordering strategies for the kamdar's cut of the settlement basis.

Only ``BEFORE_SPLIT`` is defined: the cut comes off the basis before the
landlord/hari split. Other orderings are rejected until their formula is agreed.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable

from farmledger.platform.ledger.errors import ValidationError


@dataclass(frozen=True, slots=True)
class KamdariSplit:
    kamdari_amount: Decimal
    distributable: Decimal


KamdariStrategy = Callable[[Decimal, Decimal], KamdariSplit]


def before_split(basis_amount: Decimal, kamdari_pct: Decimal) -> KamdariSplit:
    kamdari_amount = (basis_amount * kamdari_pct / Decimal("100")).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return KamdariSplit(kamdari_amount=kamdari_amount, distributable=basis_amount - kamdari_amount)


_STRATEGIES: dict[str, KamdariStrategy] = {
    "BEFORE_SPLIT": before_split,
}


def supported_orders() -> list[str]:
    return sorted(_STRATEGIES)


def get_strategy(kamdari_order: str) -> KamdariStrategy:
    strategy = _STRATEGIES.get(kamdari_order)
    if strategy is None:
        raise ValidationError(f"kamdari_order {kamdari_order} is not supported")
    return strategy
