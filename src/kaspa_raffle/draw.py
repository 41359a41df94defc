from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from .errors import ValidationError
from .models import Entry

Rng = Callable[[], float]

_system_random = random.SystemRandom()


@dataclass(frozen=True)
class Draw:
    winners: Tuple[str, ...]
    total_credits: float
    entrants: int

    @property
    def no_entries(self) -> bool:
        return self.entrants == 0


# Returned (by identity) whenever there is nothing to draw from.
NO_ENTRIES = Draw(winners=(), total_credits=0.0, entrants=0)


def aggregate_credits(entries: Iterable[Entry]) -> Dict[str, float]:
    """Wallet -> total credits, in first-seen order. Non-positive totals are dropped."""
    totals: Dict[str, float] = {}
    for entry in entries:
        totals[entry.wallet_address] = totals.get(entry.wallet_address, 0.0) + entry.credits_added
    return {wallet: credits for wallet, credits in totals.items() if credits > 0}


def pick_weighted(candidates: List[Tuple[str, float]], threshold: float) -> str:
    """Cumulative-weight inversion: subtract weights until the remainder drops to <= 0."""
    remainder = threshold
    for wallet, credits in candidates:
        remainder -= credits
        if remainder <= 0:
            return wallet
    # Float residue can leave a sliver above zero after the last candidate.
    return candidates[-1][0]


def select_winners(
    wallet_credits: Mapping[str, float],
    winners_count: int,
    rng: Optional[Rng] = None,
) -> Draw:
    if winners_count < 1:
        raise ValidationError(f"winners_count must be >= 1, got {winners_count}")

    rng = rng or _system_random.random
    pool: List[Tuple[str, float]] = [(w, float(c)) for w, c in wallet_credits.items() if c > 0]
    if not pool:
        return NO_ENTRIES

    entrants = len(pool)
    total_credits = sum(c for _, c in pool)
    rounds = min(winners_count, entrants)

    winners: List[str] = []
    for _ in range(rounds):
        remaining_total = sum(c for _, c in pool)
        chosen = pick_weighted(pool, rng() * remaining_total)
        winners.append(chosen)
        # Without replacement: a wallet never wins twice.
        pool = [(w, c) for w, c in pool if w != chosen]

    return Draw(winners=tuple(winners), total_credits=total_credits, entrants=entrants)
