from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, List, Optional

from .dispersal import PrizeDispersal
from .draw import aggregate_credits, select_winners
from .errors import RaffleError, StaleRaffleError
from .models import COMPLETED, LIVE, Raffle, utcnow
from .project_constants import NO_ENTRIES_WINNER
from .store import RaffleStore

logger = logging.getLogger(__name__)


@dataclass
class PassSummary:
    completed: int = 0
    dispersed: int = 0
    partial: int = 0
    failed: int = 0

    def __str__(self) -> str:
        return (
            f"completed={self.completed} dispersed={self.dispersed} "
            f"partial={self.partial} failed={self.failed}"
        )


class CompletionEngine:
    """One completion-and-dispersal pass over every raffle in the store."""

    def __init__(
        self,
        store: RaffleStore,
        dispersal: Optional[PrizeDispersal],
        clock: Callable[[], datetime] = utcnow,
        selector: Callable[..., Any] = select_winners,
    ) -> None:
        self.store = store
        self.dispersal = dispersal
        self.clock = clock
        self.selector = selector

    def complete_raffle(self, raffle: Raffle, now: datetime) -> Raffle:
        """live -> completed. Selection is final once this is saved."""
        if raffle.status != LIVE:
            raise RaffleError(f"Raffle {raffle.raffle_id} is already {raffle.status}")

        draw = self.selector(aggregate_credits(raffle.entries), raffle.winners_count)
        if draw.no_entries:
            raffle.winner = NO_ENTRIES_WINNER
            raffle.winners_list = []
        else:
            raffle.winners_list = list(draw.winners)
            # Legacy mirror for readers of the single-winner field.
            raffle.winner = draw.winners[0] if len(draw.winners) == 1 else None

        raffle.status = COMPLETED
        raffle.completed_at = now
        self.store.save(raffle, expected_status=LIVE)
        return raffle

    def complete_expired(self, now: Optional[datetime] = None) -> List[Raffle]:
        now = now or self.clock()
        expired = self.store.find_completable(now)
        logger.info("Found %d expired raffles to complete.", len(expired))

        completed: List[Raffle] = []
        for raffle in expired:
            try:
                self.complete_raffle(raffle, now)
            except StaleRaffleError:
                logger.warning("Raffle %s was completed elsewhere; skipping", raffle.raffle_id)
                continue
            except RaffleError as e:
                logger.error("Could not complete raffle %s: %s", raffle.raffle_id, e)
                continue

            winners = raffle.resolved_winners()
            if winners:
                logger.info("Raffle %s completed. Winners: %s", raffle.raffle_id, ", ".join(winners))
            else:
                logger.info(
                    "Raffle %s completed. No valid entries for prize distribution.", raffle.raffle_id
                )
            completed.append(raffle)
        return completed

    def pending_dispersals(self) -> List[Raffle]:
        # A raffle without winners has nothing to pay and stays undispersed for good.
        return [r for r in self.store.find_undispersed() if r.resolved_winners()]

    async def disperse_pending(self, summary: PassSummary) -> None:
        pending = self.pending_dispersals()
        if not pending or self.dispersal is None:
            return

        logger.info("Dispersing prizes for %d raffle(s).", len(pending))
        async with self.dispersal.settlement:
            for raffle in pending:
                try:
                    result = await self.dispersal.disperse(raffle)
                except RaffleError as e:
                    logger.error("Dispersal for raffle %s failed: %s", raffle.raffle_id, e)
                    summary.failed += 1
                    continue
                except Exception:
                    # One broken raffle must not starve the ones after it.
                    logger.exception("Unexpected error dispersing raffle %s", raffle.raffle_id)
                    summary.failed += 1
                    continue
                if result.complete:
                    summary.dispersed += 1
                elif result.partial:
                    summary.partial += 1
                else:
                    summary.failed += 1

    async def run_pass(self) -> PassSummary:
        summary = PassSummary()
        summary.completed = len(self.complete_expired())
        await self.disperse_pending(summary)
        return summary
