from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_DOWN, Decimal
from typing import Any, Callable, Dict, List, Optional, Set

from .errors import IndexerError, SettlementError, ValidationError
from .models import COMPLETED, KAS, KRC20, Raffle, utcnow
from .store import RaffleStore

logger = logging.getLogger(__name__)

# Smallest unit of both KAS (sompi) and 8-decimal KRC-20 tokens
SHARE_QUANTUM = Decimal("0.00000001")


def per_winner_share(prize_amount: Decimal, winner_count: int) -> Decimal:
    if winner_count < 1:
        raise ValidationError("Cannot split a prize between zero winners")
    return (prize_amount / winner_count).quantize(SHARE_QUANTUM, rounding=ROUND_DOWN)


@dataclass
class DispersalResult:
    raffle_id: str
    share: Decimal
    paid: Dict[str, str] = field(default_factory=dict)
    reconciled: Dict[str, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return not self.failed

    @property
    def partial(self) -> bool:
        """Some winners are paid (now or earlier) and some are still owed."""
        settled = self.paid or self.reconciled or self.skipped
        return bool(self.failed) and bool(settled)


class PrizeDispersal:
    """
    Pays the winners of a completed raffle, one settlement per winner.

    Safe to run again on the same raffle: winners that already have a prize
    record are skipped, and before any payment the external ledger is asked
    whether a matching payout already happened (covers a crash between
    broadcast and the ledger write).
    """

    def __init__(
        self,
        store: RaffleStore,
        settlement: Any,
        reconciler: Optional[Any] = None,
        clock: Callable[[], datetime] = utcnow,
        strict_reconcile: bool = True,
    ) -> None:
        self.store = store
        self.settlement = settlement
        self.reconciler = reconciler
        self.clock = clock
        self.strict_reconcile = strict_reconcile

    async def disperse(self, raffle: Raffle) -> DispersalResult:
        if raffle.status != COMPLETED:
            raise ValidationError(f"Raffle {raffle.raffle_id} is not completed")

        winners = list(dict.fromkeys(raffle.resolved_winners()))
        if not winners:
            raise ValidationError(
                f"Raffle {raffle.raffle_id} has no winners but a prize of {raffle.prize_amount}"
            )

        share = per_winner_share(raffle.prize_amount, len(winners))
        if share <= 0:
            raise ValidationError(
                f"Raffle {raffle.raffle_id}: prize {raffle.prize_amount} too small to split {len(winners)} ways"
            )
        remainder = raffle.prize_amount - share * len(winners)
        if remainder:
            logger.info(
                "Raffle %s: %s %s left in treasury after even split",
                raffle.raffle_id,
                remainder,
                raffle.prize_coin_type,
            )

        unattributed = raffle.unattributed_prizes()
        if unattributed:
            # Older multi-winner ledgers do not say who was paid; paying again could double pay.
            raise ValidationError(
                f"Raffle {raffle.raffle_id} has {len(unattributed)} prize record(s) without a wallet "
                f"across {len(winners)} winners; settle it manually"
            )

        result = DispersalResult(raffle_id=raffle.raffle_id, share=share)
        paid = raffle.paid_winners()
        claimed = self._claimed_txids(raffle)

        for wallet in winners:
            if wallet in paid:
                result.skipped.append(wallet)
                continue

            try:
                existing = await self._find_existing_payout(raffle, wallet, share, claimed)
            except IndexerError as e:
                if self.strict_reconcile:
                    logger.error(
                        "Raffle %s: cannot check ledger for %s, not paying this pass: %s",
                        raffle.raffle_id,
                        wallet,
                        e,
                    )
                    result.failed[wallet] = str(e)
                    continue
                logger.warning("Raffle %s: ledger check for %s failed: %s", raffle.raffle_id, wallet, e)
                existing = None

            if existing:
                logger.warning(
                    "Raffle %s: found unrecorded payout %s to %s; recording instead of resending",
                    raffle.raffle_id,
                    existing,
                    wallet,
                )
                raffle.record_prize(wallet, existing, share, self.clock())
                self.store.save(raffle)
                claimed.add(existing)
                result.reconciled[wallet] = existing
                continue

            try:
                txid = await self._pay(raffle, wallet, share)
            except (SettlementError, ValidationError) as e:
                logger.error(
                    "Error sending prize to %s for raffle %s: %s", wallet, raffle.raffle_id, e
                )
                result.failed[wallet] = str(e)
                continue
            except Exception as e:
                logger.exception(
                    "Unexpected error sending prize to %s for raffle %s", wallet, raffle.raffle_id
                )
                result.failed[wallet] = f"{type(e).__name__}: {e}"
                continue

            logger.info("Sent prize to %s. Transaction ID: %s", wallet, txid)
            raffle.record_prize(wallet, txid, share, self.clock())
            # Persist per winner so a later crash cannot forget this payment.
            self.store.save(raffle)
            claimed.add(txid)
            result.paid[wallet] = txid

        if not raffle.unpaid_winners():
            raffle.prize_confirmed = True
            raffle.prize_dispersed = True
        self.store.save(raffle)

        if result.complete:
            logger.info("Raffle %s: prize dispersed to %d winner(s)", raffle.raffle_id, len(winners))
        else:
            logger.warning(
                "Raffle %s: %d of %d winner(s) still unpaid; retrying next pass",
                raffle.raffle_id,
                len(result.failed),
                len(winners),
            )
        return result

    def _claimed_txids(self, raffle: Raffle) -> Set[str]:
        """Prize txids already booked to some raffle; never reused by reconciliation."""
        if self.reconciler is None:
            return set()
        claimed = self.store.prize_txids()
        claimed.update(t.txid for t in raffle.prize_records())
        return claimed

    async def _find_existing_payout(
        self, raffle: Raffle, wallet: str, share: Decimal, claimed: Set[str]
    ) -> Optional[str]:
        if self.reconciler is None:
            return None
        since = raffle.completed_at or raffle.time_frame
        if raffle.prize_type == KAS:
            return await self.reconciler.find_native_payout(
                self.settlement.address, wallet, share, since, exclude=claimed
            )
        return await self.reconciler.find_token_payout(
            self.settlement.address,
            wallet,
            raffle.prize_token or "",
            share,
            since,
            exclude=claimed,
        )

    async def _pay(self, raffle: Raffle, wallet: str, share: Decimal) -> str:
        if raffle.prize_type == KAS:
            return await self.settlement.send_native(wallet, share)
        if raffle.prize_type == KRC20:
            ticker = raffle.prize_token
            if not ticker:
                raise ValidationError(f"Raffle {raffle.raffle_id} has a KRC20 prize without a ticker")
            return await self.settlement.send_token(wallet, share, ticker)
        raise ValidationError(f"Raffle {raffle.raffle_id} has unknown prize type {raffle.prize_type!r}")
