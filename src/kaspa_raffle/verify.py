from __future__ import annotations

import math
from decimal import Decimal
from typing import Any, Dict

from .dispersal import per_winner_share
from .draw import aggregate_credits
from .errors import AuditError
from .models import COMPLETED, Raffle


def verify_raffle(raffle: Raffle) -> Dict[str, Any]:
    """Recompute the raffle's bookkeeping and fail on the first inconsistency."""
    credit_sum = sum(e.credits_added for e in raffle.entries)
    if not math.isclose(credit_sum, raffle.total_entries, rel_tol=1e-9, abs_tol=1e-9):
        raise AuditError(
            f"Credit mismatch: entries={credit_sum} totalEntries={raffle.total_entries}"
        )

    wallets = [e.wallet_address for e in raffle.entries]
    if len(wallets) != len(set(wallets)):
        raise AuditError("Entries contain the same wallet more than once")

    winners = raffle.resolved_winners()
    if len(winners) != len(set(winners)):
        raise AuditError(f"Duplicate winner in {winners}")

    eligible = aggregate_credits(raffle.entries)
    bound = min(raffle.winners_count, len(eligible))
    if len(winners) > bound:
        raise AuditError(f"{len(winners)} winners exceed bound of {bound}")
    stray = [w for w in winners if w not in eligible]
    if stray:
        raise AuditError(f"Winners without credits: {stray}")

    if raffle.status != COMPLETED and winners:
        raise AuditError(f"Raffle is {raffle.status} but already has winners")

    records = raffle.prize_records()
    per_wallet: Dict[str, int] = {}
    for record in records:
        payee = raffle.prize_payee(record)
        if payee is None:
            raise AuditError(
                f"Prize record {record.txid} has no wallet and {len(winners)} winners to match it to"
            )
        if payee not in winners:
            raise AuditError(f"Prize record {record.txid} pays non-winner {payee}")
        per_wallet[payee] = per_wallet.get(payee, 0) + 1
    doubles = [w for w, n in per_wallet.items() if n > 1]
    if doubles:
        raise AuditError(f"Winners paid more than once: {doubles}")

    if raffle.prize_dispersed and set(per_wallet) != set(winners):
        raise AuditError("Raffle marked dispersed but not every winner has a prize record")

    paid_total = sum((r.amount for r in records), Decimal(0))
    if paid_total > raffle.prize_amount:
        raise AuditError(f"Paid {paid_total} exceeds prize amount {raffle.prize_amount}")

    return {
        "ok": True,
        "raffle_id": raffle.raffle_id,
        "status": raffle.status,
        "winners": winners,
        "share": str(per_winner_share(raffle.prize_amount, len(winners))) if winners else None,
        "paid": len(per_wallet),
        "paid_total": str(paid_total),
        "prize_dispersed": raffle.prize_dispersed,
    }
