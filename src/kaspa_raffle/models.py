from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .errors import ValidationError
from .project_constants import NO_ENTRIES_WINNER

LIVE = "live"
COMPLETED = "completed"

KAS = "KAS"
KRC20 = "KRC20"

DEPOSIT = "deposit"
PRIZE = "prize"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_time(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_time(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def to_decimal(value: Any) -> Decimal:
    # str() first so floats keep their shortest repr instead of binary noise
    return value if isinstance(value, Decimal) else Decimal(str(value))


@dataclass
class Entry:
    wallet_address: str
    credits_added: float
    amount: float
    confirmed_at: Optional[datetime] = None
    txid: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        return {
            "walletAddress": self.wallet_address,
            "txid": self.txid,
            "creditsAdded": self.credits_added,
            "amount": self.amount,
            "confirmedAt": format_time(self.confirmed_at),
        }

    @staticmethod
    def from_document(doc: Dict[str, Any]) -> "Entry":
        return Entry(
            wallet_address=doc["walletAddress"],
            credits_added=float(doc.get("creditsAdded", 0)),
            amount=float(doc.get("amount", 0)),
            confirmed_at=parse_time(doc.get("confirmedAt")),
            txid=doc.get("txid"),
        )


@dataclass
class ProcessedTransaction:
    """One line of the append-only raffle ledger (deposit or prize payout)."""

    txid: str
    coin_type: str
    amount: Decimal
    timestamp: datetime
    kind: str = PRIZE
    wallet_address: Optional[str] = None
    credits_added: Optional[float] = None

    def to_document(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = {
            "txid": self.txid,
            "coinType": self.coin_type,
            "amount": str(self.amount),
            "timestamp": format_time(self.timestamp),
            "kind": self.kind,
        }
        if self.wallet_address is not None:
            doc["walletAddress"] = self.wallet_address
        if self.credits_added is not None:
            doc["creditsAdded"] = self.credits_added
        return doc

    @staticmethod
    def from_document(doc: Dict[str, Any]) -> "ProcessedTransaction":
        credits = doc.get("creditsAdded")
        # Records written before kinds existed: deposits are the ones carrying credits.
        kind = doc.get("kind") or (DEPOSIT if credits is not None else PRIZE)
        return ProcessedTransaction(
            txid=doc["txid"],
            coin_type=doc.get("coinType", ""),
            amount=to_decimal(doc.get("amount", 0)),
            timestamp=parse_time(doc.get("timestamp")) or utcnow(),
            kind=kind,
            wallet_address=doc.get("walletAddress"),
            credits_added=float(credits) if credits is not None else None,
        )


@dataclass
class Raffle:
    raffle_id: str
    time_frame: datetime
    winners_count: int
    prize_type: str
    prize_amount: Decimal
    prize_ticker: Optional[str] = None
    status: str = LIVE
    creator: str = ""
    raffle_type: str = KAS
    token_ticker: Optional[str] = None
    treasury_address: str = ""
    credit_conversion: float = 1.0
    prize_display: str = ""
    entries: List[Entry] = field(default_factory=list)
    total_entries: float = 0.0
    current_entries: float = 0.0
    winner: Optional[str] = None
    winners_list: List[str] = field(default_factory=list)
    prize_confirmed: bool = False
    prize_dispersed: bool = False
    prize_transaction_id: Optional[str] = None
    processed_transactions: List[ProcessedTransaction] = field(default_factory=list)
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.time_frame

    def copy(self) -> "Raffle":
        return copy.deepcopy(self)

    def resolved_winners(self) -> List[str]:
        """winnersList is authoritative; fall back to the legacy single winner."""
        if self.winners_list:
            return list(self.winners_list)
        if self.winner and self.winner != NO_ENTRIES_WINNER:
            return [self.winner]
        return []

    def prize_records(self) -> List[ProcessedTransaction]:
        return [t for t in self.processed_transactions if t.kind == PRIZE]

    def prize_payee(self, record: ProcessedTransaction) -> Optional[str]:
        """
        Wallet a prize record paid. Older records carry no walletAddress; on a
        single-winner raffle they can only have paid that winner.
        """
        if record.wallet_address:
            return record.wallet_address
        winners = self.resolved_winners()
        return winners[0] if len(winners) == 1 else None

    def unattributed_prizes(self) -> List[ProcessedTransaction]:
        return [r for r in self.prize_records() if self.prize_payee(r) is None]

    def paid_winners(self) -> Dict[str, ProcessedTransaction]:
        paid: Dict[str, ProcessedTransaction] = {}
        for record in self.prize_records():
            payee = self.prize_payee(record)
            if payee and payee not in paid:
                paid[payee] = record
        return paid

    def unpaid_winners(self) -> List[str]:
        paid = self.paid_winners()
        return [w for w in self.resolved_winners() if w not in paid]

    def record_entry(
        self, wallet_address: str, amount: float, txid: str, now: datetime
    ) -> float:
        """Credit a confirmed deposit to the raffle. Returns the credits added."""
        if self.status != LIVE:
            raise ValidationError(f"Raffle {self.raffle_id} is no longer live")
        if amount <= 0:
            raise ValidationError(f"Deposit amount must be positive, got {amount}")

        credits = amount / float(self.credit_conversion)
        self.total_entries += credits
        self.current_entries += credits

        existing = next((e for e in self.entries if e.wallet_address == wallet_address), None)
        if existing:
            existing.credits_added += credits
            existing.amount += amount
            existing.confirmed_at = now
        else:
            self.entries.append(Entry(wallet_address, credits, amount, now, txid))

        self.processed_transactions.append(
            ProcessedTransaction(
                txid=txid,
                coin_type=KAS if self.raffle_type == KAS else (self.token_ticker or ""),
                amount=to_decimal(amount),
                timestamp=now,
                kind=DEPOSIT,
                wallet_address=wallet_address,
                credits_added=credits,
            )
        )
        return credits

    def record_prize(
        self, wallet_address: str, txid: str, amount: Decimal, now: datetime
    ) -> ProcessedTransaction:
        record = ProcessedTransaction(
            txid=txid,
            coin_type=self.prize_coin_type,
            amount=amount,
            timestamp=now,
            kind=PRIZE,
            wallet_address=wallet_address,
        )
        self.processed_transactions.append(record)
        self.prize_confirmed = True
        if self.prize_transaction_id is None:
            self.prize_transaction_id = txid
        return record

    @property
    def prize_token(self) -> Optional[str]:
        # Raffles created before prizeTicker existed pay out in the entry token.
        return self.prize_ticker or self.token_ticker

    @property
    def prize_coin_type(self) -> str:
        return KAS if self.prize_type == KAS else (self.prize_token or KRC20)

    def to_document(self) -> Dict[str, Any]:
        return {
            "raffleId": self.raffle_id,
            "creator": self.creator,
            "type": self.raffle_type,
            "tokenTicker": self.token_ticker,
            "timeFrame": format_time(self.time_frame),
            "creditConversion": self.credit_conversion,
            "prizeType": self.prize_type,
            "prizeAmount": str(self.prize_amount),
            "prizeTicker": self.prize_ticker,
            "prizeDisplay": self.prize_display,
            "treasuryAddress": self.treasury_address,
            "prizeConfirmed": self.prize_confirmed,
            "prizeDispersed": self.prize_dispersed,
            "prizeTransactionId": self.prize_transaction_id,
            "winnersCount": self.winners_count,
            "winnersList": list(self.winners_list),
            "entries": [e.to_document() for e in self.entries],
            "totalEntries": self.total_entries,
            "currentEntries": self.current_entries,
            "processedTransactions": [t.to_document() for t in self.processed_transactions],
            "status": self.status,
            "winner": self.winner,
            "completedAt": format_time(self.completed_at),
            "createdAt": format_time(self.created_at),
        }

    @staticmethod
    def from_document(doc: Dict[str, Any]) -> "Raffle":
        time_frame = parse_time(doc.get("timeFrame"))
        if time_frame is None:
            raise ValidationError(f"Raffle {doc.get('raffleId')} has no timeFrame")
        return Raffle(
            raffle_id=doc["raffleId"],
            time_frame=time_frame,
            winners_count=int(doc.get("winnersCount", 1)),
            prize_type=doc["prizeType"],
            prize_amount=to_decimal(doc.get("prizeAmount", 0)),
            prize_ticker=doc.get("prizeTicker"),
            status=doc.get("status", LIVE),
            creator=doc.get("creator", ""),
            raffle_type=doc.get("type", KAS),
            token_ticker=doc.get("tokenTicker"),
            treasury_address=doc.get("treasuryAddress", ""),
            credit_conversion=float(doc.get("creditConversion", 1)),
            prize_display=doc.get("prizeDisplay", ""),
            entries=[Entry.from_document(e) for e in doc.get("entries", [])],
            total_entries=float(doc.get("totalEntries", 0)),
            current_entries=float(doc.get("currentEntries", 0)),
            winner=doc.get("winner"),
            winners_list=list(doc.get("winnersList") or []),
            prize_confirmed=bool(doc.get("prizeConfirmed", False)),
            prize_dispersed=bool(doc.get("prizeDispersed", False)),
            prize_transaction_id=doc.get("prizeTransactionId"),
            processed_transactions=[
                ProcessedTransaction.from_document(t)
                for t in doc.get("processedTransactions", [])
            ],
            completed_at=parse_time(doc.get("completedAt")),
            created_at=parse_time(doc.get("createdAt")),
        )
