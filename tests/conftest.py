from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest

from kaspa_raffle.errors import SettlementTimeoutError
from kaspa_raffle.models import KAS, Entry, Raffle
from kaspa_raffle.rpc import CommitScript, Submitted, utxo_amount, utxo_outpoint

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
TREASURY = "kaspa:qtreasury"


def make_raffle(
    raffle_id: str = "r1",
    credits: Optional[Dict[str, float]] = None,
    winners_count: int = 1,
    prize_amount: Any = "1000",
    prize_type: str = KAS,
    prize_ticker: Optional[str] = None,
    time_frame: Optional[datetime] = None,
    **overrides: Any,
) -> Raffle:
    entries = [
        Entry(wallet_address=w, credits_added=c, amount=c, confirmed_at=NOW - timedelta(hours=1))
        for w, c in (credits or {}).items()
    ]
    total = sum(e.credits_added for e in entries)
    raffle = Raffle(
        raffle_id=raffle_id,
        time_frame=time_frame or NOW - timedelta(minutes=1),
        winners_count=winners_count,
        prize_type=prize_type,
        prize_amount=Decimal(prize_amount),
        prize_ticker=prize_ticker,
        treasury_address=TREASURY,
        entries=entries,
        total_entries=total,
        current_entries=total,
    )
    for key, value in overrides.items():
        setattr(raffle, key, value)
    return raffle


class FakeSettlement:
    """Records payouts; wallets in `failures` raise the mapped error."""

    address = TREASURY

    def __init__(self, failures: Optional[Dict[str, Exception]] = None) -> None:
        self.failures = dict(failures or {})
        self.calls: List[tuple] = []
        self.sessions = 0

    async def __aenter__(self) -> "FakeSettlement":
        self.sessions += 1
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        return None

    def _outcome(self, kind: str, destination: str, amount: Decimal, *extra: Any) -> str:
        self.calls.append((kind, destination, amount, *extra))
        if destination in self.failures:
            raise self.failures[destination]
        return f"tx-{destination}-{len(self.calls)}"

    async def send_native(self, destination: str, amount: Decimal) -> str:
        return self._outcome("KAS", destination, amount)

    async def send_token(self, destination: str, amount: Decimal, ticker: str) -> str:
        return self._outcome("KRC20", destination, amount, ticker)


def timeout_error(txid: str = "tx-stuck") -> SettlementTimeoutError:
    return SettlementTimeoutError(txid, 120)


class FakeBackend:
    """
    In-memory treasury. Submissions emit UTXO-changed notifications unless
    the matching `mature_*` flag is off, which simulates a transaction that
    never shows up.
    """

    def __init__(self, balances: List[int], address: str = TREASURY) -> None:
        self.address = address
        self.utxos: Dict[str, List[Dict[str, Any]]] = {
            address: [self._entry(address, f"fund{i}", amount) for i, amount in enumerate(balances)]
        }
        self.listeners: List[Any] = []
        self.subscriptions: set = set()
        self.calls: List[tuple] = []
        self.inscriptions: List[Any] = []
        self.mature_payments = True
        self.mature_reveals = True
        self.fail_submit: Optional[Exception] = None
        self.fail_script: Optional[Exception] = None
        self.fail_reveal: Optional[Exception] = None
        self.in_flight = 0
        self.max_in_flight = 0
        self._n = 0

    @staticmethod
    def _entry(address: str, txid: str, amount: int) -> Dict[str, Any]:
        return {"address": address, "outpoint": {"transactionId": txid, "index": 0}, "amount": amount}

    async def connect(self) -> None:
        self.calls.append(("connect",))

    async def disconnect(self) -> None:
        self.calls.append(("disconnect",))

    def add_utxo_listener(self, listener: Any) -> None:
        self.listeners.append(listener)

    def remove_utxo_listener(self, listener: Any) -> None:
        self.listeners.remove(listener)

    async def subscribe_utxos(self, addresses: List[str]) -> None:
        self.subscriptions.update(addresses)

    async def unsubscribe_utxos(self, addresses: List[str]) -> None:
        self.subscriptions.difference_update(addresses)

    async def get_utxos(self, address: str) -> List[Dict[str, Any]]:
        return list(self.utxos.get(address, []))

    def _emit(self, address: str, txid: str, amount: int) -> None:
        entry = self._entry(address, txid, amount)
        self.utxos.setdefault(address, []).append(entry)
        if address not in self.subscriptions:
            return
        for listener in list(self.listeners):
            listener({"type": "utxos-changed", "data": {"added": [entry], "removed": []}})

    def _spend(self, address: str, utxos: List[Dict[str, Any]]) -> tuple:
        spent = tuple(utxo_outpoint(u) for u in utxos)
        self.utxos[address] = [u for u in self.utxos.get(address, []) if utxo_outpoint(u) not in spent]
        return spent

    async def submit_payment(self, utxos, destination, amount_sompi, priority_fee) -> Submitted:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            self.calls.append(("payment", destination, amount_sompi))
            if self.fail_submit is not None:
                raise self.fail_submit
            self._n += 1
            txid = f"tx{self._n}"
            total = sum(utxo_amount(u) for u in utxos)
            spent = self._spend(self.address, utxos)
            if self.mature_payments:
                self._emit(destination, txid, amount_sompi)
                self._emit(self.address, txid, total - amount_sompi - priority_fee)
            return Submitted(txid=txid, spent=spent)
        finally:
            self.in_flight -= 1

    def commit_script(self, inscription) -> CommitScript:
        if self.fail_script is not None:
            raise self.fail_script
        self.inscriptions.append(inscription)
        return CommitScript(inscription=inscription, p2sh_address=f"kaspa:p2sh{len(self.inscriptions)}")

    async def submit_reveal(self, commit, commit_utxo, utxos, priority_fee) -> Submitted:
        self.calls.append(("reveal", commit.p2sh_address, utxo_outpoint(commit_utxo)[0]))
        if self.fail_reveal is not None:
            raise self.fail_reveal
        self._n += 1
        txid = f"tx{self._n}"
        spent = self._spend(commit.p2sh_address, [commit_utxo])
        if self.mature_reveals:
            self._emit(self.address, txid, utxo_amount(commit_utxo) - priority_fee)
        return Submitted(txid=txid, spent=spent)


@pytest.fixture
def raffle_factory():
    return make_raffle
