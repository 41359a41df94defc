"""
Outbound prize payments from the treasury wallet.

Native KAS prizes are a single payment transaction. KRC-20 prizes use the
Kasplex commit/reveal pattern:

1. commit: pay a small gas amount to a P2SH address whose script requires
   the treasury signature and carries the transfer inscription;
2. wait until the commit transaction shows up in a UTXO-changed
   notification (bounded by commit_timeout_s);
3. reveal: spend the P2SH output back to the treasury, exposing the script
   (and with it the inscription) to the indexer;
4. wait for the reveal the same way (bounded by reveal_timeout_s).

No reveal is ever built without an observed commit. The treasury UTXO set is
a single shared resource, so every payment holds the treasury lock.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from decimal import Decimal
from typing import Any, Awaitable, Dict, Iterable, List, Optional, Set, Tuple, TypeVar

from .errors import (
    CommitTimeoutError,
    InsufficientFundsError,
    RevealTimeoutError,
    SettlementError,
    SettlementSubmissionError,
    ValidationError,
)
from .inscription import TransferInscription, kas_to_sompi
from .project_constants import COMMIT_AMOUNT_SOMPI, KRC20_DECIMALS, PRIORITY_FEE_SOMPI
from .rpc import CommitScript, Outpoint, utxo_address, utxo_amount, utxo_outpoint

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SEEN_LIMIT = 1024


class UtxoWatcher:
    """
    UTXO-changed listener that resolves per-transaction futures.

    The node may call the listener from its own thread, so notifications are
    handed to the event loop before touching any future. Transactions seen
    before anyone waits for them are remembered.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, addresses: Iterable[str] = ()) -> None:
        self._loop = loop
        self._addresses: Set[str] = set(addresses)
        self._seen: "OrderedDict[str, List[Dict[str, Any]]]" = OrderedDict()
        self._waiters: Dict[str, asyncio.Future] = {}

    def watch(self, address: str) -> None:
        self._addresses.add(address)

    def unwatch(self, address: str) -> None:
        self._addresses.discard(address)

    def __call__(self, event: Dict[str, Any]) -> None:
        data = event.get("data") or event
        added = list(data.get("added") or [])
        if added:
            self._loop.call_soon_threadsafe(self._observe, added)

    def _observe(self, added: List[Dict[str, Any]]) -> None:
        for entry in added:
            if utxo_address(entry) not in self._addresses:
                continue
            txid, _ = utxo_outpoint(entry)
            self._seen.setdefault(txid, []).append(entry)
            while len(self._seen) > _SEEN_LIMIT:
                self._seen.popitem(last=False)
            waiter = self._waiters.get(txid)
            if waiter is not None and not waiter.done():
                waiter.set_result(self._seen[txid])

    async def wait_for(self, txid: str, timeout_s: float) -> List[Dict[str, Any]]:
        """Entries added by txid. Raises asyncio.TimeoutError past the deadline."""
        if txid in self._seen:
            return self._seen[txid]
        waiter = self._loop.create_future()
        self._waiters[txid] = waiter
        try:
            return await asyncio.wait_for(waiter, timeout_s)
        finally:
            self._waiters.pop(txid, None)


class SettlementClient:
    """
    Prize payments through one treasury backend.

    Usable as an async context manager that owns the backend connection and
    the treasury UTXO subscription; nesting is allowed and only the outermost
    exit tears down. send_native/send_token open a session themselves when
    called outside one.
    """

    def __init__(
        self,
        backend: Any,
        commit_timeout_s: float = 120.0,
        reveal_timeout_s: float = 120.0,
        native_settle_timeout_s: float = 30.0,
        priority_fee: int = PRIORITY_FEE_SOMPI,
        commit_amount: int = COMMIT_AMOUNT_SOMPI,
        token_decimals: int = KRC20_DECIMALS,
    ) -> None:
        self.backend = backend
        self.address: str = backend.address
        self.commit_timeout_s = commit_timeout_s
        self.reveal_timeout_s = reveal_timeout_s
        self.native_settle_timeout_s = native_settle_timeout_s
        self.priority_fee = priority_fee
        self.commit_amount = commit_amount
        self.token_decimals = token_decimals

        self._treasury_lock = asyncio.Lock()
        self._session_lock = asyncio.Lock()
        self._depth = 0
        self._watcher: Optional[UtxoWatcher] = None
        # Outpoints spent this session; the node may still report them for a while.
        self._spent: Set[Outpoint] = set()

    async def __aenter__(self) -> "SettlementClient":
        async with self._session_lock:
            if self._depth == 0:
                await self._open()
            self._depth += 1
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        async with self._session_lock:
            self._depth -= 1
            if self._depth == 0:
                await self._close()

    async def _open(self) -> None:
        watcher = UtxoWatcher(asyncio.get_running_loop(), [self.address])
        await self._submit(self.backend.connect())
        self.backend.add_utxo_listener(watcher)
        try:
            await self._submit(self.backend.subscribe_utxos([self.address]))
        except BaseException:
            self.backend.remove_utxo_listener(watcher)
            await self.backend.disconnect()
            raise
        self._watcher = watcher
        logger.debug("Settlement session opened for %s", self.address)

    async def _close(self) -> None:
        try:
            await self.backend.unsubscribe_utxos([self.address])
        except Exception as e:
            logger.warning("Failed to unsubscribe treasury UTXO notifications: %s", e)
        finally:
            if self._watcher is not None:
                self.backend.remove_utxo_listener(self._watcher)
            self._watcher = None
            self._spent.clear()
            await self.backend.disconnect()
            logger.debug("Settlement session closed for %s", self.address)

    async def _submit(self, call: Awaitable[T]) -> T:
        try:
            return await call
        except SettlementError:
            raise
        except Exception as e:
            # SDK and node failures come in many shapes; they all mean "not broadcast".
            raise SettlementSubmissionError(f"Transaction submission failed: {e}") from e

    async def _spendable_utxos(self, needed: int) -> List[Dict[str, Any]]:
        utxos = await self._submit(self.backend.get_utxos(self.address))
        utxos = [u for u in utxos if utxo_outpoint(u) not in self._spent]
        available = sum(utxo_amount(u) for u in utxos)
        if available < needed:
            raise InsufficientFundsError(needed, available)
        # Largest first keeps transactions small.
        return sorted(utxos, key=utxo_amount, reverse=True)

    async def send_native(self, destination: str, amount: Decimal) -> str:
        sompi = kas_to_sompi(amount)
        if sompi <= 0:
            raise ValidationError(f"KAS payout amount too small: {amount}")

        async with self, self._treasury_lock:
            utxos = await self._spendable_utxos(sompi + self.priority_fee)
            submitted = await self._submit(
                self.backend.submit_payment(utxos, destination, sompi, self.priority_fee)
            )
            self._spent.update(submitted.spent)
            logger.info("Sent %s KAS to %s (tx %s)", amount, destination, submitted.txid)

            # Let the change output land so the next payment sees fresh UTXOs.
            try:
                await self._watcher.wait_for(submitted.txid, self.native_settle_timeout_s)
            except asyncio.TimeoutError:
                logger.warning(
                    "Change of %s not observed within %.0fs; continuing",
                    submitted.txid,
                    self.native_settle_timeout_s,
                )
            return submitted.txid

    async def send_token(self, destination: str, amount: Decimal, ticker: str) -> str:
        inscription = TransferInscription.build(ticker, amount, destination, self.token_decimals)

        async with self, self._treasury_lock:
            try:
                commit = self.backend.commit_script(inscription)
            except Exception as e:
                raise SettlementSubmissionError(f"Could not build commit script: {e}") from e
            await self._submit(self.backend.subscribe_utxos([commit.p2sh_address]))
            self._watcher.watch(commit.p2sh_address)
            try:
                commit_txid, commit_utxo = await self._commit(commit)
                return await self._reveal(commit, commit_txid, commit_utxo)
            finally:
                self._watcher.unwatch(commit.p2sh_address)
                try:
                    await self.backend.unsubscribe_utxos([commit.p2sh_address])
                except Exception as e:
                    logger.warning("Failed to unsubscribe %s: %s", commit.p2sh_address, e)

    async def _commit(self, commit: CommitScript) -> Tuple[str, Dict[str, Any]]:
        utxos = await self._spendable_utxos(self.commit_amount + self.priority_fee)
        submitted = await self._submit(
            self.backend.submit_payment(
                utxos, commit.p2sh_address, self.commit_amount, self.priority_fee
            )
        )
        self._spent.update(submitted.spent)
        logger.info(
            "Commit %s submitted for %s %s -> %s",
            submitted.txid,
            commit.inscription.amt,
            commit.inscription.tick,
            commit.inscription.to,
        )

        try:
            entries = await self._watcher.wait_for(submitted.txid, self.commit_timeout_s)
        except asyncio.TimeoutError:
            raise CommitTimeoutError(submitted.txid, self.commit_timeout_s) from None

        commit_utxo = next((e for e in entries if utxo_address(e) == commit.p2sh_address), None)
        if commit_utxo is None:
            # Only the treasury change was announced; look the script output up.
            candidates = await self._submit(self.backend.get_utxos(commit.p2sh_address))
            commit_utxo = next(
                (u for u in candidates if utxo_outpoint(u)[0] == submitted.txid), None
            )
        if commit_utxo is None:
            raise SettlementSubmissionError(
                f"Commit {submitted.txid} matured but its P2SH output was not found"
            )
        return submitted.txid, commit_utxo

    async def _reveal(self, commit: CommitScript, commit_txid: str, commit_utxo: Dict[str, Any]) -> str:
        try:
            utxos = [
                u for u in await self._submit(self.backend.get_utxos(self.address))
                if utxo_outpoint(u) not in self._spent
            ]
            submitted = await self._submit(
                self.backend.submit_reveal(commit, commit_utxo, utxos, self.priority_fee)
            )
        except SettlementError:
            txid, index = utxo_outpoint(commit_utxo)
            logger.error(
                "Reveal for commit %s failed; %d sompi stay locked at %s (outpoint %s:%d, inscription %s)",
                commit_txid,
                utxo_amount(commit_utxo),
                commit.p2sh_address,
                txid,
                index,
                commit.inscription.to_bytes().decode(),
            )
            raise
        self._spent.update(submitted.spent)
        logger.info("Reveal %s submitted for commit %s", submitted.txid, commit_txid)

        try:
            await self._watcher.wait_for(submitted.txid, self.reveal_timeout_s)
        except asyncio.TimeoutError:
            raise RevealTimeoutError(submitted.txid, self.reveal_timeout_s) from None
        return submitted.txid
