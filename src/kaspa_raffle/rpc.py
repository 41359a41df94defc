from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import Settings
from .inscription import TransferInscription
from .project_constants import KASPLEX_MARKER

logger = logging.getLogger(__name__)

Outpoint = Tuple[str, int]
UtxoListener = Callable[[Dict[str, Any]], None]


def utxo_outpoint(entry: Dict[str, Any]) -> Outpoint:
    outpoint = entry["outpoint"]
    return outpoint["transactionId"], int(outpoint.get("index", 0))


def utxo_amount(entry: Dict[str, Any]) -> int:
    # Older nodes nest amount under utxoEntry.
    if "amount" in entry:
        return int(entry["amount"])
    return int(entry["utxoEntry"]["amount"])


def utxo_address(entry: Dict[str, Any]) -> str:
    address = entry.get("address")
    return address if isinstance(address, str) else str(address or "")


@dataclass(frozen=True)
class Submitted:
    txid: str
    spent: Tuple[Outpoint, ...] = ()


@dataclass(frozen=True)
class CommitScript:
    inscription: TransferInscription
    p2sh_address: str
    script: Any = None  # SDK ScriptBuilder; needed again to sign the reveal


class KaspaBackend:
    """
    Treasury wallet + node connection, over the rusty-kaspa Python SDK.

    Everything touching keys, scripts or transaction encoding lives here;
    the settlement client only sees txids, UTXO dicts and addresses.
    """

    def __init__(self, settings: Settings) -> None:
        import kaspa

        self._kaspa = kaspa
        self.settings = settings
        self.address = settings.treasury_address
        self.network_id = settings.network_id
        self._private_key = kaspa.PrivateKey(settings.treasury_private_key)
        self._x_only_public_key = self._private_key.to_public_key().to_x_only_public_key().to_string()
        if settings.rpc_url:
            self.client = kaspa.RpcClient(url=settings.rpc_url, network_id=settings.network_id)
        else:
            self.client = kaspa.RpcClient(resolver=kaspa.Resolver(), network_id=settings.network_id)
        self._listeners: List[UtxoListener] = []
        self._registered = False

    async def connect(self) -> None:
        await self.client.connect()
        if not self._registered:
            self.client.add_event_listener("utxos-changed", self._dispatch)
            self._registered = True
        logger.debug("Connected to %s node", self.network_id)

    async def disconnect(self) -> None:
        if self._registered:
            self.client.remove_event_listener("utxos-changed")
            self._registered = False
        await self.client.disconnect()

    def _dispatch(self, event: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            listener(event)

    def add_utxo_listener(self, listener: UtxoListener) -> None:
        self._listeners.append(listener)

    def remove_utxo_listener(self, listener: UtxoListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def subscribe_utxos(self, addresses: List[str]) -> None:
        await self.client.subscribe_utxos_changed(addresses)

    async def unsubscribe_utxos(self, addresses: List[str]) -> None:
        await self.client.unsubscribe_utxos_changed(addresses)

    async def get_utxos(self, address: str) -> List[Dict[str, Any]]:
        result = await self.client.get_utxos_by_addresses({"addresses": [address]})
        return list(result.get("entries", []))

    def _spent(self, tx: Any) -> Tuple[Outpoint, ...]:
        return tuple(
            (str(i.previous_outpoint.transaction_id), int(i.previous_outpoint.index))
            for i in tx.transaction.inputs
        )

    async def submit_payment(
        self,
        utxos: List[Dict[str, Any]],
        destination: str,
        amount_sompi: int,
        priority_fee: int,
    ) -> Submitted:
        """Build, sign and submit a payment. Returns the last transaction of the chain."""
        result = self._kaspa.create_transactions(
            network_id=self.network_id,
            entries=utxos,
            outputs=[{"address": destination, "amount": amount_sompi}],
            change_address=self.address,
            priority_fee=priority_fee,
        )
        spent: List[Outpoint] = []
        txid = ""
        for tx in result["transactions"]:
            tx.sign([self._private_key], False)
            spent.extend(self._spent(tx))
            txid = await tx.submit(self.client)
        if not txid:
            raise RuntimeError("SDK produced no transaction for payment")
        return Submitted(txid=txid, spent=tuple(spent))

    def commit_script(self, inscription: TransferInscription) -> CommitScript:
        """Treasury-signature script carrying the inscription in an unexecuted branch."""
        kaspa = self._kaspa
        script = kaspa.ScriptBuilder()
        script.add_data(self._x_only_public_key)
        script.add_op(kaspa.Opcodes.OpCheckSig)
        script.add_op(kaspa.Opcodes.OpFalse)
        script.add_op(kaspa.Opcodes.OpIf)
        script.add_data(KASPLEX_MARKER)
        script.add_i64(0)
        script.add_data(inscription.to_bytes())
        script.add_op(kaspa.Opcodes.OpEndIf)

        p2sh = kaspa.address_from_script_public_key(
            script.create_pay_to_script_hash_script(), self.settings.network_type
        )
        return CommitScript(inscription=inscription, p2sh_address=p2sh.to_string(), script=script)

    async def submit_reveal(
        self,
        commit: CommitScript,
        commit_utxo: Dict[str, Any],
        utxos: List[Dict[str, Any]],
        priority_fee: int,
    ) -> Submitted:
        """Spend the commit P2SH output back to the treasury."""
        result = self._kaspa.create_transactions(
            network_id=self.network_id,
            priority_entries=[commit_utxo],
            entries=utxos,
            outputs=[],
            change_address=self.address,
            priority_fee=priority_fee,
        )
        spent: List[Outpoint] = []
        txid = ""
        for tx in result["transactions"]:
            tx.sign([self._private_key], False)
            script_input = self._unsigned_input(tx)
            if script_input is not None:
                signature = tx.create_input_signature(script_input, self._private_key)
                tx.fill_input(
                    script_input, commit.script.encode_pay_to_script_hash_signature_script(signature)
                )
            spent.extend(self._spent(tx))
            txid = await tx.submit(self.client)
        if not txid:
            raise RuntimeError("SDK produced no transaction for reveal")
        return Submitted(txid=txid, spent=tuple(spent))

    @staticmethod
    def _unsigned_input(tx: Any) -> Optional[int]:
        # The P2SH input is the one the treasury key could not sign as P2PK.
        for index, tx_input in enumerate(tx.transaction.inputs):
            if not tx_input.signature_script:
                return index
        return None
