from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Collection, Dict, List, Optional

import httpx

from .errors import IndexerError
from .inscription import kas_to_sompi, to_base_units
from .project_constants import KRC20_DECIMALS


def _ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


class IndexerClient:
    """
    Read-only lookups against the public Kaspa REST API and the Kasplex
    KRC-20 indexer. Used to find prize payouts that reached the chain but
    never made it into the raffle ledger.
    """

    def __init__(
        self,
        kaspa_api_url: str,
        kasplex_api_url: str,
        timeout_s: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.kaspa_api_url = kaspa_api_url.rstrip("/")
        self.kasplex_api_url = kasplex_api_url.rstrip("/")
        self.client = httpx.AsyncClient(timeout=timeout_s, transport=transport)

    async def close(self) -> None:
        await self.client.aclose()

    async def _get(self, url: str, params: Dict[str, Any]) -> Any:
        try:
            resp = await self.client.get(url, params=params)
            resp.raise_for_status()
            return resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise IndexerError(f"Indexer request failed ({url}): {e}") from e

    async def get_address_transactions(self, address: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent transactions touching an address, newest first."""
        data = await self._get(
            f"{self.kaspa_api_url}/addresses/{address}/full-transactions",
            {"limit": limit, "offset": 0, "resolve_previous_outpoints": "no"},
        )
        if not isinstance(data, list):
            raise IndexerError(f"Unexpected transactions payload for {address}")
        return data

    async def get_token_operations(self, address: str, ticker: str) -> List[Dict[str, Any]]:
        data = await self._get(
            f"{self.kasplex_api_url}/krc20/oplist",
            {"address": address, "tick": ticker.upper()},
        )
        if not isinstance(data, dict):
            raise IndexerError(f"Unexpected KRC-20 oplist payload for {address}")
        return list(data.get("result") or [])

    async def find_native_payout(
        self,
        treasury: str,
        destination: str,
        amount: Decimal,
        since: datetime,
        exclude: Collection[str] = (),
    ) -> Optional[str]:
        """Accepted treasury payment of exactly `amount` KAS, skipping txids in `exclude`."""
        sompi = kas_to_sompi(amount)
        since_ms = _ms(since)
        for tx in await self.get_address_transactions(treasury):
            if not tx.get("is_accepted", True) or tx.get("transaction_id") in exclude:
                continue
            if int(tx.get("block_time") or 0) < since_ms:
                continue
            for out in tx.get("outputs") or []:
                if (
                    out.get("script_public_key_address") == destination
                    and int(out.get("amount", 0)) == sompi
                ):
                    return tx["transaction_id"]
        return None

    async def find_token_payout(
        self,
        treasury: str,
        destination: str,
        ticker: str,
        amount: Decimal,
        since: datetime,
        exclude: Collection[str] = (),
        decimals: int = KRC20_DECIMALS,
    ) -> Optional[str]:
        atoms = str(to_base_units(amount, decimals))
        since_ms = _ms(since)
        for op in await self.get_token_operations(treasury, ticker):
            if op.get("op") != "transfer" or op.get("opAccept") != "1":
                continue
            if op.get("to") != destination or str(op.get("amt")) != atoms:
                continue
            if int(op.get("mtsAdd") or 0) < since_ms or op.get("hashRev") in exclude:
                continue
            return op.get("hashRev")
        return None
