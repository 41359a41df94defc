from datetime import timedelta
from decimal import Decimal

import httpx
import pytest

from conftest import NOW, TREASURY
from kaspa_raffle.errors import IndexerError
from kaspa_raffle.indexer import IndexerClient

SINCE_MS = int(NOW.timestamp() * 1000)


def native_tx(txid, destination, sompi, block_time=SINCE_MS + 5_000, accepted=True):
    return {
        "transaction_id": txid,
        "is_accepted": accepted,
        "block_time": block_time,
        "outputs": [
            {"script_public_key_address": destination, "amount": sompi},
            {"script_public_key_address": TREASURY, "amount": 123},
        ],
    }


def client_with(handler):
    return IndexerClient(
        "https://api.test", "https://kasplex.test/v1", transport=httpx.MockTransport(handler)
    )


@pytest.mark.asyncio
async def test_native_payout_found_by_destination_and_amount():
    seen = []

    def handler(request):
        seen.append(request.url)
        return httpx.Response(
            200,
            json=[
                native_tx("other", "kaspa:qwinner", 1),
                native_tx("paid", "kaspa:qwinner", 500 * 10**8),
            ],
        )

    client = client_with(handler)
    try:
        txid = await client.find_native_payout(TREASURY, "kaspa:qwinner", Decimal("500"), NOW)
    finally:
        await client.close()

    assert txid == "paid"
    assert seen[0].path == f"/addresses/{TREASURY}/full-transactions"


@pytest.mark.asyncio
async def test_native_payout_ignores_older_and_unaccepted_transactions():
    def handler(request):
        return httpx.Response(
            200,
            json=[
                native_tx("old", "kaspa:qwinner", 10**8, block_time=SINCE_MS - 1),
                native_tx("orphan", "kaspa:qwinner", 10**8, accepted=False),
            ],
        )

    client = client_with(handler)
    try:
        assert await client.find_native_payout(TREASURY, "kaspa:qwinner", Decimal("1"), NOW) is None
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_token_payout_matches_accepted_transfer():
    ops = [
        {"op": "transfer", "opAccept": "-1", "to": "kaspa:qwinner", "amt": "50000000000",
         "mtsAdd": str(SINCE_MS + 1), "hashRev": "rejected"},
        {"op": "transfer", "opAccept": "1", "to": "kaspa:qwinner", "amt": "50000000000",
         "mtsAdd": str(SINCE_MS + 1), "hashRev": "reveal-tx"},
    ]

    def handler(request):
        assert request.url.path == "/v1/krc20/oplist"
        assert request.url.params["tick"] == "NACHO"
        return httpx.Response(200, json={"message": "successful", "result": ops})

    client = client_with(handler)
    try:
        txid = await client.find_token_payout(
            TREASURY, "kaspa:qwinner", "nacho", Decimal("500"), NOW - timedelta(minutes=1)
        )
    finally:
        await client.close()

    assert txid == "reveal-tx"


@pytest.mark.asyncio
async def test_http_failure_becomes_indexer_error():
    client = client_with(lambda request: httpx.Response(503, text="busy"))
    try:
        with pytest.raises(IndexerError):
            await client.find_native_payout(TREASURY, "kaspa:qwinner", Decimal("1"), NOW)
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_unexpected_payload_becomes_indexer_error():
    client = client_with(lambda request: httpx.Response(200, json={"error": "nope"}))
    try:
        with pytest.raises(IndexerError):
            await client.get_address_transactions(TREASURY)
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_claimed_transactions_are_skipped():
    def handler(request):
        return httpx.Response(
            200,
            json=[
                native_tx("booked", "kaspa:qwinner", 500 * 10**8),
                native_tx("fresh", "kaspa:qwinner", 500 * 10**8),
            ],
        )

    client = client_with(handler)
    try:
        txid = await client.find_native_payout(
            TREASURY, "kaspa:qwinner", Decimal("500"), NOW, exclude={"booked"}
        )
        assert txid == "fresh"
        assert await client.find_native_payout(
            TREASURY, "kaspa:qwinner", Decimal("500"), NOW, exclude={"booked", "fresh"}
        ) is None
    finally:
        await client.close()
