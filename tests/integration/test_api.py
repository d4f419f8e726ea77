"""End-to-end tests through the HTTP surface."""

import json

import pytest
from httpx import ASGITransport, AsyncClient

from src.deals.fees import PlatformFeeSchedule
from src.deals.server import create_app
from src.deals.service import DealService

SENDER = "user-sender"
TRAVELER = "user-traveler"


def _as(user_id: str, name: str = None) -> dict:
    headers = {"X-User-Id": user_id}
    if name:
        headers["X-User-Name"] = name
    return headers


@pytest.fixture
def deals(test_db, clock):
    return DealService(test_db, fee_schedule=PlatformFeeSchedule(rate=0.05), clock=clock)


@pytest.fixture
async def client(deals):
    app = create_app(service=deals)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


async def _open_deal(client, price: int = 200_000) -> str:
    response = await client.post(
        "/listings",
        json={"id": "dlv-e2e", "type": "request", "price": price, "title": "Laptop Dakar -> Lyon"},
        headers=_as(SENDER),
    )
    assert response.status_code == 201
    response = await client.post(f"/wallets/{SENDER}/credit", json={"amount": 250_000}, headers=_as(SENDER))
    assert response.status_code == 200
    response = await client.post("/conversations", json={"delivery_id": "dlv-e2e"}, headers=_as(TRAVELER))
    assert response.status_code == 201
    return response.json()["id"]


@pytest.mark.integration
class TestDealApi:
    @pytest.mark.asyncio
    async def test_health_check(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "service": "deals"}

    @pytest.mark.asyncio
    async def test_correlation_id_is_echoed(self, client):
        response = await client.get("/health", headers={"X-Correlation-Id": "corr-test"})
        assert response.headers["X-Correlation-Id"] == "corr-test"

    @pytest.mark.asyncio
    async def test_missing_identity(self, client):
        conversation_id = await _open_deal(client)
        response = await client.post(f"/conversations/{conversation_id}/payment")

        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_unknown_listing(self, client):
        response = await client.get("/listings/dlv-nope")
        assert response.status_code == 404
        assert response.json()["error"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_platform_fee_calculation(self, client):
        response = await client.post("/platform-fee/calculate", json={"amount": 200_000})
        body = response.json()

        assert response.status_code == 200
        assert body["feeAmount"] == 10_000
        assert body["netAmount"] == 190_000
        assert body["feePercentage"] == "5.0%"

        response = await client.post("/platform-fee/calculate", json={"amount": 0})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_negotiation(self, client):
        conversation_id = await _open_deal(client)
        response = await client.post(
            f"/conversations/{conversation_id}/offers", json={"price": 150_000}, headers=_as(TRAVELER)
        )
        assert response.status_code == 201
        offer_id = response.json()["message"]["id"]

        response = await client.post(
            f"/conversations/{conversation_id}/offers", json={"price": 180_000}, headers=_as(SENDER)
        )
        assert response.status_code == 409

        response = await client.post(
            "/offers/respond", json={"messageId": offer_id, "action": "accept"}, headers=_as(SENDER)
        )
        assert response.status_code == 200
        assert response.json()["action"] == "accept"

        response = await client.get(f"/conversations/{conversation_id}/deal", headers=_as(TRAVELER))
        assert response.json()["agreedPrice"] == 150_000
        assert response.json()["paymentStatus"] == "unpaid"

    @pytest.mark.asyncio
    async def test_wallet_is_owner_only(self, client):
        response = await client.post(
            f"/wallets/{TRAVELER}/credit", json={"amount": 1_000_000}, headers=_as(SENDER)
        )
        assert response.status_code == 403
        assert response.json()["error"] == "FORBIDDEN"

        response = await client.post(f"/wallets/{TRAVELER}/credit", json={"amount": 1_000_000})
        assert response.status_code == 400

        response = await client.get(f"/wallets/{TRAVELER}", headers=_as(SENDER))
        assert response.status_code == 403

        response = await client.get(f"/wallets/{TRAVELER}", headers=_as(TRAVELER))
        assert response.status_code == 200
        assert response.json()["balance"] == 0
        assert response.json()["transactions"] == []

    @pytest.mark.asyncio
    async def test_delivery_paid_once_across_conversations(self, client):
        first = await _open_deal(client)
        response = await client.post(
            "/conversations", json={"delivery_id": "dlv-e2e"}, headers=_as("user-traveler-2")
        )
        second = response.json()["id"]
        assert second != first

        response = await client.post(f"/conversations/{first}/payment", headers=_as(SENDER))
        assert response.status_code == 201
        response = await client.post(f"/conversations/{second}/payment", headers=_as(SENDER))
        assert response.status_code == 409

        response = await client.get(f"/wallets/{SENDER}", headers=_as(SENDER))
        assert response.json()["balance"] == 50_000

    @pytest.mark.asyncio
    async def test_outsider_cannot_read_feed(self, client):
        conversation_id = await _open_deal(client)
        response = await client.get(f"/conversations/{conversation_id}/messages", headers=_as("user-stranger"))
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_end_to_end_with_lockout(self, client, clock):
        conversation_id = await _open_deal(client)

        response = await client.post(f"/conversations/{conversation_id}/payment", headers=_as(SENDER, "Awa"))
        assert response.status_code == 201
        escrow = json.loads(response.json()["message"]["content"])
        assert escrow["amount"] == 200_000
        assert escrow["platformFee"] == 10_000
        assert escrow["netAmount"] == 190_000
        code = escrow["deliveryCode"]
        wrong = "100000" if code != "100000" else "100001"

        # the deliverer never sees the code
        response = await client.get(f"/conversations/{conversation_id}/messages", headers=_as(TRAVELER))
        assert "deliveryCode" not in json.loads(response.json()["messages"][0]["content"])

        confirm_url = f"/conversations/{conversation_id}/confirm-delivery"
        remaining = []
        for _ in range(4):
            response = await client.post(confirm_url, json={"code": wrong}, headers=_as(TRAVELER))
            assert response.status_code == 400
            assert response.json()["error"] == "INVALID_DELIVERY_CODE"
            remaining.append(response.json()["details"]["remaining_attempts"])
        assert remaining == [4, 3, 2, 1]

        response = await client.post(confirm_url, json={"code": wrong}, headers=_as(TRAVELER))
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "1800"
        assert "30 minutes" in response.json()["message"]

        # locked: even the right code is refused and nothing is counted
        response = await client.post(confirm_url, json={"code": code}, headers=_as(TRAVELER))
        assert response.status_code == 429

        response = await client.get(f"/conversations/{conversation_id}/code-attempts", headers=_as(TRAVELER))
        assert response.json()["locked"] is True
        assert response.json()["attempts"] == 5

        clock.advance(minutes=30)
        response = await client.post(confirm_url, json={"code": code}, headers=_as(TRAVELER, "Moussa"))
        assert response.status_code == 200
        body = response.json()
        assert body["newBalance"] == 190_000
        confirmation = json.loads(body["message"]["content"])
        assert confirmation["grossAmount"] == 200_000
        assert confirmation["platformFee"] == 10_000
        assert confirmation["paymentAmount"] == 190_000

        response = await client.get(f"/wallets/{TRAVELER}", headers=_as(TRAVELER))
        assert response.json()["balance"] == 190_000
        response = await client.get(f"/wallets/{SENDER}", headers=_as(SENDER))
        assert response.json()["balance"] == 50_000

        response = await client.get("/listings/dlv-e2e")
        assert response.json()["status"] == "DELIVERED"

        response = await client.post(confirm_url, json={"code": code}, headers=_as(TRAVELER))
        assert response.status_code == 409
