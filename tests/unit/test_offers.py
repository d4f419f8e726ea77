"""Unit tests for offer negotiation and agreed-price resolution."""

import json

import pytest

from src.deals.envelope import build_message
from src.deals.feed import agreed_price
from src.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from src.models import DeliveryListing, OfferPayload

SENDER = "user-sender"
TRAVELER = "user-traveler"


def _content(message) -> dict:
    return json.loads(message.content)


@pytest.mark.unit
class TestOfferNegotiation:
    @pytest.mark.asyncio
    async def test_offer_records_list_price(self, service, conversation):
        offer = await service.submit_offer(conversation.id, TRAVELER, 80_000, "Can do it for less?")
        data = _content(offer)

        assert offer.message_type == "offer"
        assert data["originalPrice"] == 100_000
        assert data["price"] == 80_000
        assert data["message"] == "Can do it for less?"
        assert "status" not in data

    @pytest.mark.asyncio
    async def test_counter_chain_compares_against_list_price(self, service, conversation):
        first = await service.submit_offer(conversation.id, TRAVELER, 80_000)
        await service.respond_to_offer(first.id, SENDER, "reject")
        second = await service.submit_offer(conversation.id, SENDER, 90_000)

        assert _content(second)["originalPrice"] == 100_000

    @pytest.mark.asyncio
    async def test_single_pending_offer(self, service, conversation):
        first = await service.submit_offer(conversation.id, TRAVELER, 80_000)

        with pytest.raises(ConflictError) as exc_info:
            await service.submit_offer(conversation.id, SENDER, 95_000)
        assert exc_info.value.details["pending_offer_id"] == first.id

        await service.respond_to_offer(first.id, SENDER, "reject")
        await service.submit_offer(conversation.id, SENDER, 95_000)

    @pytest.mark.asyncio
    async def test_offer_above_list_price_is_allowed(self, service, conversation):
        offer = await service.submit_offer(conversation.id, TRAVELER, 120_000)
        assert _content(offer)["price"] == 120_000

    @pytest.mark.asyncio
    @pytest.mark.parametrize("price", [0, -5, 1.5, True])
    async def test_invalid_price(self, service, conversation, price):
        with pytest.raises(ValidationError):
            await service.submit_offer(conversation.id, TRAVELER, price)

    @pytest.mark.asyncio
    async def test_outsider_cannot_offer(self, service, conversation):
        with pytest.raises(ForbiddenError):
            await service.submit_offer(conversation.id, "user-stranger", 80_000)

    @pytest.mark.asyncio
    async def test_cannot_respond_to_own_offer(self, service, conversation):
        offer = await service.submit_offer(conversation.id, TRAVELER, 80_000)

        with pytest.raises(ForbiddenError):
            await service.respond_to_offer(offer.id, TRAVELER, "accept")

    @pytest.mark.asyncio
    async def test_accept_appends_marker_and_notice(self, service, conversation):
        offer = await service.submit_offer(conversation.id, TRAVELER, 80_000)
        marker = await service.respond_to_offer(offer.id, SENDER, "accept")

        marker_data = _content(marker)
        assert marker_data["status"] == "accepted"
        assert marker_data["respondedBy"] == SENDER
        assert marker_data["offerMessageId"] == offer.id

        messages = await service.list_messages(conversation.id, SENDER)
        assert [m.message_type for m in messages] == ["offer", "offer", "system"]
        assert _content(messages[-1]) == {"type": "offerAccepted", "price": 80_000, "currency": "FCFA"}

        status = await service.get_deal_status(conversation.id, SENDER)
        assert status.agreed_price == 80_000
        assert status.pending_offer_id is None

    @pytest.mark.asyncio
    async def test_offer_can_be_answered_once(self, service, conversation):
        offer = await service.submit_offer(conversation.id, TRAVELER, 80_000)
        await service.respond_to_offer(offer.id, SENDER, "reject")

        with pytest.raises(ConflictError):
            await service.respond_to_offer(offer.id, SENDER, "accept")

    @pytest.mark.asyncio
    async def test_invalid_action(self, service, conversation):
        offer = await service.submit_offer(conversation.id, TRAVELER, 80_000)

        with pytest.raises(ValidationError):
            await service.respond_to_offer(offer.id, SENDER, "maybe")

    @pytest.mark.asyncio
    async def test_respond_to_unknown_or_non_offer_message(self, service, conversation):
        with pytest.raises(NotFoundError):
            await service.respond_to_offer("msg-missing", SENDER, "accept")

        offer = await service.submit_offer(conversation.id, TRAVELER, 80_000)
        marker = await service.respond_to_offer(offer.id, SENDER, "reject")
        with pytest.raises(NotFoundError):
            await service.respond_to_offer(marker.id, TRAVELER, "accept")

    @pytest.mark.asyncio
    async def test_no_negotiation_after_payment(self, service, conversation):
        offer = await service.submit_offer(conversation.id, TRAVELER, 80_000)
        await service.create_escrow(conversation.id, SENDER)

        with pytest.raises(ConflictError):
            await service.respond_to_offer(offer.id, SENDER, "accept")
        with pytest.raises(ConflictError):
            await service.submit_offer(conversation.id, TRAVELER, 70_000)

    @pytest.mark.asyncio
    async def test_agreed_price_follows_last_accepted_offer(self, service, conversation):
        assert (await service.get_deal_status(conversation.id, SENDER)).agreed_price == 100_000

        first = await service.submit_offer(conversation.id, TRAVELER, 80_000)
        await service.respond_to_offer(first.id, SENDER, "accept")
        rejected = await service.submit_offer(conversation.id, TRAVELER, 70_000)
        await service.respond_to_offer(rejected.id, SENDER, "reject")
        assert (await service.get_deal_status(conversation.id, SENDER)).agreed_price == 80_000

        later = await service.submit_offer(conversation.id, SENDER, 90_000)
        await service.respond_to_offer(later.id, TRAVELER, "accept")
        assert (await service.get_deal_status(conversation.id, SENDER)).agreed_price == 90_000


@pytest.mark.unit
class TestAgreedPrice:
    def test_unresolved_counter_after_accepted_offer(self):
        listing = DeliveryListing(id="dlv-1", type="request", price=120_000, sender_id=SENDER)
        offer = OfferPayload(delivery_id="dlv-1", original_price=120_000, price=100_000, currency="FCFA")
        messages = [
            build_message("conv-1", TRAVELER, offer),
            build_message("conv-1", SENDER, offer.model_copy(update={"status": "accepted"})),
            build_message("conv-1", SENDER, offer.model_copy(update={"price": 90_000})),
        ]

        assert agreed_price(messages, listing) == 100_000

    def test_list_price_without_accepted_offer(self):
        listing = DeliveryListing(id="dlv-1", type="request", price=120_000, sender_id=SENDER)
        offer = OfferPayload(delivery_id="dlv-1", original_price=120_000, price=100_000, currency="FCFA")
        messages = [
            build_message("conv-1", TRAVELER, offer),
            build_message("conv-1", SENDER, offer.model_copy(update={"status": "rejected"})),
        ]

        assert agreed_price(messages, listing) == 120_000
