"""Offer negotiation engine.

Either party may counter the listed price before payment. Offers and their
responses are appended to the feed; an offer is never edited. Responding to
an offer appends a copy of it carrying the response status, which is what the
agreed-price view scans for.
"""

from datetime import datetime
from typing import Optional

from src.config import config
from src.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from src.logging_utils import get_logger
from src.models import (
    Conversation,
    DeliveryListing,
    Message,
    OfferPayload,
    OfferResponseNotice,
)

from .envelope import decode_payload
from .feed import MessageFeed, has_payment, pending_offer, responded_offer_ids

logger = get_logger(__name__)

OFFER_ACTIONS = {"accept": "accepted", "reject": "rejected"}


class OfferEngine:
    """Turns a listing's price into an agreed price through offers."""

    def __init__(self, feed: MessageFeed, currency: Optional[str] = None):
        self.feed = feed
        self.currency = currency or config.ledger_currency

    async def submit_offer(
        self,
        conversation: Conversation,
        listing: DeliveryListing,
        author_id: str,
        price: int,
        message: Optional[str] = None,
    ) -> Message:
        """Propose a price for the delivery.

        The offer always records the listing's current price as
        ``originalPrice``, so every counter in a chain compares against the
        list price rather than the previous counter.

        Args:
            conversation: Conversation the offer is made in.
            listing: The delivery being negotiated.
            author_id: Participant making the offer.
            price: Proposed price in minor units; may be above the list price.
            message: Optional note for the other party.

        Returns:
            The appended offer message.

        Raises:
            ValidationError: If the price is not a positive integer.
            ForbiddenError: If the author is not a participant.
            ConflictError: If the deal is paid, the listing deleted, or an
                offer is already awaiting a response.
        """
        if isinstance(price, bool) or not isinstance(price, int) or price <= 0:
            raise ValidationError("Offer price must be a positive amount", field="price")
        if not conversation.is_participant(author_id):
            raise ForbiddenError("Only conversation participants can make offers")
        if listing.deleted_at is not None:
            raise ConflictError(f"Delivery {listing.id} is no longer available")

        messages = await self.feed.list_messages(conversation.id)
        if has_payment(messages):
            raise ConflictError("Payment already made; the price can no longer be negotiated")

        pending = pending_offer(messages)
        if pending is not None:
            logger.warning(
                f"Rejected offer in {conversation.id}: offer {pending.id} is still pending"
            )
            raise ConflictError(
                "An offer is already awaiting a response",
                details={"pending_offer_id": pending.id},
            )

        payload = OfferPayload(
            delivery_id=listing.id,
            delivery_title=listing.title or None,
            original_price=listing.price,
            price=price,
            currency=self.currency,
            message=message or None,
        )
        offer_message = await self.feed.append_message(conversation.id, author_id, payload)
        logger.info(
            f"Offer {offer_message.id} submitted by {author_id}: {price} {self.currency} "
            f"(list price {listing.price})"
        )
        return offer_message

    async def respond_to_offer(
        self,
        conversation: Conversation,
        offer_message: Message,
        responder_id: str,
        action: str,
    ) -> Message:
        """Accept or reject an offer.

        Appends a terminal marker for the offer followed by a system notice
        (offerAccepted / offerDeclined). Accepting does not trigger payment.

        Returns:
            The appended response marker.

        Raises:
            ValidationError: If ``action`` is not accept or reject.
            NotFoundError: If the message is not an offer.
            ForbiddenError: If the responder authored the offer or is not a
                participant.
            ConflictError: If the offer already has a response.
        """
        if action not in OFFER_ACTIONS:
            raise ValidationError(
                "Invalid request. messageId and action (accept/reject) are required.",
                field="action",
            )

        offer = decode_payload(offer_message)
        if not isinstance(offer, OfferPayload) or offer.status is not None:
            raise NotFoundError("Offer message", offer_message.id)
        if offer_message.sender_id == responder_id:
            raise ForbiddenError("You cannot respond to your own offer")
        if not conversation.is_participant(responder_id):
            raise ForbiddenError("Only conversation participants can respond to offers")

        messages = await self.feed.list_messages(conversation.id)
        if offer_message.id in responded_offer_ids(messages):
            raise ConflictError(f"Offer {offer_message.id} has already been responded to")
        if has_payment(messages):
            raise ConflictError("Payment already made; the price can no longer be negotiated")

        status = OFFER_ACTIONS[action]
        marker = offer.model_copy(
            update={
                "status": status,
                "responded_at": datetime.utcnow(),
                "responded_by": responder_id,
                "offer_message_id": offer_message.id,
            }
        )
        marker_message = await self.feed.append_message(conversation.id, responder_id, marker)

        notice = OfferResponseNotice(
            type="offerAccepted" if status == "accepted" else "offerDeclined",
            price=offer.price,
            currency=offer.currency,
        )
        await self.feed.append_message(conversation.id, responder_id, notice)

        logger.info(f"Offer {offer_message.id} {status} by {responder_id}")
        return marker_message
