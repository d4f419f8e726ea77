"""Conversation message feed and the views derived from it.

The feed is the deal's state log: nothing is edited in place, and the current
agreed price, payment status and delivery status are all computed by
scanning it. Views that depend on who is looking (the delivery code, the fee
breakdown) are produced here too.
"""

import json
from typing import Optional

from src.config import config
from src.database import Database
from src.logging_utils import get_logger
from src.models import (
    DealStatus,
    DeliveryConfirmationPayload,
    DeliveryListing,
    Message,
    OfferPayload,
    Payload,
    PaymentPayload,
)

from .envelope import build_message, decode_payload

logger = get_logger(__name__)

SCAM_CAUTION = (
    "Never deliver before meeting the recipient in person. The payer gives you "
    "the delivery code at handover; nobody from the platform will ask for it."
)


class MessageFeed:
    """Append/list access to a conversation's messages."""

    def __init__(self, database: Database):
        self.db = database

    async def append_message(
        self, conversation_id: str, sender_id: str, payload: Payload
    ) -> Optional[Message]:
        """Append a structured payload to the feed.

        Returns:
            The stored message, or None if a once-per-conversation constraint
            rejected it.
        """
        message = build_message(conversation_id, sender_id, payload)
        delivery_id = getattr(payload, "delivery_id", None)
        if not await self.db.append_message(message, delivery_id):
            return None
        logger.info(f"Appended {payload.type} message {message.id} to {conversation_id}")
        return message

    async def list_messages(self, conversation_id: str) -> list[Message]:
        return await self.db.list_messages(conversation_id)

    async def delivery_payment(self, delivery_id: str) -> Optional[Message]:
        """Payment for a delivery, whichever conversation holds it."""
        return await self.db.get_delivery_payment(delivery_id)

    async def get_message(self, message_id: str) -> Optional[Message]:
        return await self.db.get_message(message_id)


# Derived views


def _payloads(messages: list[Message], newest_first: bool = False):
    ordered = reversed(messages) if newest_first else messages
    for message in ordered:
        payload = decode_payload(message)
        if payload is not None:
            yield message, payload


def last_accepted_offer(messages: list[Message]) -> Optional[OfferPayload]:
    """Most recent offer message whose status is accepted."""
    for _, payload in _payloads(messages, newest_first=True):
        if isinstance(payload, OfferPayload) and payload.status == "accepted":
            return payload
    return None


def agreed_price(messages: list[Message], listing: DeliveryListing) -> int:
    """Price in effect: the last accepted offer, else the listing's price."""
    offer = last_accepted_offer(messages)
    if offer is not None:
        return offer.price
    return listing.price


def responded_offer_ids(messages: list[Message]) -> set[str]:
    return {
        payload.offer_message_id
        for _, payload in _payloads(messages)
        if isinstance(payload, OfferPayload) and payload.status and payload.offer_message_id
    }


def pending_offer(messages: list[Message]) -> Optional[Message]:
    """Latest offer still awaiting a response."""
    responded = responded_offer_ids(messages)
    for message, payload in _payloads(messages, newest_first=True):
        if isinstance(payload, OfferPayload) and payload.status is None:
            if message.id not in responded:
                return message
    return None


def find_payment(messages: list[Message]) -> Optional[tuple[Message, PaymentPayload]]:
    for message, payload in _payloads(messages):
        if isinstance(payload, PaymentPayload):
            return message, payload
    return None


def has_payment(messages: list[Message]) -> bool:
    return any(m.message_type == "payment" for m in messages)


def find_confirmation(
    messages: list[Message],
) -> Optional[tuple[Message, DeliveryConfirmationPayload]]:
    for message, payload in _payloads(messages, newest_first=True):
        if isinstance(payload, DeliveryConfirmationPayload):
            return message, payload
    return None


def has_confirmation(messages: list[Message]) -> bool:
    return any(m.message_type == "deliveryConfirmation" for m in messages)


def deal_status(
    conversation_id: str, messages: list[Message], listing: DeliveryListing
) -> DealStatus:
    """Project the feed into the deal's current status."""
    payment = find_payment(messages)
    confirmation = find_confirmation(messages)
    pending = pending_offer(messages)

    if confirmation:
        payment_status = "settled"
    elif payment:
        payment_status = "awaiting_confirmation"
    else:
        payment_status = "unpaid"

    return DealStatus(
        conversation_id=conversation_id,
        delivery_id=listing.id,
        agreed_price=payment[1].amount if payment else agreed_price(messages, listing),
        currency=config.ledger_currency,
        payment_status=payment_status,
        pending_offer_id=pending.id if pending else None,
        paid_by_id=payment[1].paid_by_id if payment else None,
        confirmed_by_id=confirmation[1].confirmed_by_id if confirmation else None,
    )


def payment_view(payment: PaymentPayload, viewer_id: str) -> dict:
    """Payment card as seen by ``viewer_id``.

    The payer sees the delivery code to hand over in person. Anyone else sees
    the fee breakdown and a caution notice, never the code.
    """
    data = json.loads(payment.model_dump_json(by_alias=True, exclude_none=True))
    if viewer_id == payment.paid_by_id:
        return data
    data.pop("deliveryCode", None)
    data["scamCaution"] = SCAM_CAUTION
    return data


def confirmation_view(confirmation: DeliveryConfirmationPayload, viewer_id: str) -> dict:
    """Confirmation card: the payer sees what they paid, the deliverer the breakdown."""
    data = json.loads(confirmation.model_dump_json(by_alias=True, exclude_none=True))
    if viewer_id == confirmation.confirmed_by_id:
        return data
    for key in ("platformFee", "paymentAmount", "creditTransactionId", "newBalance"):
        data.pop(key, None)
    return data


def redact_for_viewer(message: Message, viewer_id: str) -> Message:
    """Return the message as ``viewer_id`` may see it."""
    payload = decode_payload(message)
    if isinstance(payload, PaymentPayload):
        content = json.dumps(payment_view(payload, viewer_id))
    elif isinstance(payload, DeliveryConfirmationPayload):
        content = json.dumps(confirmation_view(payload, viewer_id))
    else:
        return message
    return message.model_copy(update={"content": content})
