"""JSON codec for structured chat payloads.

A structured payload travels as the text content of a generic chat message.
The ``type`` key inside the JSON is the discriminator and keys are camelCase;
optional fields that are unset are left out entirely.
"""

import json
import uuid
from datetime import datetime
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from src.logging_utils import get_logger
from src.models import (
    DeliveryConfirmationPayload,
    Message,
    OfferPayload,
    OfferResponseNotice,
    Payload,
    PaymentPayload,
)

logger = get_logger(__name__)

PAYLOAD_TYPES = {
    "offer": OfferPayload,
    "offerAccepted": OfferResponseNotice,
    "offerDeclined": OfferResponseNotice,
    "payment": PaymentPayload,
    "deliveryConfirmation": DeliveryConfirmationPayload,
}

# messageType under which each payload type is filed in the feed
MESSAGE_TYPES = {
    "offer": "offer",
    "offerAccepted": "system",
    "offerDeclined": "system",
    "payment": "payment",
    "deliveryConfirmation": "deliveryConfirmation",
}


def encode_payload(payload: Payload) -> str:
    """Serialize a payload to its wire JSON string."""
    return payload.model_dump_json(by_alias=True, exclude_none=True)


def decode_payload(message: Message) -> Optional[Payload]:
    """Parse the structured payload of a message.

    Returns:
        The payload model, or None for plain text, malformed JSON, unknown
        payload types, or a payload filed under the wrong messageType.
    """
    if message.message_type == "text":
        return None
    try:
        data = json.loads(message.content)
    except (TypeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None

    payload_type = data.get("type")
    model = PAYLOAD_TYPES.get(payload_type)
    if model is None or MESSAGE_TYPES[payload_type] != message.message_type:
        return None

    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        logger.warning(f"Ignoring malformed {payload_type} payload in message {message.id}: {e}")
        return None


def new_message_id() -> str:
    return f"msg-{uuid.uuid4().hex[:12]}"


def build_message(
    conversation_id: str,
    sender_id: str,
    payload: Payload,
    created_at: Optional[datetime] = None,
) -> Message:
    """Wrap a payload into a feed message."""
    return Message(
        id=new_message_id(),
        conversation_id=conversation_id,
        sender_id=sender_id,
        message_type=MESSAGE_TYPES[payload.type],
        content=encode_payload(payload),
        created_at=created_at or datetime.utcnow(),
    )
