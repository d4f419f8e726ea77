"""Escrow payment records.

Paying for a delivery debits the payer's wallet by the agreed price and
appends a ``payment`` message that holds the funds in escrow. The message
carries the gross/fee/net split and a one-time delivery code that only the
payer can see; presenting that code is what later releases the net amount
to the deliverer.
"""

import secrets
from datetime import datetime
from typing import Optional

from src.config import config
from src.errors import ConflictError, ForbiddenError, ValidationError
from src.logging_utils import get_logger
from src.models import Conversation, DeliveryListing, Message, PaymentPayload

from .feed import MessageFeed, agreed_price, has_payment
from .fees import FeeSchedule, PlatformFeeSchedule, calculate_platform_fee
from .ledger import WalletLedger

logger = get_logger(__name__)


def generate_delivery_code(length: Optional[int] = None) -> str:
    """Draw an unpredictable numeric code with no leading zero."""
    length = length or config.delivery_code_length
    low = 10 ** (length - 1)
    return str(low + secrets.randbelow(9 * low))


def payment_reference(delivery_id: str) -> str:
    return f"DELIVERY-{delivery_id}"


def resolve_payer(conversation: Conversation, listing: DeliveryListing) -> str:
    """Who pays for the delivery.

    On a request the listing's sender needs something carried and pays the
    traveler. On a travel offer the listing's sender is the traveler, so the
    other participant pays.
    """
    if listing.type == "request":
        return listing.sender_id
    return conversation.other_party(listing.sender_id)


class EscrowService:
    """Creates the single escrow record of a conversation."""

    def __init__(
        self,
        feed: MessageFeed,
        ledger: WalletLedger,
        fee_schedule: Optional[FeeSchedule] = None,
        code_length: Optional[int] = None,
    ):
        self.feed = feed
        self.ledger = ledger
        self.fee_schedule = fee_schedule or PlatformFeeSchedule()
        self.code_length = code_length or config.delivery_code_length

    async def create_escrow(
        self,
        conversation: Conversation,
        listing: DeliveryListing,
        payer_id: str,
        payer_name: Optional[str] = None,
    ) -> Message:
        """Take payment for the agreed price and record the escrow.

        Args:
            conversation: Conversation the deal lives in.
            listing: The delivery being paid for.
            payer_id: User paying; must hold the payer role.
            payer_name: Display name recorded as ``paidBy``.

        Returns:
            The appended payment message.

        Raises:
            ForbiddenError: If ``payer_id`` does not hold the payer role.
            ConflictError: If the conversation is already paid.
            ValidationError: If the agreed price is not positive.
            InsufficientBalanceError: If the payer's wallet cannot cover it.
        """
        if payer_id != resolve_payer(conversation, listing):
            raise ForbiddenError("Only the paying party can pay for this delivery")
        if listing.deleted_at is not None or listing.status != "ACTIVE":
            raise ConflictError(f"Delivery {listing.id} is not open for payment")

        messages = await self.feed.list_messages(conversation.id)
        if has_payment(messages):
            raise ConflictError("Payment already made for this delivery")
        existing = await self.feed.delivery_payment(listing.id)
        if existing is not None:
            logger.warning(
                f"Rejected payment in {conversation.id}: delivery {listing.id} already "
                f"paid in conversation {existing.conversation_id}"
            )
            raise ConflictError("Payment already made for this delivery")

        gross = agreed_price(messages, listing)
        if gross <= 0:
            raise ValidationError("Invalid payment amount", field="amount")

        fees = calculate_platform_fee(gross, self.fee_schedule)
        debit = await self.ledger.debit(
            user_id=payer_id,
            amount=gross,
            description=f"Wallet payment for delivery: {listing.title}",
            category="Delivery Payment",
            reference_id=payment_reference(listing.id),
            metadata={
                "deliveryId": listing.id,
                "deliveryType": listing.type,
                "grossAmount": fees.gross_amount,
                "platformFee": fees.fee_amount,
                "netAmount": fees.net_amount,
            },
        )

        payload = PaymentPayload(
            amount=fees.gross_amount,
            net_amount=fees.net_amount,
            platform_fee=fees.fee_amount,
            currency=config.ledger_currency,
            delivery_code=generate_delivery_code(self.code_length),
            paid_by=payer_name or "User",
            paid_by_id=payer_id,
            status="completed",
            paid_at=datetime.utcnow(),
            delivery_id=listing.id,
            delivery_title=listing.title or None,
            delivery_type=listing.type,
            fee_rate=fees.fee_rate,
            fee_percentage=fees.fee_percentage,
            transaction_id=debit.transaction.id,
            new_balance=debit.new_balance,
        )
        payment_message = await self.feed.append_message(conversation.id, payer_id, payload)
        if payment_message is None:
            # the debit is keyed by delivery, so the racing payment did not charge twice
            raise ConflictError("Payment already made for this delivery")

        logger.info(
            f"Escrow {payment_message.id} created for delivery {listing.id}: "
            f"gross={fees.gross_amount} fee={fees.fee_amount} net={fees.net_amount}"
        )
        return payment_message
