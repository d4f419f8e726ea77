"""Settlement of verified escrows.

Once the delivery code has been verified, settlement:
1. Credits the escrow's net amount to the deliverer's wallet under the
   reference ``DELIVERY-CONFIRM-{deliveryId}`` (idempotent in the ledger).
2. Marks the listing DELIVERED with the deliverer as receiving party
   (best effort).
3. Appends the deliveryConfirmation message (once per conversation).

A failed credit stops settlement before anything else changes, leaving the
deal awaiting confirmation. If a previous attempt credited the wallet but
never appended the confirmation, a retry finds the existing ledger entry and
completes the remaining steps without paying twice.
"""

from datetime import datetime
from typing import Optional

from src.errors import ConflictError, ForbiddenError
from src.logging_utils import get_logger
from src.models import (
    Conversation,
    DeliveryConfirmationPayload,
    DeliveryListing,
    PaymentPayload,
    SettlementResult,
)

from .feed import MessageFeed, has_confirmation
from .ledger import WalletLedger
from .listings import ListingStore

logger = get_logger(__name__)


def settlement_reference(delivery_id: str) -> str:
    return f"DELIVERY-CONFIRM-{delivery_id}"


class SettlementPoster:
    """Turns a verified escrow into a wallet credit and a confirmation record."""

    def __init__(self, feed: MessageFeed, ledger: WalletLedger, listings: ListingStore):
        self.feed = feed
        self.ledger = ledger
        self.listings = listings

    async def settle(
        self,
        conversation: Conversation,
        listing: DeliveryListing,
        payment: PaymentPayload,
        verifier_id: str,
        verifier_name: Optional[str] = None,
    ) -> SettlementResult:
        """Release the escrow to the deliverer.

        Args:
            conversation: Conversation holding the escrow.
            listing: The delivery being settled.
            payment: The verified escrow record.
            verifier_id: Deliverer who presented the code.
            verifier_name: Display name recorded on the confirmation.

        Returns:
            The confirmation message, the ledger transaction and new balance.

        Raises:
            ForbiddenError: If the verifier is the payer or not a participant.
            ConflictError: If the delivery is already confirmed or no longer active.
            TransientError: If the ledger is unavailable; safe to retry.
        """
        if verifier_id == payment.paid_by_id:
            logger.warning(f"Payer {verifier_id} attempted to settle their own escrow")
            raise ForbiddenError("The payer cannot confirm their own delivery")
        if not conversation.is_participant(verifier_id):
            raise ForbiddenError("Only the deliverer can confirm this delivery")

        messages = await self.feed.list_messages(conversation.id)
        if has_confirmation(messages):
            raise ConflictError("Delivery already confirmed")

        # DELIVERED to this verifier is an earlier attempt of this settlement
        resuming = listing.status == "DELIVERED" and listing.receiver_id == verifier_id
        if listing.status != "ACTIVE" and not resuming:
            logger.warning(f"Refusing to settle delivery {listing.id} in status {listing.status}")
            raise ConflictError(f"Delivery {listing.id} is {listing.status} and cannot be settled")

        reference_id = settlement_reference(listing.id)
        logger.info(
            f"Settling delivery {listing.id}: crediting {payment.net_amount} "
            f"{payment.currency} to {verifier_id} (ref={reference_id})"
        )

        # 1. Ledger credit; any failure aborts settlement here
        credit = await self.ledger.credit(
            user_id=verifier_id,
            amount=payment.net_amount,
            description=f"Payment received for delivery: {listing.title}",
            category="Delivery Income",
            reference_id=reference_id,
            metadata={
                "deliveryId": listing.id,
                "deliveryType": listing.type,
                "paidBy": payment.paid_by,
                "paidById": payment.paid_by_id,
                "originalTransactionId": payment.transaction_id,
                "grossAmount": payment.amount,
                "platformFee": payment.platform_fee,
                "netAmount": payment.net_amount,
            },
        )
        if credit.replayed:
            logger.info(f"Resuming settlement of {listing.id} after an earlier credit")

        # 2. Listing status
        try:
            await self.listings.update_status(listing.id, "DELIVERED", verifier_id)
        except Exception as e:
            logger.error(
                f"Failed to update delivery {listing.id} status, but proceeding: {e}",
                exc_info=True,
            )

        # 3. Confirmation record
        payload = DeliveryConfirmationPayload(
            delivery_id=listing.id,
            delivery_title=listing.title or None,
            confirmed_by=verifier_name or "User",
            confirmed_by_id=verifier_id,
            confirmed_at=datetime.utcnow(),
            gross_amount=payment.amount,
            platform_fee=payment.platform_fee,
            payment_amount=payment.net_amount,
            payment_currency=payment.currency,
            paid_by=payment.paid_by,
            delivered_by=verifier_name or "User",
            credit_transaction_id=credit.transaction.id,
            new_balance=credit.new_balance,
        )
        confirmation = await self.feed.append_message(conversation.id, verifier_id, payload)
        if confirmation is None:
            raise ConflictError("Delivery already confirmed")

        logger.info(
            f"Delivery {listing.id} settled: gross={payment.amount} "
            f"fee={payment.platform_fee} net={payment.net_amount} "
            f"tx={credit.transaction.id}"
        )
        return SettlementResult(
            confirmation=confirmation,
            payload=payload,
            transaction=credit.transaction,
            new_balance=credit.new_balance,
        )
