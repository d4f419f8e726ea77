"""Deal lifecycle service.

Wires the feed, ledger, listing store and the three stages of a deal
(negotiation, escrow, verification + settlement) together, and serializes
every state-changing operation per conversation so that racing requests see
each other's effects. Escrow creation is also serialized per delivery, since a
listing may be discussed in several conversations but paid for only once.
"""

import uuid
from typing import Optional

from src.database import Database
from src.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from src.logging_utils import get_logger
from src.models import (
    CodeAttemptStatus,
    Conversation,
    DealStatus,
    DeliveryListing,
    LedgerResult,
    ListingType,
    Message,
    SettlementResult,
)

from .escrow import EscrowService
from .feed import MessageFeed, deal_status, find_payment, has_confirmation, redact_for_viewer
from .fees import FeeSchedule
from .ledger import WalletLedger
from .listings import ListingStore
from .locks import KeyedLocks
from .offers import OfferEngine
from .settlement import SettlementPoster
from .verification import Clock, DeliveryCodeGuard, LockoutPolicy

logger = get_logger(__name__)


class DealService:
    """Entry point for every deal operation."""

    def __init__(
        self,
        database: Database,
        fee_schedule: Optional[FeeSchedule] = None,
        policy: Optional[LockoutPolicy] = None,
        clock: Optional[Clock] = None,
        ledger: Optional[WalletLedger] = None,
    ):
        self.db = database
        self.feed = MessageFeed(database)
        self.ledger = ledger or WalletLedger(database)
        self.listings = ListingStore(database)
        self.offers = OfferEngine(self.feed)
        self.escrow = EscrowService(self.feed, self.ledger, fee_schedule)
        self.guard = DeliveryCodeGuard(database, policy, clock)
        self.settlement = SettlementPoster(self.feed, self.ledger, self.listings)
        self._locks = KeyedLocks()
        self._delivery_locks = KeyedLocks()

    # Listings and conversations
    async def create_listing(
        self,
        sender_id: str,
        listing_type: ListingType,
        price: int,
        title: str = "",
        listing_id: Optional[str] = None,
    ) -> DeliveryListing:
        return await self.listings.create_listing(sender_id, listing_type, price, title, listing_id)

    async def open_conversation(self, delivery_id: str, participant_id: str) -> Conversation:
        """Open (or reopen) the conversation between a listing's sender and a user."""
        listing = await self.listings.get_listing(delivery_id)
        if participant_id == listing.sender_id:
            raise ValidationError("You cannot open a conversation on your own listing")

        conversation = await self.db.create_conversation(
            Conversation(
                id=f"conv-{uuid.uuid4().hex[:12]}",
                delivery_id=listing.id,
                owner_id=listing.sender_id,
                participant_id=participant_id,
            )
        )
        logger.info(f"Conversation {conversation.id} open for delivery {delivery_id}")
        return conversation

    async def get_conversation(self, conversation_id: str) -> Conversation:
        conversation = await self.db.get_conversation(conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation", conversation_id)
        return conversation

    async def _load(
        self, conversation_id: str, user_id: str
    ) -> tuple[Conversation, DeliveryListing]:
        conversation = await self.get_conversation(conversation_id)
        if not conversation.is_participant(user_id):
            raise ForbiddenError("You are not a participant of this conversation")
        listing = await self.listings.get_listing(conversation.delivery_id)
        return conversation, listing

    # Reads
    async def list_messages(self, conversation_id: str, viewer_id: str) -> list[Message]:
        """Feed as the viewer may see it (delivery code hidden from non-payers)."""
        await self._load(conversation_id, viewer_id)
        messages = await self.feed.list_messages(conversation_id)
        return [redact_for_viewer(m, viewer_id) for m in messages]

    async def get_deal_status(self, conversation_id: str, viewer_id: str) -> DealStatus:
        _, listing = await self._load(conversation_id, viewer_id)
        messages = await self.feed.list_messages(conversation_id)
        return deal_status(conversation_id, messages, listing)

    async def code_attempt_status(self, conversation_id: str, viewer_id: str) -> CodeAttemptStatus:
        await self._load(conversation_id, viewer_id)
        payment = find_payment(await self.feed.list_messages(conversation_id))
        if payment is None:
            raise NotFoundError("Payment", conversation_id)
        return await self.guard.describe(conversation_id, payment[0].id)

    # Negotiation
    async def submit_offer(
        self, conversation_id: str, author_id: str, price: int, message: Optional[str] = None
    ) -> Message:
        async with self._locks.hold(conversation_id):
            conversation, listing = await self._load(conversation_id, author_id)
            return await self.offers.submit_offer(conversation, listing, author_id, price, message)

    async def respond_to_offer(self, message_id: str, responder_id: str, action: str) -> Message:
        if not message_id:
            raise ValidationError(
                "Invalid request. messageId and action (accept/reject) are required.",
                field="messageId",
            )
        offer_message = await self.feed.get_message(message_id)
        if offer_message is None:
            raise NotFoundError("Offer message", message_id)

        async with self._locks.hold(offer_message.conversation_id):
            conversation, _ = await self._load(offer_message.conversation_id, responder_id)
            return await self.offers.respond_to_offer(conversation, offer_message, responder_id, action)

    # Escrow
    async def create_escrow(
        self, conversation_id: str, payer_id: str, payer_name: Optional[str] = None
    ) -> Message:
        conversation = await self.get_conversation(conversation_id)
        # lock order: conversation, then delivery
        async with self._locks.hold(conversation_id), self._delivery_locks.hold(conversation.delivery_id):
            conversation, listing = await self._load(conversation_id, payer_id)
            return await self.escrow.create_escrow(conversation, listing, payer_id, payer_name)

    # Verification and settlement
    async def confirm_delivery(
        self,
        conversation_id: str,
        verifier_id: str,
        code: str,
        verifier_name: Optional[str] = None,
    ) -> SettlementResult:
        """Verify the delivery code and settle the escrow.

        Raises:
            NotFoundError: If the conversation has no payment.
            ForbiddenError: If the verifier is the payer.
            ConflictError: If the delivery is already confirmed.
            ValidationError, LockoutError, InvalidDeliveryCodeError: From the
                code guard.
        """
        async with self._locks.hold(conversation_id):
            conversation, listing = await self._load(conversation_id, verifier_id)
            messages = await self.feed.list_messages(conversation_id)

            payment = find_payment(messages)
            if payment is None:
                raise NotFoundError("Payment", conversation_id)
            payment_message, escrow = payment

            if verifier_id == escrow.paid_by_id:
                logger.warning(f"Payer {verifier_id} tried to confirm their own delivery")
                raise ForbiddenError("The payer cannot confirm their own delivery")
            if has_confirmation(messages):
                raise ConflictError("Delivery already confirmed")

            await self.guard.verify(conversation_id, payment_message.id, code, escrow.delivery_code)
            return await self.settlement.settle(conversation, listing, escrow, verifier_id, verifier_name)

    # Wallet
    async def top_up(self, user_id: str, amount: int, description: str = "Wallet top-up") -> LedgerResult:
        return await self.ledger.credit(user_id, amount, description, category="Top-up")

    async def wallet_balance(self, user_id: str) -> int:
        return await self.ledger.get_balance(user_id)
