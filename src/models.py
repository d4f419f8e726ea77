"""Shared data models for the deals service.

All Pydantic models used across the service for type safety and validation.
Structured chat payloads use camelCase aliases because their JSON form is the
wire format embedded in chat messages.
"""

from datetime import datetime
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

ListingType = Literal["request", "offer"]
ListingStatus = Literal["ACTIVE", "DELIVERED", "CANCELLED"]
MessageType = Literal["text", "offer", "system", "payment", "deliveryConfirmation"]
OfferStatus = Literal["accepted", "rejected"]
OfferAction = Literal["accept", "reject"]


class DeliveryListing(BaseModel):
    """A delivery request (sender needs a traveler) or offer (traveler has space)."""

    id: str = Field(description="Listing / delivery identifier")
    type: ListingType = Field(description="request or offer")
    price: int = Field(description="List price in minor units of the ledger currency")
    sender_id: str = Field(description="User who published the listing")
    title: str = Field(default="", description="Listing title")
    status: ListingStatus = Field(default="ACTIVE")
    receiver_id: Optional[str] = Field(default=None, description="User who confirmed delivery")
    deleted_at: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class Conversation(BaseModel):
    """Chat between the listing's sender and one counterparty about one delivery."""

    id: str
    delivery_id: str
    owner_id: str = Field(description="The listing's sender")
    participant_id: str = Field(description="The counterparty who opened the chat")
    created_at: datetime = Field(default_factory=datetime.utcnow)

    def is_participant(self, user_id: str) -> bool:
        return user_id in (self.owner_id, self.participant_id)

    def other_party(self, user_id: str) -> str:
        return self.participant_id if user_id == self.owner_id else self.owner_id


class Message(BaseModel):
    """Generic chat message; structured payloads live in ``content`` as JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    conversation_id: str
    sender_id: str
    message_type: MessageType = "text"
    content: str
    created_at: datetime = Field(default_factory=datetime.utcnow)


class _Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OfferPayload(_Payload):
    """Price proposal; ``status`` is absent while the offer awaits a response."""

    type: Literal["offer"] = "offer"
    delivery_id: str
    delivery_title: Optional[str] = None
    original_price: int
    price: int
    currency: str
    message: Optional[str] = None
    status: Optional[OfferStatus] = None
    responded_at: Optional[datetime] = None
    responded_by: Optional[str] = None
    offer_message_id: Optional[str] = Field(
        default=None, description="Offer message this response marker refers to"
    )


class OfferResponseNotice(_Payload):
    """System notice announcing an accepted or declined offer."""

    type: Literal["offerAccepted", "offerDeclined"]
    price: int
    currency: str


class PaymentPayload(_Payload):
    """Escrow record: funds held until the delivery code is verified."""

    type: Literal["payment"] = "payment"
    amount: int
    net_amount: int
    platform_fee: int
    currency: str
    delivery_code: str
    paid_by: str
    paid_by_id: str
    status: Literal["completed", "pending"] = "completed"
    paid_at: datetime = Field(default_factory=datetime.utcnow)
    delivery_id: str
    delivery_title: Optional[str] = None
    delivery_type: Optional[ListingType] = None
    fee_rate: Optional[float] = None
    fee_percentage: Optional[str] = None
    transaction_id: Optional[str] = None
    new_balance: Optional[int] = None

    @model_validator(mode="after")
    def _fee_conservation(self) -> "PaymentPayload":
        if self.amount != self.net_amount + self.platform_fee:
            raise ValueError("amount must equal netAmount + platformFee")
        return self


class DeliveryConfirmationPayload(_Payload):
    """Terminal record of a settled deal."""

    type: Literal["deliveryConfirmation"] = "deliveryConfirmation"
    delivery_id: str
    delivery_title: Optional[str] = None
    confirmed_by: Optional[str] = None
    confirmed_by_id: str
    confirmed_at: datetime = Field(default_factory=datetime.utcnow)
    gross_amount: int
    platform_fee: int
    payment_amount: int = Field(description="Net amount credited to the deliverer")
    payment_currency: Optional[str] = None
    paid_by: Optional[str] = None
    delivered_by: Optional[str] = None
    credit_transaction_id: str
    new_balance: int


Payload = Union[OfferPayload, OfferResponseNotice, PaymentPayload, DeliveryConfirmationPayload]


class CodeAttemptState(BaseModel):
    """Wrong-code counter and cooldown for one escrow."""

    conversation_id: str
    escrow_id: str
    attempts: int = Field(default=0, ge=0)
    cooldown_until: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def is_locked(self, now: datetime) -> bool:
        return self.cooldown_until is not None and now < self.cooldown_until


class WalletTransaction(BaseModel):
    """Ledger row; crediting and debiting are append-only."""

    id: str
    user_id: str
    type: Literal["credit", "debit"]
    amount: int
    currency: str
    status: Literal["completed", "pending", "failed"] = "completed"
    description: str
    category: str
    reference_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class LedgerResult(BaseModel):
    """Outcome of a ledger posting."""

    transaction: WalletTransaction
    new_balance: int
    replayed: bool = Field(default=False, description="True if the reference id was already posted")


class FeeBreakdown(_Payload):
    """Gross/fee/net split for an amount."""

    gross_amount: int
    fee_amount: int
    net_amount: int
    fee_rate: float
    fee_percentage: str


class DealStatus(_Payload):
    """Projection of the conversation feed."""

    conversation_id: str
    delivery_id: str
    agreed_price: int
    currency: str
    payment_status: Literal["unpaid", "awaiting_confirmation", "settled"]
    pending_offer_id: Optional[str] = None
    paid_by_id: Optional[str] = None
    confirmed_by_id: Optional[str] = None


class CodeAttemptStatus(_Payload):
    """What the deliverer sees when reopening the code prompt."""

    attempts: int
    locked: bool
    cooldown_until: Optional[datetime] = None
    remaining_minutes: Optional[int] = None
    remaining_attempts: int
    message: Optional[str] = None


class SettlementResult(BaseModel):
    """Outcome of a successful settlement."""

    confirmation: Message
    payload: DeliveryConfirmationPayload
    transaction: WalletTransaction
    new_balance: int


# API request models


class CreateListingRequest(BaseModel):
    id: Optional[str] = None
    type: ListingType
    price: int = Field(gt=0)
    title: str = ""


class CreateConversationRequest(BaseModel):
    delivery_id: str


class SubmitOfferRequest(BaseModel):
    price: int
    message: Optional[str] = None


class RespondToOfferRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message_id: str = Field(alias="messageId")
    action: str


class FeeCalculationRequest(BaseModel):
    amount: int


class ConfirmDeliveryRequest(BaseModel):
    code: str


class TopUpRequest(BaseModel):
    amount: int
    description: str = "Wallet top-up"
