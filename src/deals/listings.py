"""Listing store: delivery requests and travel offers."""

import uuid
from typing import Optional

from src.database import Database
from src.errors import ConflictError, NotFoundError, ValidationError
from src.logging_utils import get_logger
from src.models import DeliveryListing, ListingStatus, ListingType

logger = get_logger(__name__)


class ListingStore:
    def __init__(self, database: Database):
        self.db = database

    async def create_listing(
        self,
        sender_id: str,
        listing_type: ListingType,
        price: int,
        title: str = "",
        listing_id: Optional[str] = None,
    ) -> DeliveryListing:
        if price <= 0:
            raise ValidationError("Price must be greater than 0", field="price")

        listing = DeliveryListing(
            id=listing_id or f"dlv-{uuid.uuid4().hex[:12]}",
            type=listing_type,
            price=price,
            sender_id=sender_id,
            title=title,
        )
        if not await self.db.create_listing(listing):
            raise ConflictError(f"Listing already exists: {listing.id}")
        return listing

    async def get_listing(self, delivery_id: str) -> DeliveryListing:
        listing = await self.db.get_listing(delivery_id)
        if listing is None:
            raise NotFoundError("Delivery", delivery_id)
        return listing

    async def update_status(
        self, delivery_id: str, status: ListingStatus, receiver_id: Optional[str] = None
    ) -> None:
        """Move a listing to ``status`` and stamp the receiving party."""
        if not await self.db.update_listing_status(delivery_id, status, receiver_id):
            raise NotFoundError("Delivery", delivery_id)
        logger.info(f"Delivery {delivery_id} is now {status} (receiver={receiver_id})")
