"""SQLite database interface for the deals service.

Stores listings, conversations, the append-only message feed, delivery-code
attempt state and the wallet ledger. Uniqueness constraints back the
once-per-conversation guarantees for payments and delivery confirmations, and
the (user, type, reference id) constraint makes ledger postings idempotent.
"""

import asyncio
import json
import sqlite3
from datetime import datetime
from typing import Optional

import aiosqlite

from .config import config
from .errors import InsufficientBalanceError
from .logging_utils import get_logger
from .models import (
    CodeAttemptState,
    Conversation,
    DeliveryListing,
    LedgerResult,
    Message,
    WalletTransaction,
)

logger = get_logger(__name__)

# SQL Schema
SCHEMA_SQL = """
-- Delivery listings (requests and travel offers)
CREATE TABLE IF NOT EXISTS listings (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL CHECK(type IN ('request', 'offer')),
    price INTEGER NOT NULL,
    sender_id TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'ACTIVE',
    receiver_id TEXT,
    deleted_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- One conversation per (listing, counterparty)
CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    delivery_id TEXT NOT NULL,
    owner_id TEXT NOT NULL,
    participant_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (delivery_id, participant_id),
    FOREIGN KEY (delivery_id) REFERENCES listings(id)
);

-- Append-only message feed; seq gives the monotonic order
CREATE TABLE IF NOT EXISTS messages (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    conversation_id TEXT NOT NULL,
    delivery_id TEXT,
    sender_id TEXT NOT NULL,
    message_type TEXT NOT NULL,
    content TEXT NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY (conversation_id) REFERENCES conversations(id)
);

-- Delivery code attempt counters (server-authoritative lockout)
CREATE TABLE IF NOT EXISTS code_attempts (
    conversation_id TEXT NOT NULL,
    escrow_id TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    cooldown_until TEXT,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (conversation_id, escrow_id)
);

-- Wallet balances, maintained only by ledger postings
CREATE TABLE IF NOT EXISTS wallets (
    user_id TEXT PRIMARY KEY,
    balance INTEGER NOT NULL DEFAULT 0,
    currency TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Ledger transactions
CREATE TABLE IF NOT EXISTS wallet_transactions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    type TEXT NOT NULL CHECK(type IN ('credit', 'debit')),
    amount INTEGER NOT NULL,
    currency TEXT NOT NULL,
    status TEXT NOT NULL CHECK(status IN ('completed', 'pending', 'failed')),
    description TEXT NOT NULL,
    category TEXT NOT NULL,
    reference_id TEXT,
    metadata TEXT,
    created_at TEXT NOT NULL
);

-- Indexes and once-only guarantees
CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, seq);
CREATE UNIQUE INDEX IF NOT EXISTS uq_messages_payment
    ON messages(conversation_id) WHERE message_type = 'payment';
CREATE UNIQUE INDEX IF NOT EXISTS uq_messages_delivery_payment
    ON messages(delivery_id) WHERE message_type = 'payment';
CREATE UNIQUE INDEX IF NOT EXISTS uq_messages_confirmation
    ON messages(conversation_id) WHERE message_type = 'deliveryConfirmation';
CREATE UNIQUE INDEX IF NOT EXISTS uq_wallet_transactions_reference
    ON wallet_transactions(user_id, type, reference_id);
CREATE INDEX IF NOT EXISTS idx_wallet_transactions_user ON wallet_transactions(user_id);
"""


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class Database:
    """Async database interface for the deals service."""

    def __init__(self, db_path: str = None):
        """Initialize database connection.

        Args:
            db_path: Path to SQLite database file. Defaults to config.database_path.
        """
        self.db_path = db_path or config.database_path
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Initialize database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.executescript(SCHEMA_SQL)
            await db.commit()
        logger.info(f"Database initialized at {self.db_path}")

    # Listing operations
    async def create_listing(self, listing: DeliveryListing) -> bool:
        """Create a listing.

        Returns:
            True if created, False if the id already exists.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT INTO listings
                    (id, type, price, sender_id, title, status, receiver_id,
                     deleted_at, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        listing.id,
                        listing.type,
                        listing.price,
                        listing.sender_id,
                        listing.title,
                        listing.status,
                        listing.receiver_id,
                        listing.deleted_at.isoformat() if listing.deleted_at else None,
                        listing.created_at.isoformat(),
                        listing.created_at.isoformat(),
                    ),
                )
                await db.commit()
            logger.info(f"Created listing: {listing.id}")
            return True
        except sqlite3.IntegrityError:
            logger.warning(f"Listing already exists: {listing.id}")
            return False

    async def get_listing(self, listing_id: str) -> Optional[DeliveryListing]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM listings WHERE id = ?", (listing_id,))
            row = await cursor.fetchone()

            if row:
                return DeliveryListing(
                    id=row["id"],
                    type=row["type"],
                    price=row["price"],
                    sender_id=row["sender_id"],
                    title=row["title"],
                    status=row["status"],
                    receiver_id=row["receiver_id"],
                    deleted_at=_parse_dt(row["deleted_at"]),
                    created_at=datetime.fromisoformat(row["created_at"]),
                )
            return None

    async def update_listing_status(
        self, listing_id: str, status: str, receiver_id: Optional[str] = None
    ) -> bool:
        """Update a listing's status and receiving party.

        Returns:
            True if a listing was updated.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE listings
                SET status = ?, receiver_id = COALESCE(?, receiver_id), updated_at = ?
                WHERE id = ?
                """,
                (status, receiver_id, datetime.utcnow().isoformat(), listing_id),
            )
            await db.commit()
            updated = cursor.rowcount > 0
        if updated:
            logger.info(f"Updated listing {listing_id} status to {status}")
        return updated

    # Conversation operations
    async def create_conversation(self, conversation: Conversation) -> Conversation:
        """Create a conversation, or return the existing one for the same pair."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT OR IGNORE INTO conversations
                (id, delivery_id, owner_id, participant_id, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    conversation.id,
                    conversation.delivery_id,
                    conversation.owner_id,
                    conversation.participant_id,
                    conversation.created_at.isoformat(),
                ),
            )
            await db.commit()
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM conversations WHERE delivery_id = ? AND participant_id = ?",
                (conversation.delivery_id, conversation.participant_id),
            )
            row = await cursor.fetchone()
        return self._row_to_conversation(row)

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
            )
            row = await cursor.fetchone()
        return self._row_to_conversation(row) if row else None

    @staticmethod
    def _row_to_conversation(row) -> Conversation:
        return Conversation(
            id=row["id"],
            delivery_id=row["delivery_id"],
            owner_id=row["owner_id"],
            participant_id=row["participant_id"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    # Message feed operations
    async def append_message(self, message: Message, delivery_id: Optional[str] = None) -> bool:
        """Append a message to the feed.

        Args:
            message: Message to store.
            delivery_id: Delivery the message is about; payments are unique
                per delivery across all of its conversations.

        Returns:
            True if appended, False if a once-only constraint (payment per
            delivery, delivery confirmation per conversation) rejected it.
        """
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT INTO messages
                    (id, conversation_id, delivery_id, sender_id, message_type, content, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        message.id,
                        message.conversation_id,
                        delivery_id,
                        message.sender_id,
                        message.message_type,
                        message.content,
                        message.created_at.isoformat(),
                    ),
                )
                await db.commit()
            logger.debug(f"Appended {message.message_type} message {message.id}")
            return True
        except sqlite3.IntegrityError:
            logger.warning(
                f"Rejected duplicate {message.message_type} message in "
                f"conversation {message.conversation_id}"
            )
            return False

    async def get_message(self, message_id: str) -> Optional[Message]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute("SELECT * FROM messages WHERE id = ?", (message_id,))
            row = await cursor.fetchone()
        return self._row_to_message(row) if row else None

    async def list_messages(self, conversation_id: str) -> list[Message]:
        """List a conversation's messages, oldest first."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM messages WHERE conversation_id = ? ORDER BY seq",
                (conversation_id,),
            )
            rows = await cursor.fetchall()
        return [self._row_to_message(row) for row in rows]

    async def get_delivery_payment(self, delivery_id: str) -> Optional[Message]:
        """Payment message for a delivery in any of its conversations."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM messages WHERE delivery_id = ? AND message_type = 'payment'",
                (delivery_id,),
            )
            row = await cursor.fetchone()
        return self._row_to_message(row) if row else None

    @staticmethod
    def _row_to_message(row) -> Message:
        return Message(
            id=row["id"],
            conversation_id=row["conversation_id"],
            sender_id=row["sender_id"],
            message_type=row["message_type"],
            content=row["content"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    # Code attempt operations
    async def get_code_attempts(
        self, conversation_id: str, escrow_id: str
    ) -> Optional[CodeAttemptState]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM code_attempts WHERE conversation_id = ? AND escrow_id = ?",
                (conversation_id, escrow_id),
            )
            row = await cursor.fetchone()

            if row:
                return CodeAttemptState(
                    conversation_id=row["conversation_id"],
                    escrow_id=row["escrow_id"],
                    attempts=row["attempts"],
                    cooldown_until=_parse_dt(row["cooldown_until"]),
                    updated_at=datetime.fromisoformat(row["updated_at"]),
                )
            return None

    async def save_code_attempts(self, state: CodeAttemptState) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO code_attempts
                (conversation_id, escrow_id, attempts, cooldown_until, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(conversation_id, escrow_id) DO UPDATE SET
                    attempts = excluded.attempts,
                    cooldown_until = excluded.cooldown_until,
                    updated_at = excluded.updated_at
                """,
                (
                    state.conversation_id,
                    state.escrow_id,
                    state.attempts,
                    state.cooldown_until.isoformat() if state.cooldown_until else None,
                    state.updated_at.isoformat(),
                ),
            )
            await db.commit()

    async def clear_code_attempts(self, conversation_id: str, escrow_id: str) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "DELETE FROM code_attempts WHERE conversation_id = ? AND escrow_id = ?",
                (conversation_id, escrow_id),
            )
            await db.commit()
        logger.info(f"Cleared code attempts for conversation {conversation_id}")

    # Wallet ledger operations
    async def post_transaction(self, transaction: WalletTransaction) -> LedgerResult:
        """Post a ledger transaction and update the wallet balance atomically.

        A transaction whose (user, type, reference id) was already posted is
        not applied again; the stored transaction is returned instead.

        Raises:
            InsufficientBalanceError: If a debit exceeds the balance.
        """
        async with self._lock:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row

                if transaction.reference_id:
                    existing = await self._find_transaction(
                        db, transaction.user_id, transaction.type, transaction.reference_id
                    )
                    if existing:
                        balance = await self._read_balance(db, transaction.user_id)
                        logger.warning(
                            f"Ledger reference already posted (idempotency): "
                            f"{transaction.reference_id} for {transaction.user_id}"
                        )
                        return LedgerResult(transaction=existing, new_balance=balance, replayed=True)

                now = datetime.utcnow().isoformat()
                await db.execute(
                    """
                    INSERT OR IGNORE INTO wallets (user_id, balance, currency, updated_at)
                    VALUES (?, 0, ?, ?)
                    """,
                    (transaction.user_id, transaction.currency, now),
                )
                balance = await self._read_balance(db, transaction.user_id)

                delta = transaction.amount if transaction.type == "credit" else -transaction.amount
                if transaction.status != "completed":
                    delta = 0
                new_balance = balance + delta
                if new_balance < 0:
                    raise InsufficientBalanceError(
                        transaction.user_id, balance, transaction.amount
                    )

                await db.execute(
                    """
                    INSERT INTO wallet_transactions
                    (id, user_id, type, amount, currency, status, description,
                     category, reference_id, metadata, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        transaction.id,
                        transaction.user_id,
                        transaction.type,
                        transaction.amount,
                        transaction.currency,
                        transaction.status,
                        transaction.description,
                        transaction.category,
                        transaction.reference_id,
                        json.dumps(transaction.metadata),
                        transaction.created_at.isoformat(),
                    ),
                )
                await db.execute(
                    "UPDATE wallets SET balance = ?, updated_at = ? WHERE user_id = ?",
                    (new_balance, now, transaction.user_id),
                )
                await db.commit()

        logger.info(
            f"Posted {transaction.type} {transaction.id}: {transaction.amount} "
            f"{transaction.currency} for {transaction.user_id}"
        )
        return LedgerResult(transaction=transaction, new_balance=new_balance)

    async def get_balance(self, user_id: str) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            return await self._read_balance(db, user_id)

    async def list_transactions(self, user_id: str) -> list[WalletTransaction]:
        """List a user's transactions, newest first."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                """
                SELECT * FROM wallet_transactions
                WHERE user_id = ? ORDER BY created_at DESC, rowid DESC
                """,
                (user_id,),
            )
            rows = await cursor.fetchall()
        return [self._row_to_transaction(row) for row in rows]

    async def _find_transaction(
        self, db: aiosqlite.Connection, user_id: str, tx_type: str, reference_id: str
    ) -> Optional[WalletTransaction]:
        cursor = await db.execute(
            """
            SELECT * FROM wallet_transactions
            WHERE user_id = ? AND type = ? AND reference_id = ?
            """,
            (user_id, tx_type, reference_id),
        )
        row = await cursor.fetchone()
        return self._row_to_transaction(row) if row else None

    @staticmethod
    async def _read_balance(db: aiosqlite.Connection, user_id: str) -> int:
        cursor = await db.execute("SELECT balance FROM wallets WHERE user_id = ?", (user_id,))
        row = await cursor.fetchone()
        return row[0] if row else 0

    @staticmethod
    def _row_to_transaction(row) -> WalletTransaction:
        return WalletTransaction(
            id=row["id"],
            user_id=row["user_id"],
            type=row["type"],
            amount=row["amount"],
            currency=row["currency"],
            status=row["status"],
            description=row["description"],
            category=row["category"],
            reference_id=row["reference_id"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            created_at=datetime.fromisoformat(row["created_at"]),
        )


# Global database instance
db = Database()
