"""Database initialization script.

Run this (``python -m scripts.init_db``) to initialize the deals database schema
and, with ``--seed``, a demo delivery request, a conversation on it and a funded
wallet for the payer.
"""

import argparse
import asyncio
import sys

from src.config import config, validate_config_for_service
from src.database import db
from src.deals.service import DealService
from src.errors import ConflictError
from src.logging_utils import get_logger, setup_logging

setup_logging(config.log_level, config.log_format)
logger = get_logger(__name__)

DEMO_DELIVERY_ID = "dlv-demo-request"
DEMO_SENDER = "user-demo-sender"
DEMO_TRAVELER = "user-demo-traveler"


async def seed(service: DealService) -> None:
    """Create the demo listing, conversation and wallet top-up."""
    try:
        await service.create_listing(
            DEMO_SENDER, "request", 100_000, "Documents Douala -> Paris", DEMO_DELIVERY_ID
        )
        logger.info(f"Created demo listing {DEMO_DELIVERY_ID}")
    except ConflictError:
        logger.info(f"Demo listing {DEMO_DELIVERY_ID} already present")

    conversation = await service.open_conversation(DEMO_DELIVERY_ID, DEMO_TRAVELER)
    logger.info(f"Demo conversation: {conversation.id}")

    balance = await service.wallet_balance(DEMO_SENDER)
    if balance < 100_000:
        result = await service.top_up(DEMO_SENDER, 100_000 - balance, "Demo wallet top-up")
        balance = result.new_balance
    logger.info(f"- {DEMO_SENDER}: {balance} {config.ledger_currency}")


async def main(with_seed: bool):
    """Initialize the database."""
    validate_config_for_service("scripts")
    logger.info("Initializing deals database...")
    logger.info(f"Database path: {db.db_path}")

    await db.initialize()

    if with_seed:
        await seed(DealService(db))

    logger.info("Database initialization complete!")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--seed", action="store_true", help="create demo data")
    args = parser.parse_args()
    try:
        asyncio.run(main(args.seed))
    except ValueError as e:
        logger.error(str(e))
        sys.exit(1)
