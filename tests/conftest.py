import json
import os
from datetime import datetime, timedelta

import pytest

# Plain-text logs while testing; must run before src.config is imported by any test
os.environ.setdefault("LOG_FORMAT", "text")

from src.database import Database  # noqa: E402
from src.deals.service import DealService  # noqa: E402

# The standard deal: SENDER requests a delivery at 100,000 and pays TRAVELER
SENDER = "user-sender"
TRAVELER = "user-traveler"
DELIVERY_ID = "dlv-test-1"
LIST_PRICE = 100_000


class FakeClock:
    """Controllable clock for cooldown tests."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 3, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
async def test_db(tmp_path):
    """Create a temporary test database."""
    db_path = tmp_path / "test.db"
    db = Database(str(db_path))
    await db.initialize()
    return db


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def service(test_db, clock):
    return DealService(test_db, clock=clock)


@pytest.fixture
async def conversation(service):
    """A delivery request by SENDER discussed with TRAVELER; SENDER's wallet is funded."""
    await service.create_listing(SENDER, "request", LIST_PRICE, "Documents Douala -> Paris", DELIVERY_ID)
    conv = await service.open_conversation(DELIVERY_ID, TRAVELER)
    await service.top_up(SENDER, 300_000)
    return conv


@pytest.fixture
def read_code(service):
    """Return the delivery code of a conversation as its payer sees it."""

    async def _read(conversation_id: str, payer_id: str = SENDER) -> str:
        for message in await service.list_messages(conversation_id, payer_id):
            if message.message_type == "payment":
                return json.loads(message.content)["deliveryCode"]
        raise AssertionError(f"no payment in {conversation_id}")

    return _read
