"""Delivery-code verification with a progressive lockout.

States per escrow::

    NORMAL(attempts) --5th wrong code--> LOCKED(attempts, cooldown_until)
    LOCKED --cooldown expires--> NORMAL(attempts)
    NORMAL --correct code--> RESOLVED

Every fifth consecutive wrong code locks verification. Odd cycles
(5, 15, 25, ... wrong codes) lock for 30 minutes and even cycles (10, 20, ...)
for 60 minutes. While locked, submissions are rejected before any comparison
and do not count. The counter only goes back to zero on a correct code.

State is stored server-side, keyed by conversation and escrow, so it
survives reloads and cannot be reset by the client.
"""

import hmac
import math
from datetime import datetime, timedelta
from typing import Callable, Optional

from src.config import config
from src.database import Database
from src.errors import InvalidDeliveryCodeError, LockoutError, ValidationError
from src.logging_utils import get_logger
from src.models import CodeAttemptState, CodeAttemptStatus

from .locks import KeyedLocks

logger = get_logger(__name__)

Clock = Callable[[], datetime]


class LockoutPolicy:
    """Attempt budget and cooldown schedule."""

    def __init__(
        self,
        attempts_per_cycle: Optional[int] = None,
        odd_cycle_minutes: Optional[int] = None,
        even_cycle_minutes: Optional[int] = None,
        code_length: Optional[int] = None,
    ):
        self.attempts_per_cycle = (
            config.code_attempts_per_cycle if attempts_per_cycle is None else attempts_per_cycle
        )
        self.odd_cycle_minutes = (
            config.code_odd_cycle_cooldown_minutes if odd_cycle_minutes is None else odd_cycle_minutes
        )
        self.even_cycle_minutes = (
            config.code_even_cycle_cooldown_minutes if even_cycle_minutes is None else even_cycle_minutes
        )
        self.code_length = config.delivery_code_length if code_length is None else code_length

    def triggers_lockout(self, attempts: int) -> bool:
        return attempts > 0 and attempts % self.attempts_per_cycle == 0

    def cooldown_minutes(self, attempts: int) -> int:
        cycle = attempts // self.attempts_per_cycle
        return self.odd_cycle_minutes if cycle % 2 == 1 else self.even_cycle_minutes

    def remaining_attempts(self, attempts: int) -> int:
        return self.attempts_per_cycle - (attempts % self.attempts_per_cycle)


def attempt_warning(remaining: int) -> str:
    noun = "attempt" if remaining == 1 else "attempts"
    return f"Invalid code. {remaining} {noun} remaining."


def lockout_message(minutes: int) -> str:
    return f"Too many failed attempts. Please wait {minutes} minutes before trying again."


def remaining_lockout(cooldown_until: datetime, now: datetime) -> tuple[int, int]:
    """Seconds and whole minutes (rounded up) left in a cooldown."""
    seconds = max(0, math.ceil((cooldown_until - now).total_seconds()))
    return seconds, math.ceil(seconds / 60)


class DeliveryCodeGuard:
    """Checks submitted delivery codes against an escrow's code."""

    def __init__(
        self,
        database: Database,
        policy: Optional[LockoutPolicy] = None,
        clock: Optional[Clock] = None,
    ):
        self.db = database
        self.policy = policy or LockoutPolicy()
        self.clock = clock or datetime.utcnow
        self._locks = KeyedLocks()

    async def get_state(self, conversation_id: str, escrow_id: str) -> CodeAttemptState:
        state = await self.db.get_code_attempts(conversation_id, escrow_id)
        return state or CodeAttemptState(conversation_id=conversation_id, escrow_id=escrow_id)

    async def describe(self, conversation_id: str, escrow_id: str) -> CodeAttemptStatus:
        """Recompute what the deliverer was last told from persisted state."""
        state = await self.get_state(conversation_id, escrow_id)
        now = self.clock()

        if state.is_locked(now):
            _, minutes = remaining_lockout(state.cooldown_until, now)
            return CodeAttemptStatus(
                attempts=state.attempts,
                locked=True,
                cooldown_until=state.cooldown_until,
                remaining_minutes=minutes,
                remaining_attempts=0,
                message=lockout_message(minutes),
            )

        remaining = self.policy.remaining_attempts(state.attempts)
        warning = None
        if state.attempts and not self.policy.triggers_lockout(state.attempts):
            warning = attempt_warning(remaining)
        return CodeAttemptStatus(
            attempts=state.attempts,
            locked=False,
            remaining_attempts=remaining,
            message=warning,
        )

    async def verify(
        self, conversation_id: str, escrow_id: str, submitted: str, expected: str
    ) -> None:
        """Check a submitted code; returns normally only on a match.

        Args:
            conversation_id: Conversation holding the escrow.
            escrow_id: Payment message id of the escrow.
            submitted: Code entered by the deliverer.
            expected: The escrow's delivery code.

        Raises:
            ValidationError: If the code is not ``code_length`` digits.
            LockoutError: If verification is locked, or this wrong code
                started a lockout.
            InvalidDeliveryCodeError: If the code is wrong and attempts remain.
        """
        code = (submitted or "").strip()
        if len(code) != self.policy.code_length or not code.isdigit():
            raise ValidationError(
                f"Delivery code must be {self.policy.code_length} digits", field="code"
            )

        async with self._locks.hold(f"{conversation_id}:{escrow_id}"):
            state = await self.get_state(conversation_id, escrow_id)
            now = self.clock()

            if state.is_locked(now):
                seconds, minutes = remaining_lockout(state.cooldown_until, now)
                logger.warning(
                    f"Code submission rejected during cooldown ({minutes} min left), "
                    f"attempts={state.attempts}"
                )
                raise LockoutError(lockout_message(minutes), state.cooldown_until, seconds)

            if hmac.compare_digest(code.encode(), expected.encode()):
                await self.db.clear_code_attempts(conversation_id, escrow_id)
                logger.info(f"Delivery code verified for escrow {escrow_id}")
                return

            attempts = state.attempts + 1
            if self.policy.triggers_lockout(attempts):
                minutes = self.policy.cooldown_minutes(attempts)
                cooldown_until = now + timedelta(minutes=minutes)
                await self.db.save_code_attempts(
                    state.model_copy(
                        update={"attempts": attempts, "cooldown_until": cooldown_until, "updated_at": now}
                    )
                )
                logger.warning(
                    f"Wrong delivery code #{attempts} for escrow {escrow_id}; "
                    f"locked for {minutes} minutes"
                )
                raise LockoutError(lockout_message(minutes), cooldown_until, minutes * 60)

            await self.db.save_code_attempts(
                state.model_copy(
                    update={"attempts": attempts, "cooldown_until": None, "updated_at": now}
                )
            )
            remaining = self.policy.remaining_attempts(attempts)
            logger.warning(
                f"Wrong delivery code #{attempts} for escrow {escrow_id}; {remaining} left"
            )
            raise InvalidDeliveryCodeError(attempt_warning(remaining), attempts, remaining)
