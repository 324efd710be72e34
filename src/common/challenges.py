from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from pydantic import BaseModel, ConfigDict

from .backend import Session
from .errors import ChallengeCancelledError, ChallengeExecutionError, ChallengeFailedError


logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 2.0

STATUS_COMPLETE = "COMPLETE"
STATUS_IN_PROGRESS = "IN_PROGRESS"


class ChallengeKind(str, Enum):
    PIN_SETUP = "pin_setup"
    WALLET_CREATION = "wallet_creation"


class Challenge(BaseModel):
    model_config = ConfigDict(frozen=True)

    challenge_id: str
    kind: ChallengeKind
    wallet_id: Optional[str] = None


class ChallengeOutcome(BaseModel):
    """Result of one executor round, e.g. {"type": "SET_PIN", "status": "IN_PROGRESS"}."""

    type: str = ""
    status: str
    data: Optional[Dict[str, Any]] = None

    @property
    def is_complete(self) -> bool:
        return self.status == STATUS_COMPLETE

    @property
    def is_in_progress(self) -> bool:
        return self.status == STATUS_IN_PROGRESS


class ChallengeExecutor(Protocol):
    """Secure user-facing widget that runs one round of a challenge."""

    async def execute(self, challenge_id: str, *, session: Session) -> Optional[ChallengeOutcome]: ...


RoundFn = Callable[[str], Awaitable[Optional[ChallengeOutcome]]]


class CancelToken:
    """Cooperative cancellation handle for a polling loop."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class ChallengePoller:
    """
    Drives a single challenge to a terminal outcome.

    - Each round calls `executor(challenge_id)` once.
    - COMPLETE resolves; IN_PROGRESS waits `interval` seconds and polls again,
      without an upper bound (completion is paced by the user).
    - Executor failures and other statuses fail immediately, no retry.
    - A `CancelToken` stops polling at any point, including in the middle of
      a round that is still waiting on the user; the unfinished round is
      cancelled and the caller gets `ChallengeCancelledError`.
    """

    def __init__(
        self,
        *,
        interval: float = DEFAULT_POLL_INTERVAL,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if interval < 0:
            raise ValueError("interval must be >= 0")
        self._interval = interval
        self._sleep = sleep
        self.last_rounds = 0

    @property
    def interval(self) -> float:
        return self._interval

    async def resolve(
        self,
        challenge_id: str,
        executor: RoundFn,
        *,
        cancel: Optional[CancelToken] = None,
    ) -> ChallengeOutcome:
        rounds = 0
        self.last_rounds = 0
        while True:
            self._check_cancelled(challenge_id, cancel)
            rounds += 1
            self.last_rounds = rounds
            try:
                outcome = await self._round(challenge_id, executor, cancel)
            except (asyncio.CancelledError, ChallengeCancelledError):
                raise
            except Exception as exc:
                raise ChallengeExecutionError(f"Error executing challenge: {exc}") from exc
            self._check_cancelled(challenge_id, cancel)

            if outcome is None:
                raise ChallengeExecutionError("No result from challenge execution")

            logger.debug("Challenge %s round %d: type=%s status=%s", challenge_id, rounds, outcome.type, outcome.status)
            if outcome.is_complete:
                logger.info("Challenge %s complete after %d round(s)", challenge_id, rounds)
                return outcome
            if not outcome.is_in_progress:
                raise ChallengeFailedError(outcome.status)

            await self._backoff(cancel)

    async def _round(
        self,
        challenge_id: str,
        executor: RoundFn,
        cancel: Optional[CancelToken],
    ) -> Optional[ChallengeOutcome]:
        if cancel is None:
            return await executor(challenge_id)
        round_task = asyncio.ensure_future(executor(challenge_id))
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({round_task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (round_task, waiter):
                if not task.done():
                    task.cancel()
        if cancel.cancelled:
            # Consume the abandoned round's exception
            if round_task.done() and not round_task.cancelled():
                round_task.exception()
            self._check_cancelled(challenge_id, cancel)
        return round_task.result()

    async def _backoff(self, cancel: Optional[CancelToken]) -> None:
        if cancel is None:
            await self._sleep(self._interval)
            return
        sleeper = asyncio.ensure_future(self._sleep(self._interval))
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, waiter):
                if not task.done():
                    task.cancel()

    @staticmethod
    def _check_cancelled(challenge_id: str, cancel: Optional[CancelToken]) -> None:
        if cancel is not None and cancel.cancelled:
            logger.info("Polling for challenge %s cancelled", challenge_id)
            raise ChallengeCancelledError(f"Polling for challenge {challenge_id} was cancelled")


__all__ = [
    "CancelToken",
    "Challenge",
    "ChallengeExecutor",
    "ChallengeKind",
    "ChallengeOutcome",
    "ChallengePoller",
    "DEFAULT_POLL_INTERVAL",
    "STATUS_COMPLETE",
    "STATUS_IN_PROGRESS",
]
