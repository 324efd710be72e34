from __future__ import annotations

import functools
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Tuple

from common.backend import IssuedChallenge, Session, Wallet, WalletBackendClient
from common.challenges import (
    CancelToken,
    Challenge,
    ChallengeExecutor,
    ChallengeKind,
    ChallengePoller,
)
from common.errors import (
    BackendError,
    ChallengeCancelledError,
    ChallengeExecutionError,
    ChallengeFailedError,
    StaleIdentityError,
)
from common.sessions import SessionManager
from common.wallets import WalletRegistry
from state.identity_store import IdentityStore
from state.models import Identity, WorkflowError, WorkflowStep


logger = logging.getLogger(__name__)

IssueFn = Callable[[str], Awaitable[IssuedChallenge]]


class OnboardingStateMachine:
    """
    Top-level controller for the onboarding flow.

    Steps: INITIAL → AWAITING_PIN → AWAITING_WALLET_CREATION → MANAGING_WALLETS.

    Every trigger is a method returning True when it was accepted. A trigger is
    ignored (returns False) when it does not apply to the current step or when
    another transition is still in flight. Failures never leave a partial
    transition: the step stays where it was and `error` carries the message.

    `clear_account()` is always accepted. It bumps an internal epoch so that
    an operation started before the clear cannot apply its result afterwards.
    """

    def __init__(
        self,
        *,
        identity_store: IdentityStore,
        sessions: SessionManager,
        backend: WalletBackendClient,
        poller: ChallengePoller,
        wallets: WalletRegistry,
        executor: Optional[ChallengeExecutor] = None,
    ) -> None:
        self._identity_store = identity_store
        self._sessions = sessions
        self._backend = backend
        self._poller = poller
        self._wallets = wallets
        self._executor = executor

        self.step = WorkflowStep.INITIAL
        self.identity: Optional[Identity] = None
        self.session: Optional[Session] = None
        self.challenge: Optional[Challenge] = None
        self.error: Optional[WorkflowError] = None

        self._in_flight: Optional[str] = None
        self._epoch = 0
        self._cancel: Optional[CancelToken] = None

    # --------------- Read-only views ---------------
    @property
    def busy(self) -> bool:
        return self._in_flight is not None

    @property
    def wallets(self) -> Tuple[Wallet, ...]:
        return self._wallets.wallets

    @property
    def error_message(self) -> Optional[str]:
        return self.error.message if self.error else None

    def snapshot(self) -> Dict[str, Any]:
        """Plain view of the machine for a presentation layer."""
        return {
            "step": self.step.value,
            "user_id": self.identity.user_id if self.identity else None,
            "has_session": self.session is not None,
            "challenge_id": self.challenge.challenge_id if self.challenge else None,
            "error": self.error_message,
            "busy": self.busy,
            "wallets": [w.model_dump(by_alias=True) for w in self.wallets],
        }

    # --------------- Triggers ---------------
    async def boot(self) -> bool:
        """Restore a persisted identity, if any, and jump to the matching step."""
        epoch = self._begin("boot", (WorkflowStep.INITIAL,))
        if epoch is None:
            return False
        try:
            identity = self._identity_store.load()
            if identity is None:
                logger.info("No stored identity; starting fresh onboarding")
                return True
            self.identity = identity
            await self._authenticate(identity, epoch)
        finally:
            self._end(epoch)
        return True

    async def create_account(self) -> bool:
        epoch = self._begin("create_account", (WorkflowStep.INITIAL,), user_action=True)
        if epoch is None:
            return False
        try:
            try:
                identity, session = await self._sessions.create_identity()
            except BackendError as exc:
                if not self._stale(epoch):
                    self._reset_to_initial()
                    self._surface(epoch, exc.message or "Failed to create user")
                return True
            if self._stale(epoch):
                return True
            self._identity_store.save(identity)
            self.identity = identity
            self.session = session
            has_pin = await self._sessions.has_pin_configured(identity)
            if not self._stale(epoch):
                await self._enter_authenticated(has_pin, epoch)
        finally:
            self._end(epoch)
        return True

    async def resume_account(self) -> bool:
        epoch = self._begin("resume_account", (WorkflowStep.INITIAL,), user_action=True)
        if epoch is None:
            return False
        try:
            identity = self.identity or self._identity_store.load()
            if identity is None:
                self._surface(epoch, "No stored user to resume. Please create a user first.")
                return True
            self.identity = identity
            await self._authenticate(identity, epoch)
        finally:
            self._end(epoch)
        return True

    async def recheck_pin(self) -> bool:
        """Skip PIN setup when the backend already reports a PIN (best-effort)."""
        epoch = self._begin("recheck_pin", (WorkflowStep.AWAITING_PIN,))
        if epoch is None:
            return False
        try:
            if self.identity is None:
                return True
            has_pin = await self._sessions.has_pin_configured(self.identity)
            if has_pin and not self._stale(epoch):
                logger.info("PIN already enabled, skipping PIN setup")
                self._transition(WorkflowStep.AWAITING_WALLET_CREATION)
        finally:
            self._end(epoch)
        return True

    async def setup_pin(self) -> bool:
        return await self._challenge_step(
            "setup_pin",
            WorkflowStep.AWAITING_PIN,
            WorkflowStep.AWAITING_WALLET_CREATION,
            ChallengeKind.PIN_SETUP,
            self._backend.create_pin_challenge,
        )

    async def create_wallet(self) -> bool:
        return await self._challenge_step(
            "create_wallet",
            WorkflowStep.AWAITING_WALLET_CREATION,
            WorkflowStep.MANAGING_WALLETS,
            ChallengeKind.WALLET_CREATION,
            self._backend.create_wallet_challenge,
        )

    async def refresh_wallets(self) -> bool:
        epoch = self._begin("refresh_wallets", (WorkflowStep.MANAGING_WALLETS,), user_action=True)
        if epoch is None:
            return False
        try:
            await self._load_wallets(epoch)
        finally:
            self._end(epoch)
        return True

    def request_new_wallet(self) -> bool:
        """Go back to wallet creation to provision another wallet."""
        if self._begin("request_new_wallet", (WorkflowStep.MANAGING_WALLETS,), user_action=True) is None:
            return False
        self._in_flight = None
        self._transition(WorkflowStep.AWAITING_WALLET_CREATION)
        return True

    def cancel_challenge(self) -> bool:
        """Stop polling the active challenge without applying its transition."""
        if self._cancel is None:
            return False
        self._cancel.cancel()
        return True

    def dismiss_error(self) -> bool:
        self.error = None
        return True

    def clear_account(self) -> bool:
        self._epoch += 1
        if self._cancel is not None:
            self._cancel.cancel()
            self._cancel = None
        self._in_flight = None
        self._reset_to_initial()
        self.error = None
        logger.info("Account cleared")
        return True

    # --------------- Internal ---------------
    def _begin(
        self,
        trigger: str,
        allowed: Iterable[WorkflowStep],
        *,
        user_action: bool = False,
    ) -> Optional[int]:
        if self._in_flight is not None:
            logger.info("Ignoring %s: %s still in flight", trigger, self._in_flight)
            return None
        if self.step not in allowed:
            logger.warning("Ignoring %s in step %s", trigger, self.step.value)
            return None
        self._in_flight = trigger
        if user_action:
            self.error = None
        return self._epoch

    def _end(self, epoch: int) -> None:
        if epoch == self._epoch:
            self._in_flight = None

    def _stale(self, epoch: int) -> bool:
        return epoch != self._epoch

    def _transition(self, step: WorkflowStep) -> None:
        logger.info("Step %s -> %s", self.step.value, step.value)
        self.step = step
        self.error = None

    def _surface(self, epoch: int, message: str) -> None:
        if self._stale(epoch):
            return
        logger.warning("Onboarding error in step %s: %s", self.step.value, message)
        self.error = WorkflowError(message=message)

    def _reset_to_initial(self) -> None:
        self._identity_store.clear()
        self.identity = None
        self.session = None
        self.challenge = None
        self._wallets.reset()
        self.step = WorkflowStep.INITIAL

    async def _authenticate(self, identity: Identity, epoch: int) -> None:
        try:
            session = await self._sessions.resume_session(identity)
        except BackendError as exc:
            if not self._stale(epoch):
                self._reset_to_initial()
                self._surface(epoch, exc.message or "Failed to get user token")
            return
        if self._stale(epoch):
            return
        self.session = session
        has_pin = await self._sessions.has_pin_configured(identity)
        if not self._stale(epoch):
            await self._enter_authenticated(has_pin, epoch)

    async def _enter_authenticated(self, has_pin: bool, epoch: int) -> None:
        if has_pin:
            logger.info("PIN already enabled, skipping PIN setup")
            self._transition(WorkflowStep.MANAGING_WALLETS)
            await self._load_wallets(epoch)
        else:
            self._transition(WorkflowStep.AWAITING_PIN)

    async def _ensure_session(self, epoch: int) -> Optional[Session]:
        if self.identity is None:
            self._reset_to_initial()
            self._surface(epoch, "No user identity available. Please create a user first.")
            return None
        if self.session is not None:
            return self.session
        try:
            session = await self._sessions.resume_session(self.identity)
        except StaleIdentityError as exc:
            if not self._stale(epoch):
                self._reset_to_initial()
                self._surface(epoch, exc.message)
            return None
        except BackendError as exc:
            self._surface(epoch, exc.message or "Failed to get user token")
            return None
        if self._stale(epoch):
            return None
        self.session = session
        return session

    async def _challenge_step(
        self,
        trigger: str,
        from_step: WorkflowStep,
        to_step: WorkflowStep,
        kind: ChallengeKind,
        issue: IssueFn,
    ) -> bool:
        if self._executor is None:
            raise RuntimeError(f"{trigger} requires a challenge executor")
        epoch = self._begin(trigger, (from_step,), user_action=True)
        if epoch is None:
            return False
        cancel = CancelToken()
        self._cancel = cancel
        try:
            session = await self._ensure_session(epoch)
            if session is None or self._stale(epoch):
                return True

            try:
                issued = await issue(session.session_token)
            except BackendError as exc:
                if exc.status_code in (401, 403) and not self._stale(epoch):
                    # Rejected session: re-derived by the guard on the next attempt
                    self.session = None
                self._surface(epoch, exc.message)
                return True
            if self._stale(epoch):
                return True

            self.challenge = Challenge(challenge_id=issued.challenge_id, kind=kind, wallet_id=issued.wallet_id)
            round_fn = functools.partial(self._executor.execute, session=session)
            try:
                await self._poller.resolve(issued.challenge_id, round_fn, cancel=cancel)
            except ChallengeCancelledError:
                return True
            except (ChallengeExecutionError, ChallengeFailedError) as exc:
                if not self._stale(epoch):
                    self.challenge = None
                    self._surface(epoch, str(exc))
                return True
            if self._stale(epoch):
                return True

            self.challenge = None
            if issued.wallet_id:
                logger.info("Wallet created with ID %s", issued.wallet_id)
            self._transition(to_step)
            if to_step is WorkflowStep.MANAGING_WALLETS:
                await self._load_wallets(epoch)
        finally:
            if self._cancel is cancel:
                self._cancel = None
            self._end(epoch)
        return True

    async def _load_wallets(self, epoch: int) -> None:
        if self.identity is None:
            return
        user_id = self.identity.user_id
        try:
            await self._wallets.fetch(user_id)
        except BackendError as exc:
            self._surface(epoch, exc.message or "Failed to load wallets")
            return
        if self._stale(epoch) and (self.identity is None or self.identity.user_id != user_id):
            self._wallets.reset()
