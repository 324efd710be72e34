from __future__ import annotations

from typing import Optional


class OnboardingError(RuntimeError):
    """Base error for the onboarding workflow."""


class BackendError(OnboardingError):
    """Backend rejected the request or could not be reached."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class StaleIdentityError(BackendError):
    """Stored user identifier is no longer recognized by the backend."""


class ChallengeExecutionError(OnboardingError):
    """The executor itself failed (transport error, user cancelled the widget)."""


class ChallengeFailedError(OnboardingError):
    """Challenge reached a terminal status other than COMPLETE."""

    def __init__(self, status: str) -> None:
        super().__init__(f"Challenge failed with status: {status}")
        self.status = status


class ChallengeCancelledError(OnboardingError):
    """Polling was stopped through a cancel token before a terminal outcome."""


__all__ = [
    "OnboardingError",
    "BackendError",
    "StaleIdentityError",
    "ChallengeExecutionError",
    "ChallengeFailedError",
    "ChallengeCancelledError",
]
