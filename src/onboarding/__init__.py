"""
Onboarding workflow: the step state machine and its runner entry points.
"""

from .machine import OnboardingStateMachine

__all__ = ["OnboardingStateMachine"]
